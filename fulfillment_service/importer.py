import csv
import io
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .errors import InvalidInputError, TransientInfraError
from .models import PENDING, Customer, Order, OrderItem, Product, money
from .repository import FulfillmentRepository
from .tasks import Task, TaskKind

logger = structlog.get_logger(__name__)

IMPORT_COLUMNS = ("order_number", "order_date", "customer_email", "customer_name", "sku", "qty", "price")


def parse_order_csv(text: str) -> list[list[dict]]:
    """Reads a CSV export and groups its rows by order_number, keeping file order."""
    reader = csv.DictReader(io.StringIO(text))
    if reader.fieldnames is None:
        return []
    groups: dict[str, list[dict]] = {}
    for row in reader:
        row = {key.strip(): (value or "").strip() for key, value in row.items() if key is not None}
        groups.setdefault(row.get("order_number", ""), []).append(row)
    return list(groups.values())


def parse_order_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        raise InvalidInputError(f"order_date is not an ISO date: {raw!r}") from None


def parse_line(row: dict) -> tuple[str, int, Decimal] | None:
    """Returns (sku, qty, price) or None for a row that should be skipped."""
    sku = str(row.get("sku") or "").strip()
    try:
        qty = max(1, int(float(row.get("qty") or 0)))
        price = Decimal(str(row.get("price") or "0"))
    except (ValueError, InvalidOperation):
        return None
    if not sku or price < 0:
        return None
    return sku, qty, money(price)


class OrderImporter:
    """
    Turns one group of CSV rows into a pending order and starts its workflow.

    Importing the same group twice with the same batch id yields the same
    order with the same items.
    """

    def __init__(self, session_factory, settings, bus):
        self.session_factory = session_factory
        self.settings = settings
        self.bus = bus

    def dispatch_file(self, text: str, import_batch: str | None = None) -> tuple[str, int]:
        """Queues one import task per order_number found in the file."""
        batch = import_batch or str(uuid.uuid4())
        groups = parse_order_csv(text)
        for lines in groups:
            self.bus.publish(Task.create(TaskKind.IMPORT_ORDERS, self.settings, lines=lines, import_batch=batch))
        logger.info("import_dispatched", import_batch=batch, orders=len(groups))
        return batch, len(groups)

    def import_group(self, lines: list[dict], import_batch: str | None = None) -> int | None:
        if not lines:
            return None

        # First row drives order meta
        first = lines[0]
        order_number = str(first.get("order_number") or "").strip()
        order_date_raw = str(first.get("order_date") or "").strip()
        customer_email = str(first.get("customer_email") or "").strip()
        customer_name = str(first.get("customer_name") or "").strip()

        if not order_number or not order_date_raw or not customer_email:
            raise InvalidInputError("Missing order_number, order_date, or customer_email in CSV group.")

        order_date = parse_order_date(order_date_raw)
        batch = import_batch or str(uuid.uuid4())

        merged: dict[str, list] = {}
        for row in lines:
            parsed = parse_line(row)
            if parsed is None:
                logger.warning("import_row_skipped", order_number=order_number, row=row)
                continue
            sku, qty, price = parsed
            if sku in merged:
                merged[sku][0] += qty
                merged[sku][1] = price
            else:
                merged[sku] = [qty, price]

        def apply(db: Session) -> int:
            repo = FulfillmentRepository(db)

            customer = repo.get_customer_by_email(customer_email)
            if customer is None:
                customer = repo.add(Customer(email=customer_email,
                                             name=customer_name or customer_email.split("@")[0]))

            order = repo.find_order(order_number, batch)
            if order is None:
                order = repo.add(Order(
                    order_number=order_number,
                    import_batch=batch,
                    customer_id=customer.id,
                    status=PENDING,
                    order_date=order_date,
                    subtotal=money(0),
                    total=money(0),
                ))
            else:
                if order.customer_id != customer.id:
                    order.customer_id = customer.id
                if order.order_date != order_date:
                    order.order_date = order_date
                if order.status != PENDING:
                    # Already in the workflow; its items are frozen.
                    return order.id

            for sku, (qty, price) in merged.items():
                product = repo.get_product_by_sku(sku)
                if product is None:
                    product = repo.add(Product(sku=sku, name=sku, stock=0, reserved=0, sold=0, price=price))

                item = repo.find_item(order.id, product.id)
                if item is None:
                    item = OrderItem(order_id=order.id, product_id=product.id, reserved_qty=0)
                    db.add(item)
                item.qty = qty
                item.unit_price = price
                item.recompute_line_total()

            db.flush()
            db.refresh(order)
            order.subtotal = money(sum((Decimal(item.line_total) for item in order.items), Decimal("0")))
            order.total = order.subtotal
            return order.id

        try:
            order_id = run_in_transaction(self.session_factory, apply,
                                          attempts=self.settings.transaction_attempts,
                                          retry_delay=self.settings.transaction_retry_delay)
        except IntegrityError as exc:
            # A concurrent import created the same customer/product/order first.
            raise TransientInfraError(f"Import of {order_number} collided with a concurrent import") from exc

        logger.info("order_imported", order_id=order_id, order_number=order_number, import_batch=batch)
        self.bus.publish(Task.create(TaskKind.RESERVE_STOCK, self.settings, order_id=order_id))
        return order_id
