from decimal import Decimal

import structlog
from sqlalchemy import case, update
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .errors import InsufficientStockError, InvalidInputError, InvalidTransitionError, ReservationMismatchError
from .models import FINALIZED, RESERVED, Order, Product, money
from .repository import FulfillmentRepository

logger = structlog.get_logger(__name__)


def adjust_product(db: Session, product_id: int, *conditions, **values) -> bool:
    """
    Applies ``values`` to one product row in a single UPDATE, guarded by
    ``conditions``. Returns False when the guard did not match.

    The counters are computed by the database, never from a copy read
    earlier in the transaction, so concurrent writers cannot lose updates.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


class InventoryLedger:
    """
    Atomic reserve/release/commit against the per-product stock counters.

    Every operation runs in one retried transaction. The order row is locked
    first, then all of its products in ascending id order, before any check
    is made, so two orders touching overlapping products cannot deadlock.
    Counter changes are conditional UPDATEs: the availability check and the
    increment happen in the same statement.
    """

    def __init__(self, session_factory, attempts: int = 3, retry_delay: float = 5.0):
        self.session_factory = session_factory
        self.attempts = attempts
        self.retry_delay = retry_delay

    def _transaction(self, fn):
        return run_in_transaction(self.session_factory, fn, attempts=self.attempts, retry_delay=self.retry_delay)

    @staticmethod
    def _lock_order(db: Session, order_id: int) -> tuple[Order, dict[int, Product]]:
        repo = FulfillmentRepository(db)
        order = repo.get_order(order_id, lock=True)
        products = repo.lock_products(item.product_id for item in order.items)
        return order, products

    def reserve(self, order_id: int) -> bool:
        """
        Reserves every item of the order, or nothing at all.

        Returns False when any product lacks available stock; the abort rolls
        back whatever was already applied in the same transaction.
        """

        def apply(db: Session) -> None:
            order, products = self._lock_order(db, order_id)
            if not order.can_transition_to(RESERVED):
                raise InvalidTransitionError(order.id, order.status, RESERVED)
            for item in order.items:
                reserved = adjust_product(
                    db, item.product_id,
                    Product.stock - Product.reserved >= item.qty,
                    reserved=Product.reserved + item.qty,
                )
                if not reserved:
                    product = products[item.product_id]
                    raise InsufficientStockError(product.sku, item.qty, product.available)
                item.reserved_qty = item.qty
            order.transition_to(RESERVED)

        try:
            self._transaction(apply)
        except InsufficientStockError as exc:
            logger.info("reservation_rejected", order_id=order_id, sku=exc.sku,
                        requested=exc.requested, available=exc.available)
            return False
        logger.info("reservation_applied", order_id=order_id)
        return True

    def release(self, order_id: int) -> None:
        """
        Gives back exactly what the order holds.

        Items with nothing reserved are skipped, so calling this twice or on
        an order that never reserved leaves the counters untouched.
        """

        def apply(db: Session) -> int:
            order, _ = self._lock_order(db, order_id)
            released = 0
            for item in order.items:
                held = item.reserved_qty
                if not held:
                    continue
                adjust_product(
                    db, item.product_id,
                    reserved=case((Product.reserved >= held, Product.reserved - held), else_=0),
                )
                released += held
                item.reserved_qty = 0
            return released

        released = self._transaction(apply)
        logger.info("reservation_released", order_id=order_id, units=released)

    def commit(self, order_id: int) -> None:
        """Turns the reservation into a sale and stamps the order finalized."""

        def apply(db: Session) -> None:
            order, products = self._lock_order(db, order_id)
            for item in order.items:
                product = products[item.product_id]
                if item.reserved_qty != item.qty:
                    raise ReservationMismatchError(order.id, product.sku, item.reserved_qty, item.qty)
                committed = adjust_product(
                    db, item.product_id,
                    Product.reserved >= item.qty,
                    Product.stock >= item.qty,
                    reserved=Product.reserved - item.qty,
                    sold=Product.sold + item.qty,
                    stock=Product.stock - item.qty,
                )
                if not committed:
                    raise ReservationMismatchError(order.id, product.sku, product.reserved, item.qty)
                item.reserved_qty = 0
            order.transition_to(FINALIZED)

        self._transaction(apply)
        logger.info("reservation_committed", order_id=order_id)

    def restock(self, sku: str, quantity: int, name: str | None = None, price=None) -> dict:
        """
        Adds physical stock for a product, creating it when the sku is new.
        """
        if quantity < 0:
            raise InvalidInputError(f"Restock quantity must not be negative, got {quantity}")

        def apply(db: Session) -> dict:
            repo = FulfillmentRepository(db)
            product = repo.get_product_by_sku(sku, lock=True)
            if product is None:
                product = repo.add(Product(
                    sku=sku,
                    name=name or sku,
                    stock=0,
                    reserved=0,
                    sold=0,
                    price=money(price if price is not None else Decimal("0")),
                ))
            adjust_product(db, product.id, stock=Product.stock + quantity)
            db.refresh(product)
            if name and product.name != name:
                product.name = name
            if price is not None and product.price != money(price):
                product.price = money(price)
            return product_snapshot(product)

        snapshot = self._transaction(apply)
        logger.info("stock_added", sku=sku, quantity=quantity, stock=snapshot["stock"])
        return snapshot


def product_snapshot(product: Product) -> dict:
    return {
        "id": product.id,
        "sku": product.sku,
        "name": product.name,
        "stock": product.stock,
        "reserved": product.reserved,
        "sold": product.sold,
        "available": product.available,
        "price": float(product.price),
    }
