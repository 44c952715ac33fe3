from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .errors import NotFoundError
from .models import Customer, Order, OrderItem, Payment, Product, PAYMENT_INITIATED


class FulfillmentRepository:
    """
    Loads and saves the workflow's entities inside one session.

    Row locks are taken with SELECT ... FOR UPDATE and are held until the
    surrounding transaction ends. Callers that lock several rows must lock
    the order first and then its products, in ascending product id.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_order(self, order_id: int, lock: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        order = self.db.execute(stmt.options(selectinload(Order.items))).scalars().first()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def lock_products(self, product_ids) -> dict[int, Product]:
        """Locks every product in one statement, in ascending id order."""
        wanted = sorted(set(product_ids))
        if not wanted:
            return {}
        stmt = select(Product).where(Product.id.in_(wanted)).order_by(Product.id).with_for_update()
        products = {p.id: p for p in self.db.execute(stmt).scalars()}
        for product_id in wanted:
            if product_id not in products:
                raise NotFoundError("Product", product_id)
        return products

    def get_product_by_sku(self, sku: str, lock: bool = False) -> Product | None:
        stmt = select(Product).where(Product.sku == sku)
        if lock:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_payment(self, payment_id: int, order_id: int | None = None, lock: bool = False) -> Payment:
        stmt = select(Payment).where(Payment.id == payment_id)
        if order_id is not None:
            stmt = stmt.where(Payment.order_id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        payment = self.db.execute(stmt).scalars().first()
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def active_payment(self, order_id: int, lock: bool = False) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id, Payment.status == PAYMENT_INITIATED)
        if lock:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_customer_by_email(self, email: str) -> Customer | None:
        return self.db.execute(select(Customer).where(Customer.email == email)).scalars().first()

    def find_order(self, order_number: str, import_batch: str | None) -> Order | None:
        stmt = select(Order).where(Order.order_number == order_number, Order.import_batch == import_batch)
        return self.db.execute(stmt).scalars().first()

    def find_item(self, order_id: int, product_id: int) -> OrderItem | None:
        stmt = select(OrderItem).where(OrderItem.order_id == order_id, OrderItem.product_id == product_id)
        return self.db.execute(stmt).scalars().first()

    def add(self, entity):
        """Stages a new row and flushes so its primary key is assigned."""
        self.db.add(entity)
        self.db.flush()
        return entity
