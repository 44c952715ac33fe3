from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .errors import InvalidTransitionError

CENT = Decimal("0.01")

# Order statuses.
PENDING = "pending"
RESERVED = "reserved"
PAID = "paid"
FINALIZED = "finalized"
FAILED = "failed"
ROLLED_BACK = "rolled_back"

TERMINAL_STATUSES = frozenset({FINALIZED, FAILED, ROLLED_BACK})

# Legal forward moves; terminal statuses have none.
ORDER_TRANSITIONS = {
    PENDING: frozenset({RESERVED, FAILED, ROLLED_BACK}),
    RESERVED: frozenset({PAID, FINALIZED, ROLLED_BACK}),
    PAID: frozenset({FINALIZED, ROLLED_BACK}),
    FINALIZED: frozenset(),
    FAILED: frozenset(),
    ROLLED_BACK: frozenset(),
}

# Payment statuses.
PAYMENT_INITIATED = "initiated"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"


def money(value) -> Decimal:
    """Two-decimal fixed point, rounding half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)

    orders = relationship("Order", back_populates="customer")


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("reserved >= 0", name="ck_products_reserved_non_negative"),
        CheckConstraint("stock >= reserved", name="ck_products_stock_covers_reserved"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True, nullable=False, index=True)  # Stock Keeping Unit, must be unique.
    name = Column(String, nullable=False)
    stock = Column(Integer, nullable=False, default=0)  # Physical units on hand.
    reserved = Column(Integer, nullable=False, default=0)  # Units held by in-flight orders.
    sold = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(12, 2), nullable=False, default=0)

    @property
    def available(self) -> int:
        return self.stock - self.reserved


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("order_number", "import_batch", name="uq_orders_number_batch"),)

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    order_number = Column(String, nullable=False, index=True)  # Business-level order identifier from the import.
    import_batch = Column(String, nullable=True)
    order_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("Customer", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.product_id",
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")

    def can_transition_to(self, status: str) -> bool:
        return status in ORDER_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, status: str) -> None:
        """Move the order forward; statuses never regress or leave a terminal state."""
        if not self.can_transition_to(status):
            raise InvalidTransitionError(self.id, self.status, status)
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (UniqueConstraint("order_id", "product_id", name="uq_order_items_order_product"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    qty = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)
    # Units this order currently holds on the product; 0 when nothing is reserved.
    reserved_qty = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    def recompute_line_total(self) -> None:
        self.line_total = money(Decimal(self.qty) * money(self.unit_price))


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, nullable=False, default=PAYMENT_INITIATED)
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=True)
    # Set once the finalize/rollback task for this outcome has been queued.
    outcome_dispatched = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payments")

    @property
    def is_terminal(self) -> bool:
        return self.status in (PAYMENT_SUCCESS, PAYMENT_FAILED)


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    type = Column(String, nullable=False)  # success | failure | refund
    payload = Column(JSON, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)


class DailyKpi(Base):
    __tablename__ = "daily_kpis"

    day = Column(Date, primary_key=True)
    revenue = Column(Numeric(14, 2), nullable=False, default=0)
    order_count = Column(Integer, nullable=False, default=0)
    avg_order_value = Column(Numeric(14, 2), nullable=False, default=0)


class CustomerScore(Base):
    """One leaderboard row per customer, ranked by score."""

    __tablename__ = "customer_scores"

    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True)
    score = Column(Numeric(14, 2), nullable=False, default=0, index=True)


class TaskLease(Base):
    __tablename__ = "task_leases"

    key = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    token = Column(String, nullable=False)  # Identifies one acquisition; release must present it.
    expires_at = Column(Float, nullable=False)  # Unix timestamp.


class FailedTask(Base):
    """Dead-lettered task kept for manual inspection."""

    __tablename__ = "failed_tasks"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False)
    error = Column(Text, nullable=False)
    failed_at = Column(DateTime(timezone=True), default=utcnow)
