from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment_service.config import Settings
from fulfillment_service.database import Base, make_engine
from fulfillment_service.locks import InMemoryKeyedLock
from fulfillment_service.messaging.local import LocalTaskQueue
from fulfillment_service.models import Customer, Order, OrderItem, Product, money
from fulfillment_service.services import build_services


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        database_url="sqlite://",
        task_backend="local",
        lock_backend="memory",
        payment_delay_seconds=0.0,
        payment_force_outcome="success",
        task_backoff_seconds=0.0,
        transaction_retry_delay=0.0,
    )


@pytest.fixture
def queue():
    return LocalTaskQueue()


@pytest.fixture
def services(settings, session_factory, queue):
    return build_services(settings, session_factory, bus=queue, locks=InMemoryKeyedLock())


@pytest.fixture
def make_product(session_factory):
    def _make(sku, stock=0, reserved=0, sold=0, price="10.00"):
        db = session_factory()
        try:
            product = Product(sku=sku, name=sku, stock=stock, reserved=reserved, sold=sold, price=money(price))
            db.add(product)
            db.commit()
            return product.id
        finally:
            db.close()

    return _make


@pytest.fixture
def make_order(session_factory):
    """Creates a pending order; ``lines`` is a list of (sku, qty, unit_price) for existing products."""

    def _make(lines, status="pending", order_number="A-1001", email="ada@example.com", order_date=date(2025, 10, 22)):
        db = session_factory()
        try:
            customer = db.execute(select(Customer).where(Customer.email == email)).scalars().first()
            if customer is None:
                customer = Customer(email=email, name=email.split("@")[0])
                db.add(customer)
                db.flush()
            order = Order(
                customer_id=customer.id,
                order_number=order_number,
                import_batch="batch-1",
                order_date=order_date,
                status=status,
                subtotal=money(0),
                total=money(0),
            )
            db.add(order)
            db.flush()
            subtotal = Decimal("0")
            for sku, qty, unit_price in lines:
                product = db.execute(select(Product).where(Product.sku == sku)).scalars().one()
                item = OrderItem(order_id=order.id, product_id=product.id, qty=qty,
                                 unit_price=money(unit_price), reserved_qty=0)
                item.recompute_line_total()
                subtotal += item.line_total
                db.add(item)
            order.subtotal = money(subtotal)
            order.total = money(subtotal)
            db.commit()
            return order.id
        finally:
            db.close()

    return _make


@pytest.fixture
def fetch(session_factory):
    """Reads a fresh copy of a row: fetch(Product, sku="SKU-1") or fetch(Order, id=1)."""

    def _fetch(model, **filters):
        db = session_factory()
        try:
            stmt = select(model).filter_by(**filters)
            row = db.execute(stmt).scalars().first()
            if row is not None:
                db.expunge(row)
            return row
        finally:
            db.close()

    return _fetch


@pytest.fixture
def fetch_all(session_factory):
    def _fetch_all(model, **filters):
        db = session_factory()
        try:
            rows = db.execute(select(model).filter_by(**filters)).scalars().all()
            db.expunge_all()
            return rows
        finally:
            db.close()

    return _fetch_all


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory on a file-backed SQLite database, configured like a deployment."""
    engine = make_engine(f"sqlite:///{tmp_path / 'fulfillment.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()
