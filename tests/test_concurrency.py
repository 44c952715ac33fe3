"""Worker threads sharing one file-backed SQLite database, as the local worker pool does."""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from fulfillment_service.locks import InMemoryKeyedLock
from fulfillment_service.messaging.local import LocalTaskQueue
from fulfillment_service.models import Customer, Order, OrderItem, Product, money
from fulfillment_service.services import build_services

WORKERS = 6


def run_together(fn, args):
    """Calls fn(arg) for every arg from WORKERS threads released at the same moment."""
    start = threading.Event()

    def gated(arg):
        start.wait()
        return fn(arg)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(gated, arg) for arg in args]
        start.set()
        return [f.result() for f in futures]


def seed(session_factory, stock, orders):
    """One product with ``stock`` units and ``orders`` pending orders for one unit each."""
    db = session_factory()
    try:
        customer = Customer(email="ada@example.com", name="ada")
        product = Product(sku="SKU-1", name="SKU-1", stock=stock, reserved=0, sold=0, price=money("10.00"))
        db.add_all([customer, product])
        db.flush()
        order_ids = []
        for n in range(orders):
            order = Order(customer_id=customer.id, order_number=f"A-{n}", import_batch="b1",
                          order_date=date(2025, 10, 22), status="pending",
                          subtotal=money("10.00"), total=money("10.00"))
            db.add(order)
            db.flush()
            db.add(OrderItem(order_id=order.id, product_id=product.id, qty=1, unit_price=money("10.00"),
                             line_total=money("10.00"), reserved_qty=0))
            order_ids.append(order.id)
        db.commit()
        return customer.id, order_ids
    finally:
        db.close()


def product_counters(session_factory):
    db = session_factory()
    try:
        product = db.query(Product).filter(Product.sku == "SKU-1").one()
        return product.stock, product.reserved, product.sold
    finally:
        db.close()


def make_services(settings, session_factory):
    settings.transaction_attempts = 10
    return build_services(settings, session_factory, bus=LocalTaskQueue(), locks=InMemoryKeyedLock())


def test_concurrent_reserves_never_oversell(settings, file_session_factory):
    services = make_services(settings, file_session_factory)
    _, order_ids = seed(file_session_factory, stock=3, orders=12)

    results = run_together(services.ledger.reserve, order_ids)

    assert results.count(True) == 3
    assert product_counters(file_session_factory) == (3, 3, 0)

    winners = [order_id for order_id, ok in zip(order_ids, results) if ok]
    run_together(services.ledger.commit, winners)

    assert product_counters(file_session_factory) == (0, 0, 3)


def test_concurrent_releases_and_reserves_keep_counters_consistent(settings, file_session_factory):
    services = make_services(settings, file_session_factory)
    _, order_ids = seed(file_session_factory, stock=4, orders=8)
    first, second = order_ids[:4], order_ids[4:]
    assert all(services.ledger.reserve(order_id) for order_id in first)

    def release_or_reserve(pair):
        action, order_id = pair
        return action(order_id)

    work = [(services.ledger.release, o) for o in first] + [(services.ledger.reserve, o) for o in second]
    results = run_together(release_or_reserve, work)

    stock, reserved, _ = product_counters(file_session_factory)
    assert stock == 4
    assert reserved == sum(1 for ok in results[4:] if ok)
    assert 0 <= reserved <= stock


def test_concurrent_finalized_orders_all_count_towards_kpis(settings, file_session_factory):
    services = make_services(settings, file_session_factory)
    customer_id, _ = seed(file_session_factory, stock=0, orders=0)
    day = date(2025, 10, 22)
    orders = [SimpleNamespace(total=Decimal("10.00"), order_date=day, customer_id=customer_id) for _ in range(10)]

    run_together(services.kpis.incr_for_finalized, orders)

    assert services.kpis.daily(day) == {"day": "2025-10-22", "revenue": 100.0, "order_count": 10,
                                        "avg_order_value": 10.0}
    assert services.kpis.leaderboard() == [{"rank": 1, "customer_id": customer_id, "score": 100.0}]
