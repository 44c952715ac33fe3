from decimal import Decimal

import pytest

from fulfillment_service.errors import InvalidTransitionError, NotFoundError, ReservationMismatchError
from fulfillment_service.models import Order, OrderItem, Product


def counters(fetch, sku):
    p = fetch(Product, sku=sku)
    return p.stock, p.reserved, p.sold


def test_reserve_all_items_marks_order_reserved(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5)
    make_product("SKU-2", stock=1)
    order_id = make_order([("SKU-1", 2, "10.00"), ("SKU-2", 1, "5.00")])

    assert services.ledger.reserve(order_id) is True

    assert counters(fetch, "SKU-1") == (5, 2, 0)
    assert counters(fetch, "SKU-2") == (1, 1, 0)
    order = fetch(Order, id=order_id)
    assert order.status == "reserved"
    assert order.subtotal == Decimal("25.00")


def test_reserve_is_all_or_nothing(services, make_product, make_order, fetch, fetch_all):
    make_product("SKU-1", stock=5)
    make_product("SKU-2", stock=0)
    order_id = make_order([("SKU-1", 2, "10.00"), ("SKU-2", 1, "5.00")])

    assert services.ledger.reserve(order_id) is False

    assert counters(fetch, "SKU-1") == (5, 0, 0)
    assert counters(fetch, "SKU-2") == (0, 0, 0)
    assert fetch(Order, id=order_id).status == "pending"
    assert all(item.reserved_qty == 0 for item in fetch_all(OrderItem, order_id=order_id))


def test_reserve_counts_existing_reservations_against_availability(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5, reserved=4)
    order_id = make_order([("SKU-1", 2, "10.00")])

    assert services.ledger.reserve(order_id) is False
    assert counters(fetch, "SKU-1") == (5, 4, 0)


def test_reserve_rejects_order_that_is_not_pending(services, make_product, make_order):
    make_product("SKU-1", stock=5)
    order_id = make_order([("SKU-1", 1, "10.00")], status="finalized")

    with pytest.raises(InvalidTransitionError):
        services.ledger.reserve(order_id)


def test_reserve_unknown_order_raises_not_found(services):
    with pytest.raises(NotFoundError):
        services.ledger.reserve(404)


def test_reserve_missing_product_raises_not_found(services, session_factory, make_product, make_order):
    make_product("SKU-1", stock=5)
    order_id = make_order([("SKU-1", 1, "10.00")])
    db = session_factory()
    db.add(OrderItem(order_id=order_id, product_id=999, qty=1, unit_price=1, line_total=1, reserved_qty=0))
    db.commit()
    db.close()

    with pytest.raises(NotFoundError):
        services.ledger.reserve(order_id)


def test_release_restores_reserved_counters(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5, reserved=1)
    make_product("SKU-2", stock=3)
    order_id = make_order([("SKU-1", 2, "10.00"), ("SKU-2", 3, "5.00")])
    services.ledger.reserve(order_id)

    services.ledger.release(order_id)

    assert counters(fetch, "SKU-1") == (5, 1, 0)
    assert counters(fetch, "SKU-2") == (3, 0, 0)


def test_release_twice_is_harmless(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5, reserved=3)
    order_id = make_order([("SKU-1", 2, "10.00")])
    services.ledger.reserve(order_id)

    services.ledger.release(order_id)
    services.ledger.release(order_id)

    assert counters(fetch, "SKU-1") == (5, 3, 0)


def test_release_without_reservation_changes_nothing(services, make_product, make_order, fetch):
    # Another order holds these units; releasing an unreserved order must not free them.
    make_product("SKU-1", stock=5, reserved=2)
    order_id = make_order([("SKU-1", 2, "10.00")])

    services.ledger.release(order_id)

    assert counters(fetch, "SKU-1") == (5, 2, 0)


def test_commit_converts_reservation_into_sale(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5)
    make_product("SKU-2", stock=1)
    order_id = make_order([("SKU-1", 2, "10.00"), ("SKU-2", 1, "5.00")])
    services.ledger.reserve(order_id)

    services.ledger.commit(order_id)

    assert counters(fetch, "SKU-1") == (3, 0, 2)
    assert counters(fetch, "SKU-2") == (0, 0, 1)
    assert fetch(Order, id=order_id).status == "finalized"


def test_commit_requires_a_full_reservation(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=5)
    order_id = make_order([("SKU-1", 2, "10.00")], status="reserved")

    with pytest.raises(ReservationMismatchError):
        services.ledger.commit(order_id)

    assert counters(fetch, "SKU-1") == (5, 0, 0)
    assert fetch(Order, id=order_id).status == "reserved"


def test_restock_creates_then_adds(services, fetch):
    created = services.ledger.restock("SKU-9", 4, name="Widget", price="3.50")
    assert created["stock"] == 4
    assert created["name"] == "Widget"

    updated = services.ledger.restock("SKU-9", 6)
    assert updated["stock"] == 10
    assert updated["available"] == 10
    assert fetch(Product, sku="SKU-9").name == "Widget"


def test_counters_never_go_negative_across_a_lifecycle(services, make_product, make_order, fetch):
    make_product("SKU-1", stock=3)
    first = make_order([("SKU-1", 2, "10.00")], order_number="A-1")
    second = make_order([("SKU-1", 2, "10.00")], order_number="A-2")

    assert services.ledger.reserve(first) is True
    assert services.ledger.reserve(second) is False
    services.ledger.commit(first)
    services.ledger.release(first)

    stock, reserved, sold = counters(fetch, "SKU-1")
    assert stock >= reserved >= 0
    assert (stock, reserved, sold) == (1, 0, 2)
