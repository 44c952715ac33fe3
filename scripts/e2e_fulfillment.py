#!/usr/bin/env python3
"""
End-to-end checks against a running fulfillment service and its workers.

    uvicorn fulfillment_service.main:app --port 8000
    python scripts/e2e_fulfillment.py

FULFILLMENT_BASE and TIMEOUT_SECONDS override the target and the wait per
order. Start the service with PAYMENT_FORCE_OUTCOME=failed to take the
compensation path every time; otherwise the payment check accepts either
gateway outcome and verifies stock against it.
"""

import os
import sys
import time
import uuid

import requests

BASE = os.getenv("FULFILLMENT_BASE", "http://localhost:8000")
TIMEOUT_SECONDS = float(os.getenv("TIMEOUT_SECONDS", "45"))
TERMINAL = {"finalized", "rolled_back", "failed"}


def call(method, path, expected=200, **kwargs):
    resp = requests.request(method, BASE + path, timeout=8, **kwargs)
    if resp.status_code != expected:
        raise AssertionError(f"{method} {path}: HTTP {resp.status_code} {resp.text}")
    return resp.json()


def poll(fn):
    deadline = time.monotonic() + TIMEOUT_SECONDS
    while time.monotonic() < deadline:
        value = fn()
        if value is not None:
            return value
        time.sleep(1)
    raise AssertionError(f"gave up after {TIMEOUT_SECONDS}s")


def terminal_status(order_id):
    status = call("GET", f"/api/v1/orders/{order_id}")["status"]
    return status if status in TERMINAL else None


def healthy():
    try:
        return True if requests.get(BASE + "/health", timeout=2).ok else None
    except requests.RequestException:
        return None


def place_order(stock, qty):
    """Restocks a fresh sku, imports one order for it and waits for a terminal status."""
    sku = f"E2E-{uuid.uuid4().hex[:6]}"
    before = call("POST", "/api/v1/stock/items", json={"sku": sku, "quantity": stock, "price": 10.0})
    number, batch = f"E2E-{uuid.uuid4().hex[:8]}", f"e2e-{uuid.uuid4()}"
    csv = ("order_number,order_date,customer_email,customer_name,sku,qty,price\n"
           f"{number},2025-10-22,e2e@example.com,E2E Customer,{sku},{qty},10.00")
    call("POST", "/api/v1/orders/import", expected=202, json={"csv": csv, "import_batch": batch})

    order_id = poll(lambda: next((o["id"] for o in call("GET", "/api/v1/orders")
                                  if o["order_number"] == number and o["import_batch"] == batch), None))
    status = poll(lambda: terminal_status(order_id))
    payments = call("GET", f"/api/v1/payments/{order_id}")
    after = call("GET", f"/api/v1/stock/items/{sku}")
    return status, payments[-1]["status"] if payments else None, before, after


def happy_path():
    status, payment, before, after = place_order(stock=10, qty=3)
    assert status == "finalized", f"status={status}; is PAYMENT_FORCE_OUTCOME set?"
    assert payment == "success", f"payment={payment}"
    assert (after["stock"], after["reserved"], after["sold"]) == (before["stock"] - 3, 0, before["sold"] + 3), after


def insufficient_stock():
    status, payment, before, after = place_order(stock=2, qty=5)
    assert status == "failed", f"status={status}"
    assert payment is None, f"payment={payment}"
    assert (after["stock"], after["reserved"]) == (before["stock"], before["reserved"]), after


def payment_outcome():
    status, payment, before, after = place_order(stock=10, qty=4)
    if status == "rolled_back":
        assert payment == "failed", f"payment={payment}"
        assert (after["stock"], after["reserved"]) == (before["stock"], 0), after
    else:
        assert (status, payment) == ("finalized", "success"), f"status={status} payment={payment}"
        assert after["stock"] == before["stock"] - 4, after


def main():
    poll(healthy)

    failed = 0
    for check in (happy_path, insufficient_stock, payment_outcome):
        try:
            check()
            print(f"PASS {check.__name__}")
        except (AssertionError, requests.RequestException) as exc:
            failed += 1
            print(f"FAIL {check.__name__}: {exc}")

    if failed:
        print(f"{failed} check(s) failed; dead-lettered tasks are listed at {BASE}/api/v1/tasks/failed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
