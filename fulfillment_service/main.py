# --- Imports ---
from contextlib import asynccontextmanager
from datetime import date

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

# Internal imports from sibling modules
from .config import get_settings
from .database import Base, SessionLocal, engine, get_db
from .errors import BusinessRuleViolation, InvalidInputError, NotFoundError
from .inventory import product_snapshot
from .models import FailedTask, NotificationLog, Order, Payment, Product
from .repository import FulfillmentRepository
from .services import build_services
from .utils.logging import configure_logging


# --- Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.environment, settings.log_level)

    # Create database tables defined in models.py if they don't exist
    Base.metadata.create_all(bind=engine)

    services = build_services(settings, SessionLocal)
    app.state.services = services

    pool = None
    if settings.task_backend == "local":
        from .messaging.local import LocalWorkerPool

        pool = LocalWorkerPool(services.bus, services.runner, settings.worker_concurrency)
        pool.start()
    else:
        from .consumers import start_consumer_thread

        for _ in range(settings.worker_concurrency):
            start_consumer_thread(services.runner, settings)

    yield

    if pool is not None:
        pool.stop()


# --- App Instance ---
app = FastAPI(title="Fulfillment service", lifespan=lifespan)


def get_services(request: Request):
    """Dependency returning the wired fulfillment services."""
    return request.app.state.services


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    return JSONResponse(status_code=409, content={"error": str(exc)})


# --- Request Models ---
class ItemCreate(BaseModel):
    """Pydantic model for creating or restocking a product."""
    sku: str
    quantity: int = Field(ge=0)
    name: str | None = None
    price: float | None = Field(default=None, ge=0)


class ImportRequest(BaseModel):
    """CSV export with a header row: order_number, order_date, customer_email, customer_name, sku, qty, price."""
    csv: str
    import_batch: str | None = None


class RefundRequest(BaseModel):
    amount: float = Field(gt=0)


# --- Serializers ---
def order_to_dict(order: Order, with_items: bool = False) -> dict:
    data = {
        "id": order.id,
        "order_number": order.order_number,
        "import_batch": order.import_batch,
        "customer_id": order.customer_id,
        "order_date": order.order_date.isoformat(),
        "status": order.status,
        "subtotal": float(order.subtotal),
        "total": float(order.total),
    }
    if with_items:
        data["items"] = [
            {
                "product_id": item.product_id,
                "sku": item.product.sku,
                "qty": item.qty,
                "unit_price": float(item.unit_price),
                "line_total": float(item.line_total),
                "reserved_qty": item.reserved_qty,
            }
            for item in order.items
        ]
    return data


def payment_to_dict(payment: Payment) -> dict:
    return {"id": payment.id, "order_id": payment.order_id, "status": payment.status, "provider": payment.provider}


# --- Endpoints ---
@app.get("/")
def root():
    """Health check endpoint to confirm the fulfillment service is operational."""
    return {"message": "Fulfillment service is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/v1/stock/items")
def add_or_update_item(item: ItemCreate, services=Depends(get_services)):
    """
    Adds stock for a product, creating it first when the sku is new.
    """
    product = services.ledger.restock(item.sku, item.quantity, name=item.name, price=item.price)
    return {"status": "ok", **product}


@app.get("/api/v1/stock/")
def list_items(db: Session = Depends(get_db)):
    """Retrieves all products with their stock counters."""
    products = db.execute(select(Product).order_by(Product.sku)).scalars().all()
    return [product_snapshot(p) for p in products]


@app.get("/api/v1/stock/items/{sku}")
def get_item(sku: str, db: Session = Depends(get_db)):
    product = FulfillmentRepository(db).get_product_by_sku(sku)
    if not product:
        raise HTTPException(status_code=404, detail="item not found")
    return product_snapshot(product)


@app.post("/api/v1/orders/import", status_code=202)
def import_orders(req: ImportRequest, services=Depends(get_services)):
    """Queues one import per order_number; the workflow starts once each import lands."""
    batch, count = services.importer.dispatch_file(req.csv, req.import_batch)
    return {"status": "queued", "import_batch": batch, "orders": count}


@app.get("/api/v1/orders")
def list_orders(status: str | None = None, db: Session = Depends(get_db)):
    stmt = select(Order).order_by(Order.id)
    if status:
        stmt = stmt.where(Order.status == status)
    return [order_to_dict(o) for o in db.execute(stmt).scalars()]


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = FulfillmentRepository(db).get_order(order_id)
    return order_to_dict(order, with_items=True)


@app.post("/api/v1/orders/{order_id}/refunds", status_code=202)
def refund_order(order_id: int, req: RefundRequest, services=Depends(get_services)):
    services.workflow.record_refund(order_id, req.amount)
    return {"status": "refund_recorded", "order_id": order_id, "amount": req.amount}


@app.get("/api/v1/payments/{order_id}")
def list_payments(order_id: int, db: Session = Depends(get_db)):
    payments = db.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)).scalars()
    return [payment_to_dict(p) for p in payments]


@app.get("/api/v1/kpis/{day}")
def get_kpis(day: date, services=Depends(get_services)):
    return services.kpis.daily(day)


@app.get("/api/v1/leaderboard")
def get_leaderboard(limit: int = 10, services=Depends(get_services)):
    return services.kpis.leaderboard(limit)


@app.get("/api/v1/notifications")
def list_notifications(order_id: int | None = None, db: Session = Depends(get_db)):
    stmt = select(NotificationLog).order_by(NotificationLog.id)
    if order_id is not None:
        stmt = stmt.where(NotificationLog.order_id == order_id)
    return [
        {
            "id": n.id,
            "order_id": n.order_id,
            "customer_id": n.customer_id,
            "type": n.type,
            "payload": n.payload,
            "sent_at": n.sent_at.isoformat() if n.sent_at else None,
        }
        for n in db.execute(stmt).scalars()
    ]


@app.get("/api/v1/tasks/failed")
def list_failed_tasks(db: Session = Depends(get_db)):
    """Dead-lettered tasks awaiting manual inspection."""
    return [
        {
            "id": t.id,
            "task_id": t.task_id,
            "kind": t.kind,
            "payload": t.payload,
            "attempts": t.attempts,
            "error": t.error,
            "failed_at": t.failed_at.isoformat() if t.failed_at else None,
        }
        for t in db.execute(select(FailedTask).order_by(FailedTask.id)).scalars()
    ]
