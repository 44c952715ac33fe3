from typing import Any, Protocol

import structlog
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .errors import InvalidInputError
from .models import NotificationLog, utcnow
from .repository import FulfillmentRepository

logger = structlog.get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"
REFUND = "refund"

# Customer-facing status for each notification type.
STATUS_BY_TYPE = {
    SUCCESS: "processed",
    FAILURE: "failed",
    REFUND: "refunded",
}


class NotificationSink(Protocol):
    def notify(self, order_id: int, type: str, extra: dict[str, Any] | None = None) -> int: ...


class LogNotificationSink:
    """
    Delivers order notifications to the application log and keeps a durable
    history in ``notification_logs``.
    """

    def __init__(self, session_factory, attempts: int = 3, retry_delay: float = 5.0):
        self.session_factory = session_factory
        self.attempts = attempts
        self.retry_delay = retry_delay

    def notify(self, order_id: int, type: str, extra: dict[str, Any] | None = None) -> int:
        if type not in STATUS_BY_TYPE:
            raise InvalidInputError(f"Unknown notification type: {type}")

        def apply(db: Session) -> tuple[int, dict]:
            order = FulfillmentRepository(db).get_order(order_id)
            payload = {
                "order_id": order.id,
                "customer_id": order.customer_id,
                "status": STATUS_BY_TYPE[type],
                "total": float(order.total),
                **(extra or {}),
            }
            entry = NotificationLog(
                order_id=order.id,
                customer_id=order.customer_id,
                type=type,
                payload=payload,
                sent_at=utcnow(),
            )
            db.add(entry)
            db.flush()
            return entry.id, payload

        log_id, payload = run_in_transaction(self.session_factory, apply,
                                             attempts=self.attempts, retry_delay=self.retry_delay)
        logger.info("order_notification_sent", type=type, payload=payload)
        return log_id
