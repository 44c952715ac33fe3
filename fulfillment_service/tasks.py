import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TaskKind(str, Enum):
    IMPORT_ORDERS = "import_orders"
    RESERVE_STOCK = "reserve_stock"
    FINALIZE_ORDER = "finalize_order"
    ROLLBACK_ORDER = "rollback_order"
    RESOLVE_PAYMENT = "resolve_payment"
    SEND_NOTIFICATION = "send_notification"


# Phase tasks that run at most once concurrently per order.
ORDER_SCOPED = frozenset({TaskKind.RESERVE_STOCK, TaskKind.FINALIZE_ORDER, TaskKind.ROLLBACK_ORDER})


class Task(BaseModel):
    """One unit of work on the queue: a kind, its payload and its retry metadata."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: TaskKind
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_tries: int = 3
    backoff_seconds: float = 5.0
    unique_for_seconds: float = 300.0

    @classmethod
    def create(cls, kind: TaskKind, settings=None, **payload) -> "Task":
        """Builds a task with the retry policy taken from the service settings."""
        if settings is None:
            return cls(kind=kind, payload=payload)
        return cls(
            kind=kind,
            payload=payload,
            max_tries=settings.task_max_tries,
            backoff_seconds=settings.task_backoff_seconds,
            unique_for_seconds=settings.task_unique_for_seconds,
        )

    @property
    def unique_key(self) -> str | None:
        if self.kind in ORDER_SCOPED:
            return f"{self.kind.value}-order-{self.payload['order_id']}"
        if self.kind == TaskKind.RESOLVE_PAYMENT:
            return f"{self.kind.value}-payment-{self.payload['payment_id']}"
        return None

    def next_attempt(self) -> "Task":
        return self.model_copy(update={"attempts": self.attempts + 1})

    @property
    def exhausted(self) -> bool:
        return self.attempts + 1 >= self.max_tries

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, body) -> "Task":
        return cls.model_validate_json(body)
