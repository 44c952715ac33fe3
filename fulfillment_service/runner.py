from typing import Any, Callable

import structlog

from .errors import FulfillmentError, InvalidInputError
from .models import FailedTask
from .tasks import Task, TaskKind
from .utils.logging import bind_task_context, clear_task_context

logger = structlog.get_logger(__name__)

COMPLETED = "completed"
DROPPED = "dropped"
RETRIED = "retried"
DEAD_LETTERED = "dead_lettered"


class TaskRunner:
    """
    Executes delivered tasks for any transport.

    Phase tasks hold their unique key while they run; a delivery that finds
    the key taken is dropped. Retryable failures are re-published with
    backoff until the task's tries are spent, everything else is
    dead-lettered straight away.
    """

    def __init__(self, handlers: dict[TaskKind, Callable[..., Any]], bus, locks, session_factory):
        self.handlers = handlers
        self.bus = bus
        self.locks = locks
        self.session_factory = session_factory

    def run(self, task: Task) -> str:
        handler = self.handlers.get(task.kind)
        if handler is None:
            self.dead_letter(task, LookupError(f"No handler registered for {task.kind.value}"))
            return DEAD_LETTERED

        try:
            key = task.unique_key
        except KeyError as exc:
            # A phase task without its order/payment id can never run.
            self.dead_letter(task, InvalidInputError(f"{task.kind.value} payload is missing {exc}"))
            return DEAD_LETTERED

        token = None
        if key:
            token = self.locks.acquire(key, task.unique_for_seconds)
            if token is None:
                logger.info("task_dropped_lock_held", task=task.kind.value, task_id=task.id, key=key)
                return DROPPED

        error = None
        bind_task_context(task=task.kind.value, task_id=task.id, attempt=task.attempts + 1)
        try:
            handler(**task.payload)
        except Exception as exc:
            error = exc
        finally:
            if key:
                self.locks.release(key, token)
            clear_task_context()

        if error is None:
            logger.debug("task_completed", task=task.kind.value, task_id=task.id)
            return COMPLETED
        return self._handle_failure(task, error)

    def _handle_failure(self, task: Task, error: Exception) -> str:
        retryable = error.retryable if isinstance(error, FulfillmentError) else True
        if retryable and not task.exhausted:
            logger.warning(
                "task_retry_scheduled",
                task=task.kind.value,
                task_id=task.id,
                attempt=task.attempts + 1,
                max_tries=task.max_tries,
                backoff=task.backoff_seconds,
                error=str(error),
            )
            self.bus.publish(task.next_attempt(), delay=task.backoff_seconds)
            return RETRIED
        self.dead_letter(task, error)
        return DEAD_LETTERED

    def dead_letter(self, task: Task, error: Exception) -> None:
        logger.error(
            "task_dead_lettered",
            task=task.kind.value,
            task_id=task.id,
            attempts=task.attempts + 1,
            error=f"{type(error).__name__}: {error}",
        )
        db = self.session_factory()
        try:
            db.add(FailedTask(
                task_id=task.id,
                kind=task.kind.value,
                payload=task.payload,
                attempts=task.attempts + 1,
                error=f"{type(error).__name__}: {error}",
            ))
            db.commit()
        finally:
            db.close()
