import secrets

import structlog
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .errors import PaymentAlreadyActiveError
from .models import PAYMENT_FAILED, PAYMENT_INITIATED, PAYMENT_SUCCESS, Payment
from .repository import FulfillmentRepository
from .tasks import Task, TaskKind

logger = structlog.get_logger(__name__)

# Precision of the outcome draw.
DRAW_SCALE = 10000


def decide_outcome(forced: str, success_rate: float, draw=None) -> bool:
    """
    Decide success/failure based on a forced outcome or probability.

    ``draw`` returns an integer in [1, DRAW_SCALE]; it defaults to the
    ``secrets`` module so the simulation cannot be predicted.
    """
    forced = (forced or "").strip().lower()
    if forced == "success":
        return True
    if forced in ("failed", "fail"):
        return False

    success_rate = max(0.0, min(1.0, float(success_rate)))
    if draw is None:
        value = secrets.randbelow(DRAW_SCALE) + 1
    else:
        value = draw()
    return value <= round(success_rate * DRAW_SCALE)


class PaymentSimulator:
    """
    Stands in for a payment gateway.

    ``initiate`` records the payment and schedules its outcome; the
    ``resolve_payment`` task later flips it to success or failed.
    """

    def __init__(self, session_factory, bus, settings, draw=None):
        self.session_factory = session_factory
        self.bus = bus
        self.settings = settings
        self.draw = draw

    def initiate(self, order_id: int) -> int:
        def apply(db: Session) -> int:
            repo = FulfillmentRepository(db)
            order = repo.get_order(order_id, lock=True)
            active = repo.active_payment(order.id)
            if active is not None:
                raise PaymentAlreadyActiveError(order.id, active.id)
            payment = repo.add(Payment(order_id=order.id, status=PAYMENT_INITIATED,
                                       provider=self.settings.payment_provider))
            return payment.id

        payment_id = run_in_transaction(
            self.session_factory, apply,
            attempts=self.settings.transaction_attempts,
            retry_delay=self.settings.transaction_retry_delay,
        )
        self.bus.publish(
            Task.create(TaskKind.RESOLVE_PAYMENT, self.settings, order_id=order_id, payment_id=payment_id),
            delay=self.settings.payment_delay_seconds,
        )
        logger.info("payment_initiated", order_id=order_id, payment_id=payment_id,
                    resolves_in=self.settings.payment_delay_seconds)
        return payment_id

    def decide(self) -> bool:
        return decide_outcome(self.settings.payment_force_outcome, self.settings.payment_success_rate, self.draw)

    def record_outcome(self, order_id: int, payment_id: int, succeeded: bool) -> bool:
        """
        Writes the outcome under a lock on the payment row.

        Returns False when another resolver already made the payment terminal,
        in which case the caller must not fan out.
        """

        def apply(db: Session) -> bool:
            payment = FulfillmentRepository(db).get_payment(payment_id, order_id, lock=True)
            if payment.is_terminal:
                return False
            payment.status = PAYMENT_SUCCESS if succeeded else PAYMENT_FAILED
            return True

        return run_in_transaction(
            self.session_factory, apply,
            attempts=self.settings.transaction_attempts,
            retry_delay=self.settings.transaction_retry_delay,
        )

    def mark_dispatched(self, payment_id: int) -> None:
        """Records that the finalize/rollback task for this payment's outcome is queued."""

        def apply(db: Session) -> None:
            FulfillmentRepository(db).get_payment(payment_id, lock=True).outcome_dispatched = True

        run_in_transaction(
            self.session_factory, apply,
            attempts=self.settings.transaction_attempts,
            retry_delay=self.settings.transaction_retry_delay,
        )

    def cancel_active(self, order_id: int) -> int | None:
        """
        Fails the order's in-flight payment, if any, so a resolution that is
        still on its way finds it terminal and changes nothing.
        """

        def apply(db: Session) -> int | None:
            payment = FulfillmentRepository(db).active_payment(order_id, lock=True)
            if payment is None:
                return None
            payment.status = PAYMENT_FAILED
            payment.outcome_dispatched = True
            return payment.id

        payment_id = run_in_transaction(
            self.session_factory, apply,
            attempts=self.settings.transaction_attempts,
            retry_delay=self.settings.transaction_retry_delay,
        )
        if payment_id is not None:
            logger.info("payment_cancelled", order_id=order_id, payment_id=payment_id)
        return payment_id
