"""
Order lifecycle: the phase tasks that move an order through

    pending --> reserved --> finalized
       |           |
       v           v
     failed    rolled_back

Every phase first checks the order's current status and quietly does
nothing when the phase no longer applies, so a redelivered task is harmless.
Work that follows a successful transition (KPIs, notifications) is best
effort: its failures are logged and never undo the transition.
"""
import structlog
from sqlalchemy.orm import Session

from .database import run_in_transaction
from .errors import InvalidInputError, InvalidTransitionError, PaymentInitiationError
from .models import FAILED, FINALIZED, PAID, PAYMENT_SUCCESS, PENDING, RESERVED, ROLLED_BACK, Order, money
from .notifications import FAILURE, REFUND, SUCCESS
from .repository import FulfillmentRepository
from .tasks import Task, TaskKind

logger = structlog.get_logger(__name__)

RESERVABLE = frozenset({PENDING})
FINALIZABLE = frozenset({RESERVED, PAID})
NOT_ROLLBACKABLE = frozenset({FINALIZED, ROLLED_BACK, FAILED})


class OrderWorkflow:
    def __init__(self, session_factory, settings, bus, ledger, payments, kpis, notifier):
        self.session_factory = session_factory
        self.settings = settings
        self.bus = bus
        self.ledger = ledger
        self.payments = payments
        self.kpis = kpis
        self.notifier = notifier

    def handlers(self) -> dict:
        return {
            TaskKind.RESERVE_STOCK: self.reserve_stock,
            TaskKind.FINALIZE_ORDER: self.finalize_order,
            TaskKind.ROLLBACK_ORDER: self.rollback_order,
            TaskKind.RESOLVE_PAYMENT: self.resolve_payment,
            TaskKind.SEND_NOTIFICATION: self.send_notification,
        }

    # -- helpers -----------------------------------------------------------

    def load_order(self, order_id: int) -> Order:
        """Loads the order with its items, detached from any session."""
        db = self.session_factory()
        try:
            order = FulfillmentRepository(db).get_order(order_id)
            db.expunge_all()
            return order
        finally:
            db.close()

    def set_status(self, order_id: int, status: str) -> None:
        def apply(db: Session) -> None:
            FulfillmentRepository(db).get_order(order_id, lock=True).transition_to(status)

        run_in_transaction(self.session_factory, apply,
                           attempts=self.settings.transaction_attempts,
                           retry_delay=self.settings.transaction_retry_delay)

    def dispatch(self, kind: TaskKind, delay: float = 0.0, **payload) -> None:
        self.bus.publish(Task.create(kind, self.settings, **payload), delay=delay)

    def notify_later(self, order_id: int, type: str, extra: dict | None = None) -> None:
        try:
            self.dispatch(TaskKind.SEND_NOTIFICATION, order_id=order_id, type=type, extra=extra or {})
        except Exception as exc:
            logger.error("notification_dispatch_failed", order_id=order_id, type=type, error=str(exc))

    # -- phases ------------------------------------------------------------

    def reserve_stock(self, order_id: int) -> None:
        order = self.load_order(order_id)

        # Only proceed for fresh imports
        if order.status not in RESERVABLE:
            logger.info("reserve_skipped", order_id=order_id, status=order.status)
            return

        if not self.ledger.reserve(order_id):
            self.set_status(order_id, FAILED)
            logger.warning("reserve_insufficient_stock", order_id=order_id)
            return

        try:
            payment_id = self.payments.initiate(order_id)
        except Exception as exc:
            # The payment row may already exist even though its resolution was never queued.
            try:
                self.payments.cancel_active(order_id)
            except Exception as cancel_exc:
                logger.error("reserve_payment_cancel_failed", order_id=order_id, error=str(cancel_exc))
            try:
                self.ledger.release(order_id)
            except Exception as release_exc:
                logger.error("reserve_release_failed", order_id=order_id, error=str(release_exc))
            self.set_status(order_id, ROLLED_BACK)
            logger.error("reserve_payment_initiation_failed", order_id=order_id, error=str(exc))
            raise PaymentInitiationError(order_id, str(exc)) from exc

        logger.info("order_reserved", order_id=order_id, payment_id=payment_id)

    def resolve_payment(self, order_id: int, payment_id: int) -> None:
        """
        Decides the simulated outcome and fans out to finalize or rollback.

        The fan-out is marked on the payment once queued. A redelivery that
        finds the outcome written but not fanned out (the dispatch failed)
        queues it again while the order still waits on it.
        """
        db = self.session_factory()
        try:
            repo = FulfillmentRepository(db)
            order_status = repo.get_order(order_id).status
            payment = repo.get_payment(payment_id, order_id)
            status = payment.status
            terminal = payment.is_terminal
            dispatched = payment.outcome_dispatched
        finally:
            db.close()

        if terminal:
            if dispatched or order_status not in FINALIZABLE:
                logger.info("payment_already_resolved", payment_id=payment_id, status=status)
                return
            logger.warning("payment_fan_out_requeued", payment_id=payment_id, status=status)
            self.fan_out(order_id, payment_id, status == PAYMENT_SUCCESS)
            return

        succeeded = self.payments.decide()
        if not self.payments.record_outcome(order_id, payment_id, succeeded):
            logger.info("payment_resolved_elsewhere", payment_id=payment_id)
            return

        if succeeded:
            logger.info("payment_succeeded", payment_id=payment_id, order_id=order_id)
        else:
            logger.warning("payment_failed", payment_id=payment_id, order_id=order_id)
        self.fan_out(order_id, payment_id, succeeded)

    def fan_out(self, order_id: int, payment_id: int, succeeded: bool) -> None:
        kind = TaskKind.FINALIZE_ORDER if succeeded else TaskKind.ROLLBACK_ORDER
        self.dispatch(kind, order_id=order_id)
        self.payments.mark_dispatched(payment_id)

    def finalize_order(self, order_id: int) -> None:
        order = self.load_order(order_id)

        if order.status == FINALIZED:
            logger.info("finalize_skipped_already_finalized", order_id=order_id)
            return
        if order.status not in FINALIZABLE:
            logger.warning("finalize_skipped_not_eligible", order_id=order_id, status=order.status)
            return

        self.ledger.commit(order_id)
        order = self.load_order(order_id)

        try:
            self.kpis.incr_for_finalized(order)
        except Exception as exc:
            # KPIs can be reconciled later; the commit stands.
            logger.error("kpi_update_failed", order_id=order_id, error=str(exc))

        self.notify_later(order_id, SUCCESS)
        logger.info("order_finalized", order_id=order_id, total=str(order.total))

    def rollback_order(self, order_id: int) -> None:
        order = self.load_order(order_id)

        if order.status in NOT_ROLLBACKABLE:
            logger.info("rollback_skipped", order_id=order_id, status=order.status)
            return

        try:
            self.ledger.release(order_id)
        except Exception as exc:
            # Release only gives back what the order holds, so proceeding is safe.
            logger.error("rollback_release_failed", order_id=order_id, error=str(exc))

        self.set_status(order_id, ROLLED_BACK)
        self.notify_later(order_id, FAILURE)
        logger.info("order_rolled_back", order_id=order_id)

    def send_notification(self, order_id: int, type: str, extra: dict | None = None) -> None:
        self.notifier.notify(order_id, type, extra or {})

    def record_refund(self, order_id: int, amount) -> None:
        """Adjusts revenue for a refund on a finalized order and tells the customer."""
        amount = money(amount)
        order = self.load_order(order_id)
        if order.status != FINALIZED:
            raise InvalidTransitionError(order_id, order.status, "refunded")
        if amount <= 0 or amount > money(order.total):
            raise InvalidInputError(f"Refund amount {amount} must be between 0 and {order.total}")

        try:
            self.kpis.apply_refund(order, amount)
        except Exception as exc:
            logger.error("kpi_refund_failed", order_id=order_id, error=str(exc))

        self.notify_later(order_id, REFUND, {"refund_amount": float(amount)})
        logger.info("order_refund_recorded", order_id=order_id, amount=str(amount))
