from dataclasses import dataclass

from .config import Settings
from .importer import OrderImporter
from .inventory import InventoryLedger
from .kpi import SqlKpiStore
from .locks import DatabaseKeyedLock, InMemoryKeyedLock
from .notifications import LogNotificationSink
from .payments import PaymentSimulator
from .runner import TaskRunner
from .tasks import TaskKind
from .workflow import OrderWorkflow


@dataclass
class FulfillmentServices:
    settings: Settings
    session_factory: object
    bus: object
    locks: object
    ledger: InventoryLedger
    payments: PaymentSimulator
    kpis: SqlKpiStore
    notifier: LogNotificationSink
    workflow: OrderWorkflow
    importer: OrderImporter
    runner: TaskRunner


def make_bus(settings: Settings):
    """Builds the task transport named by ``settings.task_backend``."""
    if settings.task_backend == "rabbitmq":
        from .messaging.bus import RabbitMQTaskBus

        return RabbitMQTaskBus(settings.rabbitmq_host, settings.rabbitmq_user, settings.rabbitmq_password)
    if settings.task_backend == "local":
        from .messaging.local import LocalTaskQueue

        return LocalTaskQueue()
    raise ValueError(f"Unknown task backend: {settings.task_backend}")


def make_locks(settings: Settings, session_factory):
    if settings.lock_backend == "database":
        return DatabaseKeyedLock(session_factory)
    if settings.lock_backend == "memory":
        return InMemoryKeyedLock()
    raise ValueError(f"Unknown lock backend: {settings.lock_backend}")


def build_services(settings: Settings, session_factory, bus=None, locks=None,
                   kpis=None, notifier=None, draw=None) -> FulfillmentServices:
    """
    Wires the ledger, payment simulator and workflow together.

    Collaborators can be swapped for fakes in tests; anything left out is
    built from the settings.
    """
    bus = bus if bus is not None else make_bus(settings)
    locks = locks if locks is not None else make_locks(settings, session_factory)
    txn = {"attempts": settings.transaction_attempts, "retry_delay": settings.transaction_retry_delay}

    ledger = InventoryLedger(session_factory, **txn)
    payments = PaymentSimulator(session_factory, bus, settings, draw=draw)
    kpis = kpis if kpis is not None else SqlKpiStore(session_factory, **txn)
    notifier = notifier if notifier is not None else LogNotificationSink(session_factory, **txn)

    workflow = OrderWorkflow(session_factory, settings, bus, ledger, payments, kpis, notifier)
    importer = OrderImporter(session_factory, settings, bus)

    handlers = workflow.handlers()
    handlers[TaskKind.IMPORT_ORDERS] = importer.import_group
    runner = TaskRunner(handlers, bus, locks, session_factory)

    return FulfillmentServices(
        settings=settings,
        session_factory=session_factory,
        bus=bus,
        locks=locks,
        ledger=ledger,
        payments=payments,
        kpis=kpis,
        notifier=notifier,
        workflow=workflow,
        importer=importer,
        runner=runner,
    )
