import pytest

from fulfillment_service.errors import InvalidInputError, NotFoundError, TransientInfraError
from fulfillment_service.locks import InMemoryKeyedLock
from fulfillment_service.messaging.local import LocalTaskQueue
from fulfillment_service.models import FailedTask
from fulfillment_service.runner import COMPLETED, DEAD_LETTERED, DROPPED, RETRIED, TaskRunner
from fulfillment_service.tasks import Task, TaskKind


class Recorder:
    def __init__(self, *errors):
        self.calls = []
        self.errors = list(errors)

    def __call__(self, **payload):
        self.calls.append(payload)
        if self.errors:
            raise self.errors.pop(0)


@pytest.fixture
def locks():
    return InMemoryKeyedLock()


def make_runner(session_factory, queue, locks, **handlers):
    return TaskRunner({TaskKind(kind): fn for kind, fn in handlers.items()}, queue, locks, session_factory)


def test_unique_keys():
    assert Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 7}).unique_key == "finalize_order-order-7"
    assert Task(kind=TaskKind.ROLLBACK_ORDER, payload={"order_id": 7}).unique_key == "rollback_order-order-7"
    assert Task(kind=TaskKind.RESERVE_STOCK, payload={"order_id": 7}).unique_key == "reserve_stock-order-7"
    resolve = Task(kind=TaskKind.RESOLVE_PAYMENT, payload={"order_id": 7, "payment_id": 3})
    assert resolve.unique_key == "resolve_payment-payment-3"
    assert Task(kind=TaskKind.SEND_NOTIFICATION, payload={"order_id": 7}).unique_key is None


def test_task_survives_json():
    task = Task(kind=TaskKind.RESERVE_STOCK, payload={"order_id": 9}, attempts=2)
    assert Task.from_json(task.to_json()) == task


def test_successful_task_releases_its_key(session_factory, queue, locks):
    handler = Recorder()
    runner = make_runner(session_factory, queue, locks, finalize_order=handler)

    outcome = runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 1}))

    assert outcome == COMPLETED
    assert handler.calls == [{"order_id": 1}]
    assert not locks.held("finalize_order-order-1")


def test_task_is_dropped_while_its_key_is_held(session_factory, queue, locks):
    handler = Recorder()
    runner = make_runner(session_factory, queue, locks, finalize_order=handler)
    locks.acquire("finalize_order-order-1")

    outcome = runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 1}))

    assert outcome == DROPPED
    assert handler.calls == []
    assert len(queue) == 0


def test_other_orders_are_not_blocked(session_factory, queue, locks):
    handler = Recorder()
    runner = make_runner(session_factory, queue, locks, finalize_order=handler)
    locks.acquire("finalize_order-order-1")

    assert runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 2})) == COMPLETED


def test_transient_failure_is_retried_then_dead_lettered(session_factory, queue, locks, fetch_all):
    handler = Recorder(*[TransientInfraError("db gone")] * 3)
    runner = make_runner(session_factory, queue, locks, reserve_stock=handler)

    task = Task(kind=TaskKind.RESERVE_STOCK, payload={"order_id": 5}, max_tries=3, backoff_seconds=0)
    assert runner.run(task) == RETRIED
    [retry] = queue.pending()
    assert retry.id == task.id
    assert retry.attempts == 1
    assert not locks.held("reserve_stock-order-5")

    processed = queue.drain(runner)

    assert processed == 2
    assert len(handler.calls) == 3
    [failed] = fetch_all(FailedTask)
    assert failed.task_id == task.id
    assert failed.attempts == 3
    assert failed.payload == {"order_id": 5}
    assert failed.error.startswith("TransientInfraError")


def test_retry_is_delayed_by_backoff(session_factory, locks):
    now = [100.0]
    queue = LocalTaskQueue(clock=lambda: now[0])
    runner = make_runner(session_factory, queue, locks, reserve_stock=Recorder(TransientInfraError("x")))

    runner.run(Task(kind=TaskKind.RESERVE_STOCK, payload={"order_id": 5}, backoff_seconds=5))

    assert queue.get(timeout=0) is None
    now[0] += 5
    assert queue.get(timeout=0).attempts == 1


def test_unexpected_exceptions_are_retried(session_factory, queue, locks):
    runner = make_runner(session_factory, queue, locks, send_notification=Recorder(ConnectionError("smtp")))

    assert runner.run(Task(kind=TaskKind.SEND_NOTIFICATION, payload={"order_id": 1, "type": "success"})) == RETRIED


@pytest.mark.parametrize("error", [NotFoundError("Order", 1), InvalidInputError("bad row")])
def test_permanent_failures_are_dead_lettered_at_once(session_factory, queue, locks, fetch_all, error):
    runner = make_runner(session_factory, queue, locks, finalize_order=Recorder(error))

    outcome = runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 1}))

    assert outcome == DEAD_LETTERED
    assert len(queue) == 0
    assert len(fetch_all(FailedTask)) == 1
    assert not locks.held("finalize_order-order-1")


def test_unknown_kind_is_dead_lettered(session_factory, queue, locks, fetch_all):
    runner = make_runner(session_factory, queue, locks)

    assert runner.run(Task(kind=TaskKind.ROLLBACK_ORDER, payload={"order_id": 1})) == DEAD_LETTERED
    assert fetch_all(FailedTask)[0].error.startswith("LookupError")


def test_phase_task_without_its_id_is_dead_lettered(session_factory, queue, locks, fetch_all):
    handler = Recorder()
    runner = make_runner(session_factory, queue, locks, finalize_order=handler)

    outcome = runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"orderid": 1}))

    assert outcome == DEAD_LETTERED
    assert handler.calls == []
    assert len(queue) == 0
    [failed] = fetch_all(FailedTask)
    assert failed.error.startswith("InvalidInputError")


def test_a_task_that_outlives_its_lock_leaves_the_new_holder_alone(session_factory, queue):
    now = [0.0]
    locks = InMemoryKeyedLock(clock=lambda: now[0])
    successor = []

    def slow_finalize(order_id):
        # Runs past its TTL; another worker takes the key over meanwhile.
        now[0] += 301
        successor.append(locks.acquire(f"finalize_order-order-{order_id}"))

    runner = make_runner(session_factory, queue, locks, finalize_order=slow_finalize)
    runner.run(Task(kind=TaskKind.FINALIZE_ORDER, payload={"order_id": 1}, unique_for_seconds=300))

    assert successor[0] is not None
    assert locks.held("finalize_order-order-1")
