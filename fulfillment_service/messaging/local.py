import heapq
import itertools
import threading
import time
from typing import Callable

import structlog

from ..tasks import Task

logger = structlog.get_logger(__name__)


class LocalTaskQueue:
    """
    In-process task queue with deferred delivery.

    Tasks are kept in a heap keyed by due time; a delayed task is simply not
    handed out before it is due, so no worker ever sleeps on its behalf.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self._clock = clock
        self._sleep = sleep
        self._heap: list[tuple[float, int, Task]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    def publish(self, task: Task, delay: float = 0.0) -> None:
        due = self._clock() + max(0.0, delay)
        with self._cond:
            heapq.heappush(self._heap, (due, next(self._seq), task))
            self._cond.notify()
        logger.debug("task_published", task=task.kind.value, task_id=task.id, delay=delay, attempts=task.attempts)

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def pending(self) -> list[Task]:
        with self._cond:
            return [task for _, _, task in sorted(self._heap)]

    def get(self, timeout: float | None = None) -> Task | None:
        """Blocks until a task is due; returns None on timeout or when closed."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._closed:
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]
                wait = self._heap[0][0] - now if self._heap else None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return None

    def drain(self, runner, max_tasks: int = 10000) -> int:
        """
        Runs every queued task, including the ones published while draining,
        on the calling thread. Waits out delays that have not elapsed yet.
        """
        processed = 0
        while True:
            with self._cond:
                if not self._heap:
                    return processed
                due, _, task = heapq.heappop(self._heap)
            wait = due - self._clock()
            if wait > 0:
                self._sleep(wait)
            runner.run(task)
            processed += 1
            if processed >= max_tasks:
                raise RuntimeError(f"Queue did not drain after {max_tasks} tasks")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class LocalWorkerPool:
    """Worker threads pulling from a LocalTaskQueue in parallel."""

    def __init__(self, queue: LocalTaskQueue, runner, concurrency: int = 4):
        self.queue = queue
        self.runner = runner
        self.concurrency = concurrency
        self._threads: list[threading.Thread] = []
        self._stopping = threading.Event()

    def _work(self) -> None:
        while not self._stopping.is_set():
            task = self.queue.get(timeout=0.5)
            if task is None:
                continue
            try:
                self.runner.run(task)
            except Exception:
                logger.exception("worker_task_crashed", task=task.kind.value, task_id=task.id)

    def start(self) -> None:
        for index in range(self.concurrency):
            thread = threading.Thread(target=self._work, name=f"fulfillment-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self.queue.close()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("worker_pool_stopped")
