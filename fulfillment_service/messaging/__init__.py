from .bus import RabbitMQTaskBus
from .local import LocalTaskQueue, LocalWorkerPool

__all__ = ["LocalTaskQueue", "LocalWorkerPool", "RabbitMQTaskBus"]
