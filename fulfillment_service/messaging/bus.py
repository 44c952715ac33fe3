import threading
import time

import pika
import structlog

from ..tasks import Task

logger = structlog.get_logger(__name__)

TASK_EXCHANGE = "tasks"
TASK_QUEUE = "fulfillment.tasks"


def connection_parameters(host: str, user: str, password: str) -> pika.ConnectionParameters:
    credentials = pika.PlainCredentials(user, password)
    return pika.ConnectionParameters(
        host=host,
        credentials=credentials,
        heartbeat=600,
        blocked_connection_timeout=300,
    )


def declare_task_topology(channel, exchange_name: str = TASK_EXCHANGE, queue_name: str = TASK_QUEUE) -> None:
    """Declares the durable task exchange and the work queue bound to it."""
    channel.exchange_declare(exchange=exchange_name, exchange_type="direct", durable=True)
    channel.queue_declare(queue=queue_name, durable=True)
    channel.queue_bind(exchange=exchange_name, queue=queue_name, routing_key=queue_name)


class RabbitMQTaskBus:
    """
    Publishes tasks to RabbitMQ.
    This class is designed to be resilient, retrying connections if RabbitMQ is not ready.

    Deferred delivery uses one holding queue per delay: messages wait there
    until their TTL expires and are then dead-lettered into the work queue.
    """

    def __init__(self, host: str, user: str = "guest", password: str = "guest",
                 exchange_name: str = TASK_EXCHANGE, queue_name: str = TASK_QUEUE,
                 connect_retry_delay: float = 5.0):
        self.host = host
        self.user = user
        self.password = password
        self.exchange_name = exchange_name
        self.queue_name = queue_name
        self.connect_retry_delay = connect_retry_delay
        self.connection = None
        self.channel = None
        self._declared_delays: set[int] = set()
        self._lock = threading.Lock()
        # Automatically connect upon initialization
        self.connect()

    def connect(self) -> None:
        """Establishes a connection to RabbitMQ with retry logic."""
        while True:
            try:
                self.connection = pika.BlockingConnection(connection_parameters(self.host, self.user, self.password))
                self.channel = self.connection.channel()
                declare_task_topology(self.channel, self.exchange_name, self.queue_name)
                self._declared_delays = set()
                logger.info("rabbitmq_connected", host=self.host, exchange=self.exchange_name)
                break
            except pika.exceptions.AMQPConnectionError:
                # Wait and retry if RabbitMQ is not yet fully booted (common in Docker Compose)
                logger.warning("rabbitmq_not_ready", host=self.host, retry_in=self.connect_retry_delay)
                time.sleep(self.connect_retry_delay)

    def _delay_queue(self, delay_ms: int) -> str:
        name = f"{self.queue_name}.delay.{delay_ms}"
        if delay_ms not in self._declared_delays:
            self.channel.queue_declare(
                queue=name,
                durable=True,
                arguments={
                    "x-message-ttl": delay_ms,
                    "x-dead-letter-exchange": self.exchange_name,
                    "x-dead-letter-routing-key": self.queue_name,
                },
            )
            self._declared_delays.add(delay_ms)
        return name

    def _basic_publish(self, task: Task, delay: float) -> None:
        delay_ms = int(round(delay * 1000))
        if delay_ms > 0:
            exchange, routing_key = "", self._delay_queue(delay_ms)
        else:
            exchange, routing_key = self.exchange_name, self.queue_name
        self.channel.basic_publish(
            exchange=exchange,
            routing_key=routing_key,
            body=task.to_json(),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
                message_id=task.id,
                type=task.kind.value,
            ),
        )

    def publish(self, task: Task, delay: float = 0.0) -> None:
        """
        Publishes a task, optionally deferred by ``delay`` seconds.

        A lost connection is re-established once; a second failure propagates.
        """
        with self._lock:
            # Reconnect if the connection was lost
            if not self.connection or self.connection.is_closed:
                self.connect()
            try:
                self._basic_publish(task, delay)
            except pika.exceptions.AMQPError as exc:
                logger.warning("publish_failed_reconnecting", task=task.kind.value, error=str(exc))
                self.connect()
                self._basic_publish(task, delay)
        logger.debug("task_published", task=task.kind.value, task_id=task.id, delay=delay, attempts=task.attempts)

    def close(self) -> None:
        """Closes the connection cleanly."""
        if self.connection and not self.connection.is_closed:
            self.connection.close()
