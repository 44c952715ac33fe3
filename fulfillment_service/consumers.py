import threading
import time

import pika
import structlog
from pydantic import ValidationError

from .messaging.bus import TASK_EXCHANGE, TASK_QUEUE, connection_parameters, declare_task_topology
from .tasks import Task

logger = structlog.get_logger(__name__)


class TaskConsumer:
    """Pulls phase tasks from the broker and hands them to the task runner."""

    def __init__(self, runner, host: str, user: str = "guest", password: str = "guest",
                 exchange_name: str = TASK_EXCHANGE, queue_name: str = TASK_QUEUE,
                 connect_retry_delay: float = 5.0):
        self.runner = runner
        self.host = host
        self.user = user
        self.password = password
        self.exchange_name = exchange_name
        self.queue_name = queue_name
        self.connect_retry_delay = connect_retry_delay
        self.connection = None
        self.channel = None

    def connect(self):
        """Connects to RabbitMQ and sets up the exchange and work queue."""
        while True:
            try:
                self.connection = pika.BlockingConnection(connection_parameters(self.host, self.user, self.password))
                self.channel = self.connection.channel()
                declare_task_topology(self.channel, self.exchange_name, self.queue_name)

                # One unacked task per worker so slow phases do not starve the others.
                self.channel.basic_qos(prefetch_count=1)

                logger.info("task_consumer_connected", host=self.host, queue=self.queue_name)
                break
            except pika.exceptions.AMQPConnectionError:
                logger.warning("rabbitmq_not_ready", host=self.host, retry_in=self.connect_retry_delay)
                time.sleep(self.connect_retry_delay)

    def process_task(self, ch, method, properties, body):
        """
        Received a task.
        Action: run it. Retries and dead letters are published by the runner,
        so the delivery itself is always acknowledged.
        """
        try:
            task = Task.from_json(body)
        except ValidationError as exc:
            logger.error("task_undecodable", error=str(exc), body=body[:500])
            # Unparseable messages can never succeed; drop them.
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        try:
            outcome = self.runner.run(task)
            logger.debug("task_handled", task=task.kind.value, task_id=task.id, outcome=outcome)
        except Exception:
            logger.exception("task_handling_crashed", task=task.kind.value, task_id=task.id)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            return
        # Acknowledge the message so RabbitMQ removes it from queue
        ch.basic_ack(delivery_tag=method.delivery_tag)

    def start_listening(self):
        """Starts the consuming loop."""
        if not self.connection:
            self.connect()

        self.channel.basic_consume(queue=self.queue_name, on_message_callback=self.process_task)

        logger.info("task_consumer_waiting", queue=self.queue_name)
        self.channel.start_consuming()


def start_consumer_thread(runner, settings):
    """Helper to run consumer in a background thread."""
    consumer = TaskConsumer(runner, settings.rabbitmq_host, settings.rabbitmq_user, settings.rabbitmq_password)
    thread = threading.Thread(target=consumer.start_listening, daemon=True)
    thread.start()
    return thread
