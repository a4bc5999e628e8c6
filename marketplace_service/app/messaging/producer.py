import json
import threading

import pika
import structlog

from .. import config

logger = structlog.get_logger(__name__)


class RabbitMQProducer:
    """
    Publishes order lifecycle events to a RabbitMQ topic exchange.

    Events are sent after the owning transaction has committed, so a failed
    publish is logged and never undoes the order change.
    """

    def __init__(self, host=None, exchange_name=None, exchange_type="topic"):
        self.host = host or config.RABBITMQ_HOST
        self.exchange_name = exchange_name or config.EVENTS_EXCHANGE
        self.exchange_type = exchange_type
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; requests run in a threadpool.
        self._lock = threading.Lock()

    def connect(self):
        """Establishes a connection to RabbitMQ, retrying a few times."""
        credentials = pika.PlainCredentials("guest", "guest")
        parameters = pika.ConnectionParameters(
            host=self.host,
            credentials=credentials,
            heartbeat=600,
            blocked_connection_timeout=300,
            connection_attempts=3,
            retry_delay=1,
        )
        self.connection = pika.BlockingConnection(parameters)
        self.channel = self.connection.channel()

        # Declare the exchange (durable ensures it survives restarts)
        self.channel.exchange_declare(
            exchange=self.exchange_name,
            exchange_type=self.exchange_type,
            durable=True,
        )
        logger.info("Connected to RabbitMQ exchange", exchange=self.exchange_name, host=self.host)

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created', 'order.cancelled').
            message (dict): The data payload to send.
        """
        with self._lock:
            try:
                # Reconnect if the connection was lost
                if not self.connection or self.connection.is_closed:
                    self.connect()
                self.channel.basic_publish(
                    exchange=self.exchange_name,
                    routing_key=routing_key,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Make message persistent
                        content_type="application/json",
                    ),
                )
                logger.info("Event published", routing_key=routing_key, order_id=message.get("order_id"))
            except pika.exceptions.AMQPError:
                logger.exception("Failed to publish event", routing_key=routing_key)

    def close(self):
        """Closes the connection cleanly."""
        with self._lock:
            if self.connection and not self.connection.is_closed:
                self.connection.close()


class NullPublisher:
    """Drops events; used when publishing is disabled."""

    def publish(self, routing_key, message):
        logger.debug("Event publishing disabled", routing_key=routing_key)

    def close(self):
        pass


def make_publisher():
    if config.EVENTS_ENABLED:
        return RabbitMQProducer()
    return NullPublisher()
