"""RabbitMQ publisher for scan records."""

import json
import logging
from typing import Dict, Optional

import pika
from pika.exceptions import AMQPConnectionError, AMQPChannelError

from .config import RabbitConfig
from .scanner import ScanRecord

logger = logging.getLogger(__name__)


class RabbitClient:
    """Publishes scan records to a durable queue with persistent delivery.

    Attributes:
        config: RabbitMQ configuration
        published: Number of messages published so far
    """

    def __init__(self, config: RabbitConfig):
        self.config = config
        self.published = 0
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None

    def connect(self) -> None:
        """Open the connection and declare the queue.

        Raises:
            AMQPConnectionError: If the broker cannot be reached
        """
        logger.info(f"Connecting to RabbitMQ at {self.config.host}:{self.config.port}")
        try:
            self._connection = pika.BlockingConnection(
                self.config.connection_parameters(blocked_connection_timeout=300)
            )
            self._channel = self._connection.channel()
            self._channel.queue_declare(queue=self.config.queue, durable=True)
        except AMQPConnectionError as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

        logger.info(f"Connected to RabbitMQ, queue '{self.config.queue}' ready")

    def _ensure_channel(self) -> None:
        if self._connection is None or self._connection.is_closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()
        elif self._channel is None or self._channel.is_closed:
            logger.warning("Channel closed, reopening...")
            self._channel = self._connection.channel()
            self._channel.queue_declare(queue=self.config.queue, durable=True)

    def publish_json(self, payload: Dict, retry_count: int = 3) -> None:
        """Publish a JSON payload to the configured queue.

        Args:
            payload: Dictionary to be serialized as JSON
            retry_count: Attempts before giving up

        Raises:
            AMQPConnectionError, AMQPChannelError: If every attempt fails
        """
        body = json.dumps(payload).encode("utf-8")
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,
        )

        for attempt in range(1, retry_count + 1):
            try:
                self._ensure_channel()
                self._channel.basic_publish(
                    exchange="",
                    routing_key=self.config.queue,
                    body=body,
                    properties=properties,
                )
            except (AMQPConnectionError, AMQPChannelError) as e:
                logger.warning(f"Publish attempt {attempt}/{retry_count} failed: {e}")
                if attempt == retry_count:
                    logger.error(f"Failed to publish message after {retry_count} attempts")
                    raise
                continue

            self.published += 1
            logger.debug(f"Published record: {payload.get('path', 'unknown')}")
            return

    def publish_record(self, record: ScanRecord) -> None:
        self.publish_json(record.to_message())

    def close(self) -> None:
        """Close channel and connection; errors while closing are only logged."""
        try:
            if self._channel is not None and not self._channel.is_closed:
                self._channel.close()
            if self._connection is not None and not self._connection.is_closed:
                self._connection.close()
                logger.info("Connection to RabbitMQ closed")
        except (AMQPConnectionError, AMQPChannelError) as e:
            logger.warning(f"Error closing connection: {e}")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
