"""Queue settings for publishing and consuming scan records."""

import os
from dataclasses import dataclass
from typing import Optional

import pika

DEFAULT_QUEUE = "mako_scan"


@dataclass
class RabbitConfig:
    """Where scan records go.

    Only consulted when records are published or consumed; a plain scan
    reads no environment.
    """

    host: str
    port: int
    username: str
    password: str
    virtual_host: str
    queue: str

    @classmethod
    def from_env(
        cls,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        virtual_host: Optional[str] = None,
        queue: Optional[str] = None,
    ) -> "RabbitConfig":
        """Resolve settings as explicit argument, then environment, then default.

        Environment variables:
            RABBITMQ_HOST (localhost), RABBITMQ_PORT (5672),
            RABBITMQ_USER (guest), RABBITMQ_PASSWORD (guest),
            RABBITMQ_VHOST (/), RABBITMQ_QUEUE (mako_scan)
        """
        return cls(
            host=host or os.getenv("RABBITMQ_HOST", "localhost"),
            port=port or int(os.getenv("RABBITMQ_PORT", "5672")),
            username=username or os.getenv("RABBITMQ_USER", "guest"),
            password=password or os.getenv("RABBITMQ_PASSWORD", "guest"),
            virtual_host=virtual_host or os.getenv("RABBITMQ_VHOST", "/"),
            queue=queue or os.getenv("RABBITMQ_QUEUE", DEFAULT_QUEUE),
        )

    def connection_parameters(self, **overrides) -> pika.ConnectionParameters:
        """Build pika connection parameters, long heartbeat by default."""
        options = {"heartbeat": 600}
        options.update(overrides)
        return pika.ConnectionParameters(
            host=self.host,
            port=self.port,
            virtual_host=self.virtual_host,
            credentials=pika.PlainCredentials(self.username, self.password),
            **options,
        )
