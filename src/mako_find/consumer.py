"""Accumulate space usage from scan records published to RabbitMQ.

Usage:
    mako-usage-consumer --queue mako_scan
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

import pika
from pika.exceptions import AMQPError

from .config import RabbitConfig
from .scanner import ScanRecord
from .usage import UsageTotals, setup_logging

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 1000


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mako-usage-consumer",
        description="Sum file counts, bytes and 1K blocks from queued scan records",
    )
    parser.add_argument("--rabbit-host", type=str, help="RabbitMQ host (env: RABBITMQ_HOST)")
    parser.add_argument("--rabbit-port", type=int, help="RabbitMQ port (env: RABBITMQ_PORT)")
    parser.add_argument("--rabbit-user", type=str, help="RabbitMQ username (env: RABBITMQ_USER)")
    parser.add_argument(
        "--rabbit-password", type=str, help="RabbitMQ password (env: RABBITMQ_PASSWORD)"
    )
    parser.add_argument("--rabbit-vhost", type=str, help="RabbitMQ virtual host (env: RABBITMQ_VHOST)")
    parser.add_argument("--queue", type=str, help="Queue name (env: RABBITMQ_QUEUE)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def record_from_message(message: dict) -> ScanRecord:
    """Rebuild a ScanRecord from a published payload.

    Raises:
        KeyError: If a field is missing
        ValueError: If a numeric field is not an integer
    """
    return ScanRecord(
        path=message["path"],
        size=int(message["size_bytes"]),
        mtime=int(message["modified_ts"]),
        blocks=int(message["logical_blocks"]),
    )


def make_on_message(totals: UsageTotals):
    """Build a basic_consume callback that adds each record to ``totals``."""

    def on_message(channel, method, properties, body):
        try:
            record = record_from_message(json.loads(body.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Dropping malformed record: {e}")
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        try:
            totals.add(record)
        except Exception as e:
            logger.error(f"Error processing {record.path}: {e}")
            # Reject but requeue for retry
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            return

        channel.basic_ack(delivery_tag=method.delivery_tag)

        if totals.files % PROGRESS_INTERVAL == 0:
            logger.info(
                f"{totals.files} files, {totals.bytes} bytes, {totals.blocks} blocks so far"
            )

    return on_message


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    config = RabbitConfig.from_env(
        host=args.rabbit_host,
        port=args.rabbit_port,
        username=args.rabbit_user,
        password=args.rabbit_password,
        virtual_host=args.rabbit_vhost,
        queue=args.queue,
    )
    totals = UsageTotals()

    logger.info(f"Consuming scan records from {config.host}:{config.port}, queue '{config.queue}'")

    try:
        connection = pika.BlockingConnection(config.connection_parameters())
        channel = connection.channel()
        channel.queue_declare(queue=config.queue, durable=True)
        channel.basic_qos(prefetch_count=100)
        channel.basic_consume(
            queue=config.queue,
            on_message_callback=make_on_message(totals),
            auto_ack=False,
        )

        def stop(sig, frame):
            logger.info("Shutting down consumer...")
            channel.stop_consuming()

        signal.signal(signal.SIGTERM, stop)

        logger.info("Waiting for records. Press CTRL+C to exit.")
        channel.start_consuming()
        connection.close()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")

    except AMQPError as e:
        logger.error(f"Error: {e}")
        return 1

    finally:
        sys.stdout.write(f"\t{totals.files}\t{totals.bytes}\t{totals.blocks}\n")

    return 0


if __name__ == "__main__":
    sys.exit(main())
