"""Command-line interface for mako-find."""

import argparse
import logging
import os
import sys
from typing import List, Optional

from pika.exceptions import AMQPConnectionError, AMQPChannelError

from .config import RabbitConfig
from .rabbit import RabbitClient
from .scanner import MAX_DESCRIPTORS, EntryClassifier, ScanRecord, scan

logger = logging.getLogger(__name__)


def setup_logging(level: str = "WARNING") -> None:
    """Configure logging with timestamp and level.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        allow_abbrev=False,
        description=(
            "Recursively walk directory trees without following symlinks and "
            "print path, size, mtime and 1K block count for every file"
        ),
        epilog=(
            "Arguments that are not options are scanned as directories, including "
            "ones starting with '-'. Put '--' before a directory that is "
            "spelled like one of the options above."
        ),
    )

    parser.add_argument("roots", nargs="*", metavar="dir", help="Directory to scan")
    parser.add_argument(
        "--max-descriptors",
        type=int,
        default=MAX_DESCRIPTORS,
        help=f"Directory handles kept open per tree (default: {MAX_DESCRIPTORS})",
    )

    # Record queue
    parser.add_argument(
        "--publish",
        action="store_true",
        help="Also publish each file record to RabbitMQ",
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
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: WARNING)",
    )
    return parser


def usage(prog: str) -> int:
    sys.stderr.write(f"usage: {prog} dir1 dir2 ... dirN\n")
    return 1


def parse_args(
    parser: argparse.ArgumentParser, argv: Optional[List[str]] = None
) -> argparse.Namespace:
    """Parse options, treating every other argument as a root.

    Roots that look like options (``-data``) are left over by argparse; they
    are merged back with the plain roots in command-line order.
    """
    if argv is None:
        argv = sys.argv[1:]

    args, extras = parser.parse_known_args(argv)
    extras = [arg for arg in extras if arg != "--"]

    roots = []
    i = j = 0
    for arg in argv:
        if i < len(args.roots) and arg == args.roots[i]:
            roots.append(arg)
            i += 1
        elif j < len(extras) and arg == extras[j]:
            roots.append(arg)
            j += 1
    roots.extend(args.roots[i:])
    roots.extend(extras[j:])

    args.roots = roots
    return args


class _RecordPublisher:
    """Forwards records to the queue, counting the ones that could not be sent."""

    def __init__(self, client: RabbitClient):
        self.client = client
        self.failures = 0

    def __call__(self, record: ScanRecord) -> None:
        try:
            self.client.publish_record(record)
        except (AMQPConnectionError, AMQPChannelError) as e:
            self.failures += 1
            logger.error(f"Error publishing {record.path}: {e}")


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 when every tree was scanned, 1 otherwise)
    """
    parser = build_parser(prog)
    prog = parser.prog

    try:
        args = parse_args(parser, argv)
    except SystemExit as e:
        # --help exits 0; malformed option values are usage errors
        if e.code == 0:
            raise
        return 1

    if not args.roots:
        return usage(prog)

    if args.max_descriptors < 1:
        sys.stderr.write(f"{prog}: --max-descriptors must be at least 1\n")
        return usage(prog)

    setup_logging(args.log_level)

    # Undecodable file names are written back as the original bytes
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(errors="surrogateescape")

    publisher = None
    if args.publish:
        rabbit_config = RabbitConfig.from_env(
            host=args.rabbit_host,
            port=args.rabbit_port,
            username=args.rabbit_user,
            password=args.rabbit_password,
            virtual_host=args.rabbit_vhost,
            queue=args.queue,
        )
        client = RabbitClient(rabbit_config)
        try:
            client.connect()
        except AMQPConnectionError as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            return 1
        publisher = _RecordPublisher(client)

    classifier = EntryClassifier(on_record=publisher)
    logger.info(f"Scanning {len(args.roots)} tree(s)")

    try:
        failures = scan(args.roots, classifier, prog, max_descriptors=args.max_descriptors)
    except BrokenPipeError:
        # The reader went away; send whatever is still buffered to devnull
        logger.debug("Standard output closed by reader, stopping scan")
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        os.close(devnull)
        return 1
    finally:
        sys.stdout.flush()
        if publisher is not None:
            publisher.client.close()

    logger.info(
        f"Scan complete: {classifier.files} files, {classifier.blocks} blocks, "
        f"{classifier.soft_errors} unreadable entries, {failures} failed trees"
    )

    if publisher is not None and publisher.failures:
        logger.error(f"{publisher.failures} records could not be published")
        return 1

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
