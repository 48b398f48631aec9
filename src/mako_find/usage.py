"""Sum space usage from mako-find output.

Usage:
    mako-find /manta | mako-usage --group-depth 2
"""

import argparse
import fileinput
import logging
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .scanner import ScanRecord

logger = logging.getLogger(__name__)


def setup_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class UsageTotals:
    files: int = 0
    bytes: int = 0
    blocks: int = 0

    def add(self, record: ScanRecord) -> None:
        self.files += 1
        self.bytes += record.size
        self.blocks += record.blocks


def parse_line(line: str) -> ScanRecord:
    """Parse one report line back into a ScanRecord.

    The path may itself contain tabs, so the numeric fields are taken from
    the right.

    Raises:
        ValueError: If the line does not have four fields or a field is not
            an integer
    """
    fields = line.rstrip("\n").rsplit("\t", 3)
    if len(fields) != 4 or not fields[0]:
        raise ValueError(f"Malformed scan line: {line!r}")

    path, size, mtime, blocks = fields
    return ScanRecord(path=path, size=int(size), mtime=int(mtime), blocks=int(blocks))


def group_key(path: str, depth: int) -> str:
    """First ``depth`` components of the directory holding ``path``."""
    if depth <= 0:
        return ""
    absolute = path.startswith("/")
    parts = [p for p in path.split("/")[:-1] if p]
    key = "/".join(parts[:depth])
    return "/" + key if absolute else key


def summarize(
    lines: Iterable[str], group_depth: int = 0
) -> Tuple[Dict[str, UsageTotals], int]:
    """Accumulate totals per group.

    Returns:
        Mapping of group key to totals, and the number of lines skipped
        because they could not be parsed
    """
    totals: Dict[str, UsageTotals] = {}
    malformed = 0

    for line in lines:
        if not line.strip():
            continue
        try:
            record = parse_line(line)
        except ValueError as e:
            malformed += 1
            logger.warning(str(e))
            continue
        totals.setdefault(group_key(record.path, group_depth), UsageTotals()).add(record)

    return totals, malformed


def format_totals(totals: Dict[str, UsageTotals]) -> List[str]:
    return [
        f"{group}\t{t.files}\t{t.bytes}\t{t.blocks}\n"
        for group, t in sorted(totals.items())
    ]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mako-usage",
        description="Sum file counts, bytes and 1K blocks from mako-find output",
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Scan output files (default: standard input)",
    )
    parser.add_argument(
        "--group-depth",
        type=int,
        default=0,
        help="Group by this many leading directory components (default: 0, one total)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: WARNING)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    files = args.files or ["-"]

    # mako-find writes undecodable names as raw bytes; fileinput reads "-"
    # from sys.stdin as is, so its errors setting has to change here
    if "-" in files and hasattr(sys.stdin, "reconfigure"):
        sys.stdin.reconfigure(errors="surrogateescape")
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(errors="surrogateescape")

    with fileinput.input(files=files, errors="surrogateescape") as lines:
        totals, malformed = summarize(lines, args.group_depth)

    sys.stdout.writelines(format_totals(totals))

    if malformed:
        logger.error(f"Skipped {malformed} malformed lines")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
