"""Physical directory tree traversal and per-file space reporting."""

import logging
import os
import stat
import sys
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, TextIO

logger = logging.getLogger(__name__)

# More than enough to traverse the depth of a storage node's object tree
MAX_DESCRIPTORS = 10


class EntryKind(Enum):
    """Kind of filesystem object handed to a traversal handler."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    UNREADABLE_DIRECTORY = "unreadable directory"
    STAT_FAILED = "stat failed"
    UNKNOWN = "unknown"


class Action(Enum):
    """What the traversal should do after a handler returns."""

    CONTINUE = "continue"
    SKIP_SUBTREE = "skip_subtree"
    ABORT = "abort"


@dataclass(frozen=True)
class Entry:
    """One visited filesystem object.

    Attributes:
        path: Path built by joining names onto the root argument
        name: Last component of the path, used in diagnostics
        level: Depth below the root (the root itself is 0)
        kind: Classification of the object
        stat: lstat result, None when the stat failed
        error: Error behind an unreadable directory or a failed stat
    """

    path: str
    name: str
    level: int
    kind: EntryKind
    stat: Optional[os.stat_result] = None
    error: Optional[OSError] = None


Handler = Callable[[Entry], Action]


@dataclass(frozen=True)
class ScanRecord:
    """Space accounting for a single file."""

    path: str
    size: int
    mtime: int
    blocks: int

    @classmethod
    def from_stat(cls, path: str, st: os.stat_result) -> "ScanRecord":
        return cls(
            path=path,
            size=st.st_size,
            mtime=st[stat.ST_MTIME],
            blocks=logical_blocks(st.st_blocks),
        )

    def to_line(self) -> str:
        return f"{self.path}\t{self.size}\t{self.mtime}\t{self.blocks}\n"

    def to_message(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "size_bytes": self.size,
            "modified_ts": self.mtime,
            "logical_blocks": self.blocks,
        }


def logical_blocks(raw_blocks: int) -> int:
    """Convert 512-byte physical blocks to 1024-byte logical blocks, rounding up."""
    return (raw_blocks + 1) // 2


def classify_mode(mode: int) -> EntryKind:
    """Map an lstat mode to the kind reported for it.

    Ordinary special files (fifos, sockets, devices) count as files, the same
    way a physical nftw walk reports them. Doors, event ports, whiteouts and
    file types this platform does not know about are UNKNOWN.
    """
    if stat.S_ISDIR(mode):
        return EntryKind.DIRECTORY
    if stat.S_ISLNK(mode):
        return EntryKind.SYMLINK
    if (
        stat.S_ISREG(mode)
        or stat.S_ISFIFO(mode)
        or stat.S_ISSOCK(mode)
        or stat.S_ISCHR(mode)
        or stat.S_ISBLK(mode)
    ):
        return EntryKind.FILE
    return EntryKind.UNKNOWN


def _root_name(root: str) -> str:
    return os.path.basename(root.rstrip(os.sep)) or root


class _OpenDirectory:
    """A directory whose entries are still being enumerated.

    Entries come from a live ``os.scandir`` iterator until ``release`` is
    called, after which the remaining names are served from memory.
    """

    def __init__(self, path: str, level: int, iterator):
        self.path = path
        self.level = level
        self._iterator = iterator
        self._pending: Optional[deque] = None
        self._error: Optional[OSError] = None

    @property
    def is_open(self) -> bool:
        return self._iterator is not None

    def next_name(self) -> Optional[str]:
        """Return the next entry name, None when exhausted.

        Raises:
            OSError: If reading the directory failed
        """
        if self._iterator is None:
            if self._pending:
                return self._pending.popleft()
            if self._error is not None:
                raise self._error
            return None
        dirent = next(self._iterator, None)
        return dirent.name if dirent is not None else None

    def release(self) -> None:
        """Read the remaining names into memory and close the handle.

        A read error is kept and raised once the buffered names run out.
        """
        if self._iterator is None:
            return
        self._pending = deque()
        try:
            for dirent in self._iterator:
                self._pending.append(dirent.name)
        except OSError as e:
            self._error = e
        finally:
            self.close()

    def close(self) -> None:
        if self._iterator is not None:
            self._iterator.close()
            self._iterator = None


class _Walk:
    """State of one traversal pass."""

    def __init__(self, handler: Handler, max_descriptors: int):
        self.handler = handler
        self.max_descriptors = max_descriptors
        self.stack = []

    def _reserve_descriptor(self) -> None:
        open_dirs = [d for d in self.stack if d.is_open]
        if len(open_dirs) >= self.max_descriptors:
            logger.debug(
                f"Descriptor limit {self.max_descriptors} reached, "
                f"buffering {open_dirs[0].path}"
            )
            open_dirs[0].release()

    def visit(self, path: str, name: str, level: int, st: os.stat_result) -> Action:
        kind = classify_mode(st.st_mode)
        iterator = None
        error = None

        if kind is EntryKind.DIRECTORY:
            self._reserve_descriptor()
            try:
                iterator = os.scandir(path)
            except OSError as e:
                kind = EntryKind.UNREADABLE_DIRECTORY
                error = e

        try:
            action = self.handler(Entry(path, name, level, kind, st, error))
        except BaseException:
            if iterator is not None:
                iterator.close()
            raise

        if iterator is not None:
            if action is Action.CONTINUE:
                self.stack.append(_OpenDirectory(path, level, iterator))
            else:
                iterator.close()
        return action

    def run(self, root: str) -> int:
        try:
            st = os.lstat(root)
        except OSError as e:
            logger.debug(f"Unable to stat root {root}: {e}")
            return 1

        try:
            if self.visit(root, _root_name(root), 0, st) is Action.ABORT:
                return 1

            while self.stack:
                directory = self.stack[-1]
                try:
                    name = directory.next_name()
                except OSError as e:
                    logger.error(f"Error reading directory {directory.path}: {e}")
                    return 1

                if name is None:
                    directory.close()
                    self.stack.pop()
                    continue

                path = os.path.join(directory.path, name)
                level = directory.level + 1
                try:
                    st = os.lstat(path)
                except OSError as e:
                    action = self.handler(
                        Entry(path, name, level, EntryKind.STAT_FAILED, None, e)
                    )
                else:
                    action = self.visit(path, name, level, st)

                if action is Action.ABORT:
                    return 1

        finally:
            for directory in self.stack:
                directory.close()
            self.stack.clear()

        return 0


def walk(root: str, handler: Handler, max_descriptors: int = MAX_DESCRIPTORS) -> int:
    """Walk a tree depth-first without following symbolic links.

    The handler is called once for every object under ``root``, the root
    included, with directories reported before their contents. No more than
    ``max_descriptors`` directory handles are open at any time.

    Args:
        root: Directory (or any other object) to start from
        handler: Called with each Entry, returns the Action to take
        max_descriptors: Bound on simultaneously open directory handles

    Returns:
        0 if the pass completed, 1 if the root could not be examined, a
        directory read failed or the handler returned ABORT

    Raises:
        ValueError: If max_descriptors is less than 1
    """
    if max_descriptors < 1:
        raise ValueError(f"max_descriptors must be at least 1, got {max_descriptors}")

    return _Walk(handler, max_descriptors).run(root)


class EntryClassifier:
    """Traversal handler that reports files and diagnoses problems.

    Report lines go to ``out`` and diagnostics to ``err``; both default to
    the process streams at the time of the call. ``on_record`` receives each
    ScanRecord after its line has been written.
    """

    def __init__(
        self,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        on_record: Optional[Callable[[ScanRecord], None]] = None,
    ):
        self._out = out
        self._err = err
        self.on_record = on_record
        self.files = 0
        self.bytes = 0
        self.blocks = 0
        self.soft_errors = 0

    @property
    def out(self) -> TextIO:
        return self._out if self._out is not None else sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err if self._err is not None else sys.stderr

    def __call__(self, entry: Entry) -> Action:
        if entry.kind is EntryKind.FILE:
            record = ScanRecord.from_stat(entry.path, entry.stat)
            self.out.write(record.to_line())
            self.files += 1
            self.bytes += record.size
            self.blocks += record.blocks
            if self.on_record is not None:
                self.on_record(record)
            return Action.CONTINUE

        # Not interested in directories or symlinks
        if entry.kind in (EntryKind.DIRECTORY, EntryKind.SYMLINK):
            return Action.CONTINUE

        if entry.kind is EntryKind.UNREADABLE_DIRECTORY:
            self.soft_errors += 1
            self.err.write(f"{entry.name}: unable to read\n")
            return Action.CONTINUE

        if entry.kind is EntryKind.STAT_FAILED:
            self.soft_errors += 1
            reason = entry.error.strerror or str(entry.error)
            self.err.write(f"{entry.name}: stat failed: {reason}\n")
            return Action.CONTINUE

        # Downstream parsers expect this diagnostic without a trailing newline
        file_type = stat.S_IFMT(entry.stat.st_mode) if entry.stat is not None else 0
        self.err.write(f"{entry.name}: unknown type ({file_type:o})")
        return Action.ABORT


def scan(
    roots: Iterable[str],
    handler: Handler,
    prog: str,
    err: Optional[TextIO] = None,
    max_descriptors: int = MAX_DESCRIPTORS,
) -> int:
    """Walk every root in order and count the ones that failed.

    A failing root is reported once on ``err`` and does not stop the
    remaining roots from being scanned.

    Returns:
        Number of roots whose pass failed
    """
    failures = 0
    for root in roots:
        logger.debug(f"Scanning root: {root}")
        if walk(root, handler, max_descriptors) != 0:
            stream = err if err is not None else sys.stderr
            stream.write(f"{prog}: {root}: encountered an error\n")
            failures += 1
    return failures
