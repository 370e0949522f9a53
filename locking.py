"""
CodeMind Collaboration - Lock Coordination
==========================================

File-level mutual exclusion between CodeMind and an IDE agent, using only
lock files in the project as the communication channel.

CodeMind owns ``.codemind.lock``. Each supported IDE owns
``<marker folder>/agent.lock``, which CodeMind only ever reads. The IDE
always wins: its lock is checked before CodeMind claims anything.
"""

import os
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Callable
from datetime import datetime, timedelta, timezone
import logging

from events import ListenerList, LockEvent, LockEventType
from ide_detect import IDE_LOCK_NAME, IDE_MARKERS, lock_paths
from schema import LockFileData, LockFileEntry, LockInfo, LockOwner
from state import ProjectPaths, atomic_write_json, get_timestamp, parse_timestamp, utc_now
from watchers import DirectoryWatcher

logger = logging.getLogger(__name__)

# Lock records older than this are abandoned (crashed holder)
DEFAULT_LOCK_TIMEOUT_MS = 30_000

UNKNOWN_OWNER = "unknown"
UNKNOWN_OPERATION = "unknown"

# Watch events that cannot change whether a lock file exists
_READ_ONLY_EVENTS = {"opened", "closed", "closed_no_write"}


@dataclass
class LockRecord:
    """A lock file as found on disk.

    ``data`` is None when the file exists but could not be parsed.
    """

    path: Path
    raw: Optional[dict]
    data: Optional[LockFileData]
    modified: datetime

    @property
    def malformed(self) -> bool:
        return self.raw is None

    def written_at(self) -> datetime:
        """Best known last-write time (record timestamp, else file mtime)."""
        if self.raw is not None and self.raw.get("timestamp"):
            try:
                return parse_timestamp(self.raw["timestamp"])
            except ValueError:
                logger.debug(f"Unparseable timestamp in {self.path}, using mtime")
        return self.modified


def read_lock_record(path: Path) -> Optional[LockRecord]:
    """Read a lock file without interpreting ownership.

    Returns:
        None if the file does not exist, otherwise a LockRecord (possibly
        malformed)

    Raises:
        OSError: If the file exists but cannot be read
    """
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None

    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Malformed lock file {path}: {e}")
        return LockRecord(path=path, raw=None, data=None, modified=modified)

    if not isinstance(raw, dict):
        logger.warning(f"Malformed lock file {path}: not a JSON object")
        return LockRecord(path=path, raw=None, data=None, modified=modified)

    try:
        data = LockFileData.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"Lock file {path} is not a full lock record: {e}")
        data = None

    return LockRecord(path=path, raw=raw, data=data, modified=modified)


class LockManager:
    """Arbitrates file access between CodeMind and IDE agents."""

    def __init__(self, paths: ProjectPaths, lock_timeout: int = DEFAULT_LOCK_TIMEOUT_MS):
        """Initialize lock manager.

        Args:
            paths: Project layout
            lock_timeout: Staleness timeout in milliseconds
        """
        self.paths = paths
        self.project_root = paths.root
        self.lock_path = paths.lock_file
        self.lock_timeout = lock_timeout
        self.pid = os.getpid()

        self._lock_change = ListenerList("lock change")
        self._watcher = DirectoryWatcher("ide-locks")
        self._ide_lock_present: dict[Path, bool] = {}

        self._queue: list[str] = []
        self._queue_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Staleness
    # -------------------------------------------------------------------------

    def set_lock_timeout(self, timeout: int) -> None:
        """Set the staleness timeout in milliseconds."""
        if timeout < 0:
            raise ValueError("Lock timeout must be non-negative")
        self.lock_timeout = timeout

    def is_stale(self, record: LockRecord) -> bool:
        """Check if a lock record is older than the timeout.

        Args:
            record: LockRecord to check

        Returns:
            True if stale, False if fresh
        """
        age = utc_now() - record.written_at()
        return age > timedelta(milliseconds=self.lock_timeout)

    # -------------------------------------------------------------------------
    # IDE locks (read-only)
    # -------------------------------------------------------------------------

    def _live_ide_records(self) -> list[tuple[str, LockRecord]]:
        records = []
        for marker, path in lock_paths(self.project_root):
            try:
                record = read_lock_record(path)
            except OSError as e:
                # Unreadable but present: assume the IDE is holding it
                logger.error(f"Cannot read IDE lock {path}: {e}")
                record = LockRecord(path=path, raw=None, data=None, modified=utc_now())
            if record is None:
                continue
            if self.is_stale(record):
                logger.debug(f"Ignoring stale {marker.type} lock at {path}")
                continue
            records.append((marker.type, record))
        return records

    def _ide_lock_info(
        self, ide_type: str, record: LockRecord, file_path: str, operation: Any = None
    ) -> LockInfo:
        return LockInfo(
            owner=LockOwner.IDE.value,
            filePath=file_path,
            timestamp=record.written_at(),
            operation=operation if isinstance(operation, str) and operation else UNKNOWN_OPERATION,
            ide=ide_type,
        )

    def _ide_lock_for(self, file_path: str) -> Optional[LockInfo]:
        """IDE lock covering a file, if any.

        A record covers the file when it lists the path, lists no paths at
        all, or cannot be interpreted (unparseable, ``files`` not a list,
        or an entry that is not an object).
        """
        for ide_type, record in self._live_ide_records():
            if record.malformed:
                return self._ide_lock_info(ide_type, record, file_path)

            entries = record.raw.get("files")
            if not entries or not isinstance(entries, list):
                return self._ide_lock_info(ide_type, record, file_path)

            for entry in entries:
                if not isinstance(entry, dict):
                    return self._ide_lock_info(ide_type, record, file_path)
                if entry.get("path") == file_path:
                    return self._ide_lock_info(ide_type, record, file_path, entry.get("operation"))
        return None

    def ide_lock_holder(self, file_path: str) -> Optional[LockInfo]:
        """IDE lock that keeps CodeMind away from a file.

        Any live IDE lock blocks CodeMind, whatever files it lists. A lock
        covering the file itself is preferred so its operation is reported.

        Returns:
            LockInfo for the blocking IDE lock, or None if no IDE lock is live
        """
        covering = self._ide_lock_for(file_path)
        if covering is not None:
            return covering
        records = self._live_ide_records()
        if not records:
            return None
        ide_type, record = records[0]
        return self._ide_lock_info(ide_type, record, file_path)

    def has_ide_lock(self) -> bool:
        """True if any IDE holds a live (non-stale) lock."""
        return bool(self._live_ide_records())

    # -------------------------------------------------------------------------
    # Own lock record
    # -------------------------------------------------------------------------

    def read_lock_file(self) -> Optional[LockFileData]:
        """Read CodeMind's lock record.

        Returns:
            LockFileData, or None if absent, unreadable or malformed
        """
        try:
            record = read_lock_record(self.lock_path)
        except OSError as e:
            logger.error(f"Cannot read lock file {self.lock_path}: {e}")
            return None
        if record is None:
            return None
        return record.data

    def _write_lock_file(self, data: LockFileData) -> None:
        atomic_write_json(self.lock_path, data.to_dict())

    def _remove_lock_file(self) -> None:
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to remove lock file: {e}")

    def acquire_lock(self, file_path: str, operation: str = "analyzing") -> bool:
        """Attempt to claim a file for CodeMind.

        Args:
            file_path: Project-relative path to lock
            operation: What CodeMind is doing with the file

        Returns:
            True if CodeMind now owns the file, False otherwise
        """
        if not file_path:
            logger.error("acquire_lock called with an empty path")
            return False

        ide_lock = self.ide_lock_holder(file_path)
        if ide_lock is not None:
            logger.info(f"{file_path} is locked by {ide_lock.ide or 'IDE'}, yielding")
            return False

        try:
            record = read_lock_record(self.lock_path)
            if record is not None and self.is_stale(record):
                logger.info(f"Removing stale lock file (written {record.written_at().isoformat()})")
                self._remove_lock_file()
                record = None

            if record is not None:
                data = record.data
                if data is None or data.owner != LockOwner.CODEMIND.value:
                    owner = data.owner if data else UNKNOWN_OWNER
                    logger.warning(f"Lock file held by {owner}, cannot lock {file_path}")
                    return False
            else:
                data = LockFileData(owner=LockOwner.CODEMIND.value, pid=self.pid, timestamp="")

            now = get_timestamp()
            if data.find(file_path) is None:
                data.files.append(LockFileEntry(path=file_path, operation=operation, since=now))
            data.timestamp = now
            data.pid = self.pid
            self._write_lock_file(data)

        except OSError as e:
            logger.error(f"Failed to acquire lock on {file_path}: {e}")
            return False

        logger.debug(f"Lock acquired on {file_path} ({operation})")
        self._lock_change.emit(
            LockEvent(type=LockEventType.ACQUIRED, owner=LockOwner.CODEMIND.value, filePath=file_path)
        )
        return True

    def _release(self, file_path: str, event_type: LockEventType) -> bool:
        try:
            record = read_lock_record(self.lock_path)
        except OSError as e:
            logger.error(f"Cannot read lock file {self.lock_path}: {e}")
            return False

        if record is None or record.data is None:
            return False
        data = record.data
        if data.owner != LockOwner.CODEMIND.value:
            return False
        if data.find(file_path) is None:
            return False

        data.files = [entry for entry in data.files if entry.path != file_path]
        try:
            if not data.files:
                self.lock_path.unlink(missing_ok=True)
                logger.debug("Lock file deleted")
            else:
                data.timestamp = get_timestamp()
                self._write_lock_file(data)
        except OSError as e:
            logger.error(f"Failed to release lock on {file_path}: {e}")
            return False

        self._lock_change.emit(
            LockEvent(type=event_type, owner=LockOwner.CODEMIND.value, filePath=file_path)
        )
        return True

    def release_lock(self, file_path: str) -> None:
        """Release CodeMind's claim on a file.

        The lock file is deleted once no files remain. No-op when CodeMind
        holds nothing or the record is not CodeMind's.
        """
        if self._release(file_path, LockEventType.RELEASED):
            logger.debug(f"Lock released on {file_path}")

    def yield_to_ide(self, file_path: str) -> None:
        """Cooperatively give a file up after racing the IDE for it."""
        if self._release(file_path, LockEventType.YIELDED):
            logger.info(f"Yielded {file_path} to IDE")

    def is_locked(self, file_path: str) -> Optional[LockInfo]:
        """Who holds a file, IDE locks first.

        Returns:
            LockInfo or None if nobody holds a live lock on the file
        """
        ide_lock = self._ide_lock_for(file_path)
        if ide_lock is not None:
            return ide_lock

        try:
            record = read_lock_record(self.lock_path)
        except OSError as e:
            logger.error(f"Cannot read lock file {self.lock_path}: {e}")
            return None

        if record is None or self.is_stale(record):
            return None

        if record.data is None:
            return LockInfo(
                owner=UNKNOWN_OWNER,
                filePath=file_path,
                timestamp=record.written_at(),
                operation=UNKNOWN_OPERATION,
            )

        entry = record.data.find(file_path)
        if entry is None:
            return None

        return LockInfo(
            owner=record.data.owner,
            filePath=file_path,
            timestamp=record.written_at(),
            operation=entry.operation,
        )

    # -------------------------------------------------------------------------
    # Deferred analysis queue
    # -------------------------------------------------------------------------

    def queue_for_analysis(self, file_path: str) -> None:
        """Remember a file whose analysis was deferred (duplicates collapse)."""
        with self._queue_lock:
            if file_path not in self._queue:
                self._queue.append(file_path)
                logger.debug(f"Queued {file_path} for analysis")

    def get_queue(self) -> list[str]:
        with self._queue_lock:
            return list(self._queue)

    def get_and_clear_queue(self) -> list[str]:
        """Drain the deferred queue in one step.

        Returns:
            Queued files in the order they were first queued
        """
        with self._queue_lock:
            queued, self._queue = self._queue, []
        return queued

    # -------------------------------------------------------------------------
    # Watching
    # -------------------------------------------------------------------------

    def on_lock_change(self, callback: Callable[[LockEvent], None]) -> None:
        """Register a callback for lock transitions (own and IDE)."""
        self._lock_change.add(callback)

    def off_lock_change(self, callback: Callable[[LockEvent], None]) -> None:
        self._lock_change.remove(callback)

    def handle_ide_lock_event(self, event_type: str, lock_path: Path) -> None:
        """React to a filesystem event on an IDE lock file.

        Emits an ``acquired``/``released`` LockEvent on each transition.
        """
        if event_type in _READ_ONLY_EVENTS:
            return

        exists = lock_path.exists()
        previous = self._ide_lock_present.get(lock_path)
        self._ide_lock_present[lock_path] = exists
        if previous == exists:
            return

        try:
            relative = str(lock_path.relative_to(self.project_root))
        except ValueError:
            relative = str(lock_path)

        event = LockEvent(
            type=LockEventType.ACQUIRED if exists else LockEventType.RELEASED,
            owner=LockOwner.IDE.value,
            filePath=relative,
        )
        logger.info(f"IDE lock {event.type.value}: {relative}")
        self._lock_change.emit(event)

    def watch_ide_locks(self) -> int:
        """Start watching every existing IDE marker folder for lock changes.

        Returns:
            Number of marker folders being watched
        """
        watched = 0
        for marker in IDE_MARKERS:
            folder = self.project_root / marker.folder
            lock_file = folder / IDE_LOCK_NAME
            if folder in self._watcher.watched:
                continue
            self._ide_lock_present[lock_file] = lock_file.exists()
            if self._watcher.watch(folder, self.handle_ide_lock_event, names=[IDE_LOCK_NAME]):
                watched += 1
        return watched

    def stop_watching(self) -> None:
        """Stop every IDE lock watch. Idempotent."""
        self._watcher.stop()

    @property
    def watching(self) -> bool:
        return self._watcher.active
