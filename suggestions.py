"""
CodeMind Collaboration - Suggestion Queue
=========================================

One JSON file per suggestion under ``.codemind/suggestions/``, readable by any
IDE agent. Each record is consumed exactly once, either explicitly or when an
external read is inferred from the file's access time.

Access-time inference is best effort. Filesystems mounted with ``noatime``
never update access times, and ``relatime`` only updates them when the
previous access predates the last modification. Use ``atime_supported()`` to
find out whether detection can work on the current filesystem.
"""

import os
import json
import math
import secrets
import string
import threading
from pathlib import Path
from typing import Any, Callable, Optional
from datetime import datetime, timedelta
import logging

from events import ConsumptionEvent, ListenerList
from schema import Suggestion, VALID_SUGGESTION_TYPES, enum_value
from state import ProjectPaths, atomic_write_json, format_timestamp, parse_timestamp, utc_now
from watchers import DirectoryWatcher

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_MS = 86_400_000
EXTERNAL_CONSUMER = "external"
UNKNOWN_CONSUMER = "unknown"

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_ATTEMPTS = 5
_PROBE_NAME = ".atime-probe"


class SuggestionNotFoundError(KeyError):
    """Raised when an operation names a suggestion that does not exist."""

    def __init__(self, suggestion_id: str):
        self.suggestion_id = suggestion_id
        super().__init__(suggestion_id)

    def __str__(self) -> str:
        return f"Suggestion not found: {self.suggestion_id}"


def clamp_confidence(value: Any) -> float:
    """Clamp a confidence score into [0.0, 1.0] (NaN becomes 0.0).

    Raises:
        ValueError: If the value is not a number
    """
    if isinstance(value, bool):
        raise ValueError(f"confidence must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"confidence must be a number, got {value!r}")
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


def generate_suggestion_id(now: Optional[datetime] = None) -> str:
    """Time-ordered id: ``sug_<YYYYMMDD>_<HHMMSSmmm>_<6 random chars>``."""
    now = now or utc_now()
    stamp = now.strftime("%Y%m%d_%H%M%S") + f"{now.microsecond // 1000:03d}"
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"sug_{stamp}_{suffix}"


class SuggestionStore:
    """Durable suggestion records with exactly-once consumption tracking."""

    def __init__(self, paths: ProjectPaths, retention_period: int = DEFAULT_RETENTION_MS):
        """Initialize suggestion store.

        Args:
            paths: Project layout
            retention_period: Default max age for cleanup, in milliseconds
        """
        self.paths = paths
        self.suggestions_dir = paths.suggestions_dir
        self.retention_period = retention_period

        self._access_times: dict[str, int] = {}
        self._lock = threading.RLock()
        self._consumption = ListenerList("consumption")
        self._watcher = DirectoryWatcher("suggestions")
        self._atime_supported: Optional[bool] = None

    # -------------------------------------------------------------------------
    # Paths and raw I/O
    # -------------------------------------------------------------------------

    def _ensure_directory(self) -> None:
        self.suggestions_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, suggestion_id: str) -> Optional[Path]:
        if not suggestion_id or os.sep in suggestion_id or "/" in suggestion_id:
            return None
        if suggestion_id.startswith("."):
            return None
        return self.suggestions_dir / f"{suggestion_id}.json"

    def _record_files(self) -> list[Path]:
        if not self.suggestions_dir.is_dir():
            return []
        return sorted(
            p for p in self.suggestions_dir.iterdir()
            if p.suffix == ".json" and not p.name.startswith(".")
        )

    def _read_quietly(self, path: Path) -> Any:
        """Read a record without leaving our own access-time footprint.

        The original access time is restored after reading so that any
        later increase can only come from another process. The store lock
        is held throughout, so watch callbacks never see the access time
        between our read and its restore.

        Raises:
            OSError, json.JSONDecodeError: If the record cannot be read
        """
        with self._lock:
            before = path.stat()
            with open(path, "r") as f:
                data = json.load(f)
            try:
                os.utime(path, ns=(before.st_atime_ns, before.st_mtime_ns))
            except OSError as e:
                logger.debug(f"Could not restore access time of {path}: {e}")
            return data

    def _load(self, path: Path) -> Optional[Suggestion]:
        try:
            data = self._read_quietly(path)
            return Suggestion.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to read suggestion {path.name}: {e}")
            return None

    def _remember_access(self, suggestion_id: str) -> None:
        path = self._path_for(suggestion_id)
        if path is None:
            return
        try:
            self._access_times[suggestion_id] = path.stat().st_atime_ns
        except OSError:
            self._access_times.pop(suggestion_id, None)

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_suggestion(self, data: dict) -> str:
        """Persist a new suggestion.

        Args:
            data: ``file``, ``type``, ``confidence``, ``description`` and
                optional ``context`` and ``fix``

        Returns:
            The new suggestion id

        Raises:
            ValueError: If ``file``, ``type`` or ``confidence`` is invalid
            OSError: If the record cannot be written
        """
        file_path = data.get("file")
        if not isinstance(file_path, str) or not file_path:
            raise ValueError("Suggestion 'file' must be a non-empty string")

        suggestion_type = enum_value(data.get("type"))
        if suggestion_type not in VALID_SUGGESTION_TYPES:
            raise ValueError(
                f"Invalid suggestion type: {suggestion_type!r}. "
                f"Must be one of: {', '.join(VALID_SUGGESTION_TYPES)}"
            )

        confidence = clamp_confidence(data.get("confidence", 0.0))
        self._ensure_directory()

        for _ in range(_ID_ATTEMPTS):
            now = utc_now()
            suggestion = Suggestion(
                id=generate_suggestion_id(now),
                timestamp=now,
                file=file_path,
                type=suggestion_type,
                confidence=confidence,
                description=str(data.get("description", "")),
                context=data.get("context") or {},
                fix=data.get("fix"),
                consumed=False,
            )
            if self._publish(suggestion):
                with self._lock:
                    if self._watcher.active:
                        self._remember_access(suggestion.id)
                logger.info(f"Created suggestion {suggestion.id} for {file_path}")
                return suggestion.id

        raise OSError(f"Could not allocate a unique suggestion id after {_ID_ATTEMPTS} attempts")

    def _publish(self, suggestion: Suggestion) -> bool:
        """Write a record under its id without ever replacing an existing file.

        Returns:
            False if the id is already taken
        """
        path = self._path_for(suggestion.id)
        tmp_path = self.suggestions_dir / f".{suggestion.id}.json.tmp"
        with open(tmp_path, "w") as f:
            json.dump(suggestion.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        try:
            # link() fails instead of overwriting
            os.link(tmp_path, path)
            return True
        except FileExistsError:
            logger.debug(f"Suggestion id collision on {suggestion.id}, retrying")
            return False
        finally:
            tmp_path.unlink(missing_ok=True)

    def get_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        """Read one suggestion.

        Returns:
            The Suggestion, or None if missing or unparseable
        """
        path = self._path_for(suggestion_id)
        if path is None or not path.exists():
            return None
        return self._load(path)

    def mark_consumed(self, suggestion_id: str, consumed_by: Optional[str] = None) -> None:
        """Mark a suggestion consumed.

        Re-marking keeps ``consumed`` true and overwrites ``consumedBy``.
        Consumption listeners fire only on the first transition.

        Raises:
            SuggestionNotFoundError: If no readable record exists for the id
        """
        path = self._path_for(suggestion_id)
        if path is None:
            raise SuggestionNotFoundError(suggestion_id)

        consumed_by = consumed_by or UNKNOWN_CONSUMER
        with self._lock:
            try:
                record = self._read_quietly(path)
            except FileNotFoundError:
                raise SuggestionNotFoundError(suggestion_id)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Suggestion {suggestion_id} is unreadable: {e}")
                raise SuggestionNotFoundError(suggestion_id)
            if not isinstance(record, dict):
                raise SuggestionNotFoundError(suggestion_id)

            first_time = not record.get("consumed", False)
            record["consumed"] = True
            record["consumedBy"] = consumed_by
            atomic_write_json(path, record)

            if suggestion_id in self._access_times:
                self._remember_access(suggestion_id)

        logger.info(f"Suggestion {suggestion_id} consumed by {consumed_by}")
        if first_time:
            self._consumption.emit(
                ConsumptionEvent(suggestionId=suggestion_id, consumedBy=consumed_by)
            )

    def get_all_suggestions(self) -> list[Suggestion]:
        """Every readable suggestion, newest first."""
        suggestions = []
        for path in self._record_files():
            suggestion = self._load(path)
            if suggestion is not None:
                suggestions.append(suggestion)
        suggestions.sort(key=lambda s: s.timestamp, reverse=True)
        return suggestions

    def get_pending_suggestions(self) -> list[Suggestion]:
        """Unconsumed suggestions, newest first."""
        return [s for s in self.get_all_suggestions() if not s.consumed]

    def set_retention_period(self, period: int) -> None:
        """Set the default cleanup age in milliseconds."""
        if period < 0:
            raise ValueError("Retention period must be non-negative")
        self.retention_period = period

    def cleanup_old_suggestions(self, max_age: Optional[int] = None) -> int:
        """Delete suggestions older than ``max_age`` milliseconds.

        Args:
            max_age: Maximum age in milliseconds (default: retention period)

        Returns:
            Number of suggestions removed
        """
        age = self.retention_period if max_age is None else max_age
        cutoff = utc_now() - timedelta(milliseconds=age)
        cleaned = 0

        for path in self._record_files():
            try:
                record = self._read_quietly(path)
                timestamp = parse_timestamp(record["timestamp"])
            except FileNotFoundError:
                continue
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Failed to process suggestion {path.name}: {e}")
                continue

            if timestamp <= cutoff:
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.error(f"Failed to delete suggestion {path.name}: {e}")
                    continue
                with self._lock:
                    self._access_times.pop(path.stem, None)
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} suggestions older than {format_timestamp(cutoff)}")
        return cleaned

    # -------------------------------------------------------------------------
    # External consumption detection
    # -------------------------------------------------------------------------

    def on_consumption(self, callback: Callable[[ConsumptionEvent], None]) -> None:
        self._consumption.add(callback)

    def off_consumption(self, callback: Callable[[ConsumptionEvent], None]) -> None:
        self._consumption.remove(callback)

    def atime_supported(self) -> bool:
        """Probe whether reads update access times on this filesystem.

        Writes a probe file, backdates its access time by two days, reads
        it and checks that the access time moved forward.
        """
        if self._atime_supported is not None:
            return self._atime_supported

        self._ensure_directory()
        probe = self.suggestions_dir / _PROBE_NAME
        supported = False
        try:
            probe.write_text("probe")
            stat = probe.stat()
            old = stat.st_atime_ns - 2 * 86_400 * 1_000_000_000
            os.utime(probe, ns=(old, stat.st_mtime_ns))
            probe.read_text()
            supported = probe.stat().st_atime_ns > old
        except OSError as e:
            logger.warning(f"Access-time probe failed: {e}")
        finally:
            try:
                probe.unlink(missing_ok=True)
            except OSError:
                pass

        self._atime_supported = supported
        if not supported:
            logger.warning(
                "Filesystem does not update access times; external consumption "
                "detection is disabled. Consumers must call mark_consumed explicitly."
            )
        return supported

    def snapshot_access_times(self) -> None:
        """Record the current access time of every suggestion as the baseline."""
        with self._lock:
            self._access_times.clear()
            for path in self._record_files():
                try:
                    self._access_times[path.stem] = path.stat().st_atime_ns
                except OSError:
                    continue

    def was_accessed_externally(self, suggestion_id: str) -> bool:
        """True if the record's access time moved past our baseline."""
        baseline = self._access_times.get(suggestion_id)
        path = self._path_for(suggestion_id)
        if baseline is None or path is None:
            return False
        try:
            return path.stat().st_atime_ns > baseline
        except OSError:
            return False

    def mark_consumed_if_accessed(
        self, suggestion_id: str, consumed_by: str = EXTERNAL_CONSUMER
    ) -> bool:
        """Mark a suggestion consumed if an external read was detected.

        Returns:
            True if this call marked it consumed
        """
        with self._lock:
            marked = False
            if self.was_accessed_externally(suggestion_id):
                suggestion = self.get_suggestion(suggestion_id)
                if suggestion is not None and not suggestion.consumed:
                    try:
                        self.mark_consumed(suggestion_id, consumed_by)
                        marked = True
                    except SuggestionNotFoundError:
                        logger.debug(f"Suggestion {suggestion_id} vanished before marking")
            self._remember_access(suggestion_id)
            return marked

    def check_consumption(self) -> list[str]:
        """Polling pass over every tracked suggestion.

        Returns:
            Ids newly marked consumed by an external reader
        """
        with self._lock:
            tracked = list(self._access_times)
        return [sid for sid in tracked if self.mark_consumed_if_accessed(sid)]

    def handle_file_event(self, event_type: str, path: Path) -> None:
        """React to a filesystem event in the suggestions directory."""
        suggestion_id = path.stem
        if path.name.startswith("."):
            return

        with self._lock:
            if not path.exists():
                self._access_times.pop(suggestion_id, None)
                return
            if suggestion_id not in self._access_times:
                # New record: start tracking from its current access time
                self._remember_access(suggestion_id)
                return

        self.mark_consumed_if_accessed(suggestion_id)

    def watch_for_consumption(self) -> bool:
        """Start inferring external consumption from access times.

        Returns:
            True if the directory watch is active
        """
        self._ensure_directory()
        self.stop_watching()
        self.atime_supported()
        self.snapshot_access_times()
        return self._watcher.watch(self.suggestions_dir, self.handle_file_event, suffix=".json")

    def stop_watching(self) -> None:
        """Stop watching and forget access-time baselines. Idempotent."""
        self._watcher.stop()
        with self._lock:
            self._access_times.clear()

    @property
    def watching(self) -> bool:
        return self._watcher.active
