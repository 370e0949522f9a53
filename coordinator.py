"""
CodeMind Collaboration - Coordinator
====================================

Top-level collaboration state for one project root. Owns the config store,
lock manager, suggestion store and event log, and exposes the mode state
machine (passive, active, independent) to the analysis workflow.
"""

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union
from datetime import datetime
import logging

from config import (
    ConfigStore,
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_SUGGESTION_RETENTION_MS,
)
from events import (
    ConsumptionEvent,
    EventLogger,
    EventType,
    IDEActivity,
    ListenerList,
    LockEvent,
    LockEventType,
)
from ide_detect import IDE_LOCK_NAME, IDEInfo, detect_ide, get_marker
from locking import LockManager, UNKNOWN_OWNER, read_lock_record
from schema import (
    CollaborationMode,
    LastAnalysis,
    LockOwner,
    SessionStats,
    StatusFileData,
    StatusState,
    VALID_ANALYSIS_RESULTS,
    VALID_MODES,
    VALID_STATUS_STATES,
    enum_value,
)
from state import ProjectPaths, atomic_write_json, format_timestamp, get_timestamp, utc_now
from suggestions import SuggestionStore
from watchers import DirectoryWatcher

logger = logging.getLogger(__name__)

STAT_KINDS = ("analyzed", "issues", "suggestions")

_READ_ONLY_EVENTS = {"opened", "closed", "closed_no_write"}

Detector = Callable[[Path], Optional[IDEInfo]]


@dataclass(frozen=True)
class CollaborationStatus:
    """Read-only snapshot returned by ``Coordinator.get_status()``."""

    mode: str
    ideDetected: Optional[IDEInfo]
    isIDEEditing: bool
    queuedAnalyses: int
    lastSync: datetime

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "ideDetected": self.ideDetected.to_dict() if self.ideDetected else None,
            "isIDEEditing": self.isIDEEditing,
            "queuedAnalyses": self.queuedAnalyses,
            "lastSync": format_timestamp(self.lastSync),
        }


def _config_number(value: Any, default: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        logger.warning(f"Ignoring invalid {name} {value!r}, using {default}")
        return default
    return int(value)


class Coordinator:
    """Collaboration facade for one project root."""

    def __init__(
        self,
        project_root: Union[str, Path],
        detector: Detector = detect_ide,
        home: Optional[Union[str, Path]] = None,
    ):
        """Initialize coordinator.

        Args:
            project_root: Project root directory
            detector: IDE-detection collaborator
            home: Directory holding the global config folder
        """
        self.paths = ProjectPaths.for_root(project_root, home=home)
        self.project_root = self.paths.root
        self._detector = detector

        self.config = ConfigStore(self.paths)
        effective = self.config.get_effective_config()

        self.locks = LockManager(
            self.paths,
            lock_timeout=_config_number(
                effective.get("lockTimeout"), DEFAULT_LOCK_TIMEOUT_MS, "lockTimeout"
            ),
        )
        self.suggestions = SuggestionStore(
            self.paths,
            retention_period=_config_number(
                effective.get("suggestionRetention"),
                DEFAULT_SUGGESTION_RETENTION_MS,
                "suggestionRetention",
            ),
        )
        self.events = EventLogger(self.paths.events_log)

        mode = (effective.get("collaboration") or {}).get("mode", CollaborationMode.ACTIVE.value)
        if mode not in VALID_MODES:
            logger.warning(f"Configured mode {mode!r} is invalid, using active")
            mode = CollaborationMode.ACTIVE.value
        self._mode: str = mode

        self._detected_ide: Optional[IDEInfo] = None
        self._detected = False

        self._queued_analyses = 0
        self._stats = SessionStats()
        self._last_analysis: Optional[LastAnalysis] = None
        self._last_sync = utc_now()
        self._counter_lock = threading.Lock()

        self._activity = ListenerList("IDE activity")
        self._queue_ready = ListenerList("queue ready")
        self._activity_watcher = DirectoryWatcher("ide-activity")
        self._started = False

        self.locks.on_lock_change(self._handle_lock_event)
        self.suggestions.on_consumption(self._handle_consumption)

    # -------------------------------------------------------------------------
    # Mode
    # -------------------------------------------------------------------------

    def get_collaboration_mode(self) -> str:
        return self._mode

    def set_collaboration_mode(
        self, mode: Union[str, CollaborationMode], persist: bool = False
    ) -> None:
        """Switch collaboration mode.

        Args:
            mode: passive, active or independent
            persist: Also write the mode to the project-local config

        Raises:
            ValueError: If the mode is not one of the three known modes
        """
        value = enum_value(mode)
        if value not in VALID_MODES:
            raise ValueError(
                f"Invalid collaboration mode: {value!r}. Must be one of: {', '.join(VALID_MODES)}"
            )

        if persist:
            self.config.set("collaboration.mode", value)

        old_mode, self._mode = self._mode, value
        if old_mode != value:
            logger.info(f"Collaboration mode: {old_mode} -> {value}")
            self.events.log_mode_changed(old_mode, value)

    # -------------------------------------------------------------------------
    # IDE detection
    # -------------------------------------------------------------------------

    def detect_ide(self) -> Optional[IDEInfo]:
        """Run the IDE-detection collaborator and cache its answer."""
        self._detected_ide = self._detector(self.project_root)
        self._detected = True
        return self._detected_ide

    @property
    def detected_ide(self) -> Optional[IDEInfo]:
        """Cached detection result (detects once on first access)."""
        if not self._detected:
            return self.detect_ide()
        return self._detected_ide

    def is_ide_active(self) -> bool:
        """True if the detected IDE holds a live lock marker."""
        ide = self.detected_ide
        if ide is None:
            return False

        lock_path = Path(ide.configPath) / IDE_LOCK_NAME
        try:
            record = read_lock_record(lock_path)
        except OSError as e:
            logger.error(f"Cannot read IDE lock {lock_path}: {e}")
            return True
        return record is not None and not self.locks.is_stale(record)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def queue_length(self) -> int:
        return self._queued_analyses

    @property
    def session_stats(self) -> SessionStats:
        return replace(self._stats)

    @property
    def last_analysis(self) -> Optional[LastAnalysis]:
        return self._last_analysis

    def increment_queue(self) -> None:
        with self._counter_lock:
            self._queued_analyses += 1

    def decrement_queue(self) -> None:
        """Decrement the deferred analysis counter (never below zero)."""
        with self._counter_lock:
            if self._queued_analyses > 0:
                self._queued_analyses -= 1

    def update_stats(self, kind: str, count: int = 1) -> None:
        """Bump a session counter.

        Raises:
            ValueError: If kind is not analyzed, issues or suggestions
        """
        if kind not in STAT_KINDS:
            raise ValueError(f"Unknown stat {kind!r}. Must be one of: {', '.join(STAT_KINDS)}")
        with self._counter_lock:
            setattr(self._stats, kind, getattr(self._stats, kind) + count)

    def record_analysis(self, file_path: str, result: str) -> None:
        """Remember the most recent analysis outcome for the status file."""
        result = enum_value(result)
        if result not in VALID_ANALYSIS_RESULTS:
            raise ValueError(
                f"Invalid analysis result: {result!r}. "
                f"Must be one of: {', '.join(VALID_ANALYSIS_RESULTS)}"
            )
        self._last_analysis = LastAnalysis(file=file_path, result=result, timestamp=get_timestamp())

    def broadcast_status(
        self, state: Union[str, StatusState], current_file: Optional[str] = None
    ) -> bool:
        """Publish a status snapshot for IDE agents.

        Args:
            state: idle, analyzing or fixing
            current_file: File being worked on, if any

        Returns:
            True if the snapshot was written

        Raises:
            ValueError: If the state is unknown
        """
        value = enum_value(state)
        if value not in VALID_STATUS_STATES:
            raise ValueError(
                f"Invalid status: {value!r}. Must be one of: {', '.join(VALID_STATUS_STATES)}"
            )

        snapshot = StatusFileData(
            status=value,
            timestamp=get_timestamp(),
            queueLength=self._queued_analyses,
            mode=self._mode,
            sessionStats=self.session_stats,
            currentFile=current_file,
            lastAnalysis=self._last_analysis,
        )

        try:
            atomic_write_json(self.paths.status_file, snapshot.to_dict())
        except OSError as e:
            logger.error(f"Failed to write status file: {e}")
            return False

        self._last_sync = utc_now()
        logger.debug(f"Broadcast status {value} ({current_file or '-'})")
        return True

    def get_status(self) -> CollaborationStatus:
        return CollaborationStatus(
            mode=self._mode,
            ideDetected=self.detected_ide,
            isIDEEditing=self.is_ide_active(),
            queuedAnalyses=self._queued_analyses,
            lastSync=self._last_sync,
        )

    # -------------------------------------------------------------------------
    # Analysis workflow
    # -------------------------------------------------------------------------

    def request_analysis(self, file_path: str) -> bool:
        """Ask whether CodeMind may analyze a file now.

        Passive mode never proceeds. Independent mode proceeds without
        locks. Active mode takes the file lock, and queues the file while
        any IDE lock is live.

        Returns:
            True if the caller should analyze the file now
        """
        if self._mode == CollaborationMode.PASSIVE.value:
            logger.debug(f"Passive mode, not analyzing {file_path}")
            return False

        if self._mode == CollaborationMode.INDEPENDENT.value:
            self.broadcast_status(StatusState.ANALYZING, file_path)
            return True

        if self.locks.acquire_lock(file_path, "analyzing"):
            self.broadcast_status(StatusState.ANALYZING, file_path)
            return True

        holder = self.locks.ide_lock_holder(file_path) or self.locks.is_locked(file_path)
        owner = holder.owner if holder is not None else UNKNOWN_OWNER
        self.events.log_lock_denied(file_path, owner)

        if holder is not None and holder.owner == LockOwner.IDE.value:
            if file_path not in self.locks.get_queue():
                self.locks.queue_for_analysis(file_path)
                self.increment_queue()
                self.events.log_event(
                    EventType.ANALYSIS_QUEUED, {"file": file_path, "ide": holder.ide}
                )
                logger.info(f"{holder.ide or 'IDE'} holds a lock, queued {file_path}")
        return False

    def complete_analysis(
        self,
        file_path: str,
        result: str = "ok",
        suggestions: Iterable[dict] = (),
    ) -> list[str]:
        """Finish an analysis started with ``request_analysis``.

        Publishes the findings, updates session counters, releases the lock
        and broadcasts ``idle``.

        Args:
            file_path: File that was analyzed
            result: ok, issues or error
            suggestions: Suggestion payloads (``file`` defaults to file_path)

        Returns:
            Ids of the suggestions created
        """
        self.record_analysis(file_path, result)
        created = []
        try:
            for payload in suggestions:
                data = {"file": file_path, **payload}
                suggestion_id = self.suggestions.create_suggestion(data)
                self.events.log_suggestion_created(suggestion_id, data["file"])
                created.append(suggestion_id)
        finally:
            self.update_stats("analyzed")
            if enum_value(result) == "issues":
                self.update_stats("issues")
            if created:
                self.update_stats("suggestions", len(created))
            if self._mode != CollaborationMode.INDEPENDENT.value:
                self.locks.release_lock(file_path)
            self.broadcast_status(StatusState.IDLE)

        return created

    def replay_queue(self) -> list[str]:
        """Hand back deferred files once no IDE lock is live.

        Returns:
            Files ready for analysis, in the order they were queued
        """
        if self.locks.has_ide_lock():
            logger.debug("IDE lock still live, keeping analysis queue")
            return []

        ready = self.locks.get_and_clear_queue()
        for _ in ready:
            self.decrement_queue()
        if ready:
            logger.info(f"Replaying {len(ready)} deferred analyses")
            self.events.log_event(EventType.QUEUE_REPLAYED, {"files": ready})
        return ready

    def on_queue_ready(self, callback: Callable[[list[str]], None]) -> None:
        """Register a callback receiving replayed files after the IDE releases its lock."""
        self._queue_ready.add(callback)

    def off_queue_ready(self, callback: Callable[[list[str]], None]) -> None:
        self._queue_ready.remove(callback)

    # -------------------------------------------------------------------------
    # Event wiring
    # -------------------------------------------------------------------------

    def _handle_lock_event(self, event: LockEvent) -> None:
        self.events.log_lock_event(event)
        if event.owner == LockOwner.IDE.value and event.type == LockEventType.RELEASED:
            ready = self.replay_queue()
            if ready:
                self._queue_ready.emit(ready)

    def _handle_consumption(self, event: ConsumptionEvent) -> None:
        self.events.log_consumption(event)

    def on_ide_activity(self, callback: Callable[[IDEActivity], None]) -> None:
        """Register a callback for changes in the detected IDE's status files."""
        self._activity.add(callback)

    def off_ide_activity(self, callback: Callable[[IDEActivity], None]) -> None:
        self._activity.remove(callback)

    def handle_ide_activity_event(self, event_type: str, path: Path) -> None:
        """React to a filesystem event in the detected IDE's marker folder."""
        if event_type in _READ_ONLY_EVENTS:
            return
        ide = self._detected_ide
        if ide is None:
            return

        try:
            relative = str(path.relative_to(self.project_root))
        except ValueError:
            relative = str(path)

        activity = IDEActivity(ide=ide.type, action=event_type, file=relative)
        self.events.log_ide_activity(activity)
        self._activity.emit(activity)

    def watch_ide_activity(self) -> bool:
        """Watch the detected IDE's status and lock files.

        Returns:
            True if a watch was started
        """
        ide = self.detected_ide
        if ide is None:
            return False

        names = {IDE_LOCK_NAME}
        marker = get_marker(ide.type)
        if marker is not None and marker.status_file:
            names.add(marker.status_file)

        return self._activity_watcher.watch(
            Path(ide.configPath), self.handle_ide_activity_event, names=sorted(names)
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Detect the IDE and start every watch."""
        if self._started:
            return
        ide = self.detect_ide()
        if ide:
            logger.info(f"Collaborating with {ide.type} ({self._mode} mode)")
        else:
            logger.info(f"No IDE detected ({self._mode} mode)")

        self.locks.watch_ide_locks()
        self.watch_ide_activity()
        self.suggestions.watch_for_consumption()
        self.broadcast_status(StatusState.IDLE)
        self._started = True

    def stop(self) -> None:
        """Stop every watch. Idempotent."""
        self.locks.stop_watching()
        self.suggestions.stop_watching()
        self._activity_watcher.stop()
        self._started = False

    def __enter__(self) -> "Coordinator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
