"""
CodeMind Collaboration - Events
===============================

Internal event types delivered to registered listeners, and the append-only
event log kept under ``.codemind/events.log`` for audit and debugging.
"""

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional, Any, Callable
from datetime import datetime
from enum import Enum
import logging

from state import get_timestamp, utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event types written to the event log."""

    # Lock events
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    LOCK_DENIED = "LOCK_DENIED"
    LOCK_RELEASED = "LOCK_RELEASED"
    LOCK_YIELDED = "LOCK_YIELDED"
    IDE_LOCK_CHANGED = "IDE_LOCK_CHANGED"

    # Suggestions
    SUGGESTION_CREATED = "SUGGESTION_CREATED"
    SUGGESTION_CONSUMED = "SUGGESTION_CONSUMED"
    SUGGESTIONS_CLEANED = "SUGGESTIONS_CLEANED"

    # Coordinator
    MODE_CHANGED = "MODE_CHANGED"
    ANALYSIS_QUEUED = "ANALYSIS_QUEUED"
    QUEUE_REPLAYED = "QUEUE_REPLAYED"
    IDE_ACTIVITY = "IDE_ACTIVITY"


class LockEventType(str, Enum):
    ACQUIRED = "acquired"
    RELEASED = "released"
    # Explicit cooperative release after racing the IDE for a file
    YIELDED = "yielded"


@dataclass(frozen=True)
class LockEvent:
    """A lock transition observed or caused by the lock manager."""

    type: LockEventType
    owner: str
    filePath: str


@dataclass(frozen=True)
class ConsumptionEvent:
    """A suggestion was consumed (explicitly or by inferred external read)."""

    suggestionId: str
    consumedBy: str


@dataclass(frozen=True)
class IDEActivity:
    """Something changed in the IDE's marker folder."""

    ide: str
    action: str
    file: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


class ListenerList:
    """Registered callbacks, each invocation isolated from the others."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Callable[[Any], None]] = []

    def add(self, callback: Callable[[Any], None]) -> None:
        self._listeners.append(callback)

    def remove(self, callback: Callable[[Any], None]) -> None:
        """Unregister a callback (no-op if it was never registered)."""
        if callback in self._listeners:
            self._listeners.remove(callback)

    def emit(self, event: Any) -> None:
        """Deliver an event to every listener.

        A listener that raises is logged and skipped; the rest still run.
        """
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {self.name} callback: {e}", exc_info=True)

    def __len__(self) -> int:
        return len(self._listeners)


@dataclass
class Event:
    """A single event in the log."""

    timestamp: str
    type: str
    data: dict[str, Any]

    def to_json_line(self) -> str:
        """Convert to JSON line for logging."""
        return json.dumps(asdict(self))


class EventLogger:
    """Append-only event logger for one project."""

    def __init__(self, log_path: Path):
        """Initialize event logger.

        Args:
            log_path: Path to events log file
        """
        self.log_path = log_path

    def log_event(self, event_type: str | EventType, data: dict[str, Any]) -> None:
        """Log an event to the append-only log.

        The audit trail is best effort: a write failure is logged, never raised.

        Args:
            event_type: Type of event (EventType enum or string)
            data: Additional event data
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(timestamp=get_timestamp(), type=event_type, data=data)

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(event.to_json_line())
                f.write("\n")
        except OSError as e:
            logger.error(f"Failed to append event {event_type}: {e}")
            return

        logger.debug(f"Logged event: {event_type}")

    def log_lock_event(self, event: LockEvent) -> None:
        """Log a lock transition.

        Args:
            event: LockEvent from the lock manager
        """
        event_type = {
            LockEventType.ACQUIRED: EventType.LOCK_ACQUIRED,
            LockEventType.RELEASED: EventType.LOCK_RELEASED,
            LockEventType.YIELDED: EventType.LOCK_YIELDED,
        }[event.type]
        if event.owner != "codemind":
            event_type = EventType.IDE_LOCK_CHANGED
        self.log_event(
            event_type,
            {"type": event.type.value, "owner": event.owner, "filePath": event.filePath},
        )

    def log_lock_denied(self, file_path: str, owner: str) -> None:
        self.log_event(EventType.LOCK_DENIED, {"filePath": file_path, "owner": owner})

    def log_consumption(self, event: ConsumptionEvent) -> None:
        self.log_event(
            EventType.SUGGESTION_CONSUMED,
            {"suggestionId": event.suggestionId, "consumedBy": event.consumedBy},
        )

    def log_suggestion_created(self, suggestion_id: str, file_path: str) -> None:
        self.log_event(
            EventType.SUGGESTION_CREATED, {"suggestionId": suggestion_id, "file": file_path}
        )

    def log_mode_changed(self, old_mode: str, new_mode: str) -> None:
        """Log a collaboration mode transition.

        Args:
            old_mode: Mode before the change
            new_mode: Mode after the change
        """
        self.log_event(EventType.MODE_CHANGED, {"from": old_mode, "to": new_mode})

    def log_ide_activity(self, activity: IDEActivity) -> None:
        self.log_event(
            EventType.IDE_ACTIVITY,
            {"ide": activity.ide, "action": activity.action, "file": activity.file},
        )


def read_events(log_path: Path, limit: Optional[int] = None) -> list[Event]:
    """Read events from log file.

    Args:
        log_path: Path to events log
        limit: Maximum number of events to read (most recent kept)

    Returns:
        List of Event objects (empty if file doesn't exist)
    """
    if not log_path.exists():
        return []

    events = []

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue

                try:
                    data = json.loads(line)
                    events.append(Event(**data))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping malformed event log line: {e}")

        if limit and len(events) > limit:
            events = events[-limit:]

        return events

    except OSError as e:
        logger.error(f"Error reading event log: {e}")
        return []
