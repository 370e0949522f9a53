"""
Shared Record Schema
====================

Canonical shapes of every JSON record exchanged with IDE agents through the
filesystem. Keys are camelCase on disk so non-Python agents can read them.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from state import format_timestamp, parse_timestamp


class LockOwner(str, Enum):
    """Who holds a lock record."""

    CODEMIND = "codemind"
    IDE = "ide"


class SuggestionType(str, Enum):
    """Kind of finding a suggestion carries."""

    FIX = "fix"
    IMPROVEMENT = "improvement"
    WARNING = "warning"


class CollaborationMode(str, Enum):
    """How aggressively CodeMind defers to a co-resident IDE agent."""

    PASSIVE = "passive"
    ACTIVE = "active"
    INDEPENDENT = "independent"


class SuggestionFormat(str, Enum):
    """On-disk encoding for published suggestions."""

    JSON = "json"
    MARKDOWN = "markdown"


class StatusState(str, Enum):
    """What CodeMind is doing, as broadcast in status.json."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    FIXING = "fixing"


class AnalysisResult(str, Enum):
    """Outcome of the most recent analysis."""

    OK = "ok"
    ISSUES = "issues"
    ERROR = "error"


VALID_MODES = [m.value for m in CollaborationMode]
VALID_SUGGESTION_FORMATS = [f.value for f in SuggestionFormat]
VALID_SUGGESTION_TYPES = [t.value for t in SuggestionType]
VALID_STATUS_STATES = [s.value for s in StatusState]
VALID_ANALYSIS_RESULTS = [r.value for r in AnalysisResult]


def enum_value(value: Any) -> Any:
    """Unwrap a str Enum member to its plain value."""
    if isinstance(value, Enum):
        return value.value
    return value


# =============================================================================
# Lock records
# =============================================================================

@dataclass
class LockFileEntry:
    """One file claimed inside a lock record."""

    path: str
    operation: str
    since: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockFileEntry":
        return cls(
            path=data["path"],
            operation=data.get("operation", "unknown"),
            since=data.get("since", ""),
        )


@dataclass
class LockFileData:
    """Contents of a lock record file.

    Fields:
        owner: "codemind" for our own record, anything else for IDE records
        pid: Holder's process id (diagnostic only)
        timestamp: Last write time, ISO 8601
        files: Every path claimed by the owner, in claim order
    """

    owner: str
    pid: int
    timestamp: str
    files: list[LockFileEntry] = field(default_factory=list)

    def paths(self) -> list[str]:
        return [entry.path for entry in self.files]

    def find(self, file_path: str) -> Optional[LockFileEntry]:
        return next((e for e in self.files if e.path == file_path), None)

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "pid": self.pid,
            "timestamp": self.timestamp,
            "files": [entry.to_dict() for entry in self.files],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockFileData":
        """Create from dictionary.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        if not isinstance(data, dict):
            raise TypeError(f"Lock record must be an object, got {type(data).__name__}")
        files = data.get("files") or []
        return cls(
            owner=str(data["owner"]),
            pid=int(data.get("pid", 0)),
            timestamp=data["timestamp"],
            files=[LockFileEntry.from_dict(f) for f in files],
        )


@dataclass
class LockInfo:
    """Answer to "who holds this file?"."""

    owner: str
    filePath: str
    timestamp: datetime
    operation: str
    # IDE type for IDE-owned locks
    ide: Optional[str] = None


# =============================================================================
# Suggestions
# =============================================================================

@dataclass
class Suggestion:
    """A persisted analysis finding.

    ``context`` and ``fix`` are opaque to the store and kept verbatim.
    """

    id: str
    timestamp: datetime
    file: str
    type: str
    confidence: float
    description: str
    context: dict = field(default_factory=dict)
    fix: Optional[dict] = None
    consumed: bool = False
    consumedBy: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "file": self.file,
            "type": self.type,
            "confidence": self.confidence,
            "description": self.description,
            "context": self.context,
            "consumed": self.consumed,
        }
        if self.fix is not None:
            data["fix"] = self.fix
        if self.consumedBy is not None:
            data["consumedBy"] = self.consumedBy
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Suggestion":
        """Create from dictionary, reconstituting the timestamp.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            file=data["file"],
            type=data["type"],
            confidence=float(data["confidence"]),
            description=data.get("description", ""),
            context=data.get("context") or {},
            fix=data.get("fix"),
            consumed=bool(data.get("consumed", False)),
            consumedBy=data.get("consumedBy"),
        )


# =============================================================================
# Status snapshot
# =============================================================================

@dataclass
class SessionStats:
    analyzed: int = 0
    issues: int = 0
    suggestions: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LastAnalysis:
    file: str
    result: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StatusFileData:
    """Snapshot written to ``.codemind/status.json`` for IDE agents."""

    status: str
    timestamp: str
    queueLength: int
    mode: str
    sessionStats: SessionStats
    currentFile: Optional[str] = None
    lastAnalysis: Optional[LastAnalysis] = None

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "timestamp": self.timestamp,
            "currentFile": self.currentFile,
            "queueLength": self.queueLength,
            "mode": self.mode,
            "sessionStats": self.sessionStats.to_dict(),
        }
        if self.lastAnalysis is not None:
            data["lastAnalysis"] = self.lastAnalysis.to_dict()
        return data
