"""
CodeMind Collaboration - Terminal Display
=========================================

Plain-text rendering for the CLI: collaboration status, detected IDE,
lock holders and suggestion lists.
"""

import logging
from typing import Optional

from coordinator import CollaborationStatus
from ide_detect import IDEInfo
from schema import LockInfo, SessionStats, Suggestion
from state import format_timestamp

logger = logging.getLogger(__name__)

WIDTH = 60


def format_ide(ide: Optional[IDEInfo]) -> str:
    """Format a detected IDE for display.

    Args:
        ide: Detection result (None when no IDE was found)

    Returns:
        One-line description
    """
    if ide is None:
        return "none"
    text = ide.type
    if ide.version:
        text += f" {ide.version}"
    if ide.features:
        text += f" [{', '.join(ide.features)}]"
    return text


def format_lock(file_path: str, info: Optional[LockInfo]) -> str:
    """Format a lock holder for display."""
    if info is None:
        return f"  ○ {file_path}: unlocked"
    holder = info.ide or info.owner
    since = format_timestamp(info.timestamp)
    return f"  ● {file_path}: {holder} ({info.operation}, since {since})"


def format_suggestion(suggestion: Suggestion) -> str:
    """Format a suggestion for a list.

    Args:
        suggestion: Suggestion to format

    Returns:
        Formatted suggestion string
    """
    type_symbol = {
        "fix": "✕",
        "improvement": "◐",
        "warning": "!",
    }.get(suggestion.type, "?")

    state = f"consumed by {suggestion.consumedBy}" if suggestion.consumed else "pending"
    return (
        f"  {type_symbol} [{suggestion.id}] {suggestion.file} "
        f"({suggestion.confidence:.2f}) {suggestion.description} - {state}"
    )


def format_stats(stats: SessionStats) -> str:
    return f"{stats.analyzed} analyzed, {stats.issues} issues, {stats.suggestions} suggestions"


def display_status(status: CollaborationStatus, pending: int) -> None:
    """Display the collaboration status block.

    Args:
        status: Coordinator status snapshot
        pending: Number of unconsumed suggestions
    """
    print("\n" + "=" * WIDTH)
    print("  CODEMIND COLLABORATION")
    print("=" * WIDTH)
    print(f"  Mode:        {status.mode}")
    print(f"  IDE:         {format_ide(status.ideDetected)}")
    print(f"  IDE editing: {'yes' if status.isIDEEditing else 'no'}")
    print(f"  Queued:      {status.queuedAnalyses}")
    print(f"  Pending:     {pending} suggestion(s)")
    print(f"  Last sync:   {format_timestamp(status.lastSync)}")
    print("=" * WIDTH)


def display_suggestions(suggestions: list[Suggestion], title: str = "SUGGESTIONS") -> None:
    print(f"\n  {title}")
    print("  " + "-" * (WIDTH - 4))

    if not suggestions:
        print("  No suggestions")
        return

    for suggestion in suggestions:
        print(format_suggestion(suggestion))


def display_suggestion(suggestion: Suggestion) -> None:
    """Display one suggestion with its context and fix."""
    print(format_suggestion(suggestion))
    print(f"    created: {format_timestamp(suggestion.timestamp)}")
    if suggestion.context:
        for key, value in suggestion.context.items():
            print(f"    {key}: {value}")
    if suggestion.fix:
        print(f"    fix: {suggestion.fix}")
