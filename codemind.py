#!/usr/bin/env python3
"""
CodeMind Collaboration CLI
==========================

Inspect and drive IDE collaboration for a project from the terminal.

Usage:
    codemind status
    codemind detect
    codemind mode [passive|active|independent]
    codemind lock acquire|release|check <file>
    codemind suggest add|list|show|consume|cleanup
    codemind config show|get|set|validate
    codemind watch
"""

import argparse
import json
import re
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from importlib.metadata import version, PackageNotFoundError

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

import logging

import cockpit
from config import ConfigValidationError
from coordinator import Coordinator
from events import EventType
from schema import StatusState, VALID_MODES, VALID_SUGGESTION_TYPES
from state import CODEMIND_DIR, SESSION_LOG_NAME
from suggestions import SuggestionNotFoundError

# Logger for this module
logger = logging.getLogger(__name__)

DEFAULT_WATCH_INTERVAL = 5.0


def get_version() -> str:
    """Get version from package metadata or fallback to reading pyproject.toml."""
    try:
        return version("codemind-collab")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).parent / "pyproject.toml"
        if pyproject_path.exists():
            content = pyproject_path.read_text()
            match = re.search(r'^version\s*=\s*["\']([^"\']+)["\']', content, re.MULTILINE)
            if match:
                return match.group(1)
        return "unknown"


class JSONFormatter(logging.Formatter):
    """Format logs as JSON lines."""
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.ERROR and record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(data_dir: Path, verbose: bool = False) -> None:
    """Configure structured logging to file and readable logging to console.

    Command output goes to stdout, so console logging uses stderr.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # 1. File Handler (JSONL) - captures everything
    log_file = data_dir / SESSION_LOG_NAME
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        file_handler = None
        print(f"Warning: session log disabled ({e})", file=sys.stderr)
    if file_handler is not None:
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # 2. Console Handler (Readable)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    root_logger.addHandler(console_handler)

    logging.debug(f"Logging initialized. Writing to {log_file}")


def parse_value(raw: str) -> Any:
    """Parse a config value from the command line (JSON, else plain string)."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


# =============================================================================
# Commands
# =============================================================================

def handle_status(args: argparse.Namespace) -> None:
    """Display collaboration status (read-only)."""
    try:
        coordinator = Coordinator(args.project)
        status = coordinator.get_status()
        pending = len(coordinator.suggestions.get_pending_suggestions())

        if args.json:
            print(json.dumps({**status.to_dict(), "pendingSuggestions": pending}, indent=2))
        else:
            cockpit.display_status(status, pending)

    except Exception as e:
        logger.debug("status failed", exc_info=True)
        fail(str(e))


def handle_detect(args: argparse.Namespace) -> None:
    """Print the detected IDE as JSON (null when none)."""
    try:
        coordinator = Coordinator(args.project)
        ide = coordinator.detect_ide()
        print(json.dumps(ide.to_dict() if ide else None, indent=2))
    except Exception as e:
        fail(str(e))


def handle_mode(args: argparse.Namespace) -> None:
    """Show the collaboration mode, or persist a new one."""
    try:
        coordinator = Coordinator(args.project)
        if args.mode is None:
            print(coordinator.get_collaboration_mode())
            return

        coordinator.set_collaboration_mode(args.mode, persist=True)
        print(f"Collaboration mode set to {args.mode}")

    except (ValueError, ConfigValidationError) as e:
        fail(str(e))


def handle_lock(args: argparse.Namespace) -> None:
    """Acquire, release or inspect a file lock."""
    try:
        coordinator = Coordinator(args.project)
        locks = coordinator.locks

        if args.lock_action == "acquire":
            if locks.acquire_lock(args.file, args.operation):
                print(f"Locked {args.file} ({args.operation})")
                return
            holder = locks.is_locked(args.file)
            owner = (holder.ide or holder.owner) if holder else "unknown"
            coordinator.events.log_lock_denied(args.file, owner)
            fail(f"{args.file} is locked by {owner}")

        elif args.lock_action == "release":
            locks.release_lock(args.file)
            print(f"Released {args.file}")

        else:
            print(cockpit.format_lock(args.file, locks.is_locked(args.file)))

    except OSError as e:
        fail(str(e))


def handle_suggest(args: argparse.Namespace) -> None:
    """Manage the suggestion queue."""
    try:
        coordinator = Coordinator(args.project)
        store = coordinator.suggestions

        if args.suggest_action == "add":
            context = json.loads(args.context) if args.context else {}
            fix = json.loads(args.fix) if args.fix else None
            suggestion_id = store.create_suggestion({
                "file": args.file,
                "type": args.type,
                "confidence": args.confidence,
                "description": args.description,
                "context": context,
                "fix": fix,
            })
            coordinator.events.log_suggestion_created(suggestion_id, args.file)
            print(suggestion_id)

        elif args.suggest_action == "list":
            if args.all:
                suggestions = store.get_all_suggestions()
            else:
                suggestions = store.get_pending_suggestions()
            if args.json:
                print(json.dumps([s.to_dict() for s in suggestions], indent=2))
            else:
                cockpit.display_suggestions(
                    suggestions, "ALL SUGGESTIONS" if args.all else "PENDING SUGGESTIONS"
                )

        elif args.suggest_action == "show":
            suggestion = store.get_suggestion(args.id)
            if suggestion is None:
                fail(f"Suggestion '{args.id}' not found.")
            cockpit.display_suggestion(suggestion)

        elif args.suggest_action == "consume":
            store.mark_consumed(args.id, args.by)
            print(f"Marked {args.id} consumed")

        elif args.suggest_action == "cleanup":
            max_age = None
            if args.max_age_hours is not None:
                max_age = int(args.max_age_hours * 3_600_000)
            removed = store.cleanup_old_suggestions(max_age)
            coordinator.events.log_event(EventType.SUGGESTIONS_CLEANED, {"removed": removed})
            print(f"Removed {removed} suggestion(s)")

    except SuggestionNotFoundError as e:
        fail(str(e))
    except (ValueError, OSError) as e:
        fail(str(e))


def handle_config(args: argparse.Namespace) -> None:
    """Show, read, write or validate configuration."""
    try:
        coordinator = Coordinator(args.project)
        store = coordinator.config

        if args.config_action == "show":
            print(json.dumps(store.get_effective_config(), indent=2))

        elif args.config_action == "get":
            value = store.get(args.key)
            if value is None:
                fail(f"Unknown config key '{args.key}'")
            print(json.dumps(value, indent=2))

        elif args.config_action == "set":
            store.set(args.key, parse_value(args.value))
            print(f"Set {args.key}")

        elif args.config_action == "validate":
            result = store.validate_config(store.get_effective_config())
            if result.valid:
                print("Config is valid")
                return
            for error in result.errors:
                print(f"  ✕ {error}", file=sys.stderr)
            fail(f"{len(result.errors)} config error(s)")

    except ConfigValidationError as e:
        for error in e.errors:
            print(f"  ✕ {error}", file=sys.stderr)
        fail("config not saved")
    except (ValueError, OSError) as e:
        fail(str(e))


def handle_watch(args: argparse.Namespace) -> None:
    """Run a collaboration session until Ctrl+C.

    Starts every coordinator watch, then periodically polls for consumed
    suggestions, replays deferred analyses and refreshes the status file.
    """
    coordinator = Coordinator(args.project)
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    def on_queue_ready(files: list[str]) -> None:
        logger.info(f"IDE released its lock; ready to analyze: {', '.join(files)}")

    def on_activity(activity) -> None:
        logger.info(f"{activity.ide}: {activity.action} {activity.file or ''}".rstrip())

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGINT, signal_handler)

    coordinator.on_queue_ready(on_queue_ready)
    coordinator.on_ide_activity(on_activity)

    try:
        with coordinator:
            removed = coordinator.suggestions.cleanup_old_suggestions()
            if removed:
                logger.info(f"Removed {removed} expired suggestion(s)")

            print("Session active. Press Ctrl+C to exit.")
            iterations = 0
            while not stop_event.is_set():
                for suggestion_id in coordinator.suggestions.check_consumption():
                    logger.info(f"Suggestion {suggestion_id} consumed by IDE")
                ready = coordinator.replay_queue()
                if ready:
                    on_queue_ready(ready)
                coordinator.broadcast_status(StatusState.IDLE)

                iterations += 1
                if args.iterations is not None and iterations >= args.iterations:
                    break
                stop_event.wait(args.interval)

    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt caught")
    except Exception as e:
        logger.exception("Watch session failed")
        fail(str(e))
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    print("Session stopped.")


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CodeMind IDE collaboration coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", "-V", action="version", version=f"codemind {get_version()}")
    parser.add_argument("--project", "-p", default=".", help="Project root (default: current dir)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug output on the console")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    # STATUS command
    status_parser = subparsers.add_parser("status", help="Display collaboration status")
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")
    status_parser.set_defaults(func=handle_status)

    # DETECT command
    detect_parser = subparsers.add_parser("detect", help="Detect the IDE sharing this project")
    detect_parser.set_defaults(func=handle_detect)

    # MODE command
    mode_parser = subparsers.add_parser("mode", help="Show or set the collaboration mode")
    mode_parser.add_argument("mode", nargs="?", choices=VALID_MODES, default=None,
                             help="New mode (omit to view the current mode)")
    mode_parser.set_defaults(func=handle_mode)

    # LOCK command
    lock_parser = subparsers.add_parser("lock", help="Manage file locks")
    lock_sub = lock_parser.add_subparsers(dest="lock_action", required=True)
    acquire_parser = lock_sub.add_parser("acquire", help="Lock a file for CodeMind")
    acquire_parser.add_argument("file", help="Project-relative file path")
    acquire_parser.add_argument("--operation", default="analyzing",
                                help="Operation recorded in the lock (default: analyzing)")
    release_parser = lock_sub.add_parser("release", help="Release CodeMind's lock on a file")
    release_parser.add_argument("file", help="Project-relative file path")
    check_parser = lock_sub.add_parser("check", help="Show who holds a file")
    check_parser.add_argument("file", help="Project-relative file path")
    lock_parser.set_defaults(func=handle_lock, operation="analyzing")

    # SUGGEST command
    suggest_parser = subparsers.add_parser("suggest", help="Manage suggestions")
    suggest_sub = suggest_parser.add_subparsers(dest="suggest_action", required=True)
    add_parser = suggest_sub.add_parser("add", help="Create a suggestion")
    add_parser.add_argument("--file", required=True, help="File the suggestion is about")
    add_parser.add_argument("--type", required=True, choices=VALID_SUGGESTION_TYPES)
    add_parser.add_argument("--confidence", type=float, default=0.5,
                            help="Confidence between 0 and 1 (clamped)")
    add_parser.add_argument("--description", required=True)
    add_parser.add_argument("--context", default=None, help="Context as a JSON object")
    add_parser.add_argument("--fix", default=None, help="Machine-applicable fix as a JSON object")
    list_parser = suggest_sub.add_parser("list", help="List pending suggestions")
    list_parser.add_argument("--all", action="store_true", help="Include consumed suggestions")
    list_parser.add_argument("--json", action="store_true", help="Print as JSON")
    show_parser = suggest_sub.add_parser("show", help="Show one suggestion")
    show_parser.add_argument("id")
    consume_parser = suggest_sub.add_parser("consume", help="Mark a suggestion consumed")
    consume_parser.add_argument("id")
    consume_parser.add_argument("--by", default=None, help="Consumer name (default: unknown)")
    cleanup_parser = suggest_sub.add_parser("cleanup", help="Delete old suggestions")
    cleanup_parser.add_argument("--max-age-hours", type=float, default=None,
                                help="Maximum age in hours (default: configured retention)")
    suggest_parser.set_defaults(func=handle_suggest, all=False, json=False)

    # CONFIG command
    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_sub = config_parser.add_subparsers(dest="config_action", required=True)
    config_sub.add_parser("show", help="Print the effective config")
    get_parser = config_sub.add_parser("get", help="Print one dotted key")
    get_parser.add_argument("key")
    set_parser = config_sub.add_parser("set", help="Write one dotted key to the project config")
    set_parser.add_argument("key")
    set_parser.add_argument("value", help="JSON value (plain strings need no quotes)")
    config_sub.add_parser("validate", help="Validate the effective config")
    config_parser.set_defaults(func=handle_config)

    # WATCH command
    watch_parser = subparsers.add_parser("watch", help="Run a collaboration session")
    watch_parser.add_argument("--interval", type=float, default=DEFAULT_WATCH_INTERVAL,
                              help=f"Seconds between polls (default: {DEFAULT_WATCH_INTERVAL})")
    watch_parser.add_argument("--iterations", type=int, default=None,
                              help="Stop after this many polls (default: run until Ctrl+C)")
    watch_parser.set_defaults(func=handle_watch)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(Path(args.project).absolute() / CODEMIND_DIR, verbose=args.verbose)

    # Execute the handler
    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
