"""
Filesystem Watching
===================

Thin wrapper over watchdog used by the lock manager, the suggestion store and
the coordinator. One observer per owner, any number of watched directories.
"""

import os
import threading
from pathlib import Path
from typing import Optional, Callable, Iterable

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

import logging

logger = logging.getLogger(__name__)

# (event_type, path) where event_type is watchdog's: created, deleted,
# modified, moved, opened, closed, closed_no_write
WatchCallback = Callable[[str, Path], None]


class FilteredEventHandler(FileSystemEventHandler):
    """
    Forwards file events in one directory, optionally filtered by file name.
    """

    def __init__(
        self,
        directory: Path,
        callback: WatchCallback,
        names: Optional[Iterable[str]] = None,
        suffix: Optional[str] = None,
    ):
        """
        Args:
            directory: Directory being watched
            callback: Receives (event_type, path) for each matching event
            names: Only forward events for these file names
            suffix: Only forward events for names ending with this suffix
        """
        self.directory = directory
        self.callback = callback
        self.names = set(names) if names is not None else None
        self.suffix = suffix

    def _matches(self, path: str) -> bool:
        name = os.path.basename(path)
        if self.names is not None and name not in self.names:
            return False
        if self.suffix is not None and not name.endswith(self.suffix):
            return False
        return True

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return

        # Atomic writers create a temp file and rename it over the target
        path = getattr(event, "dest_path", "") or event.src_path
        if event.event_type == "moved" and not self._matches(path):
            path = event.src_path
            event_type = "deleted"
        else:
            event_type = event.event_type

        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not self._matches(path):
            return

        try:
            self.callback(event_type, Path(path))
        except Exception as e:
            logger.error(f"Error in watch callback for {path}: {e}", exc_info=True)


class DirectoryWatcher:
    """
    Owns one watchdog observer covering any number of directories.
    """

    def __init__(self, name: str = "watcher"):
        self.name = name
        self._observer: Optional[Observer] = None
        self._watched: list[Path] = []
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._observer is not None

    @property
    def watched(self) -> list[Path]:
        return list(self._watched)

    def watch(
        self,
        directory: Path,
        callback: WatchCallback,
        names: Optional[Iterable[str]] = None,
        suffix: Optional[str] = None,
    ) -> bool:
        """Start watching a directory (non-recursive).

        Args:
            directory: Existing directory to watch
            callback: Receives (event_type, path)
            names: Optional file name filter
            suffix: Optional file suffix filter

        Returns:
            True if the watch was scheduled, False otherwise
        """
        if not directory.is_dir():
            logger.debug(f"{self.name}: {directory} does not exist, not watching")
            return False

        with self._lock:
            try:
                if self._observer is None:
                    self._observer = Observer()
                    self._observer.daemon = True
                    self._observer.start()
                handler = FilteredEventHandler(directory, callback, names=names, suffix=suffix)
                self._observer.schedule(handler, str(directory), recursive=False)
                self._watched.append(directory)
                logger.info(f"{self.name}: watching {directory}")
                return True
            except Exception as e:
                logger.error(f"{self.name}: failed to watch {directory}: {e}")
                return False

    def stop(self) -> None:
        """Stop every watch. Safe to call repeatedly and from any state."""
        with self._lock:
            observer = self._observer
            self._observer = None
            self._watched = []

        if observer is None:
            return

        try:
            observer.stop()
            if observer.is_alive() and observer is not threading.current_thread():
                observer.join(timeout=3)
            logger.debug(f"{self.name}: stopped watchdog observer")
        except Exception as e:
            logger.warning(f"{self.name}: error stopping observer: {e}")
