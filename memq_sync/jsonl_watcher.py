"""
JSONL file watcher for Claude Code session logs.

Monitors ``<projects>/<project>/<session>.jsonl`` for files being added,
appended to and removed, and reports each settled change as a FileEvent.
The observer backend is watchdog's native Observer or its PollingObserver
(containers, network volumes); everything above this module sees the same
events either way.

The watcher never dies on a filesystem problem. A missing projects directory
is logged and probed for until it shows up; errors while observing are logged
and the watch carries on.
"""

import asyncio
import fnmatch
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Iterable, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from .config import ALWAYS_IGNORED, WatchConfig
from .errors import DirectoryScanError, WatcherTeardownError
from .jsonl_parser import JSONL_SUFFIX, UNKNOWN, extract_project_id, extract_session_id
from .write_stabilizer import FileEventKind, WriteStabilizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEvent:
    """A settled change to one session file."""
    kind: FileEventKind
    path: Path
    session_id: str
    project_id: str


FileEventCallback = Callable[[FileEvent], None]


def _is_ignored(name: str, relative: str, patterns: Iterable[str]) -> bool:
    if name.startswith("."):
        return True
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(relative, pattern):
            return True
    return False


def list_jsonl_files(projects_path: Union[str, Path], ignored: Iterable[str] = ()) -> List[Path]:
    """
    List every session file currently under ``projects_path``.

    Used for the startup backfill and for recovery scans. Unreadable
    directories are logged and skipped; this never raises.
    """
    base_path = Path(projects_path)
    patterns = list(ALWAYS_IGNORED) + list(ignored)
    jsonl_files: List[Path] = []

    try:
        project_dirs = sorted(base_path.iterdir())
    except OSError as e:
        logger.error(str(DirectoryScanError(base_path, str(e))))
        return jsonl_files

    for project_dir in project_dirs:
        if project_dir.name.startswith("."):
            continue
        try:
            if not project_dir.is_dir():
                continue
            for jsonl_file in sorted(project_dir.iterdir()):
                relative = f"{project_dir.name}/{jsonl_file.name}"
                if not jsonl_file.name.endswith(JSONL_SUFFIX):
                    continue
                if _is_ignored(jsonl_file.name, relative, patterns):
                    continue
                if jsonl_file.is_file():
                    jsonl_files.append(jsonl_file)
        except OSError as e:
            logger.warning(str(DirectoryScanError(project_dir, str(e))))
            continue

    logger.info(f"Initial scan of {base_path} found {len(jsonl_files)} session files")
    return jsonl_files


def validate_jsonl_file(file_path: Union[str, Path]) -> bool:
    """Check that a file exists, is a non-empty regular file and is a .jsonl."""
    path = Path(file_path)
    try:
        stat = path.stat()
    except OSError as e:
        logger.warning(f"File validation error for {path}: {e}")
        return False

    if not path.is_file() or stat.st_size == 0:
        logger.warning(f"File validation failed for {path}: is_file={path.is_file()}, size={stat.st_size}")
        return False

    if not path.name.endswith(JSONL_SUFFIX):
        logger.warning(f"File validation failed for {path}: not a .jsonl file")
        return False

    return True


class _JSONLEventHandler(FileSystemEventHandler):
    """Translates raw watchdog events into stabilizer input."""

    def __init__(self, watcher: "JSONLWatcher"):
        super().__init__()
        self.watcher = watcher

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            super().dispatch(event)
        except Exception as e:
            logger.error(f"Error handling {event.event_type} event for {event.src_path}: {e}")

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self.watcher._on_directory_added(_as_path(event.src_path))
        else:
            self.watcher._on_write(_as_path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher._on_write(_as_path(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self.watcher._on_directory_removed(_as_path(event.src_path))
        else:
            self.watcher._on_remove(_as_path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self.watcher._on_directory_removed(_as_path(event.src_path))
            self.watcher._on_directory_added(_as_path(event.dest_path))
        else:
            # Atomic rewrites land here: temp file renamed onto the session file
            self.watcher._on_remove(_as_path(event.src_path))
            self.watcher._on_write(_as_path(event.dest_path))


def _as_path(raw_path: Union[str, bytes]) -> Path:
    return Path(os.fsdecode(raw_path))


class JSONLWatcher:
    """Watches Claude Code JSONL session files for changes."""

    def __init__(
        self,
        config: Optional[WatchConfig] = None,
        callback: Optional[FileEventCallback] = None,
        observer_factory: Optional[Callable[[], BaseObserver]] = None,
    ):
        self.config = config or WatchConfig()
        self.projects_dir = self.config.projects_path.absolute()
        self._callbacks: List[FileEventCallback] = [callback] if callback else []
        self._observer_factory = observer_factory

        self._stabilizer = WriteStabilizer(
            self._deliver,
            stability_threshold_ms=self.config.stability_threshold_ms,
            check_interval_ms=self.config.write_poll_interval_ms,
        )
        self._handler = _JSONLEventHandler(self)
        self._observer: Optional[BaseObserver] = None
        self._watch: Optional[ObservedWatch] = None
        self._install_lock = threading.Lock()
        self._probe_stop = threading.Event()
        self._probe_thread: Optional[threading.Thread] = None
        self._root_missing_logged = False
        self._started = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def add_callback(self, callback: FileEventCallback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: FileEventCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _deliver(self, kind: FileEventKind, path: Path) -> None:
        event = FileEvent(
            kind=kind,
            path=path,
            session_id=extract_session_id(path),
            project_id=self.project_id_for(path),
        )
        logger.debug(f"File event: {kind.value} {path}")
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in file event callback for {path}: {e}")

    def project_id_for(self, path: Path) -> str:
        try:
            parts = path.relative_to(self.projects_dir).parts
        except ValueError:
            return extract_project_id(path)
        return parts[0] if len(parts) == 2 else UNKNOWN

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def is_relevant(self, path: Path) -> bool:
        """True for ``<project>/<name>.jsonl`` directly under the root, not ignored."""
        try:
            relative = path.relative_to(self.projects_dir)
        except ValueError:
            return False

        parts = relative.parts
        if len(parts) != 2 or not path.name.endswith(JSONL_SUFFIX):
            return False
        if any(part.startswith(".") for part in parts):
            return False
        return not _is_ignored(path.name, relative.as_posix(), self.config.ignore_patterns)

    # ------------------------------------------------------------------
    # Raw event handling (observer thread)
    # ------------------------------------------------------------------

    def _on_write(self, path: Path) -> None:
        if self.is_relevant(path):
            self._stabilizer.record_write(path)

    def _on_remove(self, path: Path) -> None:
        if self.is_relevant(path):
            self._stabilizer.record_remove(path)

    def _on_directory_added(self, directory: Path) -> None:
        # A project directory moved in whole brings files no event announced
        try:
            relative = directory.relative_to(self.projects_dir)
        except ValueError:
            return
        if len(relative.parts) != 1 or directory.name.startswith("."):
            return
        try:
            entries = list(directory.iterdir())
        except OSError as e:
            logger.warning(str(DirectoryScanError(directory, str(e))))
            return
        for entry in entries:
            self._on_write(entry)

    def _on_directory_removed(self, directory: Path) -> None:
        for path in self._stabilizer.known_files:
            if directory in path.parents:
                self._stabilizer.record_remove(path)

    # ------------------------------------------------------------------
    # Watch lifecycle
    # ------------------------------------------------------------------

    def _create_observer(self) -> BaseObserver:
        if self._observer_factory is not None:
            return self._observer_factory()
        if self.config.polling_enabled:
            return PollingObserver(timeout=self.config.poll_interval_ms / 1000.0)
        return Observer()

    def _try_install(self) -> bool:
        """Schedule the recursive watch if the root is there. Never raises."""
        with self._install_lock:
            if self._watch is not None:
                return True
            if not self.projects_dir.is_dir():
                if not self._root_missing_logged:
                    logger.warning(f"Claude projects directory not found: {self.projects_dir}")
                    self._root_missing_logged = True
                return False
            try:
                self._watch = self._observer.schedule(self._handler, str(self.projects_dir), recursive=True)
            except OSError as e:
                logger.error(str(DirectoryScanError(self.projects_dir, str(e))))
                return False

            self._root_missing_logged = False
            logger.info(f"Watching {self.projects_dir} ({'polling' if self.config.polling_enabled else 'native'})")
            return True

    def _uninstall(self) -> None:
        with self._install_lock:
            if self._watch is None:
                return
            try:
                self._observer.unschedule(self._watch)
            except Exception as e:
                # The emitter may already have stopped on its own
                logger.debug(f"Unschedule of {self.projects_dir} failed: {e}")
            self._watch = None

        for path in self._stabilizer.known_files:
            self._stabilizer.record_remove(path)

    def _scan(self, announce: bool) -> int:
        files = list_jsonl_files(self.projects_dir, self.config.ignored)
        for path in files:
            if announce:
                self._stabilizer.announce(path)
            else:
                self._stabilizer.mark_known(path)
        return len(files)

    def _probe_root(self) -> None:
        """Install the watch when the root appears, drop it when it vanishes."""
        exists = self.projects_dir.is_dir()
        if self._watch is None and exists:
            if self._try_install():
                count = self._scan(announce=True)
                logger.info(f"Projects directory became available with {count} session files")
        elif self._watch is not None and not exists:
            logger.warning(f"Claude projects directory disappeared: {self.projects_dir}")
            self._uninstall()

    def _run_probe(self) -> None:
        interval = max(self.config.binary_interval_ms, 1) / 1000.0
        while not self._probe_stop.wait(interval):
            try:
                self._probe_root()
            except Exception as e:
                logger.error(f"Error probing {self.projects_dir}: {e}")

    def start(self, callback: Optional[FileEventCallback] = None) -> None:
        """
        Start watching.

        Files already present are announced as ``add`` events unless
        ``skip_initial`` is set. A missing projects directory is not an error.
        """
        if callback is not None:
            self.add_callback(callback)
        if self._started:
            logger.warning("JSONL watcher already started")
            return

        logger.info(f"Starting JSONL watcher for {self.projects_dir}")
        self._started = True
        self._observer = self._create_observer()
        self._observer.start()
        self._stabilizer.start()

        if self._try_install():
            self._scan(announce=not self.config.skip_initial)

        self._probe_thread = threading.Thread(target=self._run_probe, name="memq-root-probe", daemon=True)
        self._probe_thread.start()

    def stop(self) -> None:
        """
        Stop watching and release the observer.

        A second call does nothing. A failure while closing the observer is
        raised as WatcherTeardownError.
        """
        if not self._started or self._stopped:
            logger.warning("JSONL watcher stop called but not running")
            return

        logger.info("Stopping JSONL watcher")
        self._stopped = True
        self._probe_stop.set()
        if self._probe_thread is not None:
            self._probe_thread.join()
        self._stabilizer.stop()

        try:
            self._observer.stop()
            self._observer.join()
        except Exception as e:
            logger.error(f"Error stopping JSONL watcher: {e}")
            raise WatcherTeardownError(f"Failed to stop watcher: {e}") from e

        logger.info("JSONL watcher stopped")

    @property
    def is_active(self) -> bool:
        return self._started and not self._stopped

    async def watch_for_changes(self) -> AsyncGenerator[FileEvent, None]:
        """Yield file events on the running event loop. Starts the watcher if needed."""
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[FileEvent]" = asyncio.Queue()

        def enqueue(event: FileEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        self.add_callback(enqueue)
        try:
            if not self._started:
                self.start()
            while True:
                yield await queue.get()
        finally:
            self.remove_callback(enqueue)

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self.is_active,
            "projects_dir": str(self.projects_dir),
            "watch_installed": self._watch is not None,
            "polling": self.config.polling_enabled,
            "pending_files": self._stabilizer.pending_count,
            "tracked_files": len(self._stabilizer.known_files),
        }
