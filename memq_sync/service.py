"""
Sync service for the memory query daemon.

Wires the JSONL watcher, the parser and the write coordinator together:
every settled file event is parsed, checked and committed to the sink while
holding the global write lock and then the session lock, always in that
order.
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Protocol, Sequence, Union

from .config import SyncConfig
from .errors import MessageValidationError
from .jsonl_parser import extract_project_id, extract_session_id, parse_jsonl_file, validate_message
from .jsonl_watcher import FileEvent, JSONLWatcher, list_jsonl_files, validate_jsonl_file
from .message_types import LineError, Message, ParseOutcome
from .storage import SQLiteMessageSink
from .write_coordinator import WriteCoordinator, write_coordinator
from .write_stabilizer import FileEventKind

logger = logging.getLogger(__name__)

# Number of recent file syncs kept for latency reporting
LATENCY_WINDOW = 100


class MessageSink(Protocol):
    """Storage the service commits into. Only called under the write locks."""

    async def commit_messages(self, session_id: str, project_id: str, messages: Sequence[Message]) -> int:
        ...

    async def remove_session(self, session_id: str) -> None:
        ...


@dataclass
class FileProcessingResult:
    """What happened to one session file."""
    path: Path
    session_id: str
    project_id: str
    outcome: ParseOutcome = field(default_factory=ParseOutcome)
    committed: int = 0
    rejected: int = 0
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncService:
    """Main sync service for the JSONL -> SQLite pipeline."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        sink: Optional[MessageSink] = None,
        coordinator: Optional[WriteCoordinator] = None,
        watcher: Optional[JSONLWatcher] = None,
    ):
        self.config = config or SyncConfig()
        if sink is None:
            sink = SQLiteMessageSink(self.config.db_path, max_retries=self.config.max_retries)
        self.sink = sink
        self.coordinator = coordinator or write_coordinator
        self.watcher = watcher or JSONLWatcher(self.config.watch)
        self.watcher_task: Optional[asyncio.Task] = None
        self.is_running = False

        self.stats = {
            'files_processed': 0,
            'messages_committed': 0,
            'parse_errors': 0,
            'sessions_removed': 0,
            'failures': 0,
        }
        self._sync_durations: Deque[float] = deque(maxlen=LATENCY_WINDOW)

    async def process_file(self, file_path: Union[str, Path], project_id: Optional[str] = None) -> FileProcessingResult:
        """Parse one session file and commit its messages."""
        started = time.perf_counter()
        path = Path(file_path)
        session_id = extract_session_id(path)
        result = FileProcessingResult(
            path=path,
            session_id=session_id,
            project_id=project_id or extract_project_id(path),
        )

        if not validate_jsonl_file(path):
            result.error = f"File validation failed: {path}"
            self.stats['failures'] += 1
            return result

        outcome = parse_jsonl_file(path, session_id, result.project_id)
        result.outcome = outcome

        valid_messages: List[Message] = []
        for message in outcome.messages:
            try:
                valid_messages.append(validate_message(message))
            except MessageValidationError as e:
                result.rejected += 1
                outcome.errors.append(LineError(message.line_number, f"Line {message.line_number}: {e}"))

        self.stats['parse_errors'] += len(outcome.errors)
        if outcome.errors:
            logger.warning(
                f"Session {session_id}: {len(outcome.errors)} bad lines "
                f"out of {outcome.lines_processed}, first: {outcome.errors[0].reason}"
            )

        if not valid_messages:
            logger.warning(f"No valid messages in {path}")
            self.stats['files_processed'] += 1
            return result

        try:
            async with self.coordinator.global_lock():
                async with self.coordinator.session_lock(session_id):
                    result.committed = await self.sink.commit_messages(
                        session_id, result.project_id, valid_messages
                    )
        except Exception as e:
            logger.error(f"Failed to commit session {session_id}: {e}")
            result.error = str(e)
            self.stats['failures'] += 1
            return result

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._sync_durations.append(result.duration_ms)
        self.stats['files_processed'] += 1
        self.stats['messages_committed'] += result.committed
        logger.info(f"Synced {result.committed} messages for session {session_id} in {result.duration_ms:.1f}ms")
        return result

    async def remove_file(self, file_path: Union[str, Path]) -> None:
        """Drop the session of a deleted file from the sink."""
        session_id = extract_session_id(file_path)
        async with self.coordinator.global_lock():
            async with self.coordinator.session_lock(session_id):
                await self.sink.remove_session(session_id)
        self.stats['sessions_removed'] += 1

    async def handle_event(self, event: FileEvent) -> None:
        """Handle one watcher event. Errors are logged, never raised."""
        try:
            if event.kind is FileEventKind.REMOVE:
                logger.info(f"Session file removed: {event.session_id}")
                await self.remove_file(event.path)
            else:
                logger.debug(f"Session file {event.kind.value}: {event.session_id}")
                await self.process_file(event.path, event.project_id)
        except Exception as e:
            logger.error(f"Error handling {event.kind.value} event for {event.path}: {e}")
            self.stats['failures'] += 1

    async def manual_sync(self) -> List[FileProcessingResult]:
        """Sync every existing session file, outside the watcher."""
        logger.info("Manual sync requested")
        results = []
        for path in list_jsonl_files(self.watcher.projects_dir, self.config.watch.ignored):
            results.append(await self.process_file(path, self.watcher.project_id_for(path)))

        failed = sum(1 for r in results if not r.ok)
        logger.info(f"Manual sync complete: {len(results) - failed} files synced, {failed} failed")
        return results

    async def _watch_and_sync(self) -> None:
        """Main watcher and sync loop."""
        try:
            async for event in self.watcher.watch_for_changes():
                await self.handle_event(event)
        except asyncio.CancelledError:
            logger.info("Sync watcher cancelled")
            raise

    async def start(self) -> None:
        """Start the sync service. Existing files are synced by the watcher's backfill."""
        if self.is_running:
            logger.warning("Sync service already running")
            return

        logger.info("Starting memq sync service")
        self.is_running = True
        self.watcher_task = asyncio.create_task(self._watch_and_sync())

    async def stop(self) -> None:
        """Stop the sync service and release the watcher."""
        if not self.is_running:
            return

        logger.info("Stopping memq sync service")
        self.is_running = False

        if self.watcher_task:
            self.watcher_task.cancel()
            try:
                await self.watcher_task
            except asyncio.CancelledError:
                pass

        try:
            # Joins the observer and worker threads, so keep it off the loop
            await asyncio.to_thread(self.watcher.stop)
        finally:
            close = getattr(self.sink, "close", None)
            if close is not None:
                await close()

    def get_sync_latency(self) -> Dict[str, Any]:
        """Latest and 95th percentile duration of recent committed file syncs, in ms."""
        durations = list(self._sync_durations)
        if not durations:
            return {'recent': None, 'p95': None, 'count': 0}
        ordered = sorted(durations)
        p95 = ordered[max(math.ceil(0.95 * len(ordered)) - 1, 0)]
        return {'recent': durations[-1], 'p95': p95, 'count': len(durations)}

    async def health_check(self) -> Dict[str, Any]:
        """
        Report whether the daemon is usable.

        ``error`` when the sink cannot be queried, ``degraded`` when the
        watcher is not running or the projects directory is not being
        watched, ``healthy`` otherwise.
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        watcher_status = self.watcher.get_status()
        try:
            count = getattr(self.sink, "count_messages", None)
            record_count = await count() if count is not None else None
        except Exception as e:
            logger.error(f"Health check failed to query the database: {e}")
            return {
                'status': 'error',
                'details': {'error': str(e), 'timestamp': timestamp},
            }

        healthy = watcher_status['active'] and watcher_status['watch_installed']
        return {
            'status': 'healthy' if healthy else 'degraded',
            'details': {
                'database': {'accessible': True, 'record_count': record_count},
                'watcher': {
                    'active': watcher_status['active'],
                    'watch_installed': watcher_status['watch_installed'],
                },
                'sync_latency': self.get_sync_latency(),
                'failures': self.stats['failures'],
                'timestamp': timestamp,
            },
        }

    def get_status(self) -> Dict[str, Any]:
        """Get sync service status."""
        return {
            'running': self.is_running,
            'watcher_active': self.watcher_task is not None and not self.watcher_task.done(),
            'watcher': self.watcher.get_status(),
            'locks': self.coordinator.get_status(),
            'sync_latency': self.get_sync_latency(),
            'stats': dict(self.stats),
        }
