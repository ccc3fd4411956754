"""
Stability window for file writes.

Claude Code appends to session logs in bursts. A change is only handed on
once the file's size and mtime have stayed the same for the stability
threshold, so a burst collapses into one event and readers never see a file
halfway through a write.

All events, stabilized or not, leave through one ordered queue drained by a
single worker thread, which keeps deliveries for the same file in causal
order.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class FileEventKind(str, Enum):
    ADD = "add"
    CHANGE = "change"
    REMOVE = "remove"


@dataclass
class _PendingWrite:
    kind: FileEventKind
    size: int
    mtime_ns: int
    last_change: float


DeliverFn = Callable[[FileEventKind, Path], None]


class WriteStabilizer:
    """Debounces add/change notifications until the file stops changing."""

    def __init__(
        self,
        deliver: DeliverFn,
        stability_threshold_ms: int = 100,
        check_interval_ms: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._deliver = deliver
        self.stability_threshold = stability_threshold_ms / 1000.0
        self.check_interval = max(check_interval_ms, 1) / 1000.0
        self._clock = clock

        self._lock = threading.Lock()
        self._pending: Dict[Path, _PendingWrite] = {}
        self._known: Set[Path] = set()
        self._ready: Deque[Tuple[FileEventKind, Path]] = deque()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Event intake (called from watchdog and probe threads)
    # ------------------------------------------------------------------

    def mark_known(self, path: Path) -> None:
        """Treat ``path`` as already announced, without emitting anything."""
        with self._lock:
            self._known.add(path)

    def announce(self, path: Path) -> None:
        """Queue an immediate ``add`` for a file found by a directory scan."""
        with self._lock:
            if path in self._known or path in self._pending:
                return
            self._known.add(path)
            self._ready.append((FileEventKind.ADD, path))

    def record_write(self, path: Path) -> None:
        """A file was created or written to; (re)start its stability window."""
        size, mtime_ns = self._stat(path)
        now = self._clock()

        with self._lock:
            pending = self._pending.get(path)
            if pending is not None:
                pending.size = size
                pending.mtime_ns = mtime_ns
                pending.last_change = now
                return

            kind = FileEventKind.CHANGE if path in self._known else FileEventKind.ADD
            self._pending[path] = _PendingWrite(kind, size, mtime_ns, now)

    def record_remove(self, path: Path) -> None:
        """A file disappeared. Delivered without waiting for stability."""
        with self._lock:
            pending = self._pending.pop(path, None)
            if pending is not None and pending.kind is FileEventKind.ADD:
                # Never announced, so there is nothing to retract
                return
            if path not in self._known:
                logger.debug(f"Ignoring removal of untracked file {path}")
                return
            self._known.discard(path)
            self._ready.append((FileEventKind.REMOVE, path))

    # ------------------------------------------------------------------
    # Stability checks and delivery
    # ------------------------------------------------------------------

    @staticmethod
    def _stat(path: Path) -> Tuple[int, int]:
        try:
            stat = path.stat()
        except OSError:
            return -1, -1
        return stat.st_size, stat.st_mtime_ns

    def tick(self) -> int:
        """
        Promote files that have been quiet long enough, then deliver every
        queued event. Returns the number of events delivered.
        """
        now = self._clock()

        with self._lock:
            candidates = list(self._pending.items())

        for path, pending in candidates:
            try:
                stat = path.stat()
            except FileNotFoundError:
                with self._lock:
                    if self._pending.get(path) is pending:
                        # Gone before it settled; the removal event follows
                        del self._pending[path]
                continue
            except OSError as e:
                logger.debug(f"Cannot stat pending file {path}: {e}")
                continue

            with self._lock:
                if self._pending.get(path) is not pending:
                    continue
                if (stat.st_size, stat.st_mtime_ns) != (pending.size, pending.mtime_ns):
                    pending.size = stat.st_size
                    pending.mtime_ns = stat.st_mtime_ns
                    pending.last_change = now
                    continue
                if now - pending.last_change < self.stability_threshold:
                    continue

                del self._pending[path]
                self._known.add(path)
                self._ready.append((pending.kind, path))

        return self._drain()

    def _drain(self) -> int:
        delivered = 0
        while True:
            with self._lock:
                if not self._ready:
                    return delivered
                kind, path = self._ready.popleft()
            try:
                self._deliver(kind, path)
                delivered += 1
            except Exception as e:
                logger.error(f"Error delivering {kind.value} event for {path}: {e}")

    def _run(self) -> None:
        while not self._stop_event.wait(self.check_interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in write stabilizer: {e}")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="memq-write-stabilizer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def known_files(self) -> Set[Path]:
        with self._lock:
            return set(self._known)
