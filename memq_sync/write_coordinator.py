"""
Write coordination between the background sync and on-demand writers.

Two independent lock domains guard the sink: one global write lock and one
lock per session id. Both are chains of asyncio futures: every acquisition
queues behind the current tail, so admission is strictly FIFO, there is never
more than one holder per domain, and the lock is handed on however the
protected block exits.

When both locks are needed, take the global lock first and the session lock
inside it. Every call site must use that order.
"""

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

GLOBAL_DOMAIN = "global"

_ticket_counter = itertools.count(1)


class LockTicket:
    """Handle for a held lock. Released only when the protected block exits."""

    __slots__ = ("domain", "number", "_released")

    def __init__(self, domain: str):
        self.domain = domain
        self.number = next(_ticket_counter)
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<LockTicket {self.domain}#{self.number} {state}>"


def _resolve(future: "asyncio.Future[None]") -> None:
    if not future.done():
        future.set_result(None)


class _LockChain:
    """Tail of one FIFO chain of pending completions."""

    __slots__ = ("tail", "pending")

    def __init__(self):
        self.tail: Optional["asyncio.Future[None]"] = None
        self.pending = 0


class WriteCoordinator:
    """Serializes sink mutations with a global lock and per-session locks."""

    def __init__(self):
        self._global = _LockChain()
        self._sessions: Dict[str, _LockChain] = {}

    @asynccontextmanager
    async def _acquire(self, chain: _LockChain, domain: str) -> AsyncIterator[LockTicket]:
        previous = chain.tail
        own: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        chain.tail = own
        chain.pending += 1
        ticket = LockTicket(domain)

        try:
            if previous is not None:
                # Shielded so a cancelled waiter cannot cancel its predecessor
                await asyncio.shield(previous)
            yield ticket
        finally:
            ticket._released = True
            chain.pending -= 1
            if previous is not None and not previous.done():
                # Cancelled while queued: hand on only after the predecessor is done
                previous.add_done_callback(lambda _: _resolve(own))
            else:
                _resolve(own)
            if chain.tail is own and own.done():
                chain.tail = None

    @asynccontextmanager
    async def global_lock(self) -> AsyncIterator[LockTicket]:
        """Hold the global write lock for the duration of the block."""
        async with self._acquire(self._global, GLOBAL_DOMAIN) as ticket:
            yield ticket

    @asynccontextmanager
    async def session_lock(self, session_id: str) -> AsyncIterator[LockTicket]:
        """Hold the lock of one session for the duration of the block."""
        chain = self._sessions.get(session_id)
        if chain is None:
            chain = self._sessions[session_id] = _LockChain()

        try:
            async with self._acquire(chain, f"session:{session_id}") as ticket:
                yield ticket
        finally:
            # Drop the entry once nobody holds or waits for it
            if chain.pending == 0 and self._sessions.get(session_id) is chain:
                del self._sessions[session_id]

    async def run_with_global_lock(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the global write lock and return its result."""
        async with self.global_lock():
            return await operation()

    async def run_with_session_lock(self, session_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the lock of ``session_id`` and return its result."""
        async with self.session_lock(session_id):
            return await operation()

    def is_global_locked(self) -> bool:
        """True while the global lock is held or waited for."""
        return self._global.pending > 0

    def active_session_lock_count(self) -> int:
        return len(self._sessions)

    def locked_sessions(self) -> List[str]:
        """Session ids that currently hold or wait for their lock."""
        return list(self._sessions.keys())

    def get_status(self) -> Dict[str, Any]:
        return {
            "global_locked": self.is_global_locked(),
            "global_pending": self._global.pending,
            "active_session_locks": self.active_session_lock_count(),
            "locked_sessions": self.locked_sessions(),
        }

    def reset(self) -> None:
        """
        Forget all chain state. For test teardown only.

        Operations already running are not stopped; they simply no longer
        exclude operations started after the reset.
        """
        self._global = _LockChain()
        self._sessions.clear()
        logger.debug("Write coordinator state reset")


# Process-wide coordinator shared by the sync service and other writers
write_coordinator = WriteCoordinator()
