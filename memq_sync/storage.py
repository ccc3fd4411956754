"""
SQLite sink for synced messages.

The sync service only ever calls into this module while holding the write
coordinator's locks. Messages, tool uses and tool results are upserted by
id, so re-reading a file that has grown since the last sync is idempotent.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncGenerator, List, Optional, Sequence, Type, Union

from sqlalchemy import JSON, Column, delete, func, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import Field, SQLModel

from .message_types import Message, ToolResultBlock, ToolUseBlock

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY = 1.0
MAX_RETRY_DELAY = 10.0


class SessionRecord(SQLModel, table=True):
    __tablename__ = "sessions"

    id: str = Field(primary_key=True)
    project_id: str
    created_at: str
    last_activity_at: str = Field(index=True)


class MessageRecord(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    type: str
    timestamp: str = Field(index=True)
    role: Optional[str] = None
    text: Optional[str] = None
    """Concatenated text blocks, or the summary for summary messages."""
    content: list[Any] = Field(default_factory=list, sa_column=Column(JSON))
    cost: Optional[float] = None
    usage: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    raw_json: str = ""


class ToolUseRecord(SQLModel, table=True):
    __tablename__ = "tool_uses"

    id: str = Field(primary_key=True)
    message_id: str = Field(foreign_key="messages.id", index=True)
    session_id: str = Field(index=True)
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class ToolResultRecord(SQLModel, table=True):
    __tablename__ = "tool_use_results"

    id: str = Field(primary_key=True)
    """``<message id>:<block index>``, stable across re-syncs."""
    tool_use_id: str = Field(index=True)
    message_id: str = Field(foreign_key="messages.id", index=True)
    session_id: str = Field(index=True)
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CommitResult:
    messages: int = 0
    tool_uses: int = 0
    tool_results: int = 0


def _to_record(message: Message, session_id: str) -> MessageRecord:
    data = message.to_dict()
    return MessageRecord(
        id=message.id,
        session_id=session_id,
        type=message.type.value,
        timestamp=message.timestamp,
        role=message.role,
        text=message.summary if message.summary else (message.text or None),
        content=data["content"],
        cost=message.cost,
        usage=data["usage"],
        raw_json=message.raw,
    )


def _result_text(content: Any) -> Optional[str]:
    if content is None or content == "":
        return None
    if isinstance(content, str):
        return content
    return json.dumps(content)


def extract_tool_records(message: Message, session_id: str):
    """Tool uses and tool results carried in a message's content blocks."""
    tool_uses: List[ToolUseRecord] = []
    tool_results: List[ToolResultRecord] = []

    for index, block in enumerate(message.content):
        if isinstance(block, ToolUseBlock):
            if not block.id:
                logger.debug(f"Skipping tool use without id in message {message.id}")
                continue
            tool_uses.append(ToolUseRecord(
                id=block.id,
                message_id=message.id,
                session_id=session_id,
                tool_name=block.name,
                parameters=dict(block.input),
            ))
        elif isinstance(block, ToolResultBlock):
            output = _result_text(block.content)
            tool_results.append(ToolResultRecord(
                id=f"{message.id}:{index}",
                tool_use_id=block.tool_use_id,
                message_id=message.id,
                session_id=session_id,
                output=None if block.is_error else output,
                error=output if block.is_error else None,
            ))

    return tool_uses, tool_results


def is_database_locked(error: OperationalError) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


class SQLiteMessageSink:
    """Persists normalized messages into a SQLite database."""

    def __init__(
        self,
        db_path: Union[str, Path],
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ):
        self.db_path = Path(db_path)
        self.max_retries = max(max_retries, 1)
        self.retry_base_delay = retry_base_delay
        self.engine = create_async_engine(
            f"sqlite+aiosqlite:///{self.db_path}",
            connect_args={"check_same_thread": False, "timeout": 10},
        )
        self._session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._initialized = False
        self.last_commit: Optional[CommitResult] = None

    async def initialize(self) -> None:
        """Create the schema on first use."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            # WAL lets readers query while the daemon writes
            await conn.execute(text("PRAGMA journal_mode=WAL"))
        self._initialized = True
        logger.info(f"Message database ready at {self.db_path}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            yield session

    async def _retry_when_locked(self, operation, description: str):
        """Run ``operation`` again with exponential backoff while SQLite reports a lock."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except OperationalError as e:
                if not is_database_locked(e) or attempt == self.max_retries:
                    raise
                delay = min(self.retry_base_delay * 2 ** (attempt - 1), MAX_RETRY_DELAY)
                logger.warning(
                    f"Database busy during {description}, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.max_retries})"
                )
                await asyncio.sleep(delay)

    async def commit_messages(self, session_id: str, project_id: str, messages: Sequence[Message]) -> int:
        """Upsert a session's messages. Returns the number of messages written."""
        await self.initialize()
        if not messages:
            return 0

        result = await self._retry_when_locked(
            lambda: self._commit(session_id, project_id, messages),
            f"commit of session {session_id}",
        )
        self.last_commit = result
        logger.debug(
            f"Committed {result.messages} messages, {result.tool_uses} tool uses and "
            f"{result.tool_results} tool results for session {session_id}"
        )
        return result.messages

    async def _commit(self, session_id: str, project_id: str, messages: Sequence[Message]) -> CommitResult:
        result = CommitResult()
        timestamps = sorted(m.timestamp for m in messages)
        async with self.get_session() as session:
            record = await session.get(SessionRecord, session_id)
            if record is None:
                session.add(SessionRecord(
                    id=session_id,
                    project_id=project_id,
                    created_at=timestamps[0],
                    last_activity_at=timestamps[-1],
                ))
            else:
                record.project_id = project_id
                record.created_at = min(record.created_at, timestamps[0])
                record.last_activity_at = max(record.last_activity_at, timestamps[-1])

            for message in messages:
                await session.merge(_to_record(message, session_id))
                result.messages += 1

            # Flushed after the messages so the foreign keys resolve
            await session.flush()
            for message in messages:
                tool_uses, tool_results = extract_tool_records(message, session_id)
                for tool_use in tool_uses:
                    await session.merge(tool_use)
                for tool_result in tool_results:
                    await session.merge(tool_result)
                result.tool_uses += len(tool_uses)
                result.tool_results += len(tool_results)

            await session.commit()
        return result

    async def remove_session(self, session_id: str) -> None:
        """Delete a session with its messages, tool uses and tool results."""
        await self.initialize()

        async def remove():
            async with self.get_session() as session:
                await session.execute(delete(ToolResultRecord).where(ToolResultRecord.session_id == session_id))
                await session.execute(delete(ToolUseRecord).where(ToolUseRecord.session_id == session_id))
                await session.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
                await session.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
                await session.commit()

        await self._retry_when_locked(remove, f"removal of session {session_id}")
        logger.info(f"Removed session {session_id} from database")

    async def _count(self, model: Type[SQLModel], session_id: Optional[str]) -> int:
        await self.initialize()
        query = select(func.count()).select_from(model)
        if session_id is not None:
            query = query.where(model.session_id == session_id)
        async with self.get_session() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    async def count_messages(self, session_id: Optional[str] = None) -> int:
        return await self._count(MessageRecord, session_id)

    async def count_tool_uses(self, session_id: Optional[str] = None) -> int:
        return await self._count(ToolUseRecord, session_id)

    async def count_tool_results(self, session_id: Optional[str] = None) -> int:
        return await self._count(ToolResultRecord, session_id)

    async def get_tool_results(self, tool_use_id: str) -> List[ToolResultRecord]:
        await self.initialize()
        async with self.get_session() as session:
            result = await session.execute(
                select(ToolResultRecord).where(ToolResultRecord.tool_use_id == tool_use_id)
            )
            return list(result.scalars().all())

    async def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        await self.initialize()
        async with self.get_session() as session:
            return await session.get(SessionRecord, session_id)

    async def close(self) -> None:
        await self.engine.dispose()
