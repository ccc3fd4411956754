"""Tests for the SQLite message sink."""

import asyncio
import json
import sqlite3

import pytest
from sqlalchemy.exc import OperationalError

from memq_sync.jsonl_parser import parse_jsonl_content
from memq_sync.storage import SQLiteMessageSink


def parse(records, session_id="s1", project_id="proj"):
    content = "\n".join(json.dumps(r) for r in records)
    return parse_jsonl_content(content, session_id, project_id).messages


class TestSQLiteMessageSink:

    def test_commit_and_count(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "db" / "mcp.db")

        async def scenario():
            try:
                written = await sink.commit_messages("s1", "proj", parse([
                    make_record("m1", text="hello"),
                    make_record("m2", role="assistant", text="hi there"),
                ]))
                return written, await sink.count_messages(), await sink.count_messages("s1")
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == (2, 2, 2)
        assert (tmp_path / "db" / "mcp.db").exists()

    def test_recommit_is_idempotent(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")
        first = [make_record("m1")]
        grown = first + [make_record("m2", role="assistant")]

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse(first))
                await sink.commit_messages("s1", "proj", parse(grown))
                await sink.commit_messages("s1", "proj", parse(grown))
                return await sink.count_messages("s1")
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == 2

    def test_session_activity_window(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse([
                    make_record("m1", timestamp="2025-01-15T10:00:00.000Z"),
                    make_record("m2", timestamp="2025-01-15T09:00:00.000Z"),
                ]))
                await sink.commit_messages("s1", "proj", parse([
                    make_record("m3", timestamp="2025-01-15T11:00:00.000Z"),
                ]))
                return await sink.get_session_record("s1")
            finally:
                await sink.close()

        record = asyncio.run(scenario())

        assert record.project_id == "proj"
        assert record.created_at == "2025-01-15T09:00:00.000Z"
        assert record.last_activity_at == "2025-01-15T11:00:00.000Z"

    def test_remove_session(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse([make_record("m1")], "s1"))
                await sink.commit_messages("s2", "proj", parse([make_record("m2")], "s2"))
                await sink.remove_session("s1")
                return (
                    await sink.count_messages("s1"),
                    await sink.count_messages("s2"),
                    await sink.get_session_record("s1"),
                )
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == (0, 1, None)

    def test_empty_commit_writes_nothing(self, tmp_path):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")

        async def scenario():
            try:
                return await sink.commit_messages("s1", "proj", []), await sink.get_session_record("s1")
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == (0, None)


def tool_exchange(make_record):
    """An assistant tool call followed by the user message carrying its results."""
    call = make_record("a1", role="assistant")
    call["message"]["content"] = [
        {"type": "text", "text": "Listing files"},
        {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
        {"type": "tool_use", "id": "toolu_2", "name": "Read", "input": {"file_path": "/x"}},
    ]
    results = make_record("u2", role="user")
    results["message"]["content"] = [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.txt\nb.txt"},
        {"type": "tool_result", "tool_use_id": "toolu_2", "content": [{"type": "text", "text": "nope"}],
         "is_error": True},
    ]
    return [call, results]


class TestToolRecords:

    def test_tool_uses_and_results_are_extracted(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse(tool_exchange(make_record)))
                return (
                    await sink.count_tool_uses("s1"),
                    await sink.count_tool_results("s1"),
                    await sink.get_tool_results("toolu_1"),
                    await sink.get_tool_results("toolu_2"),
                    sink.last_commit,
                )
            finally:
                await sink.close()

        uses, results, first, second, last_commit = asyncio.run(scenario())

        assert (uses, results) == (2, 2)
        assert first[0].output == "a.txt\nb.txt"
        assert first[0].error is None
        assert second[0].output is None
        assert json.loads(second[0].error) == [{"type": "text", "text": "nope"}]
        assert (last_commit.messages, last_commit.tool_uses, last_commit.tool_results) == (2, 2, 2)

    def test_tool_records_are_idempotent_and_removed_with_session(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db")

        async def scenario():
            try:
                messages = parse(tool_exchange(make_record))
                await sink.commit_messages("s1", "proj", messages)
                await sink.commit_messages("s1", "proj", messages)
                before = (await sink.count_tool_uses(), await sink.count_tool_results())
                await sink.remove_session("s1")
                after = (await sink.count_tool_uses(), await sink.count_tool_results())
                return before, after
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == ((2, 2), (0, 0))


def locked_error():
    return OperationalError("INSERT INTO messages", {}, sqlite3.OperationalError("database is locked"))


class TestLockedRetry:

    def test_locked_database_is_retried(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db", max_retries=5, retry_base_delay=0)
        real_commit = sink._commit
        attempts = []

        async def flaky_commit(*args):
            attempts.append(len(attempts) + 1)
            if len(attempts) < 3:
                raise locked_error()
            return await real_commit(*args)

        sink._commit = flaky_commit

        async def scenario():
            try:
                written = await sink.commit_messages("s1", "proj", parse([make_record("m1")]))
                return written, await sink.count_messages()
            finally:
                await sink.close()

        assert asyncio.run(scenario()) == (1, 1)
        assert attempts == [1, 2, 3]

    def test_gives_up_after_max_retries(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db", max_retries=3, retry_base_delay=0)
        attempts = []

        async def always_locked(*args):
            attempts.append(1)
            raise locked_error()

        sink._commit = always_locked

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse([make_record("m1")]))
            finally:
                await sink.close()

        with pytest.raises(OperationalError, match="database is locked"):
            asyncio.run(scenario())
        assert len(attempts) == 3

    def test_other_errors_are_not_retried(self, tmp_path, make_record):
        sink = SQLiteMessageSink(tmp_path / "mcp.db", max_retries=5, retry_base_delay=0)
        attempts = []

        async def broken(*args):
            attempts.append(1)
            raise OperationalError("INSERT", {}, sqlite3.OperationalError("no such table: messages"))

        sink._commit = broken

        async def scenario():
            try:
                await sink.commit_messages("s1", "proj", parse([make_record("m1")]))
            finally:
                await sink.close()

        with pytest.raises(OperationalError, match="no such table"):
            asyncio.run(scenario())
        assert len(attempts) == 1
