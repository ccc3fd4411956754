"""Shared fixtures for the sync pipeline tests."""

import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from memq_sync.config import WatchConfig


def _make_record(message_id: str, role: str = "user", text: str = "hello", **extra: Any) -> Dict[str, Any]:
    """A Claude Code style JSONL record with the usual message wrapper."""
    record = {
        "type": role,
        "uuid": message_id,
        "timestamp": "2025-01-15T10:30:00.000Z",
        "sessionId": "ignored-session-field",
        "message": {"role": role, "content": text},
    }
    record.update(extra)
    return record


@pytest.fixture
def make_record() -> Callable[..., Dict[str, Any]]:
    return _make_record


@pytest.fixture
def projects_root(tmp_path: Path) -> Path:
    root = tmp_path / "projects"
    root.mkdir()
    return root


@pytest.fixture
def write_jsonl() -> Callable[..., Path]:
    def _write(path: Path, records: List[Any], append: bool = False) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        with path.open("a" if append else "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
        return path
    return _write


@pytest.fixture
def fast_watch_config(projects_root: Path) -> WatchConfig:
    """Polling watcher with short windows so tests settle quickly."""
    return WatchConfig(
        projects_path=projects_root,
        stability_threshold_ms=50,
        write_poll_interval_ms=10,
        poll_interval_ms=50,
        binary_interval_ms=50,
        use_polling=True,
    )


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    return wait_until
