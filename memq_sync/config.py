"""
Configuration for the sync daemon.

Defaults follow where Claude Code keeps its logs; every option can be
overridden from the environment so the daemon runs unchanged on a workstation
or inside a container with the projects directory mounted as a volume.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

logger = logging.getLogger(__name__)

# Always excluded, whatever the configured ignore list says
ALWAYS_IGNORED = ("*.tmp", "*.swp", "*.swo", "*~")


def _is_production(env: Mapping[str, str]) -> bool:
    return env.get("MEMQ_ENV", env.get("NODE_ENV", "")).lower() == "production"


def default_projects_path(env: Optional[Mapping[str, str]] = None) -> Path:
    """Claude Code projects directory, honoring CLAUDE_PROJECTS_PATH."""
    env = os.environ if env is None else env
    override = env.get("CLAUDE_PROJECTS_PATH")
    if override:
        return Path(override).expanduser()
    if _is_production(env):
        return Path("/claude-projects")
    return Path.home() / ".claude" / "projects"


def default_db_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    override = env.get("MEMQ_DB_PATH")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local/share/memoryquery/mcp.db"


def running_in_container() -> bool:
    """Native change notification is unreliable in containers and on volumes."""
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class WatchConfig:
    """Options recognized by the JSONL change watcher."""
    projects_path: Path = field(default_factory=default_projects_path)
    stability_threshold_ms: int = 100  # quiet period before a write counts as complete
    write_poll_interval_ms: int = 50  # how often a pending file is re-checked
    poll_interval_ms: int = 500  # polling backend interval
    binary_interval_ms: int = 1000  # root availability probe interval
    use_polling: Optional[bool] = None  # None: decide from the environment
    ignored: List[str] = field(default_factory=list)
    skip_initial: bool = False

    def __post_init__(self):
        self.projects_path = Path(self.projects_path).expanduser()

    @property
    def polling_enabled(self) -> bool:
        if self.use_polling is None:
            return running_in_container()
        return self.use_polling

    @property
    def ignore_patterns(self) -> List[str]:
        return list(ALWAYS_IGNORED) + [p for p in self.ignored if p]

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "WatchConfig":
        env = os.environ if env is None else env
        ignored = [p.strip() for p in env.get("MEMQ_IGNORED", "").split(",") if p.strip()]
        return cls(
            projects_path=default_projects_path(env),
            stability_threshold_ms=_env_int(env, "MEMQ_STABILITY_THRESHOLD_MS", 100),
            poll_interval_ms=_env_int(env, "MEMQ_POLL_INTERVAL_MS", 500),
            binary_interval_ms=_env_int(env, "MEMQ_BINARY_INTERVAL_MS", 1000),
            use_polling=_env_bool(env.get("MEMQ_USE_POLLING")),
            ignored=ignored,
            skip_initial=bool(_env_bool(env.get("MEMQ_SKIP_INITIAL"))),
        )


@dataclass
class SyncConfig:
    """Top-level daemon configuration."""
    watch: WatchConfig = field(default_factory=WatchConfig)
    db_path: Path = field(default_factory=default_db_path)
    log_level: str = "INFO"
    max_retries: int = 5  # attempts per sink write while the database is locked

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if env is None else env
        return cls(
            watch=WatchConfig.from_env(env),
            db_path=default_db_path(env),
            log_level=env.get("MEMQ_LOG_LEVEL", "INFO").upper(),
            max_retries=_env_int(env, "MEMQ_MAX_RETRIES", 5),
        )
