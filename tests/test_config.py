"""Tests for configuration defaults and environment overrides."""

from pathlib import Path

from memq_sync.config import ALWAYS_IGNORED, SyncConfig, WatchConfig, default_projects_path


class TestWatchConfig:

    def test_defaults(self):
        config = WatchConfig(projects_path="/tmp/projects")
        assert config.projects_path == Path("/tmp/projects")
        assert config.stability_threshold_ms == 100
        assert config.write_poll_interval_ms == 50
        assert config.poll_interval_ms == 500
        assert config.binary_interval_ms == 1000
        assert config.skip_initial is False

    def test_editor_artifacts_always_ignored(self):
        config = WatchConfig(projects_path="/tmp/p", ignored=["*.bak", ""])
        assert config.ignore_patterns == list(ALWAYS_IGNORED) + ["*.bak"]

    def test_explicit_polling_wins(self):
        assert WatchConfig(projects_path="/tmp/p", use_polling=True).polling_enabled is True
        assert WatchConfig(projects_path="/tmp/p", use_polling=False).polling_enabled is False

    def test_from_env(self):
        env = {
            "CLAUDE_PROJECTS_PATH": "/data/claude",
            "MEMQ_STABILITY_THRESHOLD_MS": "250",
            "MEMQ_POLL_INTERVAL_MS": "oops",
            "MEMQ_USE_POLLING": "true",
            "MEMQ_IGNORED": "*.bak, archive/*",
            "MEMQ_SKIP_INITIAL": "1",
        }
        config = WatchConfig.from_env(env)

        assert config.projects_path == Path("/data/claude")
        assert config.stability_threshold_ms == 250
        assert config.poll_interval_ms == 500
        assert config.use_polling is True
        assert config.ignored == ["*.bak", "archive/*"]
        assert config.skip_initial is True

    def test_unset_polling_is_auto(self):
        assert WatchConfig.from_env({"CLAUDE_PROJECTS_PATH": "/x"}).use_polling is None


class TestDefaultPaths:

    def test_home_default(self):
        assert default_projects_path({}) == Path.home() / ".claude" / "projects"

    def test_production_default(self):
        assert default_projects_path({"MEMQ_ENV": "production"}) == Path("/claude-projects")

    def test_override_beats_production(self):
        env = {"MEMQ_ENV": "production", "CLAUDE_PROJECTS_PATH": "/mnt/p"}
        assert default_projects_path(env) == Path("/mnt/p")

    def test_sync_config_from_env(self):
        config = SyncConfig.from_env({"MEMQ_DB_PATH": "/tmp/x.db", "MEMQ_LOG_LEVEL": "debug"})
        assert config.db_path == Path("/tmp/x.db")
        assert config.log_level == "DEBUG"

    def test_max_retries_from_env(self):
        assert SyncConfig.from_env({}).max_retries == 5
        assert SyncConfig.from_env({"MEMQ_MAX_RETRIES": "8"}).max_retries == 8
        assert SyncConfig.from_env({"MEMQ_MAX_RETRIES": "many"}).max_retries == 5
