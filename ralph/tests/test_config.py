"""Tests for ralph configuration.

These tests verify config defaults and environment variable overrides.
"""

import os
from pathlib import Path
from unittest.mock import patch


class TestRalphConfigDefaults:
    """Test that config loads with sensible defaults."""

    def test_agent_defaults(self):
        from ralph.config import DEFAULT_MODEL, RalphConfig

        config = RalphConfig(project_root=Path("/project"))

        assert config.agent_command == "copilot"
        assert config.default_model == DEFAULT_MODEL == "claude-sonnet-4.5"
        assert config.agent_timeout_seconds is None

    def test_retry_defaults(self):
        """Three attempts, 5s base delay, doubling."""
        from ralph.config import RalphConfig

        config = RalphConfig()

        assert config.max_attempts == 3
        assert config.base_delay_seconds == 5.0
        assert config.backoff_multiplier == 2.0

    def test_paths_derive_from_project_root(self):
        from ralph.config import RalphConfig

        config = RalphConfig(project_root=Path("/project"))

        assert config.sessions_root == Path("/project/.ralph/sessions")
        assert config.active_session_file == Path("/project/.ralph/active-session")
        assert config.global_specs_dir == Path("/project/specs")
        assert config.agents_dir == Path("/project/.github/agents")

    def test_otlp_endpoint_default(self):
        from ralph.config import RalphConfig

        with patch.dict(os.environ, {}, clear=True):
            config = RalphConfig()
            assert config.otlp_endpoint == "http://localhost:4317"

    def test_default_model_is_known(self):
        from ralph.config import DEFAULT_MODEL, MODELS

        assert DEFAULT_MODEL in MODELS


class TestRalphConfigFromEnv:
    """Test environment variable overrides."""

    def test_from_env_reads_overrides(self, tmp_path: Path):
        from ralph.config import RalphConfig

        env = {
            "RALPH_PROJECT_ROOT": str(tmp_path),
            "RALPH_AGENT_COMMAND": "/usr/local/bin/copilot",
            "RALPH_MODEL": "gpt-5",
            "RALPH_AGENT_TIMEOUT": "900",
            "RALPH_MAX_ATTEMPTS": "5",
            "RALPH_BASE_DELAY": "1.5",
            "RALPH_BACKOFF_MULTIPLIER": "3",
            "RALPH_ITERATION_PAUSE": "0",
            "RALPH_ERROR_RULES": "rules.yaml",
            "OTLP_ENDPOINT": "http://collector:4317",
        }
        with patch.dict(os.environ, env, clear=True):
            config = RalphConfig.from_env()

        assert config.project_root == tmp_path
        assert config.agent_command == "/usr/local/bin/copilot"
        assert config.default_model == "gpt-5"
        assert config.agent_timeout_seconds == 900.0
        assert config.max_attempts == 5
        assert config.base_delay_seconds == 1.5
        assert config.backoff_multiplier == 3.0
        assert config.iteration_pause_seconds == 0.0
        assert config.error_rules_path == Path("rules.yaml")
        assert config.otlp_endpoint == "http://collector:4317"

    def test_from_env_defaults(self, tmp_path: Path):
        from ralph.config import RalphConfig

        with patch.dict(os.environ, {}, clear=True):
            config = RalphConfig.from_env(project_root=tmp_path)

        assert config.project_root == tmp_path
        assert config.agent_timeout_seconds is None
        assert config.error_rules_path is None
        assert config.iteration_pause_seconds == 2.0

    def test_blank_timeout_means_no_limit(self, tmp_path: Path):
        from ralph.config import RalphConfig

        with patch.dict(os.environ, {"RALPH_AGENT_TIMEOUT": " "}, clear=True):
            config = RalphConfig.from_env(project_root=tmp_path)

        assert config.agent_timeout_seconds is None
