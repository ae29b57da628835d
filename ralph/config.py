"""Configuration for ralph.

Provides centralized configuration with sensible defaults and environment
variable overrides for project paths, the agent command, retry policy and
telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL = "claude-sonnet-4.5"

# Known models with display name and relative cost multiplier
MODELS: dict[str, tuple[str, str]] = {
    "claude-sonnet-4.5": ("Claude Sonnet 4.5", "1x"),
    "claude-haiku-4.5": ("Claude Haiku 4.5", "0.33x"),
    "claude-opus-4.5": ("Claude Opus 4.5", "3x"),
    "claude-sonnet-4": ("Claude Sonnet 4", "1x"),
    "gpt-5.2-codex": ("GPT-5.2-Codex", "1x"),
    "gpt-5.1-codex-max": ("GPT-5.1-Codex-Max", "1x"),
    "gpt-5.1-codex": ("GPT-5.1-Codex", "1x"),
    "gpt-5.2": ("GPT-5.2", "1x"),
    "gpt-5.1": ("GPT-5.1", "1x"),
    "gpt-5": ("GPT-5", "1x"),
    "gpt-5.1-codex-mini": ("GPT-5.1-Codex-Mini", "0.33x"),
    "gpt-5-mini": ("GPT-5 mini", "0x"),
    "gpt-4.1": ("GPT-4.1", "0x"),
    "gemini-3-pro-preview": ("Gemini 3 Pro (Preview)", "1x"),
}


def _optional_float(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass
class RalphConfig:
    """Configuration for a ralph run.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    project_root: Path = field(default_factory=Path.cwd)

    # Agent settings
    agent_command: str = "copilot"
    default_model: str = DEFAULT_MODEL
    agent_timeout_seconds: float | None = None

    # Retry policy
    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0

    # Pause between build iterations
    iteration_pause_seconds: float = 2.0

    # Alternative error rule table (packaged rules if None)
    error_rules_path: Path | None = None

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "ralph"

    @property
    def ralph_dir(self) -> Path:
        return self.project_root / ".ralph"

    @property
    def sessions_root(self) -> Path:
        return self.ralph_dir / "sessions"

    @property
    def active_session_file(self) -> Path:
        return self.ralph_dir / "active-session"

    @property
    def global_specs_dir(self) -> Path:
        return self.project_root / "specs"

    @property
    def agents_dir(self) -> Path:
        return self.project_root / ".github" / "agents"

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "RalphConfig":
        """Load config with environment variable overrides.

        Environment variables:
            RALPH_PROJECT_ROOT: Project directory (default: current directory)
            RALPH_AGENT_COMMAND: Agent executable (default: copilot)
            RALPH_MODEL: Default model (default: claude-sonnet-4.5)
            RALPH_AGENT_TIMEOUT: Per-call timeout in seconds (default: none)
            RALPH_MAX_ATTEMPTS: Retry attempts per task (default: 3)
            RALPH_BASE_DELAY: Initial backoff in seconds (default: 5)
            RALPH_BACKOFF_MULTIPLIER: Backoff growth factor (default: 2)
            RALPH_ITERATION_PAUSE: Pause between iterations (default: 2)
            RALPH_ERROR_RULES: Path to an alternative error rule YAML file
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        root = project_root or Path(os.getenv("RALPH_PROJECT_ROOT", str(Path.cwd())))
        rules_path = os.getenv("RALPH_ERROR_RULES")
        return cls(
            project_root=Path(root),
            agent_command=os.getenv("RALPH_AGENT_COMMAND", "copilot"),
            default_model=os.getenv("RALPH_MODEL", DEFAULT_MODEL),
            agent_timeout_seconds=_optional_float(os.getenv("RALPH_AGENT_TIMEOUT")),
            max_attempts=int(os.getenv("RALPH_MAX_ATTEMPTS", "3")),
            base_delay_seconds=float(os.getenv("RALPH_BASE_DELAY", "5")),
            backoff_multiplier=float(os.getenv("RALPH_BACKOFF_MULTIPLIER", "2")),
            iteration_pause_seconds=float(os.getenv("RALPH_ITERATION_PAUSE", "2")),
            error_rules_path=Path(rules_path) if rules_path else None,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
