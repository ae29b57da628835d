"""Shared fixtures for ralph tests."""

from datetime import datetime
from pathlib import Path

import pytest
from rich.console import Console

from ralph.checkpoint import CheckpointStore
from ralph.classifier import default_rules
from ralph.config import RalphConfig
from ralph.context import EngineContext
from ralph.models import Session
from ralph.sessions import SessionRegistry


@pytest.fixture
def config(tmp_path: Path) -> RalphConfig:
    return RalphConfig(project_root=tmp_path, iteration_pause_seconds=0)


@pytest.fixture
def registry(config: RalphConfig) -> SessionRegistry:
    return SessionRegistry(config, clock=lambda: datetime(2026, 1, 15, 12, 34, 56))


@pytest.fixture
def store(config: RalphConfig) -> CheckpointStore:
    return CheckpointStore(config.sessions_root)


@pytest.fixture
def session(registry: SessionRegistry) -> Session:
    created = registry.create("Auth Feature", description="Login flow")
    registry.set_active(created.id)
    return created


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def ctx(
    config: RalphConfig,
    registry: SessionRegistry,
    store: CheckpointStore,
    sleeps: list[float],
) -> EngineContext:
    return EngineContext(
        config=config,
        model="claude-sonnet-4.5",
        registry=registry,
        store=store,
        rules=default_rules(),
        console=Console(quiet=True),
        sleep=sleeps.append,
    )


@pytest.fixture
def agents_dir(config: RalphConfig) -> Path:
    """Write minimal agent prompt files."""
    folder = config.agents_dir
    folder.mkdir(parents=True)
    (folder / "ralph.agent.md").write_text(
        "---\ndescription: build\n---\nYou are the build agent.\n"
    )
    (folder / "ralph-planner.agent.md").write_text("You are the planner.\n")
    (folder / "ralph-spec-creator.agent.md").write_text("You write specs.\n")
    (folder / "ralph-agents-updater.agent.md").write_text("Update AGENTS.md.\n")
    return folder
