"""Engine context passed explicitly through a run."""

import time
from dataclasses import dataclass, field
from typing import Callable

from opentelemetry import trace
from rich.console import Console

from ralph.checkpoint import CheckpointStore
from ralph.classifier import RuleSet, default_rules, load_rules
from ralph.config import RalphConfig
from ralph.sessions import SessionRegistry
from ralph.stats import SessionStats


@dataclass
class EngineContext:
    """Everything a run needs, in one place instead of module globals.

    Attributes:
        config: Ralph configuration
        model: Model name passed to the agent
        verbose: Show agent output and debug detail
        registry: Session registry
        store: Checkpoint store
        rules: Error classification rules
        tracer: OpenTelemetry tracer
        stats: Statistics for this run
        console: Console for user-facing progress
        sleep: Blocking wait used for backoff and iteration pauses
    """

    config: RalphConfig
    model: str
    registry: SessionRegistry
    store: CheckpointStore
    rules: RuleSet
    verbose: bool = False
    tracer: trace.Tracer = field(default_factory=lambda: trace.get_tracer("ralph"))
    stats: SessionStats = field(default_factory=SessionStats)
    console: Console = field(default_factory=Console)
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def create(
        cls,
        config: RalphConfig,
        model: str | None = None,
        verbose: bool = False,
        tracer: trace.Tracer | None = None,
        console: Console | None = None,
    ) -> "EngineContext":
        """Build a context with registry, store and rules derived from config."""
        rules = (
            load_rules(config.error_rules_path)
            if config.error_rules_path
            else default_rules()
        )
        return cls(
            config=config,
            model=model or config.default_model,
            registry=SessionRegistry(config),
            store=CheckpointStore(config.sessions_root),
            rules=rules,
            verbose=verbose,
            tracer=tracer or trace.get_tracer(config.service_name),
            console=console or Console(),
        )
