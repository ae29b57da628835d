"""CLI for ralph.

Provides the `ralph` command: running sessions, managing them and
inspecting their state.
"""

import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from ralph import plan
from ralph.agent import ManualInvoker
from ralph.checkpoint import CheckpointStore
from ralph.classifier import classify, load_rules
from ralph.config import MODELS, RalphConfig
from ralph.context import EngineContext
from ralph.errors import RalphError
from ralph.loop import Decision
from ralph.memory import SECTIONS, MemoryStore
from ralph.models import (
    IterationResult,
    Phase,
    PlanTask,
    Session,
    SessionStatus,
    SourceKind,
)
from ralph.runner import RunResult, RunStatus, run_session
from ralph.sessions import SessionRegistry
from ralph.stats import SessionStats, format_duration
from ralph.telemetry import create_metrics, setup_telemetry

console = Console()

RUN_MODES = ["auto", "plan", "build", "agents", "continue"]


def _configure_logging(verbose: bool) -> None:
    """Route ralph's log records through rich."""
    logger = logging.getLogger("ralph")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=Console(stderr=True), show_path=False, show_time=False
        )
        logger.addHandler(handler)
        logger.propagate = False


def _resolve_session(registry: SessionRegistry, session_id: str | None) -> Session:
    if session_id:
        return registry.require(session_id)
    session = registry.get_active()
    if session is None:
        raise RalphError(
            "No active session. Create one with `ralph session create NAME` "
            "or pick one with `ralph session activate ID`."
        )
    return session


def _ask_decision(task: PlanTask, result: IterationResult) -> Decision:
    """Ask what to do with a task that kept failing."""
    message = (
        result.classification.message if result.classification else "Agent call failed"
    )
    console.print(
        Panel(
            f"{task.text}\n\n{message}",
            title="Task failed",
            border_style="red",
        )
    )
    choice = Prompt.ask(
        "Retry, skip or quit?", choices=["r", "s", "q"], default="q", console=console
    )
    return {"r": Decision.RETRY, "s": Decision.SKIP}.get(choice, Decision.STOP)


def _print_run_summary(
    result: RunResult,
    stats: SessionStats,
    model: str,
    mode: str,
    max_iterations: int,
) -> None:
    status_color = {
        RunStatus.COMPLETE: "green",
        RunStatus.PLANNED: "green",
        RunStatus.AGENTS_UPDATED: "green",
        RunStatus.SPEC_CREATED: "green",
        RunStatus.DELEGATED: "green",
        RunStatus.HALTED: "red",
        RunStatus.EXHAUSTED: "red",
    }
    color = status_color.get(result.status, "yellow")
    limit = str(max_iterations) if max_iterations else "unlimited"

    console.print("\n[bold]Session summary[/bold]")
    console.print(f"  Model: {model}")
    console.print(f"  Mode: {mode}")
    console.print(f"  Duration: {format_duration(stats.elapsed_seconds)}")
    console.print(f"  Build iterations: {stats.build_iterations} (limit: {limit})")
    console.print(f"  Tasks: {result.total - result.pending}/{result.total} completed")
    if stats.calls_total:
        console.print(
            f"  Agent calls: {stats.calls_total} "
            f"([green]{stats.calls_successful} ok[/green], "
            f"[red]{stats.calls_failed} failed[/red], "
            f"{stats.calls_cancelled} cancelled) "
            f"in {format_duration(stats.ai_seconds)}"
        )

    breakdown = stats.phase_breakdown()
    if len(breakdown) > 1:
        for name, phase_stats in breakdown:
            console.print(
                f"    {name}: {phase_stats.calls} calls, "
                f"{format_duration(phase_stats.duration_seconds)}"
            )

    changes = stats.file_changes
    if changes is not None:
        if changes.is_empty:
            console.print("  File changes: [dim]none detected[/dim]")
        else:
            console.print(
                f"  File changes: [green]{changes.lines_added} lines added[/green], "
                f"[red]{changes.lines_removed} lines removed[/red]"
            )
            for label, files, style in (
                ("Created", changes.created, "green"),
                ("Modified", changes.modified, "yellow"),
                ("Deleted", changes.deleted, "red"),
            ):
                if files:
                    console.print(f"    {label}: [{style}]{len(files)} file(s)[/{style}]")

    console.print(f"\n[bold {color}]{result.message}[/bold {color}]")
    if result.classification is not None and result.status == RunStatus.HALTED:
        resume_hint = (
            "Resume with `ralph run` once fixed."
            if result.classification.resumable
            else "Fix the cause, then run again with --force."
        )
        console.print(f"  {resume_hint}")


@click.group()
@click.version_option(package_name="ralph")
def cli() -> None:
    """Ralph - resumable orchestration of coding-agent sessions."""
    pass


@cli.command()
@click.option(
    "--mode",
    type=click.Choice(RUN_MODES),
    default="auto",
    show_default=True,
    help="Which phases to run",
)
@click.option("-m", "--model", default=None, help="Agent model (see `ralph models`)")
@click.option(
    "-n",
    "--max-iterations",
    type=click.IntRange(min=0),
    default=0,
    help="Build iterations to run (0 = unlimited)",
)
@click.option("--manual", is_flag=True, help="Print prompts instead of calling the agent")
@click.option("-d", "--delegate", is_flag=True, help="Delegate the next task")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-s", "--session", "session_id", default=None, help="Session to run")
@click.option(
    "--non-interactive",
    is_flag=True,
    help="Never prompt; exit 1 on halts, failures and unfinished work",
)
@click.option("--force", is_flag=True, help="Resume even after a non-resumable error")
def run(
    mode: str,
    model: str | None,
    max_iterations: int,
    manual: bool,
    delegate: bool,
    verbose: bool,
    session_id: str | None,
    non_interactive: bool,
    force: bool,
) -> None:
    """Run the active session."""
    _configure_logging(verbose)
    config = RalphConfig.from_env()
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    try:
        ctx = EngineContext.create(
            config, model=model, verbose=verbose, tracer=tracer, console=console
        )
        session = _resolve_session(ctx.registry, session_id)
        if model and model not in MODELS:
            console.print(f"[yellow]Unknown model '{model}', passing it through[/yellow]")

        console.print(f"[bold]Session:[/bold] {session.name} [dim]({session.id})[/dim]")
        invoker = ManualInvoker(console=console, stats=ctx.stats) if manual else None
        result = run_session(
            ctx,
            session,
            mode=mode,
            max_iterations=max_iterations,
            decide=None if non_interactive else _ask_decision,
            invoker=invoker,
            delegate=delegate,
            force=force,
        )
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_run_summary(result, ctx.stats, ctx.model, mode, max_iterations)
    sys.exit(result.exit_code(non_interactive))


@cli.command()
@click.argument("request")
@click.option("-m", "--model", default=None, help="Agent model")
@click.option("-s", "--session", "session_id", default=None, help="Session to use")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
def spec(request: str, model: str | None, session_id: str | None, verbose: bool) -> None:
    """Ask the agent to write a specification for REQUEST."""
    _configure_logging(verbose)
    config = RalphConfig.from_env()
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    try:
        ctx = EngineContext.create(config, model=model, tracer=tracer, console=console)
        session = _resolve_session(ctx.registry, session_id)
        result = run_session(ctx, session, mode="spec", spec_request=request)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    color = "green" if result.status == RunStatus.SPEC_CREATED else "yellow"
    console.print(f"[{color}]{result.message}[/{color}]")


@cli.group()
def session() -> None:
    """Create, select and remove sessions."""
    pass


@session.command("create")
@click.argument("name")
@click.option("-d", "--description", default="", help="What this session is about")
@click.option(
    "--specs",
    "specs_source",
    type=click.Choice([s.value for s in SourceKind]),
    default=SourceKind.SESSION.value,
    show_default=True,
    help="Where the session reads specs from",
)
@click.option("--specs-folder", default=None, help="Folder for --specs custom")
@click.option("--activate/--no-activate", default=True, help="Make it the active session")
def session_create(
    name: str,
    description: str,
    specs_source: str,
    specs_folder: str | None,
    activate: bool,
) -> None:
    """Create a new session called NAME."""
    registry = SessionRegistry(RalphConfig.from_env())
    try:
        created = registry.create(
            name,
            description=description,
            specs_source=SourceKind(specs_source),
            specs_folder=specs_folder,
        )
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if activate:
        registry.set_active(created.id)
    console.print(f"[green]Created session[/green] {created.id}")
    specs_dir = registry.specs_dir(created)
    if specs_dir is not None:
        console.print(f"  Specs: {specs_dir}")


@session.command("list")
def session_list() -> None:
    """List all sessions."""
    registry = SessionRegistry(RalphConfig.from_env())
    sessions = registry.list()
    if not sessions:
        console.print("[yellow]No sessions found[/yellow]")
        return

    active = registry.get_active()
    table = Table(title="Sessions")
    table.add_column("")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Specs")
    table.add_column("Tasks", justify="right")

    for item in sessions:
        stats = registry.task_stats(item)
        marker = "[green]*[/green]" if active and active.id == item.id else ""
        table.add_row(
            marker,
            item.id,
            item.name,
            item.status.value,
            item.specs_source.value,
            f"{stats.completed}/{stats.total}",
        )

    console.print(table)


@session.command("activate")
@click.argument("session_id")
def session_activate(session_id: str) -> None:
    """Make SESSION_ID the active session."""
    registry = SessionRegistry(RalphConfig.from_env())
    try:
        registry.set_active(session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"Active session: {session_id}")


@session.command("remove")
@click.argument("session_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def session_remove(session_id: str, yes: bool) -> None:
    """Delete SESSION_ID and all its files."""
    registry = SessionRegistry(RalphConfig.from_env())
    if not yes and not click.confirm(f"Remove session {session_id}?"):
        return
    try:
        registry.remove(session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"Removed session {session_id}")


@session.command("archive")
@click.argument("session_id")
def session_archive(session_id: str) -> None:
    """Mark SESSION_ID as archived."""
    registry = SessionRegistry(RalphConfig.from_env())
    try:
        registry.archive(session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"Archived session {session_id}")


@session.command("show")
@click.argument("session_id", required=False)
def session_show(session_id: str | None) -> None:
    """Show details of a session (default: the active one)."""
    registry = SessionRegistry(RalphConfig.from_env())
    try:
        item = _resolve_session(registry, session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    stats = registry.task_stats(item)
    specs = registry.user_specs(item)
    console.print(f"[bold]{item.name}[/bold] [dim]({item.id})[/dim]")
    if item.description:
        console.print(f"  {item.description}")
    console.print(f"  Created: {item.created}")
    console.print(f"  Status: {item.status.value}")
    console.print(f"  Specs: {item.specs_source.value} ({len(specs)} files)")
    console.print(f"  Tasks: {stats.completed}/{stats.total} completed")
    console.print(f"  Plan: {item.plan_file}")
    if item.status == SessionStatus.ARCHIVED:
        console.print("  [yellow]This session is archived[/yellow]")


@cli.command()
@click.option("-s", "--session", "session_id", default=None, help="Session to inspect")
def status(session_id: str | None) -> None:
    """Show phase, tasks and checkpoint of a session."""
    config = RalphConfig.from_env()
    registry = SessionRegistry(config)
    store = CheckpointStore(config.sessions_root)
    try:
        item = _resolve_session(registry, session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    stats = registry.task_stats(item)
    checkpoint = store.load(item.id)
    next_task = plan.next_pending_task(item.plan_file)

    table = Table(title=f"Session {item.id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Phase", checkpoint.phase.value if checkpoint else Phase.IDLE.value)
    table.add_row("Tasks", f"{stats.completed}/{stats.total} ({stats.pending} pending)")
    table.add_row("Next task", next_task.text if next_task else "-")
    if checkpoint is not None:
        table.add_row("Last iteration", str(checkpoint.iteration))
        table.add_row("Checkpoint", checkpoint.timestamp or "-")
        if checkpoint.error is not None:
            table.add_row(
                "Error",
                f"[red]{checkpoint.error.kind.value}[/red]: {checkpoint.error.message}",
            )
    table.add_row("Can resume", "yes" if store.can_resume(item.id) else "no")
    console.print(table)


@cli.command()
@click.option("-s", "--session", "session_id", default=None, help="Session to reset")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def reset(session_id: str | None, yes: bool) -> None:
    """Start a session over with an empty plan and progress log."""
    config = RalphConfig.from_env()
    registry = SessionRegistry(config)
    try:
        item = _resolve_session(registry, session_id)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not yes and not click.confirm(f"Reset plan and progress of {item.id}?"):
        return

    plan.reset_plan(item.plan_file)
    plan.reset_progress(item.progress_file)
    CheckpointStore(config.sessions_root).delete(item.id)
    console.print(f"[green]Reset session[/green] {item.id}")


@cli.group()
def memory() -> None:
    """Manage cross-session project memory."""
    pass


def _memory_store() -> MemoryStore:
    return MemoryStore(RalphConfig.from_env().ralph_dir)


@memory.command("show")
@click.option("--content", "show_content", is_flag=True, help="Print the memory file")
def memory_show(show_content: bool) -> None:
    """Show whether memory is on and how many entries it holds."""
    store = _memory_store()
    stats = store.stats()

    if not stats.enabled:
        console.print("Memory: [yellow]disabled[/yellow]")
        console.print("  Enable with: ralph memory on")
        return

    table = Table(title="Memory")
    table.add_column("Section")
    table.add_column("Entries", justify="right")
    for name, count in stats.counts.items():
        table.add_row(name, str(count))
    table.add_row("[bold]Total[/bold]", f"[bold]{stats.total}[/bold]")
    console.print("Memory: [green]enabled[/green]")
    console.print(table)
    console.print(f"  File: {store.memory_file}")

    if show_content:
        content = store.content()
        if content:
            console.print(content, markup=False)
        else:
            console.print("[dim](memory file not created yet)[/dim]")


@memory.command("add")
@click.argument("section", type=click.Choice(list(SECTIONS), case_sensitive=False))
@click.argument("entry")
@click.option("--source", default="", help="Where the learning came from")
def memory_add(section: str, entry: str, source: str) -> None:
    """Record ENTRY under SECTION."""
    store = _memory_store()
    try:
        added = store.add(section, entry, source=source)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if added:
        console.print(f"[green]Added to {section}[/green]")
    elif not store.is_enabled():
        console.print("[yellow]Memory is disabled. Enable with: ralph memory on[/yellow]")
    else:
        console.print("[yellow]Entry already recorded[/yellow]")


@memory.command("clear")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def memory_clear(yes: bool) -> None:
    """Remove every memory entry."""
    if not yes and not click.confirm("Clear all memory entries? This cannot be undone"):
        console.print("Cancelled.")
        return
    _memory_store().clear()
    console.print("[green]Memory cleared[/green]")


@memory.command("on")
def memory_on() -> None:
    """Record memory across sessions."""
    store = _memory_store()
    store.set_enabled(True)
    console.print(f"[green]Memory enabled[/green] ({store.memory_file})")


@memory.command("off")
def memory_off() -> None:
    """Stop recording memory."""
    _memory_store().set_enabled(False)
    console.print("[yellow]Memory disabled[/yellow]")


@cli.command()
def models() -> None:
    """List known agent models."""
    default = RalphConfig.from_env().default_model
    table = Table(title="Models")
    table.add_column("Model")
    table.add_column("Name")
    table.add_column("Cost", justify="right")
    for model_id, (name, multiplier) in MODELS.items():
        label = f"{model_id} [green](default)[/green]" if model_id == default else model_id
        table.add_row(label, name, multiplier)
    console.print(table)


@cli.command("classify")
@click.argument("text")
@click.option(
    "--rules",
    "rules_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Alternative error rule file",
)
def classify_command(text: str, rules_path: str | None) -> None:
    """Classify an agent error message."""
    try:
        rules = load_rules(rules_path) if rules_path else None
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    result = classify(text, rules)
    console.print(f"Kind: [bold]{result.kind.value}[/bold]")
    console.print(f"Message: {result.message}")
    console.print(f"Resumable: {'yes' if result.resumable else 'no'}")
    if result.retry_after is not None:
        console.print(f"Retry after: {result.retry_after:.0f}s")


def main() -> None:
    """Main entry point for the ralph CLI."""
    cli()


if __name__ == "__main__":
    main()
