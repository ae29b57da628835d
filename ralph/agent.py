"""External coding-agent invocation.

Provides prompt loading, task-scoped prompt construction and the invokers
that run one agent call and report it as an IterationResult. The default
agent is the GitHub Copilot CLI:

    copilot -p <prompt> --allow-all-tools [--model M]

A user interrupt during the call terminates the child process and is
reported as a cancelled result rather than an exception.
"""

import logging
import subprocess
import time
from pathlib import Path
from typing import Protocol

from rich.console import Console

from ralph.errors import AgentError
from ralph.models import IterationResult
from ralph.stats import SessionStats

logger = logging.getLogger(__name__)

# Completion signals an agent may print. All are advisory.
COMPLETE_SIGNAL = "<promise>COMPLETE</promise>"
PLANNING_COMPLETE_SIGNAL = "<promise>PLANNING_COMPLETE</promise>"
SPEC_CREATED_SIGNAL = "<promise>SPEC_CREATED</promise>"
AGENTS_UPDATED_SIGNAL = "<promise>AGENTS_UPDATED</promise>"

# Agent prompt files under .github/agents/
BUILD_AGENT = "ralph.agent.md"
PLAN_AGENT = "ralph-planner.agent.md"
SPEC_CREATOR_AGENT = "ralph-spec-creator.agent.md"
AGENTS_UPDATER_AGENT = "ralph-agents-updater.agent.md"

TASK_SECTION = """

## YOUR ASSIGNED TASK FOR THIS ITERATION

**DO NOT search for tasks in IMPLEMENTATION_PLAN.md.** Your task has already been selected for you:

```
{task}
```

Focus ONLY on implementing this specific task. When complete, mark it as done in the plan and update progress.txt."""


def load_agent_prompt(path: Path) -> str:
    """Read an agent prompt file, dropping any YAML frontmatter.

    Raises:
        AgentError: If the file does not exist
    """
    if not path.exists():
        raise AgentError(f"Agent prompt not found: {path}")

    content = path.read_text()
    lines = content.splitlines()
    if lines and lines[0].strip() == "---":
        for index in range(1, len(lines)):
            if lines[index].strip() == "---":
                content = "\n".join(lines[index + 1 :])
                break
    logger.debug("Loaded agent prompt %s (%d chars)", path.name, len(content))
    return content.strip()


def build_task_prompt(base_prompt: str, task: str) -> str:
    """Combine base agent instructions with exactly one assigned task.

    Raises:
        AgentError: If either input is empty
    """
    if not base_prompt.strip():
        raise AgentError("Base prompt is empty")
    if not task.strip():
        raise AgentError("Task is empty")
    return base_prompt + TASK_SECTION.format(task=task)


def session_prompt(
    base_prompt: str,
    plan_file: Path,
    progress_file: Path,
    specs_dir: Path | None,
    memory_file: Path | None = None,
) -> str:
    """Append the session's file locations to an agent prompt.

    The project memory file is listed only when memory is enabled.
    """
    lines = [
        base_prompt,
        "",
        "## SESSION FILES",
        "",
        f"- Implementation plan: `{plan_file}`",
        f"- Progress log: `{progress_file}`",
    ]
    if specs_dir is not None:
        lines.append(f"- Specifications: `{specs_dir}`")
    if memory_file is not None:
        lines.append(
            f"- Project memory: `{memory_file}` (read it first; record lasting "
            "learnings under Patterns, Commands, Gotchas or Decisions)"
        )
    return "\n".join(lines)


def has_signal(output: str, signal: str) -> bool:
    return signal in output


class Invoker(Protocol):
    """Anything that can run one agent call."""

    def invoke(self, prompt: str, phase: str) -> IterationResult: ...


class AgentInvoker:
    """Runs the agent CLI as a child process.

    Args:
        command: Agent executable (e.g. "copilot")
        model: Model passed with --model, omitted if empty
        timeout: Seconds before the call is killed (None: no limit)
        stats: Optional run statistics to record calls into
    """

    def __init__(
        self,
        command: str = "copilot",
        model: str | None = None,
        timeout: float | None = None,
        stats: SessionStats | None = None,
    ) -> None:
        self.command = command
        self.model = model
        self.timeout = timeout
        self.stats = stats

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.command, "-p", prompt, "--allow-all-tools"]
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def _run(self, cmd: list[str]) -> IterationResult:
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise AgentError(
                f"Agent command '{self.command}' not found. Is it installed?"
            ) from e

        try:
            output, _ = proc.communicate(timeout=self.timeout)
        except KeyboardInterrupt:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            return IterationResult(
                success=False,
                cancelled=True,
                duration_seconds=time.monotonic() - start,
                exit_code=proc.returncode,
            )
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
            return IterationResult(
                success=False,
                output=output or "",
                duration_seconds=time.monotonic() - start,
                exit_code=proc.returncode,
                error=f"Agent call timed out after {self.timeout}s",
            )

        duration = time.monotonic() - start
        output = output or ""
        if proc.returncode != 0:
            return IterationResult(
                success=False,
                output=output,
                duration_seconds=duration,
                exit_code=proc.returncode,
                error=output.strip() or f"Agent exited with status {proc.returncode}",
            )
        return IterationResult(
            success=True,
            output=output,
            duration_seconds=duration,
            exit_code=proc.returncode,
        )

    def invoke(self, prompt: str, phase: str) -> IterationResult:
        """Run one agent call with the given prompt.

        Args:
            prompt: Full prompt text
            phase: Phase label for statistics (e.g. "Building")

        Returns:
            IterationResult with combined stdout/stderr as output

        Raises:
            AgentError: If the agent executable cannot be started
        """
        logger.debug("Invoking %s for %s (%d chars)", self.command, phase, len(prompt))
        result = self._run(self.build_command(prompt))
        if self.stats is not None:
            self.stats.record_call(
                phase, result.duration_seconds, result.success, result.cancelled
            )
        return result

    def delegate(self, task: str) -> IterationResult:
        """Hand a single task to the agent's background coding agent."""
        return self._run([self.command, "-p", f"/delegate {task}"])


class ManualInvoker:
    """Shows the prompt and lets the user run it by hand.

    Enter marks the call successful, `f` marks it failed and `q` cancels.
    """

    def __init__(
        self, console: Console | None = None, stats: SessionStats | None = None
    ) -> None:
        self.console = console or Console()
        self.stats = stats

    def invoke(self, prompt: str, phase: str) -> IterationResult:
        start = time.monotonic()
        self.console.print(f"[yellow]Copy this {phase} prompt to Copilot Chat:[/yellow]")
        self.console.rule()
        self.console.print(prompt, markup=False, highlight=False)
        self.console.rule()

        try:
            answer = self.console.input(
                "Press [bold]Enter[/bold] when done, [bold]f[/bold] if it failed, "
                "[bold]q[/bold] to stop: "
            )
        except (KeyboardInterrupt, EOFError):
            answer = "q"

        duration = time.monotonic() - start
        answer = answer.strip().lower()
        if answer == "q":
            result = IterationResult(
                success=False, cancelled=True, duration_seconds=duration
            )
        elif answer == "f":
            result = IterationResult(
                success=False,
                duration_seconds=duration,
                error="Marked as failed by the user",
            )
        else:
            result = IterationResult(success=True, duration_seconds=duration)

        if self.stats is not None:
            self.stats.record_call(
                phase, duration, result.success, result.cancelled
            )
        return result
