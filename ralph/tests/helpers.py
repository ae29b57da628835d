"""Test helpers: a scripted fake agent and result builders."""

from typing import Callable

from ralph.models import IterationResult

PLAN_AB = """# Implementation Plan

## Tasks

- [ ] Task A
- [ ] Task B
"""


class ScriptedInvoker:
    """Fake agent that replays a list of results.

    Entries may be IterationResult objects or callables taking the prompt
    and returning one (to edit the plan the way a real agent would).
    """

    def __init__(
        self,
        script: list[IterationResult | Callable[[str], IterationResult]],
    ) -> None:
        self.script = list(script)
        self.prompts: list[str] = []
        self.phases: list[str] = []

    def invoke(self, prompt: str, phase: str) -> IterationResult:
        self.prompts.append(prompt)
        self.phases.append(phase)
        if not self.script:
            raise AssertionError("ScriptedInvoker ran out of results")
        entry = self.script.pop(0)
        if callable(entry):
            return entry(prompt)
        return entry


def ok(output: str = "done") -> IterationResult:
    return IterationResult(success=True, output=output, exit_code=0)


def failed(error: str) -> IterationResult:
    return IterationResult(success=False, output=error, error=error, exit_code=1)


def cancelled() -> IterationResult:
    return IterationResult(success=False, cancelled=True)
