"""Deterministic error classification for agent failures.

Maps raw error text to an ErrorClassification using ordered rule tables
loaded from YAML. Tables are evaluated Fatal -> Transient -> Critical so that
authentication and quota failures are never retried, even when their text
also contains a transient-looking token such as "429".
"""

import logging
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from ralph.errors import RuleSetError
from ralph.models import ErrorClassification, ErrorKind

logger = logging.getLogger(__name__)

UNKNOWN_MESSAGE = "Unrecognized agent error. Review the output before retrying."

# Table evaluation order, most severe first
TABLE_ORDER: tuple[ErrorKind, ...] = (
    ErrorKind.FATAL,
    ErrorKind.TRANSIENT,
    ErrorKind.CRITICAL,
)


@dataclass(frozen=True)
class Rule:
    """A single pattern -> classification entry."""

    pattern: re.Pattern[str]
    message: str
    resumable: bool
    retry_after: float | None = None

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass(frozen=True)
class RuleSet:
    """Ordered rule tables, one per classification kind."""

    fatal: tuple[Rule, ...] = ()
    transient: tuple[Rule, ...] = ()
    critical: tuple[Rule, ...] = ()

    def table(self, kind: ErrorKind) -> tuple[Rule, ...]:
        if kind == ErrorKind.FATAL:
            return self.fatal
        if kind == ErrorKind.TRANSIENT:
            return self.transient
        if kind == ErrorKind.CRITICAL:
            return self.critical
        return ()

    def __len__(self) -> int:
        return len(self.fatal) + len(self.transient) + len(self.critical)


def _compile_rule(kind: ErrorKind, index: int, entry: Any) -> Rule:
    if not isinstance(entry, dict) or "pattern" not in entry:
        raise RuleSetError(f"{kind.value} rule #{index} must define a pattern")

    try:
        pattern = re.compile(str(entry["pattern"]), re.IGNORECASE)
    except re.error as e:
        raise RuleSetError(
            f"{kind.value} rule #{index} has an invalid pattern: {e}"
        ) from e

    message = str(entry.get("message", "")).strip() or kind.value

    if kind == ErrorKind.FATAL:
        if "resumable" not in entry:
            raise RuleSetError(f"Fatal rule #{index} must set resumable")
        return Rule(
            pattern=pattern, message=message, resumable=bool(entry["resumable"])
        )

    if kind == ErrorKind.TRANSIENT:
        # Without a hint the retry controller falls back to its own backoff
        retry_after = entry.get("retry_after")
        return Rule(
            pattern=pattern,
            message=message,
            resumable=True,
            retry_after=float(retry_after) if retry_after is not None else None,
        )

    # Critical: delay comes from the retry controller's backoff
    return Rule(pattern=pattern, message=message, resumable=True)


def parse_rules(data: Any) -> RuleSet:
    """Build a RuleSet from already-parsed YAML data.

    Args:
        data: Mapping with optional `fatal`, `transient` and `critical` lists

    Returns:
        Compiled RuleSet

    Raises:
        RuleSetError: If the structure is wrong or a pattern does not compile
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RuleSetError("Rule file must contain a mapping of rule tables")

    tables: dict[ErrorKind, tuple[Rule, ...]] = {}
    for kind in TABLE_ORDER:
        entries = data.get(kind.value.lower()) or []
        if not isinstance(entries, list):
            raise RuleSetError(f"'{kind.value.lower()}' must be a list of rules")
        tables[kind] = tuple(
            _compile_rule(kind, i, entry) for i, entry in enumerate(entries, start=1)
        )

    return RuleSet(
        fatal=tables[ErrorKind.FATAL],
        transient=tables[ErrorKind.TRANSIENT],
        critical=tables[ErrorKind.CRITICAL],
    )


def load_rules(path: str | Path | None = None) -> RuleSet:
    """Load a rule set from YAML.

    Args:
        path: Rule file to read. Uses the packaged error_rules.yaml if None.

    Returns:
        Compiled RuleSet
    """
    try:
        if path is None:
            text = resources.files("ralph").joinpath("error_rules.yaml").read_text()
        else:
            text = Path(path).read_text()
        data = yaml.safe_load(text)
    except (OSError, yaml.YAMLError) as e:
        raise RuleSetError(
            f"Could not load error rules from {path or 'package'}: {e}"
        ) from e

    rules = parse_rules(data)
    logger.debug("Loaded %d error rules from %s", len(rules), path or "package")
    return rules


_default_rules: RuleSet | None = None


def default_rules() -> RuleSet:
    """Return the packaged rule set, loading it on first use."""
    global _default_rules
    if _default_rules is None:
        _default_rules = load_rules()
    return _default_rules


def classify(raw_message: str, rules: RuleSet | None = None) -> ErrorClassification:
    """Classify raw agent error text.

    Never raises. Returns an Unknown, resumable classification without a
    retry hint when no rule matches (including for empty input).

    Args:
        raw_message: Error text (stderr/stdout of the failed agent call)
        rules: Rule set to use (packaged defaults if None)

    Returns:
        ErrorClassification for the first matching rule
    """
    raw = raw_message or ""
    if rules is None:
        rules = default_rules()

    for kind in TABLE_ORDER:
        for rule in rules.table(kind):
            if rule.matches(raw):
                return ErrorClassification(
                    kind=kind,
                    message=rule.message,
                    resumable=rule.resumable,
                    retry_after=rule.retry_after,
                    raw=raw,
                )

    return ErrorClassification(
        kind=ErrorKind.UNKNOWN,
        message=UNKNOWN_MESSAGE,
        resumable=True,
        retry_after=None,
        raw=raw,
    )
