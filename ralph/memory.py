"""Cross-session project memory.

Learnings that outlive a single session live in `<ralph_dir>/memory.md`,
grouped under fixed sections. Whether memory is recorded is a project
setting stored in `<ralph_dir>/settings.json`; it defaults to on.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ralph.errors import RalphError

logger = logging.getLogger(__name__)

MEMORY_FILE_NAME = "memory.md"
SETTINGS_FILE_NAME = "settings.json"

SECTIONS: dict[str, str] = {
    "Patterns": "Code patterns, conventions, and best practices discovered in this codebase.",
    "Commands": "Build, test, lint, and other commands that work for this project.",
    "Gotchas": "Common pitfalls, edge cases, and things to watch out for.",
    "Decisions": "Architectural decisions, design choices, and their rationale.",
}

PLACEHOLDER_PREFIX = "<!-- Add"
LAST_UPDATED_PREFIX = "*Last updated:"


def render_template(now: datetime) -> str:
    """Empty memory document with every section in place."""
    lines = [
        "# Ralph Memory",
        "",
        "> Cross-session learnings that persist across all Ralph sessions.",
        "> This file is managed by ralph. You can also edit it by hand.",
        "",
        "---",
        "",
    ]
    for name, blurb in SECTIONS.items():
        lines += [
            f"## {name}",
            "",
            f"> {blurb}",
            "",
            f"{PLACEHOLDER_PREFIX} {name.lower()} here -->",
            "",
            "---",
            "",
        ]
    lines.append(f"{LAST_UPDATED_PREFIX} {now:%Y-%m-%d %H:%M:%S}*")
    return "\n".join(lines) + "\n"


@dataclass
class MemoryStats:
    """Entry counts per section."""

    enabled: bool
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def count_entries(text: str) -> dict[str, int]:
    """Count `- ` entries under each known section heading."""
    counts = {name: 0 for name in SECTIONS}
    current: str | None = None
    for line in text.splitlines():
        if line.startswith("## "):
            heading = line[3:].strip()
            current = heading if heading in counts else None
        elif line.strip() == "---":
            current = None
        elif current is not None and line.startswith("- "):
            counts[current] += 1
    return counts


class MemoryStore:
    """Reads and edits the project memory file and its on/off setting.

    Args:
        ralph_dir: Project state directory (usually `.ralph`)
        clock: Source of local time for entry dates
    """

    def __init__(
        self, ralph_dir: Path, clock: Callable[[], datetime] = datetime.now
    ) -> None:
        self.ralph_dir = ralph_dir
        self.memory_file = ralph_dir / MEMORY_FILE_NAME
        self.settings_file = ralph_dir / SETTINGS_FILE_NAME
        self._clock = clock

    def _settings(self) -> dict[str, Any]:
        if not self.settings_file.exists():
            return {}
        try:
            with open(self.settings_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable settings %s: %s", self.settings_file, e)
            return {}
        return data if isinstance(data, dict) else {}

    def is_enabled(self) -> bool:
        memory = self._settings().get("memory")
        if not isinstance(memory, dict):
            return True
        return bool(memory.get("enabled", True))

    def set_enabled(self, enabled: bool) -> None:
        """Turn memory on or off, keeping any other settings.

        Enabling creates the memory file if it does not exist yet.
        """
        settings = self._settings()
        memory = settings.get("memory")
        if not isinstance(memory, dict):
            memory = {}
        memory["enabled"] = enabled
        settings["memory"] = memory

        self.ralph_dir.mkdir(parents=True, exist_ok=True)
        with open(self.settings_file, "w") as f:
            json.dump(settings, f, indent=2)

        if enabled:
            self.ensure()
        logger.info("Memory %s", "enabled" if enabled else "disabled")

    def ensure(self) -> Path | None:
        """Create the memory file when memory is on.

        Returns:
            The memory file, or None if memory is off
        """
        if not self.is_enabled():
            return None
        if not self.memory_file.exists():
            self.clear()
        return self.memory_file

    def clear(self) -> None:
        """Reset the memory file to the empty template."""
        self.ralph_dir.mkdir(parents=True, exist_ok=True)
        self.memory_file.write_text(render_template(self._clock()))

    def content(self) -> str:
        """Memory text, or "" when memory is off or nothing was recorded."""
        if not self.is_enabled() or not self.memory_file.exists():
            return ""
        return self.memory_file.read_text()

    def add(self, section: str, entry: str, source: str = "") -> bool:
        """Add an entry under a section.

        Args:
            section: One of SECTIONS (case-insensitive)
            entry: Text of the learning
            source: Optional origin, e.g. a session id

        Returns:
            True if the entry was written. False when memory is off or the
            same text is already recorded.

        Raises:
            RalphError: If the section is unknown or the entry is empty
        """
        name = next((s for s in SECTIONS if s.lower() == section.lower()), None)
        if name is None:
            raise RalphError(
                f"Unknown memory section '{section}'. "
                f"Choose from: {', '.join(SECTIONS)}"
            )
        entry = " ".join(entry.split())
        if not entry:
            raise RalphError("Memory entry is empty")

        if self.ensure() is None:
            return False

        text = self.memory_file.read_text()
        if entry in text:
            logger.debug("Memory entry already recorded: %s", entry)
            return False

        now = self._clock()
        origin = f" *(from: {source})*" if source else ""
        formatted = f"- {entry}{origin} [{now:%Y-%m-%d}]"

        output: list[str] = []
        in_section = False
        inserted = False
        for line in text.splitlines():
            if line == f"## {name}":
                in_section = True
            elif line.startswith("## "):
                in_section = False
            if in_section and not inserted and line.startswith(PLACEHOLDER_PREFIX):
                output += [formatted, ""]
                inserted = True
            if line.startswith(LAST_UPDATED_PREFIX):
                line = f"{LAST_UPDATED_PREFIX} {now:%Y-%m-%d %H:%M:%S}*"
            output.append(line)

        if not inserted:
            # Hand-edited file without a placeholder: append under the heading
            output = self._append_under_heading(output, name, formatted)
            inserted = formatted in output

        if not inserted:
            logger.warning("Section %s not found in %s", name, self.memory_file)
            return False

        self.memory_file.write_text("\n".join(output) + "\n")
        logger.info("Added memory entry to %s", name)
        return True

    @staticmethod
    def _append_under_heading(lines: list[str], name: str, formatted: str) -> list[str]:
        try:
            start = lines.index(f"## {name}")
        except ValueError:
            return lines
        end = start + 1
        while end < len(lines):
            if lines[end].strip() == "---" or lines[end].startswith("## "):
                break
            end += 1
        # Step back over blank lines so the entry sits with the others
        while end > start + 1 and not lines[end - 1].strip():
            end -= 1
        return lines[:end] + [formatted] + lines[end:]

    def stats(self) -> MemoryStats:
        enabled = self.is_enabled()
        text = self.content()
        counts = count_entries(text) if text else {name: 0 for name in SECTIONS}
        return MemoryStats(enabled=enabled, counts=counts)
