"""
Arya Project Rules
~~~~~~~~~~~~~~~~~~
Rule-based engine that classifies window titles into user-defined projects.
Projects are tried in an explicit order and the first matching regex wins.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

# ── Constants ──────────────────────────────────────────────────────────────

RULES_FORMAT_VERSION = "0.1"

NO_PROJECT = "No Project Defined"
NO_FOCUS = "-1"
PAUSED = "PAUSED"


class ActivityError(Exception):
    """Base class for Arya errors."""


class RulesFormatError(ActivityError, ValueError):
    """A rule definitions document could not be used."""


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise RulesFormatError(f"Invalid pattern {pattern!r}: {e}") from e


# ── Rule Set ───────────────────────────────────────────────────────────────

@dataclass
class RuleSet:
    """
    Ordered project classification rules.

    Attributes:
        project_order: Project names in evaluation order.
        rules_by_project: Project name -> regex patterns, tried in list order.
        ignore_patterns: Titles matching any of these keep the current project.
    """
    project_order: List[str] = field(default_factory=list)
    rules_by_project: Dict[str, List[str]] = field(default_factory=dict)
    ignore_patterns: List[str] = field(default_factory=list)

    def __post_init__(self):
        missing = [p for p in self.project_order if p not in self.rules_by_project]
        if missing:
            raise RulesFormatError(
                f"Projects without rules: {', '.join(missing)}"
            )

        self._compiled = [
            (project, [_compile(p) for p in self.rules_by_project[project]])
            for project in self.project_order
        ]
        self._ignores = [_compile(p) for p in self.ignore_patterns]

    # ── Matching ───────────────────────────────────────────────────────

    def classify(self, window_title: str) -> str:
        """
        Map a window title to a project name.

        Returns the first project in ``project_order`` with a pattern found
        anywhere in the title, or ``NO_PROJECT`` when nothing matches.
        """
        if window_title is None or window_title == NO_FOCUS:
            return NO_PROJECT

        for project, patterns in self._compiled:
            for pattern in patterns:
                if pattern.search(window_title):
                    return project

        return NO_PROJECT

    def should_ignore(self, window_title: str) -> bool:
        """Check whether a title must leave the current project untouched."""
        if window_title is None or window_title == NO_FOCUS:
            return False

        for pattern in self._ignores:
            if pattern.search(window_title):
                return True
        return False

    # ── Document Codec ─────────────────────────────────────────────────

    def to_document(self) -> Dict[str, Any]:
        return {
            "formatVersion": RULES_FORMAT_VERSION,
            "projects": {k: list(v) for k, v in self.rules_by_project.items()},
            "projectSequence": list(self.project_order),
            "ignores": list(self.ignore_patterns),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "RuleSet":
        """Build a RuleSet from a definitions document, rejecting unknown versions."""
        if not isinstance(data, dict):
            raise RulesFormatError("Rule definitions must be a JSON object")

        version = data.get("formatVersion")
        if version != RULES_FORMAT_VERSION:
            raise RulesFormatError(
                f"Unsupported rules formatVersion {version!r} "
                f"(expected {RULES_FORMAT_VERSION!r})"
            )

        projects = data.get("projects", {})
        sequence = data.get("projectSequence", [])
        ignores = data.get("ignores", [])
        if not isinstance(projects, dict) or not isinstance(sequence, list) \
                or not isinstance(ignores, list):
            raise RulesFormatError("Malformed rule definitions document")
        if not all(isinstance(v, list) for v in projects.values()):
            raise RulesFormatError("Project rules must be lists of patterns")

        return cls(
            project_order=[str(p) for p in sequence],
            rules_by_project={str(k): [str(r) for r in v] for k, v in projects.items()},
            ignore_patterns=[str(p) for p in ignores],
        )


# ── File Helpers ───────────────────────────────────────────────────────────

def load_rules(path: Union[str, Path]) -> RuleSet:
    """Load a RuleSet from a definitions file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise RulesFormatError(f"Cannot read rules from {path}: {e}") from e
    return RuleSet.from_document(data)


def save_rules(rules: RuleSet, path: Union[str, Path]) -> None:
    """Write a RuleSet to a definitions file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rules.to_document(), f, indent=4)
