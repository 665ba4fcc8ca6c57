"""
Arya Report Rows
~~~~~~~~~~~~~~~~
Plain display records built from a statistics snapshot. Front-ends render
these; nothing here touches the terminal.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from .rules import PAUSED

SECTION_TITLES = {
    "apps": "Applications",
    "workspaces": "Workspaces",
    "windows": "Windows",
    "projects": "Projects",
}


def format_duration(ms: int) -> str:
    """Format milliseconds into a human-readable string."""
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m {s}s"
    else:
        h = int(seconds // 3600)
        m = int((seconds % 3600) // 60)
        return f"{h}h {m}m"


@dataclass(frozen=True)
class StatRow:
    name: str
    duration_ms: int

    @property
    def label(self) -> str:
        return format_duration(self.duration_ms)

    @property
    def is_paused(self) -> bool:
        return self.name == PAUSED


@dataclass
class StatSection:
    key: str
    title: str
    rows: List[StatRow] = field(default_factory=list)

    @property
    def total_ms(self) -> int:
        return sum(r.duration_ms for r in self.rows if not r.is_paused)


def build_section(key: str, durations: Dict[str, int], min_ms: int = 0) -> StatSection:
    """Rows sorted by time spent, longest first. Rows under ``min_ms`` are dropped."""
    rows = [
        StatRow(name, ms)
        for name, ms in durations.items()
        if ms >= min_ms
    ]
    rows.sort(key=lambda r: (-r.duration_ms, r.name))
    return StatSection(key, SECTION_TITLES.get(key, key.title()), rows)


def build_report(stats: Dict[str, Dict[str, int]], min_ms: int = 0) -> List[StatSection]:
    """One section per non-empty dimension, in menu order."""
    sections = []
    for key in SECTION_TITLES:
        durations = stats.get(key) or {}
        if durations:
            sections.append(build_section(key, durations, min_ms))
    return sections


def total_tracked_ms(stats: Dict[str, Dict[str, int]]) -> int:
    """Time spent in focused windows, excluding paused time."""
    return sum(ms for name, ms in stats.get("windows", {}).items() if name != PAUSED)
