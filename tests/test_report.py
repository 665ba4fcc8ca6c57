"""Tests for the report display rows."""

import pytest

from arya.report import (
    StatRow,
    build_report,
    build_section,
    format_duration,
    total_tracked_ms,
)
from arya.rules import PAUSED


@pytest.mark.parametrize("ms, expected", [
    (0, "0s"),
    (42_000, "42s"),
    (61_000, "1m 1s"),
    (3_599_000, "59m 59s"),
    (3_600_000, "1h 0m"),
    (5_430_000, "1h 30m"),
])
def test_format_duration(ms, expected):
    assert format_duration(ms) == expected


class TestSections:
    def test_sorted_longest_first(self):
        section = build_section("projects", {"A": 10, "B": 30, "C": 20})
        assert [r.name for r in section.rows] == ["B", "C", "A"]
        assert section.title == "Projects"

    def test_ties_sorted_by_name(self):
        section = build_section("apps", {"b": 5, "a": 5})
        assert [r.name for r in section.rows] == ["a", "b"]

    def test_min_duration_filter(self):
        section = build_section("apps", {"short": 59_999, "long": 60_000}, min_ms=60_000)
        assert [r.name for r in section.rows] == ["long"]

    def test_total_excludes_paused(self):
        section = build_section("windows", {"a": 100, PAUSED: 500})
        assert section.total_ms == 100

    def test_row_helpers(self):
        row = StatRow(PAUSED, 90_000)
        assert row.is_paused
        assert row.label == "1m 30s"


class TestReport:
    def test_section_order_and_empty_skipped(self):
        stats = {
            "projects": {"X": 1},
            "apps": {"code": 2},
            "windows": {},
            "workspaces": {"Main": 3},
        }
        keys = [s.key for s in build_report(stats)]
        assert keys == ["apps", "workspaces", "projects"]

    def test_total_tracked(self):
        stats = {"windows": {"a": 1_000, "b": 2_000, PAUSED: 9_000}}
        assert total_tracked_ms(stats) == 3_000

    def test_total_without_windows(self):
        assert total_tracked_ms({}) == 0
