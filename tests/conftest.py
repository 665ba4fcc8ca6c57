"""Shared fixtures."""

import time

import pytest


@pytest.fixture
def new_york_time(monkeypatch):
    """Run with local time set to a zone that observes daylight saving."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "America/New_York")
    time.tzset()
    if not time.localtime(1710054030).tm_isdst:
        monkeypatch.undo()
        time.tzset()
        pytest.skip("no time zone data for America/New_York")
    yield
    monkeypatch.undo()
    time.tzset()
