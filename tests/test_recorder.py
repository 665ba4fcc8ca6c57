"""
Tests for the Recorder session orchestrator.
Driven by a fake observer and a manual clock.
"""

import json
import os
import threading
from datetime import datetime, timedelta, timezone

import pytest

from arya.config import DEFAULT_RULES, TrackerConfig
from arya.observer import EnvironmentObserver
from arya.record import ActivityRecord, RecordFormatError
from arya.recorder import Recorder
from arya.rules import NO_PROJECT, PAUSED, RULES_FORMAT_VERSION

T0 = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


def minutes(n: float) -> int:
    return int(n * 60_000)


class FakeObserver(EnvironmentObserver):
    def __init__(self, app="code", title="main.py", workspace="Main"):
        self.app = app
        self.title = title
        self.workspace = workspace
        self.locked = False

    def current_app(self):
        return self.app

    def current_window_title(self):
        return self.title

    def current_workspace(self):
        return self.workspace

    def is_locked(self):
        return self.locked

    def focus(self, app, title, workspace=None):
        self.app = app
        self.title = title
        if workspace:
            self.workspace = workspace


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, minutes: float):
        self.now += timedelta(minutes=minutes)


@pytest.fixture
def observer():
    return FakeObserver()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def paths(tmp_path):
    return tmp_path / "projects.json", tmp_path / "record.json"


@pytest.fixture
def recorder(observer, clock, paths):
    rules_path, record_path = paths
    rec = Recorder(
        observer,
        TrackerConfig(save_interval=600),
        rules_path=rules_path,
        record_path=record_path,
        clock=clock,
    )
    rec.open()
    return rec


def write_rules(path, projects, sequence=None, ignores=None, version=RULES_FORMAT_VERSION):
    path.write_text(json.dumps({
        "formatVersion": version,
        "projects": projects,
        "projectSequence": sequence if sequence is not None else list(projects),
        "ignores": ignores or [],
    }), encoding="utf-8")


class TestOpen:
    def test_writes_default_rules(self, recorder, paths):
        rules_path, _ = paths
        assert json.loads(rules_path.read_text(encoding="utf-8")) == DEFAULT_RULES
        assert recorder.rules.project_order == DEFAULT_RULES["projectSequence"]

    def test_starts_fresh_record(self, recorder):
        assert recorder.record is not None
        assert recorder.record.created == T0
        assert recorder.get_current()["window"] == "main.py"

    def test_starts_paused_when_locked(self, observer, clock, paths):
        observer.locked = True
        rec = Recorder(observer, rules_path=paths[0], record_path=paths[1], clock=clock)
        rec.open()
        assert rec.paused

    def test_restores_and_records_downtime_as_paused(self, recorder, observer, clock, paths):
        clock.advance(10)
        recorder.save()

        # Process exits, comes back 20 minutes later
        clock.advance(20)
        observer.focus("firefox", "Home | Facebook")
        restored = Recorder(
            observer, rules_path=paths[0], record_path=paths[1], clock=clock
        )
        restored.open()

        stats = restored.get_stats()
        assert stats["windows"] == {"main.py": minutes(10), PAUSED: minutes(20), "Home | Facebook": 0}
        assert restored.get_current()["project"] == "Facebook"
        assert restored.record.created == T0

    def test_restored_while_locked_stays_paused(self, recorder, observer, clock, paths):
        clock.advance(5)
        recorder.save()
        clock.advance(5)
        observer.locked = True

        restored = Recorder(observer, rules_path=paths[0], record_path=paths[1], clock=clock)
        restored.open()
        assert restored.paused

    def test_malformed_record_raises(self, observer, clock, paths):
        rules_path, record_path = paths
        record_path.write_text("garbage", encoding="utf-8")
        rec = Recorder(observer, rules_path=rules_path, record_path=record_path, clock=clock)

        with pytest.raises(RecordFormatError):
            rec.open()
        assert record_path.with_name("record.json.bak").read_text(encoding="utf-8") == "garbage"


class TestSignals:
    def test_focus_change_updates_record(self, recorder, observer, clock):
        clock.advance(5)
        observer.focus("firefox", "Home | Facebook", "Web")
        recorder.on_focus_changed()

        stats = recorder.get_stats()
        assert stats["apps"] == {"code": minutes(5), "firefox": 0}
        assert stats["workspaces"] == {"Main": minutes(5), "Web": 0}

    def test_menu_open_updates_record(self, recorder, observer, clock):
        clock.advance(2)
        observer.focus("code", "other.py")
        recorder.on_menu_opened()
        assert recorder.get_current()["window"] == "other.py"

    def test_lock_pauses_and_unlock_resumes(self, recorder, clock):
        clock.advance(5)
        recorder.on_lock_changed(True)
        assert recorder.paused

        clock.advance(10)
        recorder.on_lock_changed(False)
        assert not recorder.paused

        clock.advance(1)
        stats = recorder.get_stats()
        for key in ("apps", "windows", "workspaces", "projects"):
            assert stats[key][PAUSED] == minutes(10)

    def test_lock_is_edge_triggered(self, recorder, clock):
        clock.advance(5)
        recorder.on_lock_changed(True)
        clock.advance(5)
        recorder.on_lock_changed(True)
        recorder.on_lock_changed(False)
        recorder.on_lock_changed(False)

        history = [entity for _, entity in recorder.record.windows.history]
        assert history == ["main.py", PAUSED, "main.py"]

    def test_unlock_without_lock_is_ignored(self, recorder):
        recorder.on_lock_changed(False)
        assert len(recorder.record.windows.history) == 1

    def test_updates_ignored_while_locked(self, recorder, observer, clock):
        recorder.on_lock_changed(True)
        clock.advance(3)
        observer.focus("firefox", "Facebook")
        recorder.update()
        assert recorder.get_current()["window"] == PAUSED

    def test_poll_follows_observer_lock_state(self, recorder, observer, clock):
        clock.advance(1)
        observer.locked = True
        recorder.poll()
        assert recorder.paused

        clock.advance(1)
        observer.locked = False
        recorder.poll()
        assert not recorder.paused


class TestRules:
    def test_reload_applies_new_rules(self, recorder, observer, clock, paths):
        write_rules(paths[0], {"Python": [r"\.py$"]})
        assert recorder.reload_rules() is True

        clock.advance(1)
        observer.focus("code", "other.py")
        recorder.update()
        assert recorder.get_current()["project"] == "Python"

    def test_reload_does_not_rewrite_history(self, recorder, clock, paths):
        clock.advance(4)
        write_rules(paths[0], {"Python": [r"\.py$"]})
        recorder.reload_rules()

        assert recorder.record.projects.history[0][1] != "Python"

    def test_reload_with_recalculate(self, recorder, clock, paths):
        clock.advance(4)
        write_rules(paths[0], {"Python": [r"\.py$"]})
        recorder.reload_rules(recalculate=True)

        assert recorder.get_stats()["projects"] == {"Python": minutes(4)}

    def test_rejected_rules_keep_previous(self, recorder, paths):
        previous = recorder.rules
        write_rules(paths[0], {"Python": [r"\.py$"]}, version="0.2")

        assert recorder.reload_rules() is False
        assert recorder.rules is previous
        assert recorder.record.rules is previous

    def test_unparseable_rules_keep_previous(self, recorder, paths):
        previous = recorder.rules
        paths[0].write_text("{", encoding="utf-8")
        assert recorder.reload_rules() is False
        assert recorder.rules is previous

class TestRulesFileWatch:
    @staticmethod
    def touch_later(path):
        """Move the mtime forward so the change is visible on coarse clocks."""
        mtime = path.stat().st_mtime_ns + 1_000_000_000
        os.utime(path, ns=(mtime, mtime))

    def test_poll_picks_up_edited_rules(self, recorder, observer, clock, paths):
        write_rules(paths[0], {"Python": [r"\.py$"]})
        self.touch_later(paths[0])

        clock.advance(1)
        observer.focus("code", "other.py")
        recorder.poll()

        assert recorder.rules.project_order == ["Python"]
        assert recorder.get_current()["project"] == "Python"

    def test_unchanged_file_is_not_reloaded(self, recorder, clock):
        rules = recorder.rules
        clock.advance(1)
        recorder.poll()
        assert recorder.rules is rules

    def test_edit_keeps_accumulated_history(self, recorder, observer, clock, paths):
        clock.advance(4)
        observer.focus("firefox", "Home | Facebook")
        recorder.poll()

        write_rules(paths[0], {"Python": [r"\.py$"]})
        self.touch_later(paths[0])
        clock.advance(1)
        recorder.poll()

        stats = recorder.get_stats()
        assert stats["windows"] == {"main.py": minutes(4), "Home | Facebook": minutes(1)}
        assert stats["projects"]["Facebook"] == minutes(1)

    def test_rejected_edit_is_not_retried_every_poll(self, recorder, paths, caplog):
        write_rules(paths[0], {"Python": [r"\.py$"]}, version="0.2")
        self.touch_later(paths[0])

        recorder.poll()
        recorder.poll()

        warnings = [r for r in caplog.records if "Keeping previous" in r.getMessage()]
        assert len(warnings) == 1

    def test_requested_recalculation_is_saved(self, recorder, clock, paths):
        clock.advance(4)
        write_rules(paths[0], {"Python": [r"\.py$"]})

        recorder.request_reload(recalculate=True)
        recorder.poll()

        assert recorder.get_stats()["projects"] == {"Python": minutes(4)}
        doc = json.loads(paths[1].read_text(encoding="utf-8"))
        assert [entity for _, entity in doc["projectUsageHist"]] == ["Python"]

    def test_request_is_consumed_once(self, recorder, paths):
        recorder.request_reload()
        recorder.poll()
        rules = recorder.rules
        recorder.poll()
        assert recorder.rules is rules


class TestLocalClock:
    def test_autosave_across_fall_back(self, new_york_time, observer, paths):
        clock = FakeClock(datetime.fromtimestamp(1730613000))  # 01:50 EDT
        rec = Recorder(
            observer,
            TrackerConfig(save_interval=600),
            rules_path=paths[0],
            record_path=paths[1],
            clock=clock,
        )
        rec.open()

        clock.now = datetime.fromtimestamp(1730613900)  # 01:05 EST, 15 minutes later
        rec.update()

        assert paths[1].exists()
        assert rec.get_stats()["windows"] == {"main.py": minutes(15)}


class TestPersistence:
    def test_save_if_due(self, recorder, clock, paths):
        _, record_path = paths
        assert not record_path.exists()

        clock.advance(5)
        recorder.update()
        assert not record_path.exists()

        clock.advance(6)
        recorder.update()
        assert record_path.exists()

    def test_saved_record_loads(self, recorder):
        recorder.save()
        restored = ActivityRecord.load_from_file(recorder.record_path, recorder.rules)
        assert restored.windows.history == recorder.record.windows.history

    def test_reset_discards_history(self, recorder, observer, clock):
        clock.advance(5)
        observer.focus("firefox", "Facebook")
        recorder.update()

        clock.advance(5)
        recorder.reset()

        assert recorder.record.created == T0 + timedelta(minutes=10)
        assert recorder.get_stats()["windows"] == {"Facebook": 0}
        assert recorder.record_path.exists()

    def test_reset_while_locked_starts_paused(self, recorder, clock):
        recorder.on_lock_changed(True)
        clock.advance(1)
        recorder.reset()
        assert recorder.paused

    def test_stats_before_open(self, observer, paths):
        rec = Recorder(observer, rules_path=paths[0], record_path=paths[1])
        assert rec.get_stats() == {"apps": {}, "workspaces": {}, "windows": {}, "projects": {}}
        assert rec.get_current() is None
        rec.update()


class TestPollThread:
    @staticmethod
    def count_lock_checks(observer, monkeypatch, times, error=None):
        """Make is_locked set the returned event after ``times`` calls."""
        reached = threading.Event()
        calls = []

        def is_locked():
            calls.append(1)
            if len(calls) >= times:
                reached.set()
            if error:
                raise error
            return False

        monkeypatch.setattr(observer, "is_locked", is_locked)
        return reached

    def test_start_and_stop(self, observer, paths, monkeypatch):
        rec = Recorder(
            observer,
            TrackerConfig(poll_interval=0.01),
            rules_path=paths[0],
            record_path=paths[1],
        )
        # One check in open(), then at least two polls
        polled = self.count_lock_checks(observer, monkeypatch, 3)
        rec.start()
        assert rec._running

        assert polled.wait(timeout=5)
        rec.stop()

        assert not rec._running
        assert paths[1].exists()

    def test_poll_errors_do_not_stop_loop(self, observer, paths, monkeypatch):
        rec = Recorder(
            observer,
            TrackerConfig(poll_interval=0.01),
            rules_path=paths[0],
            record_path=paths[1],
        )
        rec.open()

        failed_repeatedly = self.count_lock_checks(
            observer, monkeypatch, 3, error=RuntimeError("display went away")
        )
        rec.start()

        assert failed_repeatedly.wait(timeout=5)
        rec.stop()
        assert not rec._running


def test_no_project_without_matching_rules(observer, clock, paths):
    write_rules(paths[0], {"Mail": ["Inbox"]})
    rec = Recorder(observer, rules_path=paths[0], record_path=paths[1], clock=clock)
    rec.open()
    assert rec.get_current()["project"] == NO_PROJECT
