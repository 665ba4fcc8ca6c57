"""
Arya Recorder
~~~~~~~~~~~~~
Session orchestrator. Owns one ActivityRecord, forwards desktop signals to
it, pauses while the screen is locked and saves the record periodically.
Can run its own background poll loop when no host event loop is available.
The poll loop also reloads the project rules when their file changes.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import TrackerConfig, RECORD_PATH, RULES_PATH, ensure_rules_file
from .observer import EnvironmentObserver
from .record import ActivityRecord
from .rules import RuleSet, RulesFormatError, load_rules
from .timeline import to_utc_ms, utc_now

logger = logging.getLogger(__name__)


class Recorder:
    """
    Connects an environment observer to an activity record.

    Usage:
        recorder = Recorder(X11Observer(), load_config())
        recorder.open()
        recorder.start()
        # ... later ...
        recorder.stop()
    """

    def __init__(
        self,
        observer: EnvironmentObserver,
        config: Optional[TrackerConfig] = None,
        rules_path: Optional[Path] = None,
        record_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            observer: Source of the focused app, title, workspace and lock state.
            config: Tracking toggles and intervals.
            rules_path: Project rule definitions file.
            record_path: Where the activity record is persisted.
            clock: Returns "now"; injectable for tests. Naive values are
                taken as local time.
        """
        self.observer = observer
        self.config = config or TrackerConfig()
        self.rules_path = Path(rules_path or RULES_PATH)
        self.record_path = Path(record_path or RECORD_PATH)
        self.clock = clock

        self.rules = RuleSet()
        self.record: Optional[ActivityRecord] = None

        self._locked = False
        self._last_save: Optional[datetime] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()

        self._rules_mtime: Optional[int] = None
        self._reload_requested = False
        self._recalculate_requested = False

    # ── Lifecycle ──────────────────────────────────────────────────────

    def open(self):
        """
        Load the rules and restore the saved record, or start a new one.

        Time between the last save and now is recorded as paused.

        Raises:
            RecordFormatError: the saved record exists but cannot be read.
        """
        with self._lock:
            ensure_rules_file(self.rules_path)
            self.reload_rules()

            now = self._now()
            self._locked = self.observer.is_locked()

            if self.record_path.exists():
                record = ActivityRecord.load_from_file(self.record_path, self.rules, self.config)
                record.pause(record.saved or now)
                if not self._locked:
                    record.resume(now, self.observer.observe())
                self.record = record
            else:
                self.record = ActivityRecord.create(now, self.observer.observe(), self.rules, self.config)
                if self._locked:
                    self.record.pause(now)

            self._last_save = now

    def reset(self):
        """Clear all history and start a new session from the current state."""
        with self._lock:
            now = self._now()
            self.record = ActivityRecord.create(now, self.observer.observe(), self.rules, self.config)
            if self._locked:
                self.record.pause(now)
            logger.info("History cleared")
            self.save()

    def start(self):
        """Start the background polling thread."""
        if self._running:
            return
        if self.record is None:
            self.open()

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="Arya-Recorder",
            daemon=True,
        )
        self._thread.start()

    def stop(self):
        """Stop polling and save the record."""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self.save()

    # ── Signals ────────────────────────────────────────────────────────

    def update(self):
        """Feed the current observation into the record."""
        with self._lock:
            if self.record is None:
                return
            now = self._now()
            self.record.update(now, *self._observe())
            self.save_if_due(now)

    def _observe(self):
        obs = self.observer.observe()
        return obs.app, obs.title, obs.workspace

    def on_focus_changed(self):
        self.update()

    def on_menu_opened(self):
        self.update()

    def on_lock_changed(self, locked: bool):
        """Pause on lock, resume on unlock. Repeated states are ignored."""
        with self._lock:
            if locked == self._locked or self.record is None:
                return
            self._locked = locked

            now = self._now()
            if locked:
                self.record.pause(now)
            else:
                self.record.resume(now, self.observer.observe())
            self.save_if_due(now)

    def poll(self):
        """One host tick: pick up rule changes, check the lock state, then update."""
        self._check_rules()
        self.on_lock_changed(self.observer.is_locked())
        self.update()

    # ── Rules ──────────────────────────────────────────────────────────

    def request_reload(self, recalculate: bool = False):
        """
        Ask for the rules to be reloaded on the next poll.

        Only sets flags, so it is safe to call from a signal handler.
        """
        if recalculate:
            self._recalculate_requested = True
        self._reload_requested = True

    def _check_rules(self):
        with self._lock:
            changed = self._read_rules_mtime() != self._rules_mtime
            if not (changed or self._reload_requested):
                return

            recalculate = self._recalculate_requested
            self._reload_requested = False
            self._recalculate_requested = False
            if changed:
                logger.info("Rules file %s changed", self.rules_path)
            self.reload_rules(recalculate=recalculate)
            if recalculate:
                self.save()

    def _read_rules_mtime(self) -> Optional[int]:
        try:
            return self.rules_path.stat().st_mtime_ns
        except OSError:
            return None

    def reload_rules(self, recalculate: bool = False) -> bool:
        """
        Re-read the project rules file.

        A rejected file leaves the current rules in place. Returns True if
        the new rules were applied.
        """
        with self._lock:
            self._rules_mtime = self._read_rules_mtime()
            try:
                rules = load_rules(self.rules_path)
            except RulesFormatError as e:
                logger.warning("Keeping previous project rules: %s", e)
                return False

            self.rules = rules
            if self.record is not None:
                self.record.replace_rules(rules, recalculate=recalculate)
            logger.info(
                "Loaded %d project rules from %s", len(rules.project_order), self.rules_path
            )
            return True

    # ── Queries ────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            if self.record is None:
                return {"apps": {}, "workspaces": {}, "windows": {}, "projects": {}}
            return self.record.get_stats(self._now())

    def get_current(self) -> Optional[dict]:
        """The entity each timeline is currently on."""
        with self._lock:
            if self.record is None:
                return None
            record = self.record
            return {
                "app": record.apps.last_id,
                "window": record.windows.last_id,
                "workspace": record.workspaces.last_id,
                "project": record.projects.last_id,
                "paused": record.paused,
                "session_ms": record.elapsed_ms(self._now()),
            }

    @property
    def paused(self) -> bool:
        return bool(self.record and self.record.paused)

    # ── Persistence ────────────────────────────────────────────────────

    def save(self):
        with self._lock:
            if self.record is None:
                return
            now = self._now()
            self.record.save_to_file(self.record_path, now)
            self._last_save = now

    def save_if_due(self, now: Optional[datetime] = None):
        now = to_utc_ms(now) if now else self._now()
        if self._last_save is None or \
                (now - self._last_save).total_seconds() >= self.config.save_interval:
            self.save()

    # ── Internal Logic ─────────────────────────────────────────────────

    def _poll_loop(self):
        """Main polling loop, runs in a background thread."""
        while self._running:
            try:
                self.poll()
            except Exception:
                # Never crash the tracking loop
                logger.exception("Error while polling the desktop")
            self._stop_event.wait(self.config.poll_interval)

    def _now(self) -> datetime:
        return to_utc_ms(self.clock())
