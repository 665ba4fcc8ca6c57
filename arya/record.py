"""
Arya Activity Record
~~~~~~~~~~~~~~~~~~~~
The activity-recording state machine. Owns one Timeline per dimension
(applications, windows, workspaces, projects) and the project RuleSet,
turns observations into transitions, handles pause/resume and reads and
writes the persisted record.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

from .config import TrackerConfig
from .observer import Observation
from .rules import (
    NO_FOCUS,
    NO_PROJECT,
    PAUSED,
    ActivityError,
    RuleSet,
)
from .timeline import Timeline, duration_ms, to_utc_ms, utc_now

logger = logging.getLogger(__name__)

RECORD_VERSION = 1

APPS = "apps"
WINDOWS = "windows"
WORKSPACES = "workspaces"
PROJECTS = "projects"

# Dimension -> key prefix in the persisted document
DOCUMENT_PREFIXES = {
    APPS: "app",
    WINDOWS: "window",
    WORKSPACES: "workspace",
    PROJECTS: "project",
}


class RecordFormatError(ActivityError, ValueError):
    """A persisted activity record could not be read."""


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat(timespec="milliseconds") if moment else None


class ActivityRecord:
    """
    Time spent per application, window, workspace and project.

    Create one with ``ActivityRecord.create`` or restore it with
    ``ActivityRecord.load_from_file``. The record is not thread-safe, the
    caller must serialize calls.
    """

    def __init__(
        self,
        created: datetime,
        timelines: Dict[str, Timeline],
        rules: RuleSet,
        config: Optional[TrackerConfig] = None,
        paused: bool = False,
        saved: Optional[datetime] = None,
    ):
        self.created = to_utc_ms(created)
        self.timelines = timelines
        self.rules = rules
        self.config = config or TrackerConfig()
        self.paused = paused
        self.saved = to_utc_ms(saved) if saved else None

        self._tracked = {
            APPS: self.config.track_apps,
            WINDOWS: True,
            WORKSPACES: self.config.track_workspaces,
            PROJECTS: self.config.track_projects,
        }

    @classmethod
    def create(
        cls,
        now: datetime,
        observation: Observation,
        rules: RuleSet,
        config: Optional[TrackerConfig] = None,
    ) -> "ActivityRecord":
        """Start a new session seeded with the current observation."""
        title = observation.title if observation.title is not None else NO_FOCUS
        if rules.should_ignore(title):
            project = NO_PROJECT
        else:
            project = rules.classify(title)

        timelines = {
            APPS: Timeline.start(APPS, now, observation.app or NO_FOCUS),
            WINDOWS: Timeline.start(WINDOWS, now, title),
            WORKSPACES: Timeline.start(WORKSPACES, now, observation.workspace),
            PROJECTS: Timeline.start(PROJECTS, now, project),
        }
        logger.info("New activity record started at %s", _iso(now))
        return cls(now, timelines, rules, config)

    # ── Accessors ──────────────────────────────────────────────────────

    @property
    def apps(self) -> Timeline:
        return self.timelines[APPS]

    @property
    def windows(self) -> Timeline:
        return self.timelines[WINDOWS]

    @property
    def workspaces(self) -> Timeline:
        return self.timelines[WORKSPACES]

    @property
    def projects(self) -> Timeline:
        return self.timelines[PROJECTS]

    def elapsed_ms(self, now: datetime) -> int:
        """Milliseconds since the session started."""
        return max(0, duration_ms(self.created, to_utc_ms(now)))

    # ── State Machine ──────────────────────────────────────────────────

    def update(
        self,
        now: datetime,
        app: Optional[str],
        title: Optional[str],
        workspace: str,
    ) -> bool:
        """
        Feed one observation into every timeline.

        Does nothing while paused. Returns True if any timeline changed.
        """
        if self.paused:
            return False

        title = title if title is not None else NO_FOCUS
        changed = False

        if self._tracked[APPS]:
            changed |= self.apps.transition(now, app or NO_FOCUS)
        if self._tracked[WORKSPACES]:
            changed |= self.workspaces.transition(now, workspace)
        changed |= self.windows.transition(now, title)

        if self._tracked[PROJECTS]:
            project = self._resolve_project(title, self.projects)
            if project is not None:
                changed |= self.projects.transition(now, project)

        return changed

    def _resolve_project(self, title: str, projects: Timeline) -> Optional[str]:
        """
        Project that ``title`` moves ``projects`` to, or None to stay put.

        An ignored title keeps the current project, except right after a
        pause, where the last trackable project is carried forward so the
        time does not land in "PAUSED".
        """
        if not self.rules.should_ignore(title):
            return self.rules.classify(title)

        if projects.last_id == PAUSED:
            for _, project in reversed(projects.history):
                if project != PAUSED:
                    return project
            return NO_PROJECT

        return None

    def pause(self, now: datetime):
        """Close every open interval and stop recording until resumed."""
        if self.paused:
            logger.debug("Already paused")
            return

        for dimension, timeline in self.timelines.items():
            if self._tracked[dimension]:
                timeline.transition(now, PAUSED)
        self.paused = True
        logger.info("Recording paused at %s", _iso(now))

    def resume(self, now: datetime, observation: Observation):
        """Start recording again, closing the paused interval."""
        was_paused = self.paused
        self.paused = False
        self.update(now, observation.app, observation.title, observation.workspace)
        if was_paused:
            logger.info("Recording resumed at %s", _iso(now))

    def get_stats(self, now: datetime) -> Dict[str, Dict[str, int]]:
        """
        Milliseconds per entity for each dimension, up to ``now``.

        The "no focus" entity is left out. Disabled dimensions are empty.
        """
        stats = {}
        for dimension, timeline in self.timelines.items():
            if not self._tracked[dimension]:
                stats[dimension] = {}
                continue
            snapshot = timeline.snapshot(now)
            snapshot.pop(NO_FOCUS, None)
            stats[dimension] = snapshot
        return stats

    # ── Rules ──────────────────────────────────────────────────────────

    def replace_rules(self, rules: RuleSet, recalculate: bool = False):
        self.rules = rules
        if recalculate:
            self.recalculate_projects()

    def recalculate_projects(self):
        """Rebuild the project timeline from window history with the current rules."""
        rebuilt = Timeline(PROJECTS)
        for moment, title in self.windows.history:
            if title == PAUSED:
                project = PAUSED
            else:
                project = self._resolve_project(title, rebuilt)

            if project is None:
                if rebuilt.history:
                    continue
                project = NO_PROJECT
            rebuilt.transition(moment, project)

        self.timelines[PROJECTS] = rebuilt
        logger.info(
            "Recalculated projects: %d transitions from %d windows",
            len(rebuilt.history), len(self.windows.history),
        )

    # ── Serialization ──────────────────────────────────────────────────

    def to_document(self) -> Dict:
        doc = {
            "version": RECORD_VERSION,
            "created": _iso(self.created),
            "saved": _iso(self.saved),
            "paused": self.paused,
        }
        for dimension, prefix in DOCUMENT_PREFIXES.items():
            hist, stat = self.timelines[dimension].to_document()
            doc[f"{prefix}UsageStat"] = stat
            doc[f"{prefix}UsageHist"] = hist
        return doc

    @classmethod
    def from_document(
        cls,
        doc: Dict,
        rules: RuleSet,
        config: Optional[TrackerConfig] = None,
    ) -> "ActivityRecord":
        if not isinstance(doc, dict):
            raise RecordFormatError("Activity record must be a JSON object")

        version = doc.get("version")
        if version != RECORD_VERSION:
            raise RecordFormatError(f"Unsupported activity record version {version!r}")

        try:
            created = datetime.fromisoformat(doc["created"])
            saved = datetime.fromisoformat(doc["saved"]) if doc.get("saved") else None
            timelines = {
                dimension: Timeline.from_document(
                    dimension,
                    doc[f"{prefix}UsageHist"],
                    doc.get(f"{prefix}UsageStat"),
                )
                for dimension, prefix in DOCUMENT_PREFIXES.items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise RecordFormatError(f"Malformed activity record: {e}") from e

        return cls(
            created,
            timelines,
            rules,
            config,
            paused=bool(doc.get("paused", False)),
            saved=saved,
        )

    def save_to_file(self, path: Union[str, Path], now: Optional[datetime] = None):
        """
        Write the record atomically, replacing ``path``.

        ``saved`` only moves forward once the new file is in place. A failed
        write leaves the previous file and no temporary file behind.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        previous_saved = self.saved
        self.saved = to_utc_ms(now or utc_now())

        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.to_document(), f, indent=1, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError):
            self.saved = previous_saved
            tmp_path.unlink(missing_ok=True)
            raise
        logger.info("Activity record saved to %s", path)

    @classmethod
    def load_from_file(
        cls,
        path: Union[str, Path],
        rules: RuleSet,
        config: Optional[TrackerConfig] = None,
    ) -> "ActivityRecord":
        """
        Restore a record from ``path``.

        A copy of the file is kept as ``<name>.bak`` before parsing so a bad
        restore followed by a save can be undone.

        Raises:
            RecordFormatError: the file is unreadable or malformed.
        """
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise RecordFormatError(f"Cannot read activity record {path}: {e}") from e

        backup = path.with_name(path.name + ".bak")
        try:
            backup.write_bytes(raw)
        except OSError as e:
            logger.warning("Could not back up %s to %s: %s", path, backup, e)

        try:
            doc = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RecordFormatError(f"Activity record {path} is not valid JSON: {e}") from e

        record = cls.from_document(doc, rules, config)
        logger.info("Activity record restored from %s", path)
        return record
