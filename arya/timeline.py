"""
Arya Timeline
~~~~~~~~~~~~~
Append-only transition log for one tracked dimension (application, window,
workspace or project), plus the cumulative time spent on each entity.

Only closed intervals are accumulated. The interval between the last
transition and "now" is added on read by ``snapshot``, so no background
timer is needed to keep totals current.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

ONE_MS = timedelta(milliseconds=1)

Entry = Tuple[datetime, str]


def to_utc_ms(moment: datetime) -> datetime:
    """
    Aware UTC timestamp with whole milliseconds.

    Naive values are taken as local time. Intervals are measured between UTC
    instants so a daylight-saving change neither adds nor loses an hour.
    """
    moment = moment.astimezone(timezone.utc)
    return moment.replace(microsecond=moment.microsecond - moment.microsecond % 1000)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def duration_ms(start: datetime, end: datetime) -> int:
    return (end - start) // ONE_MS


class Timeline:
    """
    Transition history and accumulated durations for one dimension.

    Usage:
        apps = Timeline.start("apps", now, "firefox")
        apps.transition(later, "code")
        apps.snapshot(even_later)  # {"firefox": ..., "code": ...}
    """

    def __init__(self, name: str):
        self.name = name
        self.history: List[Entry] = []
        self.cumulative: Dict[str, int] = {}

    @classmethod
    def start(cls, name: str, now: datetime, entity_id: str) -> "Timeline":
        timeline = cls(name)
        timeline.history.append((to_utc_ms(now), entity_id))
        return timeline

    def __repr__(self) -> str:
        return f"Timeline({self.name!r}, entries={len(self.history)}, last={self.last_id!r})"

    # ── Accessors ──────────────────────────────────────────────────────

    @property
    def last_id(self) -> Optional[str]:
        return self.history[-1][1] if self.history else None

    @property
    def first_timestamp(self) -> Optional[datetime]:
        return self.history[0][0] if self.history else None

    # ── Transitions ────────────────────────────────────────────────────

    def transition(self, now: datetime, entity_id: str) -> bool:
        """
        Record that ``entity_id`` became current at ``now``.

        Closes the open interval into ``cumulative``. Repeating the current
        id is a no-op. Returns True if a transition was recorded.
        """
        now = to_utc_ms(now)

        if not self.history:
            self.history.append((now, entity_id))
            return True

        last_time, last_id = self.history[-1]
        if entity_id == last_id:
            return False

        if now < last_time:
            logger.debug("%s: clock went backwards (%s < %s)", self.name, now, last_time)
            now = last_time

        self.cumulative[last_id] = self.cumulative.get(last_id, 0) + duration_ms(last_time, now)
        self.history.append((now, entity_id))
        logger.debug("%s: %r -> %r", self.name, last_id, entity_id)
        return True

    def snapshot(self, now: datetime) -> Dict[str, int]:
        """Durations per entity including the still-open interval. Read-only."""
        result = dict(self.cumulative)
        if self.history:
            last_time, last_id = self.history[-1]
            open_ms = max(0, duration_ms(last_time, to_utc_ms(now)))
            result[last_id] = result.get(last_id, 0) + open_ms
        return result

    # ── Bulk Load ──────────────────────────────────────────────────────

    @classmethod
    def replay(cls, name: str, entries: Iterable[Entry]) -> "Timeline":
        """
        Rebuild a timeline from a stored history.

        ``cumulative`` is recomputed as the sum of every interval but the
        last. Consecutive duplicates are collapsed.
        """
        timeline = cls(name)
        for moment, entity_id in entries:
            moment = to_utc_ms(moment)
            if timeline.history and moment < timeline.history[-1][0]:
                raise ValueError(
                    f"{name}: history is not in chronological order at {moment.isoformat()}"
                )
            timeline.transition(moment, entity_id)
        return timeline

    def to_document(self) -> Tuple[List[List[str]], Dict[str, int]]:
        """Serialize as a ``(history, stats)`` pair."""
        hist = [
            [moment.isoformat(timespec="milliseconds"), entity_id]
            for moment, entity_id in self.history
        ]
        return hist, dict(self.cumulative)

    @classmethod
    def from_document(
        cls,
        name: str,
        hist: Sequence[Sequence[str]],
        stats: Optional[Dict[str, int]] = None,
    ) -> "Timeline":
        entries = []
        for item in hist:
            if not isinstance(item, (list, tuple)) or len(item) != 2:
                raise ValueError(f"{name}: malformed history entry {item!r}")
            entries.append((datetime.fromisoformat(item[0]), str(item[1])))

        timeline = cls.replay(name, entries)
        if not timeline.history:
            raise ValueError(f"{name}: history is empty")

        if stats is not None and dict(stats) != timeline.cumulative:
            logger.warning(
                "%s: stored totals disagree with history, using totals rebuilt from history",
                name,
            )
        return timeline
