"""Deterministic statistics over a Capacities space's notes and objects.

``aggregate`` turns the raw records fetched during one sync into the
``CapacitiesStats`` snapshot the dashboard renders: activity series, tag and
object-type rankings, ranked note lists, orphan detection and a health
score.  It is a pure function of its inputs and ``now``; every sync
recomputes the whole snapshot rather than patching the previous one.

Sparse input never raises -- an empty space yields zeros and empty lists.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from dateutil import parser as dtparser

logger = logging.getLogger("capacities.stats")

ACTIVITY_DAYS = 35
WEEK_DAYS = 7
TOP_TAGS_LIMIT = 10
RECENT_LIMIT = 10
RANKED_LIMIT = 5


def _parse_ts(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = dtparser.isoparse(value.strip())
    except (OverflowError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _int_or(value: Any, default: int | None) -> int | None:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _ref_id(item: Any) -> str | None:
    if isinstance(item, str):
        return item or None
    if isinstance(item, dict):
        ref = item.get("id") or item.get("targetId") or item.get("target")
        return str(ref) if ref else None
    return None


def _tag_name(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        name = item.get("name") or item.get("title")
        return str(name).strip() if name else None
    return None


@dataclass(frozen=True)
class RawRecord:
    """A note or object entry as returned by the API."""

    id: str
    title: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    word_count: int = 0
    outgoing_links: frozenset[str] = frozenset()
    tags: tuple[str, ...] = ()
    object_type: str = "unknown"
    edit_count: int | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> RawRecord:
        """Parse one API item.  Raises ``TypeError`` if ``item`` is not an object."""
        if not isinstance(item, dict):
            raise TypeError(f"expected a JSON object, got {type(item).__name__}")
        record_id = str(item.get("id") or "")
        links = item.get("links") or item.get("outgoingLinks") or []
        tags = item.get("tags") or []
        word_count = _int_or(item.get("wordCount"), 0) or 0
        edit_count = item.get("editCount")
        if not isinstance(edit_count, (int, float)) or isinstance(edit_count, bool):
            edit_count = None
        return cls(
            id=record_id,
            title=str(item.get("title") or "Untitled"),
            created_at=_parse_ts(item.get("createdAt")),
            updated_at=_parse_ts(item.get("updatedAt") or item.get("lastUpdated")),
            word_count=max(0, word_count),
            outgoing_links=frozenset(
                ref for ref in (_ref_id(link) for link in links) if ref and ref != record_id
            ),
            tags=tuple(t for t in (_tag_name(tag) for tag in tags) if t),
            object_type=str(item.get("type") or item.get("structureId") or "unknown"),
            edit_count=_int_or(edit_count, None),
        )

    @property
    def edits(self) -> int:
        """Explicit ``editCount`` if the API sent one, else 1 if ever updated after creation."""
        if self.edit_count is not None:
            return max(0, self.edit_count)
        if self.created_at and self.updated_at and self.updated_at.timestamp() > self.created_at.timestamp():
            return 1
        return 0


@dataclass(frozen=True)
class DayCount:
    date: date
    count: int


@dataclass(frozen=True)
class NameCount:
    name: str
    count: int


@dataclass(frozen=True)
class NoteSummary:
    id: str
    title: str
    updated_at: datetime | None = None
    word_count: int = 0
    link_count: int = 0
    edit_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "wordCount": self.word_count,
            "linkCount": self.link_count,
            "editCount": self.edit_count,
        }


@dataclass(frozen=True)
class HealthScore:
    """Heuristic 0-100 composite for presentation; not a validated measure."""

    content: int = 0
    connectivity: int = 0
    organization: int = 0
    activity: int = 0

    @property
    def overall(self) -> int:
        return _clamp(round((self.content + self.connectivity + self.organization + self.activity) / 4))

    def to_dict(self) -> dict[str, int]:
        return {
            "content": self.content,
            "connectivity": self.connectivity,
            "organization": self.organization,
            "activity": self.activity,
            "overall": self.overall,
        }


@dataclass(frozen=True)
class CapacitiesStats:
    total_notes: int = 0
    total_objects: int = 0
    created_this_week: int = 0
    daily_activity: tuple[DayCount, ...] = ()
    weekly_activity: tuple[DayCount, ...] = ()
    top_tags: tuple[NameCount, ...] = ()
    object_types: tuple[NameCount, ...] = ()
    recently_updated: tuple[NoteSummary, ...] = ()
    longest_notes: tuple[NoteSummary, ...] = ()
    most_linked_notes: tuple[NoteSummary, ...] = ()
    most_edited_notes: tuple[NoteSummary, ...] = ()
    orphaned_notes: tuple[NoteSummary, ...] = ()
    health: HealthScore = field(default_factory=HealthScore)

    @property
    def daily_average(self) -> float:
        return round(self.created_this_week / WEEK_DAYS, 1)

    def to_dict(self) -> dict[str, Any]:
        """camelCase JSON consumed by the dashboard front end."""
        return {
            "totalNotes": self.total_notes,
            "totalObjects": self.total_objects,
            "createdThisWeek": self.created_this_week,
            "dailyAverage": self.daily_average,
            "dailyActivity": [{"date": d.date.isoformat(), "count": d.count} for d in self.daily_activity],
            "weeklyActivity": [{"date": d.date.isoformat(), "count": d.count} for d in self.weekly_activity],
            "topTags": [{"name": t.name, "count": t.count} for t in self.top_tags],
            "objectTypes": [{"type": t.name, "count": t.count} for t in self.object_types],
            "recentlyUpdated": [n.to_dict() for n in self.recently_updated],
            "longestNotes": [n.to_dict() for n in self.longest_notes],
            "mostLinkedNotes": [n.to_dict() for n in self.most_linked_notes],
            "mostEditedNotes": [n.to_dict() for n in self.most_edited_notes],
            "orphanedNotes": [n.to_dict() for n in self.orphaned_notes],
            "healthScore": self.health.overall,
            "health": self.health.to_dict(),
        }


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, value)))


def _local_day(ts: datetime, now: datetime) -> date:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=now.tzinfo)
    return ts.astimezone(now.tzinfo).date()


def daily_series(notes: Iterable[RawRecord], now: datetime, days: int = ACTIVITY_DAYS) -> list[DayCount]:
    """Dense per-day creation counts for the trailing ``days`` days, oldest first."""
    today = now.date()
    start = today - timedelta(days=days - 1)
    buckets: Counter[date] = Counter()
    for note in notes:
        if note.created_at is None:
            continue
        day = _local_day(note.created_at, now)
        if start <= day <= today:
            buckets[day] += 1
    return [DayCount(start + timedelta(days=i), buckets[start + timedelta(days=i)]) for i in range(days)]


def rank_counts(names: Iterable[str], limit: int | None = None) -> list[NameCount]:
    """Count occurrences, highest first; ties keep first-seen order."""
    counts = Counter(names)  # preserves insertion order
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])
    if limit is not None:
        ranked = ranked[:limit]
    return [NameCount(name, count) for name, count in ranked]


def find_orphans(notes: list[RawRecord]) -> list[RawRecord]:
    """Notes with no outgoing links that no other note links to."""
    referenced: set[str] = set()
    for note in notes:
        referenced.update(note.outgoing_links)
    return [n for n in notes if not n.outgoing_links and n.id not in referenced]


def _ranked(notes: list[RawRecord], metric: Any, limit: int) -> list[RawRecord]:
    by_id = sorted(notes, key=lambda n: n.id)
    return sorted(by_id, key=lambda n: -metric(n))[:limit]


def _timestamp(ts: datetime | None, now: datetime) -> float:
    if ts is None:
        return float("-inf")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=now.tzinfo)
    return ts.timestamp()


def health_score(
    total_notes: int,
    top_link_count: int,
    orphan_count: int,
    created_this_week: int,
) -> HealthScore:
    """Volume, connectivity, organization and activity sub-scores.

    content      = notes / 15
    connectivity = top link count / 0.5
    organization = 100 - orphan rate * 1000, floored at 10
    activity     = created this week * 12

    Each is clamped to [0, 100].  An empty space scores zero everywhere.
    """
    if total_notes <= 0:
        return HealthScore()
    orphan_rate = orphan_count / total_notes
    return HealthScore(
        content=_clamp(total_notes / 15),
        connectivity=_clamp(top_link_count / 0.5),
        organization=_clamp(max(10.0, 100 - orphan_rate * 1000)),
        activity=_clamp(created_this_week * 12),
    )


def aggregate(
    object_records: list[RawRecord],
    note_records: list[RawRecord],
    now: datetime,
) -> CapacitiesStats:
    if now.tzinfo is None:
        now = now.astimezone()
    notes = list(note_records)
    objects = list(object_records)

    incoming: Counter[str] = Counter()
    for note in notes:
        for target in note.outgoing_links:
            incoming[target] += 1
    link_count = {n.id: len(n.outgoing_links) + incoming[n.id] for n in notes}

    def summary(n: RawRecord) -> NoteSummary:
        return NoteSummary(
            id=n.id,
            title=n.title,
            updated_at=n.updated_at,
            word_count=n.word_count,
            link_count=link_count[n.id],
            edit_count=n.edits,
        )

    daily = daily_series(notes, now)
    weekly = daily[-WEEK_DAYS:]
    created_this_week = sum(d.count for d in weekly)

    orphans = find_orphans(notes)
    most_linked = _ranked(notes, lambda n: link_count[n.id], RANKED_LIMIT)
    top_links = link_count[most_linked[0].id] if most_linked else 0

    stats = CapacitiesStats(
        total_notes=len(notes),
        total_objects=max(len(objects), len(notes)),
        created_this_week=created_this_week,
        daily_activity=tuple(daily),
        weekly_activity=tuple(weekly),
        top_tags=tuple(rank_counts((t for n in notes for t in n.tags), TOP_TAGS_LIMIT)),
        object_types=tuple(rank_counts(o.object_type for o in objects)),
        recently_updated=tuple(summary(n) for n in _ranked(
            [n for n in notes if n.updated_at is not None],
            lambda n: _timestamp(n.updated_at, now),
            RECENT_LIMIT,
        )),
        longest_notes=tuple(summary(n) for n in _ranked(notes, lambda n: n.word_count, RANKED_LIMIT)),
        most_linked_notes=tuple(summary(n) for n in most_linked),
        most_edited_notes=tuple(summary(n) for n in _ranked(notes, lambda n: n.edits, RANKED_LIMIT)),
        orphaned_notes=tuple(summary(n) for n in orphans),
        health=health_score(len(notes), top_links, len(orphans), created_this_week),
    )
    logger.debug(
        "Aggregated %d notes / %d objects: %d orphans, health %d",
        stats.total_notes, stats.total_objects, len(orphans), stats.health.overall,
    )
    return stats
