"""
StudyDesk – Study agenda aggregation
=====================================
Read-only summaries of a project's scheduling state for one user:

* per-group due/new counts (the group list of the agenda),
* a forward-looking due-by-day histogram,
* the answer history per day and the most recent ratings.

The ``*_rows`` functions are pure and work on already-loaded cards; the
``Agenda`` class binds them to a ``CardStore``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List
from zoneinfo import ZoneInfo

from core.config import settings
from core.scheduler import Rating, Stage, ensure_utc
from core.store import CardStore, GroupInfo, PracticeCard, ReviewLogEntry

log = logging.getLogger(__name__)

MAX_DAYS = 365
MAX_RECENT = 200


@dataclass(frozen=True)
class AgendaGroupRow:
    group_id: int
    group_title: str
    total_cards: int
    new_count: int
    due_learning: int
    due_review: int
    next_due_at: datetime | None


@dataclass(frozen=True)
class AgendaDayRow:
    day: date
    due_learning: int
    due_review: int


@dataclass(frozen=True)
class AgendaHistoryDay:
    day: date
    total: int
    again: int
    hard: int
    good: int
    easy: int


@dataclass(frozen=True)
class RecentReview:
    reviewed_at: datetime
    rating: Rating
    group_title: str | None
    card_id: int


def _clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(n)))


def _is_learning(stage: Stage) -> bool:
    return stage in (Stage.LEARNING, Stage.RELEARNING)


# ---------------------------------------------------------------------------
# Pure aggregation
# ---------------------------------------------------------------------------

def group_rows(
    groups: Iterable[GroupInfo],
    cards: Iterable[PracticeCard],
    now: datetime,
) -> List[AgendaGroupRow]:
    """Summarize *cards* per group.

    Groups come back ordered by ``next_due_at`` (groups with nothing
    scheduled last), ties broken by the group's ordering key.
    """
    now = ensure_utc(now)
    by_group: Dict[int, List[PracticeCard]] = {}
    for c in cards:
        if c.group_id is not None:
            by_group.setdefault(c.group_id, []).append(c)

    rows: List[AgendaGroupRow] = []
    order: Dict[int, tuple] = {}
    for g in groups:
        members = by_group.get(g.id, [])
        scheduled = [c.state.due_at for c in members
                     if c.state.stage is not Stage.NEW and c.state.due_at is not None]
        rows.append(AgendaGroupRow(
            group_id=g.id,
            group_title=g.title,
            total_cards=len(members),
            new_count=sum(1 for c in members if c.state.stage is Stage.NEW),
            due_learning=sum(1 for c in members
                             if _is_learning(c.state.stage) and c.state.is_due(now)),
            due_review=sum(1 for c in members
                           if c.state.stage is Stage.REVIEW and c.state.is_due(now)),
            next_due_at=min(scheduled) if scheduled else None,
        ))
        order[g.id] = (g.order_index, g.id)

    rows.sort(key=lambda r: (
        r.next_due_at is None,
        r.next_due_at or now,
        order[r.group_id],
    ))
    return rows


def day_rows(
    cards: Iterable[PracticeCard],
    now: datetime,
    days: int = 7,
    tz: str | None = None,
) -> List[AgendaDayRow]:
    """Count scheduled cards per local calendar day for *days* days.

    Day 0 is today in *tz*; anything already overdue lands in day 0.
    """
    days = _clamp(days, 1, MAX_DAYS)
    zone = ZoneInfo(tz or settings.timezone)
    today = ensure_utc(now).astimezone(zone).date()

    learning = [0] * days
    review = [0] * days
    for c in cards:
        st = c.state
        if st.stage is Stage.NEW or st.due_at is None:
            continue
        offset = max(0, (ensure_utc(st.due_at).astimezone(zone).date() - today).days)
        if offset >= days:
            continue
        if _is_learning(st.stage):
            learning[offset] += 1
        else:
            review[offset] += 1

    return [
        AgendaDayRow(day=today + timedelta(days=i), due_learning=learning[i], due_review=review[i])
        for i in range(days)
    ]


def history_rows(
    entries: Iterable[ReviewLogEntry],
    now: datetime,
    days: int = 30,
    tz: str | None = None,
) -> List[AgendaHistoryDay]:
    """Ratings per local day over the last *days* days, oldest first."""
    days = _clamp(days, 1, MAX_DAYS)
    zone = ZoneInfo(tz or settings.timezone)
    today = ensure_utc(now).astimezone(zone).date()
    first = today - timedelta(days=days - 1)

    counts: Dict[date, Dict[Rating, int]] = {
        first + timedelta(days=i): {r: 0 for r in Rating} for i in range(days)
    }
    for e in entries:
        day = ensure_utc(e.reviewed_at).astimezone(zone).date()
        if day in counts:
            counts[day][e.rating] += 1

    return [
        AgendaHistoryDay(
            day=day,
            total=sum(c.values()),
            again=c[Rating.AGAIN],
            hard=c[Rating.HARD],
            good=c[Rating.GOOD],
            easy=c[Rating.EASY],
        )
        for day, c in sorted(counts.items())
    ]


def start_of_local_day(now: datetime, days_back: int, tz: str | None = None) -> datetime:
    """UTC instant of local midnight *days_back* days before today."""
    zone = ZoneInfo(tz or settings.timezone)
    local_day = ensure_utc(now).astimezone(zone).date() - timedelta(days=days_back)
    return ensure_utc(datetime.combine(local_day, datetime.min.time(), tzinfo=zone))


# ---------------------------------------------------------------------------
# Store-backed facade
# ---------------------------------------------------------------------------

class Agenda:
    """Aggregator bound to a card store.  Snapshots only; call again to refresh."""

    def __init__(self, store: CardStore, tz: str | None = None) -> None:
        self._store = store
        self._tz = tz or settings.timezone

    def group_counts(self, user_id: str, project_id: int, now: datetime) -> List[AgendaGroupRow]:
        self._store.require_project(project_id)
        rows = group_rows(
            self._store.list_groups(project_id),
            self._store.project_cards(user_id, project_id),
            now,
        )
        log.info("Agenda for project %d: %d groups", project_id, len(rows))
        return rows

    def due_by_day(
        self, user_id: str, project_id: int, now: datetime, days: int = 7
    ) -> List[AgendaDayRow]:
        self._store.require_project(project_id)
        return day_rows(self._store.project_cards(user_id, project_id), now, days, self._tz)

    def history(
        self, user_id: str, project_id: int, now: datetime, days: int = 30
    ) -> List[AgendaHistoryDay]:
        self._store.require_project(project_id)
        days = _clamp(days, 1, MAX_DAYS)
        since = start_of_local_day(now, days - 1, self._tz)
        entries = self._store.review_log(user_id, project_id, since=since)
        return history_rows(entries, now, days, self._tz)

    def recent_reviews(self, user_id: str, project_id: int, limit: int = 50) -> List[RecentReview]:
        self._store.require_project(project_id)
        entries = self._store.review_log(user_id, project_id, limit=_clamp(limit, 1, MAX_RECENT))
        return [
            RecentReview(
                reviewed_at=e.reviewed_at,
                rating=e.rating,
                group_title=e.group_title,
                card_id=e.card_id,
            )
            for e in entries
        ]
