"""
StudyDesk – Study service
==========================
The procedure surface consumed by the content/identity layer.  Every call
names the acting user; an empty identity is rejected with
``NotAuthenticated`` before anything is read.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from core.agenda import Agenda, AgendaDayRow, AgendaGroupRow, AgendaHistoryDay, RecentReview
from core.config import settings
from core.errors import NotAuthenticated, ValidationError, VersionConflict
from core.focus_timer import (
    FocusRecord,
    FocusTimer,
    PomodoroSettings,
    TimerState,
    clamp_focus_seconds,
    normalize_settings,
)
from core.practice import PracticeMode, PracticeSession, rate_card
from core.scheduler import CardState, Rating, ReferencePolicy, ensure_utc
from core.store import CardStore, PomodoroStore, PracticeCard

log = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else datetime.now(timezone.utc)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not str(user_id).strip():
        raise NotAuthenticated("no user identity supplied")
    return str(user_id)


class StudyService:
    """Scheduling, agenda, practice and pomodoro procedures for one database."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        policy: Optional[ReferencePolicy] = None,
        tz: Optional[str] = None,
    ) -> None:
        self.cards = CardStore(session_factory)
        self.pomodoro = PomodoroStore(session_factory)
        self.agenda = Agenda(self.cards, tz or settings.timezone)
        self.policy = policy

    # ── agenda ────────────────────────────────────────────────────────

    def agenda_group_counts(
        self, user_id: str, project_id: int, now: Optional[datetime] = None
    ) -> List[AgendaGroupRow]:
        return self.agenda.group_counts(_require_user(user_id), project_id, _now(now))

    def agenda_due_by_day(
        self, user_id: str, project_id: int, days: int = 7, now: Optional[datetime] = None
    ) -> List[AgendaDayRow]:
        return self.agenda.due_by_day(_require_user(user_id), project_id, _now(now), days)

    def agenda_history(
        self, user_id: str, project_id: int, days: int = 30, now: Optional[datetime] = None
    ) -> List[AgendaHistoryDay]:
        return self.agenda.history(_require_user(user_id), project_id, _now(now), days)

    def agenda_recent_reviews(
        self, user_id: str, project_id: int, limit: int = 50
    ) -> List[RecentReview]:
        return self.agenda.recent_reviews(_require_user(user_id), project_id, limit)

    # ── cards ─────────────────────────────────────────────────────────

    def rate_card(
        self,
        user_id: str,
        card_id: int,
        rating: Rating | str,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> CardState:
        return rate_card(
            self.cards, _require_user(user_id), card_id, rating, _now(now),
            expected_version=expected_version, policy=self.policy,
        )

    def fetch_due_cards(
        self,
        user_id: str,
        project_id: int,
        group_id: int,
        now: Optional[datetime] = None,
        include_new_limit: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[PracticeCard]:
        user_id = _require_user(user_id)
        self.cards.require_group(project_id, group_id)
        return self.cards.fetch_due_cards(
            user_id, project_id, group_id, _now(now),
            include_new_limit=settings.include_new_limit if include_new_limit is None else include_new_limit,
            limit=settings.session_limit if limit is None else limit,
        )

    def start_practice(
        self,
        user_id: str,
        project_id: int,
        group_id: int,
        *,
        mode: PracticeMode | str = PracticeMode.DUE,
        persist: Optional[bool] = None,
        now: Optional[datetime] = None,
        **options: Any,
    ) -> PracticeSession:
        try:
            mode = PracticeMode(mode)
        except ValueError:
            raise ValidationError(f"unknown practice mode {mode!r}") from None
        session = PracticeSession(
            self.cards, _require_user(user_id), project_id, group_id,
            mode=mode, persist=persist, policy=self.policy, **options,
        )
        return session.start(_now(now))

    # ── pomodoro ──────────────────────────────────────────────────────

    def get_pomodoro_settings(self, user_id: str) -> PomodoroSettings:
        """Stored settings, creating the default row on first read."""
        user_id = _require_user(user_id)
        stored = self.pomodoro.load_settings(user_id)
        if stored is None:
            defaults = normalize_settings(None)
            self.pomodoro.upsert_settings(user_id, defaults.as_dict())
            return defaults
        return normalize_settings(stored)

    def save_pomodoro_settings(
        self, user_id: str, values: Mapping[str, Any] | PomodoroSettings
    ) -> PomodoroSettings:
        user_id = _require_user(user_id)
        safe = normalize_settings(values)
        return normalize_settings(self.pomodoro.upsert_settings(user_id, safe.as_dict()))

    def insert_pomodoro_session(
        self,
        user_id: str,
        started_at: datetime,
        ended_at: datetime,
        focus_seconds: int,
        project_id: Optional[int] = None,
    ) -> int:
        user_id = _require_user(user_id)
        return self.pomodoro.insert_session(
            user_id, ensure_utc(started_at), ensure_utc(ended_at),
            clamp_focus_seconds(focus_seconds), project_id,
        )

    def focus_timer(self, user_id: str, *, restore: bool = True, **kwargs: Any) -> FocusTimer:
        """A timer loaded with the user's settings that logs completed focus.

        With *restore* the timer resumes the state last saved by any device.
        """
        user_id = _require_user(user_id)

        def _log(record: FocusRecord) -> None:
            self.insert_pomodoro_session(
                user_id, record.started_at, record.ended_at,
                record.focus_seconds, record.project_id,
            )

        timer = FocusTimer(self.get_pomodoro_settings(user_id), on_focus_complete=_log, **kwargs)
        if restore:
            saved = self.pomodoro.load_state(user_id)
            if saved is not None:
                timer.restore_state(saved)
        return timer

    def sync_focus_timer(self, user_id: str, timer: FocusTimer) -> TimerState:
        """Publish the timer's state; when another device got there first,
        adopt the stored state instead.
        """
        user_id = _require_user(user_id)
        try:
            saved = self.pomodoro.save_state(user_id, timer.export_state())
        except VersionConflict as exc:
            log.info("Timer changed on another device: %s", exc)
            saved = self.pomodoro.load_state(user_id)
            timer.restore_state(saved)
            return saved
        timer.rev = saved.rev
        return saved
