"""
StudyDesk – Card & Pomodoro stores
===================================
The only module that talks to the database.  Scheduling writes are a single
compare-and-swap per rating: the ``UPDATE`` only matches when the stored
``version`` is still the one the caller read.

Database failures that may go away on retry are re-raised as
``TransientStoreError``; everything else propagates unchanged.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from core.errors import NotFound, TransientStoreError, VersionConflict
from core.focus_timer import Phase, TimerState
from core.scheduler import CardState, Rating, Stage, ensure_utc
from db.models import (
    Flashcard,
    FlashcardGroup,
    PomodoroSessionRow,
    PomodoroSettingsRow,
    PomodoroStateRow,
    Project,
    ReviewLog,
    ReviewState,
    utcnow,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PracticeCard:
    """A flashcard's content joined with one user's scheduling state."""

    id: int
    project_id: int
    group_id: int | None
    front: str
    back: str
    order_index: int
    state: CardState


@dataclass(frozen=True)
class GroupInfo:
    id: int
    title: str
    order_index: int


@dataclass(frozen=True)
class ReviewLogEntry:
    card_id: int
    rating: Rating
    reviewed_at: datetime
    group_title: str | None


def _to_state(row: ReviewState | None) -> CardState:
    if row is None:
        return CardState()
    return CardState(
        stage=Stage(row.stage),
        due_at=row.due_at,
        interval_days=row.interval_days,
        ease=row.ease,
        reps=row.reps,
        lapses=row.lapses,
        last_review_at=row.last_review_at,
        version=row.version,
    )


def _to_card(card: Flashcard, row: ReviewState | None) -> PracticeCard:
    return PracticeCard(
        id=card.id,
        project_id=card.project_id,
        group_id=card.group_id,
        front=card.front,
        back=card.back or "",
        order_index=card.order_index,
        state=_to_state(row),
    )


class _StoreBase:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Commit on success, roll back on error, translate transient failures."""
        s = self._session_factory()
        try:
            yield s
            s.commit()
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            s.rollback()
            log.warning("Store operation failed: %s", exc)
            raise TransientStoreError(str(exc)) from exc
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------

class CardStore(_StoreBase):
    """Durable flashcards and per-user scheduling state."""

    def _state_join(self, s: Session, user_id: str):
        return s.query(Flashcard, ReviewState).outerjoin(
            ReviewState,
            and_(ReviewState.card_id == Flashcard.id, ReviewState.user_id == user_id),
        )

    # ── Lookups ───────────────────────────────────────────────────────

    def require_project(self, project_id: int) -> None:
        with self._session() as s:
            if s.get(Project, project_id) is None:
                raise NotFound(f"project {project_id} not found")

    def require_group(self, project_id: int, group_id: int) -> GroupInfo:
        with self._session() as s:
            g = s.get(FlashcardGroup, group_id)
            if g is None or g.project_id != project_id:
                raise NotFound(f"group {group_id} not found in project {project_id}")
            return GroupInfo(id=g.id, title=g.title, order_index=g.order_index)

    def list_groups(self, project_id: int) -> List[GroupInfo]:
        with self._session() as s:
            rows = (
                s.query(FlashcardGroup)
                .filter(FlashcardGroup.project_id == project_id)
                .order_by(FlashcardGroup.order_index, FlashcardGroup.id)
                .all()
            )
            return [GroupInfo(id=g.id, title=g.title, order_index=g.order_index) for g in rows]

    def get_card(self, user_id: str, card_id: int) -> PracticeCard:
        with self._session() as s:
            pair = self._state_join(s, user_id).filter(Flashcard.id == card_id).one_or_none()
            if pair is None:
                raise NotFound(f"card {card_id} not found")
            return _to_card(*pair)

    def project_cards(self, user_id: str, project_id: int) -> List[PracticeCard]:
        """Every card of a project with the user's state (New if never rated)."""
        with self._session() as s:
            pairs = (
                self._state_join(s, user_id)
                .filter(Flashcard.project_id == project_id)
                .order_by(Flashcard.order_index, Flashcard.id)
                .all()
            )
            return [_to_card(c, r) for c, r in pairs]

    def group_cards(self, user_id: str, project_id: int, group_id: int) -> List[PracticeCard]:
        with self._session() as s:
            pairs = (
                self._state_join(s, user_id)
                .filter(Flashcard.project_id == project_id, Flashcard.group_id == group_id)
                .order_by(Flashcard.order_index, Flashcard.id)
                .all()
            )
            return [_to_card(c, r) for c, r in pairs]

    def fetch_due_cards(
        self,
        user_id: str,
        project_id: int,
        group_id: int,
        now: datetime,
        *,
        include_new_limit: int = 20,
        limit: int = 50,
    ) -> List[PracticeCard]:
        """Return due cards (most overdue first) followed by up to
        *include_new_limit* never-rated cards, capped at *limit* in total.
        """
        now = ensure_utc(now)
        with self._session() as s:
            base = self._state_join(s, user_id).filter(
                Flashcard.project_id == project_id, Flashcard.group_id == group_id
            )
            due = (
                base.filter(ReviewState.stage != Stage.NEW.value, ReviewState.due_at <= now)
                .order_by(ReviewState.due_at.asc(), Flashcard.order_index, Flashcard.id)
                .limit(limit)
                .all()
            )
            new_budget = min(max(0, include_new_limit), limit - len(due))
            fresh = []
            if new_budget > 0:
                fresh = (
                    base.filter(or_(ReviewState.id.is_(None), ReviewState.stage == Stage.NEW.value))
                    .order_by(Flashcard.order_index, Flashcard.id)
                    .limit(new_budget)
                    .all()
                )
            cards = [_to_card(c, r) for c, r in due + fresh]

        log.info(
            "Found %d due + %d new cards for group %d (user %s)",
            len(due), len(fresh), group_id, user_id,
        )
        return cards

    # ── Writes ────────────────────────────────────────────────────────

    def compare_and_swap(
        self,
        user_id: str,
        card_id: int,
        expected_version: int,
        prev: CardState,
        nxt: CardState,
        rating: Rating,
    ) -> CardState:
        """Persist *nxt* only if the stored version is still *expected_version*.

        Inserts the state row on first rating (version 0 means "no row") and
        appends a ``ReviewLog`` in the same transaction.
        """
        values = dict(
            stage=nxt.stage.value,
            due_at=nxt.due_at,
            interval_days=nxt.interval_days,
            ease=nxt.ease,
            reps=nxt.reps,
            lapses=nxt.lapses,
            last_review_at=nxt.last_review_at,
        )
        new_version = expected_version + 1
        try:
            with self._session() as s:
                if s.get(Flashcard, card_id) is None:
                    raise NotFound(f"card {card_id} not found")
                row = (
                    s.query(ReviewState)
                    .filter(ReviewState.user_id == user_id, ReviewState.card_id == card_id)
                    .one_or_none()
                )
                actual = row.version if row is not None else 0
                if actual != expected_version:
                    raise VersionConflict(card_id, expected_version, actual)

                if row is None:
                    s.add(ReviewState(user_id=user_id, card_id=card_id, version=new_version, **values))
                else:
                    result = s.execute(
                        update(ReviewState)
                        .where(
                            ReviewState.id == row.id,
                            ReviewState.version == expected_version,
                        )
                        .values(version=new_version, updated_at=nxt.last_review_at, **values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise VersionConflict(card_id, expected_version, None)

                s.add(ReviewLog(
                    user_id=user_id,
                    card_id=card_id,
                    rating=rating.value,
                    reviewed_at=nxt.last_review_at,
                    prev_stage=prev.stage.value,
                    next_stage=nxt.stage.value,
                    prev_due_at=prev.due_at,
                    next_due_at=nxt.due_at,
                    prev_interval_days=prev.interval_days,
                    next_interval_days=nxt.interval_days,
                    prev_ease=prev.ease,
                    next_ease=nxt.ease,
                ))
        except IntegrityError as exc:
            # another writer inserted the first state row
            raise VersionConflict(card_id, expected_version, None) from exc

        log.info(
            "Rated card %d (%s) -> %s interval=%d ease=%.2f due=%s v%d",
            card_id, rating.value, nxt.stage.value, nxt.interval_days, nxt.ease,
            nxt.due_at, new_version,
        )
        return replace(nxt, version=new_version)

    # ── Review log ────────────────────────────────────────────────────

    def review_log(
        self,
        user_id: str,
        project_id: int,
        *,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ReviewLogEntry]:
        """Ratings recorded by *user_id* in a project, newest first."""
        with self._session() as s:
            q = (
                s.query(ReviewLog, FlashcardGroup.title)
                .join(Flashcard, Flashcard.id == ReviewLog.card_id)
                .outerjoin(FlashcardGroup, FlashcardGroup.id == Flashcard.group_id)
                .filter(ReviewLog.user_id == user_id, Flashcard.project_id == project_id)
            )
            if since is not None:
                q = q.filter(ReviewLog.reviewed_at >= ensure_utc(since))
            q = q.order_by(ReviewLog.reviewed_at.desc(), ReviewLog.id.desc())
            if limit is not None:
                q = q.limit(limit)
            return [
                ReviewLogEntry(
                    card_id=entry.card_id,
                    rating=Rating(entry.rating),
                    reviewed_at=entry.reviewed_at,
                    group_title=title,
                )
                for entry, title in q.all()
            ]


# ---------------------------------------------------------------------------
# Pomodoro
# ---------------------------------------------------------------------------

class PomodoroStore(_StoreBase):
    """Per-user timer settings and the focus-session log."""

    SETTING_FIELDS: Tuple[str, ...] = (
        "focus_minutes",
        "short_break_minutes",
        "long_break_minutes",
        "cycles_before_long_break",
        "enable_notifications",
        "enable_sound",
        "dock_is_open",
    )

    def load_settings(self, user_id: str) -> dict | None:
        with self._session() as s:
            row = s.get(PomodoroSettingsRow, user_id)
            if row is None:
                return None
            return {f: getattr(row, f) for f in self.SETTING_FIELDS}

    def upsert_settings(self, user_id: str, values: dict) -> dict:
        with self._session() as s:
            row = s.get(PomodoroSettingsRow, user_id)
            if row is None:
                row = PomodoroSettingsRow(user_id=user_id)
                s.add(row)
            for f in self.SETTING_FIELDS:
                setattr(row, f, values[f])
            s.flush()
            saved = {f: getattr(row, f) for f in self.SETTING_FIELDS}
        log.info("Saved pomodoro settings for %s: %s", user_id, saved)
        return saved

    def insert_session(
        self,
        user_id: str,
        started_at: datetime,
        ended_at: datetime,
        focus_seconds: int,
        project_id: int | None,
    ) -> int:
        with self._session() as s:
            if project_id is not None and s.get(Project, project_id) is None:
                raise NotFound(f"project {project_id} not found")
            row = PomodoroSessionRow(
                user_id=user_id,
                started_at=started_at,
                ended_at=ended_at,
                focus_seconds=focus_seconds,
                project_id=project_id,
            )
            s.add(row)
            s.flush()
            session_id = row.id
        log.info("Logged %ds focus session for %s (project=%s)", focus_seconds, user_id, project_id)
        return session_id

    def list_sessions(self, user_id: str) -> List[PomodoroSessionRow]:
        with self._session() as s:
            return (
                s.query(PomodoroSessionRow)
                .filter(PomodoroSessionRow.user_id == user_id)
                .order_by(PomodoroSessionRow.started_at)
                .all()
            )

    # ── Shared timer state ────────────────────────────────────────────

    def load_state(self, user_id: str) -> TimerState | None:
        with self._session() as s:
            row = s.get(PomodoroStateRow, user_id)
            if row is None:
                return None
            return TimerState(
                phase=Phase(row.phase),
                cycle_count=row.cycle_count,
                project_id=row.project_id,
                started_at=row.started_at,
                planned_seconds=row.planned_seconds,
                ends_at=row.ends_at,
                paused_remaining_seconds=row.paused_remaining_seconds,
                rev=row.rev,
            )

    def save_state(self, user_id: str, state: TimerState) -> TimerState:
        """Store *state* only if the stored ``rev`` is still ``state.rev``.

        Returns the state with its new revision; a stale write raises
        ``VersionConflict``.
        """
        values = dict(
            phase=state.phase.value,
            cycle_count=state.cycle_count,
            project_id=state.project_id,
            started_at=state.started_at,
            planned_seconds=state.planned_seconds,
            ends_at=state.ends_at,
            paused_remaining_seconds=state.paused_remaining_seconds,
        )
        new_rev = state.rev + 1
        try:
            with self._session() as s:
                if state.project_id is not None and s.get(Project, state.project_id) is None:
                    raise NotFound(f"project {state.project_id} not found")
                row = s.get(PomodoroStateRow, user_id)
                actual = row.rev if row is not None else 0
                if actual != state.rev:
                    raise VersionConflict(user_id, state.rev, actual, what="timer of")

                if row is None:
                    s.add(PomodoroStateRow(user_id=user_id, rev=new_rev, **values))
                else:
                    result = s.execute(
                        update(PomodoroStateRow)
                        .where(
                            PomodoroStateRow.user_id == user_id,
                            PomodoroStateRow.rev == state.rev,
                        )
                        .values(rev=new_rev, updated_at=utcnow(), **values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise VersionConflict(user_id, state.rev, None, what="timer of")
        except IntegrityError as exc:
            raise VersionConflict(user_id, state.rev, None, what="timer of") from exc

        log.info("Saved timer of %s: %s rev %d", user_id, state.phase.value, new_rev)
        return replace(state, rev=new_rev)
