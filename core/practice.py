"""
StudyDesk – Practice sessions
==============================
A practice session walks one flashcard group:

``Loading -> Active -> Completed``

Ratings advance the local queue immediately; the database write runs on a
single background writer so writes land in rating order.  A session only
reaches ``Completed`` after a completion barrier has waited (bounded) for
every outstanding write.

Write failures never abort the session:

* ``VersionConflict`` – re-fetch the card and retry once; a second conflict
  becomes a "card changed elsewhere" warning.
* ``TransientStoreError`` – retry once after a backoff; a second failure
  leaves the card *unsynced*; later ratings of that card wait behind it
  and the whole backlog is retried when the session closes.
* ``NotFound`` / ``NotAuthenticated`` – fatal, re-raised by the next call on
  the session.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from core.config import settings
from core.errors import (
    NotAuthenticated,
    NotFound,
    TransientStoreError,
    ValidationError,
    VersionConflict,
)
from core.scheduler import CardState, Rating, ReferencePolicy, Stage, schedule
from core.store import CardStore, PracticeCard

log = logging.getLogger(__name__)

MAX_SESSION_LIMIT = 200


class SessionState(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    COMPLETED = "completed"


class PracticeMode(str, Enum):
    DUE = "due"   # agenda: due cards plus a few new ones, always saved
    ALL = "all"   # cram: every card in the group, saved only on request


@dataclass(frozen=True)
class SessionWarning:
    card_id: int
    kind: str  # "conflict" | "unsynced"
    message: str


@dataclass
class SessionSummary:
    reviewed: int = 0
    again: int = 0
    unsynced: List[int] = field(default_factory=list)
    warnings: List[SessionWarning] = field(default_factory=list)


@dataclass(frozen=True)
class _PendingRating:
    card_id: int
    rating: Rating
    now: datetime


def rate_card(
    store: CardStore,
    user_id: str,
    card_id: int,
    rating: Rating | str,
    now: datetime,
    expected_version: Optional[int] = None,
    policy: Optional[ReferencePolicy] = None,
) -> CardState:
    """Apply *rating* to the stored state of a card and persist it.

    With *expected_version* the write is rejected (``VersionConflict``) when
    the stored state has moved on since the caller read it.
    """
    rating = Rating.parse(rating)
    current = store.get_card(user_id, card_id).state
    if expected_version is not None and current.version != expected_version:
        raise VersionConflict(card_id, expected_version, current.version)
    nxt = schedule(current, rating, now, policy)
    return store.compare_and_swap(user_id, card_id, current.version, current, nxt, rating)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _queue_order(card: PracticeCard, now: datetime):
    st = card.state
    if st.is_due(now):
        return (0, st.due_at, card.order_index, card.id)
    if st.stage is Stage.NEW:
        return (1, now, card.order_index, card.id)
    return (2, st.due_at, card.order_index, card.id)


# =====================================================================
#  PracticeSession
# =====================================================================
class PracticeSession:
    """One user's bounded review of one flashcard group."""

    def __init__(
        self,
        store: CardStore,
        user_id: str,
        project_id: int,
        group_id: int,
        *,
        mode: PracticeMode | str = PracticeMode.DUE,
        persist: Optional[bool] = None,
        include_new_limit: Optional[int] = None,
        session_limit: Optional[int] = None,
        again_retry_cap: Optional[int] = None,
        requeue_gap: Optional[int] = None,
        write_backoff: Optional[float] = None,
        barrier_timeout: Optional[float] = None,
        policy: Optional[ReferencePolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self.user_id = user_id
        self.project_id = project_id
        self.group_id = group_id
        self.mode = PracticeMode(mode)
        self.persist = True if self.mode is PracticeMode.DUE else bool(persist)

        limit = settings.session_limit if session_limit is None else session_limit
        self._limit = max(1, min(MAX_SESSION_LIMIT, limit))
        self._new_limit = settings.include_new_limit if include_new_limit is None else include_new_limit
        self._retry_cap = settings.again_retry_cap if again_retry_cap is None else again_retry_cap
        self._gap = max(1, settings.requeue_gap if requeue_gap is None else requeue_gap)
        self._backoff = settings.write_backoff_seconds if write_backoff is None else write_backoff
        self._barrier_timeout = (
            settings.barrier_timeout_seconds if barrier_timeout is None else barrier_timeout
        )
        self._policy = policy
        self._clock = clock

        self.state = SessionState.LOADING
        self._queue: List[PracticeCard] = []
        self._again_counts: Dict[int, int] = {}
        self._versions: Dict[int, int] = {}
        self._summary = SessionSummary()

        self._lock = threading.Lock()
        self._writer: ThreadPoolExecutor | None = None
        self._futures: List[Future] = []
        self._future_cards: Dict[Future, int] = {}
        self._backlog: Dict[int, List[_PendingRating]] = {}

    # ── loading ──────────────────────────────────────────────────────
    def start(self, now: Optional[datetime] = None) -> PracticeSession:
        """Build the queue and enter ``Active``."""
        if self.state is not SessionState.LOADING:
            raise ValidationError(f"session already {self.state.value}")
        now = now or self._clock()
        self._store.require_group(self.project_id, self.group_id)

        if self.mode is PracticeMode.DUE:
            cards = self._store.fetch_due_cards(
                self.user_id, self.project_id, self.group_id, now,
                include_new_limit=self._new_limit, limit=self._limit,
            )
        else:
            cards = self._store.group_cards(self.user_id, self.project_id, self.group_id)
            cards = sorted(cards, key=lambda c: _queue_order(c, now))[: self._limit]

        self._queue = list(cards)
        self._versions = {c.id: c.state.version for c in cards}
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="practice-writer")
        self.state = SessionState.ACTIVE
        log.info(
            "Practice session for group %d (%s mode, persist=%s): %d cards",
            self.group_id, self.mode.value, self.persist, len(self._queue),
        )
        return self

    # ── queue access ─────────────────────────────────────────────────
    @property
    def queue(self) -> List[PracticeCard]:
        """Cards still to be answered, in order."""
        return list(self._queue)

    @property
    def remaining(self) -> int:
        return len(self._queue)

    @property
    def warnings(self) -> List[SessionWarning]:
        with self._lock:
            return list(self._summary.warnings)

    def next(self) -> Optional[PracticeCard]:
        """Return the card at the head of the queue, completing the session when empty."""
        self._raise_fatal()
        if self.state is SessionState.LOADING:
            raise ValidationError("session not started")
        if self.state is SessionState.COMPLETED:
            return None
        if not self._queue:
            self._complete()
            return None
        return self._queue[0]

    # ── rating ───────────────────────────────────────────────────────
    def rate(self, card_id: int, rating: Rating | str, now: Optional[datetime] = None) -> CardState:
        """Record a rating and advance the queue without waiting for the write.

        Returns the locally computed next state of the card.
        """
        self._raise_fatal()
        rating = Rating.parse(rating)
        if self.state is not SessionState.ACTIVE:
            raise ValidationError(f"cannot rate in a {self.state.value} session")

        pos = next(
            (i for i in range(len(self._queue)) if self._queue[i].id == card_id),
            None,
        )
        if pos is None:
            raise NotFound(f"card {card_id} is not in this session")

        now = now or self._clock()
        card = self._queue.pop(pos)
        local = schedule(card.state, rating, now, self._policy)

        if self.persist:
            self._submit(_PendingRating(card_id, rating, now))

        self._summary.reviewed += 1
        if rating is Rating.AGAIN:
            self._summary.again += 1
            retries = self._again_counts.get(card_id, 0)
            if retries < self._retry_cap:
                self._again_counts[card_id] = retries + 1
                at = min(pos + self._gap, len(self._queue))
                self._queue.insert(at, replace(card, state=local))
                log.debug("Requeued card %d at %d (retry %d)", card_id, at, retries + 1)
        return local

    # ── persistence ──────────────────────────────────────────────────
    def _submit(self, pending: _PendingRating) -> None:
        with self._lock:
            self._backlog.setdefault(pending.card_id, []).append(pending)
        fut = self._writer.submit(self._flush, pending.card_id)
        self._futures.append(fut)
        self._future_cards[fut] = pending.card_id

    def _flush(self, card_id: int) -> bool:
        """Write the card's outstanding ratings oldest first.

        Stops at the first rating that cannot be saved yet, so a later rating
        never overtakes an earlier one.  Returns True once nothing is left.
        """
        while True:
            with self._lock:
                backlog = self._backlog.get(card_id)
                if not backlog:
                    self._backlog.pop(card_id, None)
                    return True
                head = backlog[0]
            try:
                done = self._write(head)
            except (NotFound, NotAuthenticated):
                with self._lock:
                    dropped = self._backlog.pop(card_id, [])
                log.error("Dropping %d rating(s) for card %d", len(dropped), card_id)
                raise
            if not done:
                return False
            with self._lock:
                backlog.pop(0)

    def _write(self, pending: _PendingRating) -> bool:
        """Save one rating; False means it is still outstanding."""
        conflicts = 0
        transient = 0
        refresh = False
        while True:
            try:
                if refresh:
                    fresh = self._store.get_card(self.user_id, pending.card_id)
                    self._versions[pending.card_id] = fresh.state.version
                    refresh = False
                saved = rate_card(
                    self._store, self.user_id, pending.card_id, pending.rating, pending.now,
                    expected_version=self._versions.get(pending.card_id),
                    policy=self._policy,
                )
                self._versions[pending.card_id] = saved.version
                return True
            except VersionConflict as exc:
                conflicts += 1
                if conflicts > 1:
                    self._warn(pending.card_id, "conflict", "card changed elsewhere")
                    log.warning("Giving up on card %d after repeated conflicts: %s",
                                pending.card_id, exc)
                    return True
                log.info("Version conflict on card %d, re-fetching", pending.card_id)
                refresh = True
            except TransientStoreError as exc:
                transient += 1
                if transient > 1:
                    log.warning("Card %d left unsynced: %s", pending.card_id, exc)
                    return False
                time.sleep(self._backoff * transient)

    def _retry_unsynced(self, skip: Set[int]) -> None:
        with self._lock:
            cards = [cid for cid in self._backlog if cid not in skip]
        for cid in cards:
            if self._flush(cid):
                log.info("Synced card %d on close", cid)
            else:
                log.warning("Card %d still unsynced", cid)

    def _warn(self, card_id: int, kind: str, message: str) -> None:
        with self._lock:
            self._summary.warnings.append(SessionWarning(card_id, kind, message))

    def _raise_fatal(self) -> None:
        for fut in [f for f in self._futures if f.done()]:
            self._futures.remove(fut)
            self._future_cards.pop(fut, None)
            if fut.cancelled():
                continue
            exc = fut.exception()
            if exc is not None:
                raise exc

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until outstanding writes finish; False on timeout."""
        pending = [f for f in self._futures if not f.done()]
        if not pending:
            return True
        _, not_done = wait(pending, timeout=self._barrier_timeout if timeout is None else timeout)
        return not not_done

    # ── completion ───────────────────────────────────────────────────
    def _complete(self) -> None:
        finished = self.wait()
        if self._writer is not None:
            # queued writes are picked up by the retry below
            self._writer.shutdown(wait=False, cancel_futures=True)
        busy = {cid for f, cid in self._future_cards.items() if not f.done()}
        if not finished:
            log.warning("Completion barrier timed out with writes pending for %d card(s)",
                        len(busy))
        self._raise_fatal()
        self._retry_unsynced(skip=busy)

        with self._lock:
            unsynced = sorted(set(self._backlog) | busy)
        for cid in unsynced:
            self._warn(cid, "unsynced", "rating not saved yet")
        self._summary.unsynced = unsynced

        self.state = SessionState.COMPLETED
        log.info(
            "Practice session for group %d completed: %d reviewed, %d unsynced",
            self.group_id, self._summary.reviewed, len(unsynced),
        )

    def close(self) -> SessionSummary:
        """End the session now; unanswered cards are dropped."""
        if self.state is SessionState.ACTIVE:
            self._queue = []
            self._complete()
        elif self.state is SessionState.LOADING:
            self.state = SessionState.COMPLETED
        return self.summary

    @property
    def summary(self) -> SessionSummary:
        with self._lock:
            return SessionSummary(
                reviewed=self._summary.reviewed,
                again=self._summary.again,
                unsynced=list(self._summary.unsynced),
                warnings=list(self._summary.warnings),
            )
