"""
StudyDesk – Pomodoro focus timer
=================================
``Idle -> Focus -> (ShortBreak | LongBreak) -> Idle`` with a cycle counter.

The timer is a plain object owned by whoever renders it; nothing here is
process-wide.  Time only moves when ``tick()`` (or any other method) reads
the injected clock, so tests drive it with a fake clock.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from core.errors import StudyError, TransientStoreError, ValidationError
from core.scheduler import round_half_up

log = logging.getLogger(__name__)

MIN_FOCUS_SECONDS = 1
MAX_FOCUS_SECONDS = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PomodoroSettings:
    focus_minutes: int = 25
    short_break_minutes: int = 5
    long_break_minutes: int = 15
    cycles_before_long_break: int = 4
    enable_notifications: bool = False
    enable_sound: bool = True
    dock_is_open: bool = True

    def as_dict(self) -> dict:
        return asdict(self)


DEFAULT_SETTINGS = PomodoroSettings()

BOUNDS = {
    "focus_minutes": (1, 180),
    "short_break_minutes": (1, 60),
    "long_break_minutes": (1, 120),
    "cycles_before_long_break": (1, 12),
}


def _clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    """Round half-up and clamp; anything non-numeric becomes *fallback*."""
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        x = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(x):
        return fallback
    return max(lo, min(hi, round_half_up(x)))


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def normalize_settings(raw: Mapping[str, Any] | PomodoroSettings | None) -> PomodoroSettings:
    """Bring arbitrary input inside the allowed bounds.

    Normalized settings are fixed points: ``normalize(normalize(x)) == normalize(x)``.
    """
    if raw is None:
        return DEFAULT_SETTINGS
    if isinstance(raw, PomodoroSettings):
        raw = raw.as_dict()
    values = {
        name: _clamp_int(raw.get(name), lo, hi, getattr(DEFAULT_SETTINGS, name))
        for name, (lo, hi) in BOUNDS.items()
    }
    for name in ("enable_notifications", "enable_sound", "dock_is_open"):
        values[name] = _coerce_bool(raw.get(name), getattr(DEFAULT_SETTINGS, name))
    return PomodoroSettings(**values)


def clamp_focus_seconds(value: Any) -> int:
    return _clamp_int(value, MIN_FOCUS_SECONDS, MAX_FOCUS_SECONDS, DEFAULT_SETTINGS.focus_minutes * 60)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    IDLE = "idle"
    FOCUS = "focus"
    SHORT_BREAK = "short_break"
    LONG_BREAK = "long_break"


@dataclass(frozen=True)
class PhaseEnded:
    """Emitted when a phase runs to completion (not on skip/reset)."""

    phase: Phase
    next_phase: Phase
    cycle_count: int
    at: datetime
    notify: bool
    sound: bool


@dataclass(frozen=True)
class FocusRecord:
    started_at: datetime
    ended_at: datetime
    focus_seconds: int
    project_id: Optional[int]


@dataclass(frozen=True)
class TimerState:
    """Serializable snapshot of a timer, shared between a user's devices.

    A running phase is pinned by ``ends_at``; a paused one by
    ``paused_remaining_seconds``.  ``rev`` is the store's revision counter.
    """

    phase: Phase = Phase.IDLE
    cycle_count: int = 0
    project_id: Optional[int] = None
    started_at: Optional[datetime] = None
    planned_seconds: int = 0
    ends_at: Optional[datetime] = None
    paused_remaining_seconds: Optional[int] = None
    rev: int = 0


SessionSink = Callable[[FocusRecord], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FocusTimer:
    """Session-scoped pomodoro timer.

    Parameters
    ----------
    settings : PomodoroSettings
        Initial settings (normalized on the way in).
    on_focus_complete : callable, optional
        Receives a ``FocusRecord`` each time a focus interval completes.
    clock : callable, optional
        Returns the current aware datetime.
    """

    def __init__(
        self,
        settings: PomodoroSettings | None = None,
        on_focus_complete: Optional[SessionSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = normalize_settings(settings)
        self._sink = on_focus_complete
        self._clock = clock
        self._listeners: List[Callable[[PhaseEnded], Any]] = []

        self.phase = Phase.IDLE
        self.cycle_count = 0
        self.running = False
        self.started_at: datetime | None = None
        self.project_id: int | None = None
        self._planned_seconds = 0
        self._elapsed = 0.0
        self._resumed_at: datetime | None = None
        self.rev = 0
        self._unsaved: List[FocusRecord] = []

    # ── observers ────────────────────────────────────────────────────
    def add_listener(self, fn: Callable[[PhaseEnded], Any]) -> None:
        self._listeners.append(fn)

    # ── derived values ───────────────────────────────────────────────
    def _phase_seconds(self, phase: Phase) -> int:
        s = self.settings
        minutes = {
            Phase.FOCUS: s.focus_minutes,
            Phase.SHORT_BREAK: s.short_break_minutes,
            Phase.LONG_BREAK: s.long_break_minutes,
        }[phase]
        return max(1, minutes) * 60

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        if self.running and self._resumed_at is not None:
            now = now or self._clock()
            return self._elapsed + max(0.0, (now - self._resumed_at).total_seconds())
        return self._elapsed

    def remaining_seconds(self, now: datetime | None = None) -> int:
        if self.phase is Phase.IDLE:
            return 0
        return max(0, math.ceil(self._planned_seconds - self.elapsed_seconds(now)))

    @property
    def planned_seconds(self) -> int:
        return self._planned_seconds

    def cycles_until_long_break(self) -> int:
        every = self.settings.cycles_before_long_break
        return every - (self.cycle_count % every)

    def snapshot(self) -> dict:
        """Render-friendly view of the timer."""
        now = self._clock()
        return {
            "phase": self.phase.value,
            "running": self.running,
            "cycle_count": self.cycle_count,
            "planned_seconds": self._planned_seconds,
            "remaining_seconds": self.remaining_seconds(now),
            "cycles_until_long_break": self.cycles_until_long_break(),
            "project_id": self.project_id,
        }

    # ── transitions ──────────────────────────────────────────────────
    def _enter(self, phase: Phase, now: datetime, running: bool) -> None:
        self.phase = phase
        self._elapsed = 0.0
        self.running = running and phase is not Phase.IDLE
        self._resumed_at = now if self.running else None
        self._planned_seconds = 0 if phase is Phase.IDLE else self._phase_seconds(phase)
        if phase is Phase.FOCUS:
            self.started_at = now
        elif phase is Phase.IDLE:
            self.started_at = None
            self.project_id = None
        log.debug("Timer -> %s (%ds planned)", phase.value, self._planned_seconds)

    def _break_after(self, cycle: int) -> Phase:
        if cycle % self.settings.cycles_before_long_break == 0:
            return Phase.LONG_BREAK
        return Phase.SHORT_BREAK

    def start(self, project_id: int | None = None) -> None:
        if self.phase is not Phase.IDLE:
            raise ValidationError(f"timer already in {self.phase.value}")
        self._enter(Phase.FOCUS, self._clock(), running=True)
        self.project_id = project_id

    def pause(self) -> None:
        if not self.running:
            return
        now = self._clock()
        self._elapsed = self.elapsed_seconds(now)
        self.running = False
        self._resumed_at = None

    def resume(self) -> None:
        if self.running or self.phase is Phase.IDLE:
            return
        self._resumed_at = self._clock()
        self.running = True

    def tick(self) -> Phase:
        """Advance the machine if the running phase has run out."""
        if not self.running:
            return self.phase
        now = self._clock()
        elapsed = self.elapsed_seconds(now)
        if elapsed < self._planned_seconds:
            return self.phase

        ended = self.phase
        if ended is Phase.FOCUS:
            self.cycle_count += 1
            record = FocusRecord(
                started_at=self.started_at or now,
                ended_at=now,
                focus_seconds=clamp_focus_seconds(min(elapsed, self._planned_seconds)),
                project_id=self.project_id,
            )
            self._enter(self._break_after(self.cycle_count), now, running=True)
            if self._sink is not None:
                self._unsaved.append(record)
                self.flush_records()
            log.info("Focus interval %d complete (%ds)", self.cycle_count, record.focus_seconds)
        else:
            self._enter(Phase.IDLE, now, running=False)

        event = PhaseEnded(
            phase=ended,
            next_phase=self.phase,
            cycle_count=self.cycle_count,
            at=now,
            notify=self.settings.enable_notifications,
            sound=self.settings.enable_sound,
        )
        for fn in self._listeners:
            fn(event)
        return self.phase

    def skip(self) -> None:
        """Jump to the next phase without logging anything."""
        now = self._clock()
        if self.phase is Phase.FOCUS:
            self._enter(self._break_after(self.cycle_count + 1), now, running=True)
        elif self.phase in (Phase.SHORT_BREAK, Phase.LONG_BREAK):
            self._enter(Phase.IDLE, now, running=False)

    def reset(self) -> None:
        self._enter(Phase.IDLE, self._clock(), running=False)
        self.cycle_count = 0

    def update_settings(self, settings: Mapping[str, Any] | PomodoroSettings) -> PomodoroSettings:
        """Replace settings; the running phase keeps its planned length."""
        self.settings = normalize_settings(settings)
        return self.settings

    def ends_at(self) -> datetime | None:
        """Wall-clock end of the running phase, or None when stopped."""
        if not self.running:
            return None
        now = self._clock()
        return now + timedelta(seconds=self.remaining_seconds(now))

    # ── focus log ────────────────────────────────────────────────────
    @property
    def unsaved_records(self) -> List[FocusRecord]:
        """Completed focus intervals the sink could not take yet."""
        return list(self._unsaved)

    def flush_records(self) -> bool:
        """Hand outstanding focus records to the sink, oldest first.

        A transient store failure keeps the record for the next attempt;
        any other study error discards it.  Returns True when none are left.
        """
        while self._unsaved and self._sink is not None:
            record = self._unsaved[0]
            try:
                self._sink(record)
            except TransientStoreError as exc:
                log.warning("Focus record from %s kept for retry: %s", record.started_at, exc)
                return False
            except StudyError as exc:
                log.error("Discarding focus record from %s: %s", record.started_at, exc)
            self._unsaved.pop(0)
        return not self._unsaved

    # ── shared state ─────────────────────────────────────────────────
    def export_state(self) -> TimerState:
        now = self._clock()
        left = self._planned_seconds - self.elapsed_seconds(now)
        return TimerState(
            phase=self.phase,
            cycle_count=self.cycle_count,
            project_id=self.project_id,
            started_at=self.started_at,
            planned_seconds=self._planned_seconds,
            ends_at=now + timedelta(seconds=left) if self.running else None,
            paused_remaining_seconds=(
                max(0, math.ceil(left)) if self.phase is not Phase.IDLE and not self.running else None
            ),
            rev=self.rev,
        )

    def restore_state(self, state: TimerState) -> None:
        """Adopt a snapshot saved elsewhere; an overdue phase ends on the next tick."""
        now = self._clock()
        self._enter(Phase.IDLE, now, running=False)
        self.cycle_count = max(0, state.cycle_count)
        self.rev = state.rev
        if state.phase is Phase.IDLE:
            return

        self.phase = state.phase
        self.project_id = state.project_id
        self.started_at = state.started_at
        self._planned_seconds = state.planned_seconds or self._phase_seconds(state.phase)
        if state.ends_at is not None:
            left = (state.ends_at - now).total_seconds()
            self._elapsed = self._planned_seconds - left
            self.running = True
            self._resumed_at = now
        else:
            left = state.paused_remaining_seconds or 0
            self._elapsed = float(max(0, self._planned_seconds - left))
        log.debug("Timer restored to %s (rev %d)", self.phase.value, self.rev)
