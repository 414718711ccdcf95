"""
StudyDesk – SQLAlchemy ORM Models
==================================
Defines the data schema: Projects, FlashcardGroups, Flashcards, per-user
ReviewStates (scheduling metadata), ReviewLogs, and the pomodoro tables.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Float,
    Text,
    DateTime,
    ForeignKey,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Store naive UTC, hand back aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Project – top-level container of study material
# ---------------------------------------------------------------------------
class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)

    groups = relationship(
        "FlashcardGroup", back_populates="project", cascade="all, delete-orphan",
        passive_deletes=True,
    )
    cards = relationship(
        "Flashcard", back_populates="project", cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} title={self.title!r}>"


# ---------------------------------------------------------------------------
# FlashcardGroup – ordered grouping of cards inside a project
# ---------------------------------------------------------------------------
class FlashcardGroup(Base):
    __tablename__ = "flashcard_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)

    project = relationship("Project", back_populates="groups")
    cards = relationship("Flashcard", back_populates="group", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<FlashcardGroup id={self.id} title={self.title!r}>"


# ---------------------------------------------------------------------------
# Flashcard – content only; scheduling lives in ReviewState
# ---------------------------------------------------------------------------
class Flashcard(Base):
    __tablename__ = "flashcards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(
        Integer, ForeignKey("flashcard_groups.id", ondelete="SET NULL"), nullable=True
    )

    front = Column(Text, nullable=False)
    back = Column(Text, nullable=False, default="")
    order_index = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="cards")
    group = relationship("FlashcardGroup", back_populates="cards")
    review_states = relationship(
        "ReviewState", back_populates="card", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Flashcard id={self.id} front={self.front!r}>"


# ---------------------------------------------------------------------------
# ReviewState – one user's scheduling state for one card
# ---------------------------------------------------------------------------
class ReviewState(Base):
    __tablename__ = "review_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    card_id = Column(Integer, ForeignKey("flashcards.id", ondelete="CASCADE"), nullable=False)

    stage = Column(String(16), nullable=False, default="new")
    due_at = Column(UTCDateTime, nullable=True)
    interval_days = Column(Integer, nullable=False, default=0)
    ease = Column(Float, nullable=False, default=2.5)
    reps = Column(Integer, nullable=False, default=0)
    lapses = Column(Integer, nullable=False, default=0)
    last_review_at = Column(UTCDateTime, nullable=True)

    # compare-and-swap token, bumped on every write
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    card = relationship("Flashcard", back_populates="review_states")

    __table_args__ = (
        UniqueConstraint("user_id", "card_id", name="uq_review_state_user_card"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReviewState user={self.user_id!r} card_id={self.card_id} "
            f"stage={self.stage} due_at={self.due_at}>"
        )


# ---------------------------------------------------------------------------
# ReviewLog – audit trail for every rating
# ---------------------------------------------------------------------------
class ReviewLog(Base):
    __tablename__ = "review_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    card_id = Column(Integer, ForeignKey("flashcards.id", ondelete="CASCADE"), nullable=False)
    reviewed_at = Column(UTCDateTime, default=utcnow, nullable=False)
    rating = Column(String(8), nullable=False)

    prev_stage = Column(String(16), nullable=False)
    next_stage = Column(String(16), nullable=False)
    prev_due_at = Column(UTCDateTime, nullable=True)
    next_due_at = Column(UTCDateTime, nullable=True)
    prev_interval_days = Column(Integer, nullable=True)
    next_interval_days = Column(Integer, nullable=True)
    prev_ease = Column(Float, nullable=True)
    next_ease = Column(Float, nullable=True)

    card = relationship("Flashcard")

    def __repr__(self) -> str:
        return f"<ReviewLog card_id={self.card_id} rating={self.rating} at={self.reviewed_at}>"


# ---------------------------------------------------------------------------
# Pomodoro – per-user settings and the completed focus-session log
# ---------------------------------------------------------------------------
class PomodoroSettingsRow(Base):
    __tablename__ = "pomodoro_settings"

    user_id = Column(String(64), primary_key=True)
    focus_minutes = Column(Integer, nullable=False, default=25)
    short_break_minutes = Column(Integer, nullable=False, default=5)
    long_break_minutes = Column(Integer, nullable=False, default=15)
    cycles_before_long_break = Column(Integer, nullable=False, default=4)
    enable_notifications = Column(Boolean, nullable=False, default=False)
    enable_sound = Column(Boolean, nullable=False, default=True)
    dock_is_open = Column(Boolean, nullable=False, default=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<PomodoroSettingsRow user={self.user_id!r} focus={self.focus_minutes}>"


class PomodoroSessionRow(Base):
    __tablename__ = "pomodoro_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    started_at = Column(UTCDateTime, nullable=False)
    ended_at = Column(UTCDateTime, nullable=False)
    focus_seconds = Column(Integer, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<PomodoroSessionRow user={self.user_id!r} seconds={self.focus_seconds}>"


class PomodoroStateRow(Base):
    """The user's running timer, shared by every device; ``rev`` guards writes."""

    __tablename__ = "pomodoro_state"

    user_id = Column(String(64), primary_key=True)
    phase = Column(String(16), nullable=False, default="idle")
    cycle_count = Column(Integer, nullable=False, default=0)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    planned_seconds = Column(Integer, nullable=False, default=0)
    ends_at = Column(UTCDateTime, nullable=True)
    paused_remaining_seconds = Column(Integer, nullable=True)
    rev = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<PomodoroStateRow user={self.user_id!r} phase={self.phase!r} rev={self.rev}>"
