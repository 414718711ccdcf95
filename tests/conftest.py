"""
Shared fixtures: a throw-away SQLite database per test and seeding helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.scheduler import Stage
from core.service import StudyService
from db.database import init_db, make_engine, make_session_factory
from db.models import Flashcard, FlashcardGroup, Project, ReviewState

NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)
USER = "user-1"


class FakeClock:
    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


@pytest.fixture
def engine(tmp_path):
    # a file database so background writer threads see the same data
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def service(session_factory):
    return StudyService(session_factory, tz="America/Santiago")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def seed(session_factory):
    """Factory: ``seed(groups={"Verbs": 3}, ungrouped=0)`` -> ids."""

    def _seed(groups=None, ungrouped=0, owner=USER):
        groups = groups if groups is not None else {"Group A": 3}
        with session_factory() as s:
            project = Project(owner_user_id=owner, title="Biology")
            s.add(project)
            s.flush()
            out = {"project_id": project.id, "groups": {}, "cards": {}}
            order = 0
            for gi, (title, n) in enumerate(groups.items()):
                g = FlashcardGroup(project_id=project.id, title=title, order_index=gi)
                s.add(g)
                s.flush()
                out["groups"][title] = g.id
                out["cards"][title] = []
                for i in range(n):
                    c = Flashcard(project_id=project.id, group_id=g.id,
                                  front=f"{title} Q{i}", back=f"{title} A{i}", order_index=order)
                    order += 1
                    s.add(c)
                    s.flush()
                    out["cards"][title].append(c.id)
            out["cards"][None] = []
            for i in range(ungrouped):
                c = Flashcard(project_id=project.id, group_id=None,
                              front=f"loose Q{i}", back=f"loose A{i}", order_index=order)
                order += 1
                s.add(c)
                s.flush()
                out["cards"][None].append(c.id)
            s.commit()
            return out

    return _seed


@pytest.fixture
def set_state(session_factory):
    """Write a scheduling state row directly: ``set_state(card_id, "review", due_at)``."""

    def _set(card_id, stage, due_at, interval_days=1, ease=2.5, lapses=0, user=USER):
        with session_factory() as s:
            s.add(ReviewState(
                user_id=user, card_id=card_id, stage=Stage(stage).value, due_at=due_at,
                interval_days=interval_days, ease=ease, lapses=lapses, version=1,
            ))
            s.commit()

    return _set
