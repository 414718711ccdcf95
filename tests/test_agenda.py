"""
Tests for agenda aggregation: group rows, due-by-day buckets, history.
"""

import random
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from core.agenda import day_rows, group_rows, history_rows
from core.errors import NotFound
from core.scheduler import CardState, Rating, Stage
from core.store import GroupInfo, PracticeCard, ReviewLogEntry
from conftest import NOW, USER

TZ = "America/Santiago"  # UTC-3 in March 2025


def card(cid, group_id, stage=Stage.NEW, due_at=None):
    return PracticeCard(
        id=cid, project_id=1, group_id=group_id, front="q", back="a", order_index=cid,
        state=CardState(stage=stage, due_at=due_at),
    )


class TestGroupRows:
    def test_ten_card_group(self):
        g = GroupInfo(id=1, title="Cells", order_index=0)
        cards = (
            [card(i, 1) for i in range(3)]
            + [card(10 + i, 1, Stage.REVIEW, NOW - timedelta(days=i + 1)) for i in range(4)]
            + [card(20 + i, 1, Stage.REVIEW, NOW + timedelta(days=i + 1)) for i in range(3)]
        )
        [row] = group_rows([g], cards, NOW)
        assert row.total_cards == 10
        assert row.new_count == 3
        assert row.due_review == 4
        assert row.due_learning == 0
        assert row.next_due_at == NOW - timedelta(days=4)

    def test_learning_and_relearning_count_as_learning(self):
        g = GroupInfo(id=1, title="G", order_index=0)
        cards = [
            card(1, 1, Stage.LEARNING, NOW - timedelta(minutes=1)),
            card(2, 1, Stage.RELEARNING, NOW),
            card(3, 1, Stage.LEARNING, NOW + timedelta(minutes=5)),
        ]
        [row] = group_rows([g], cards, NOW)
        assert row.due_learning == 2
        assert row.due_review == 0

    def test_next_due_matches_minimum_on_random_sets(self):
        rng = random.Random(7)
        g = GroupInfo(id=1, title="G", order_index=0)
        for _ in range(50):
            cards = []
            for i in range(rng.randint(0, 12)):
                stage = rng.choice(list(Stage))
                due = None if stage is Stage.NEW else NOW + timedelta(hours=rng.randint(-200, 200))
                cards.append(card(i, 1, stage, due))
            [row] = group_rows([g], cards, NOW)
            scheduled = [c.state.due_at for c in cards if c.state.stage is not Stage.NEW]
            assert row.next_due_at == (min(scheduled) if scheduled else None)

    def test_ordering(self):
        groups = [
            GroupInfo(id=1, title="empty", order_index=0),
            GroupInfo(id=2, title="later", order_index=1),
            GroupInfo(id=3, title="sooner", order_index=2),
            GroupInfo(id=4, title="tie-b", order_index=4),
            GroupInfo(id=5, title="tie-a", order_index=3),
            GroupInfo(id=6, title="only-new", order_index=5),
        ]
        cards = [
            card(1, 2, Stage.REVIEW, NOW + timedelta(days=3)),
            card(2, 3, Stage.REVIEW, NOW - timedelta(days=1)),
            card(3, 4, Stage.REVIEW, NOW + timedelta(days=1)),
            card(4, 5, Stage.REVIEW, NOW + timedelta(days=1)),
            card(5, 6),
        ]
        rows = group_rows(groups, cards, NOW)
        assert [r.group_title for r in rows] == ["sooner", "tie-a", "tie-b", "later", "empty", "only-new"]

    def test_ungrouped_cards_ignored(self):
        g = GroupInfo(id=1, title="G", order_index=0)
        [row] = group_rows([g], [card(1, None, Stage.REVIEW, NOW)], NOW)
        assert row.total_cards == 0


class TestDayRows:
    def test_overdue_folds_into_today(self):
        cards = [
            card(1, 1, Stage.REVIEW, NOW - timedelta(days=30)),
            card(2, 1, Stage.LEARNING, NOW - timedelta(minutes=1)),
            card(3, 1, Stage.REVIEW, NOW + timedelta(days=1)),
        ]
        rows = day_rows(cards, NOW, 7, TZ)
        assert len(rows) == 7
        assert rows[0].day == date(2025, 3, 10)
        assert (rows[0].due_review, rows[0].due_learning) == (1, 1)
        assert rows[1].due_review == 1

    def test_buckets_use_fixed_timezone(self):
        # 02:00 UTC on the 11th is still the 10th in Santiago
        late = datetime(2025, 3, 11, 2, 0, tzinfo=timezone.utc)
        rows = day_rows([card(1, 1, Stage.REVIEW, late)], NOW, 3, TZ)
        assert rows[0].due_review == 1
        rows_utc = day_rows([card(1, 1, Stage.REVIEW, late)], NOW, 3, "UTC")
        assert rows_utc[1].due_review == 1

    def test_beyond_horizon_and_new_excluded(self):
        cards = [card(1, 1), card(2, 1, Stage.REVIEW, NOW + timedelta(days=10))]
        rows = day_rows(cards, NOW, 7, TZ)
        assert sum(r.due_review + r.due_learning for r in rows) == 0

    def test_sum_matches_direct_count(self):
        rng = random.Random(3)
        cards = []
        for i in range(200):
            stage = rng.choice(list(Stage))
            due = None if stage is Stage.NEW else NOW + timedelta(hours=rng.randint(-100, 400))
            cards.append(card(i, 1, stage, due))
        days = 7
        rows = day_rows(cards, NOW, days, TZ)
        horizon_end = datetime.combine(rows[-1].day + timedelta(days=1), datetime.min.time(),
                                       tzinfo=ZoneInfo(TZ))
        direct = sum(1 for c in cards
                     if c.state.stage is not Stage.NEW and c.state.due_at < horizon_end)
        assert sum(r.due_learning + r.due_review for r in rows) == direct

    def test_days_clamped(self):
        assert len(day_rows([], NOW, 0, TZ)) == 1
        assert len(day_rows([], NOW, 1000, TZ)) == 365


class TestHistoryRows:
    def test_counts_per_day(self):
        entries = [
            ReviewLogEntry(1, Rating.GOOD, NOW, "G"),
            ReviewLogEntry(2, Rating.AGAIN, NOW - timedelta(hours=1), "G"),
            ReviewLogEntry(3, Rating.EASY, NOW - timedelta(days=1), None),
            ReviewLogEntry(4, Rating.HARD, NOW - timedelta(days=40), None),
        ]
        rows = history_rows(entries, NOW, 30, TZ)
        assert len(rows) == 30
        assert rows[-1].day == date(2025, 3, 10)
        assert (rows[-1].total, rows[-1].good, rows[-1].again) == (2, 1, 1)
        assert rows[-2].easy == 1
        assert sum(r.total for r in rows) == 3


class TestAgendaService:
    def test_group_counts_from_store(self, service, seed, set_state):
        ids = seed({"A": 4, "B": 2})
        a = ids["cards"]["A"]
        set_state(a[0], "review", NOW - timedelta(days=1))
        set_state(a[1], "relearning", NOW - timedelta(minutes=3))
        set_state(a[2], "review", NOW + timedelta(days=2))

        rows = service.agenda_group_counts(USER, ids["project_id"], now=NOW)
        assert [r.group_title for r in rows] == ["A", "B"]
        first = rows[0]
        assert (first.total_cards, first.new_count, first.due_review, first.due_learning) == (4, 1, 1, 1)
        assert rows[1].next_due_at is None

    def test_due_by_day_from_store(self, service, seed, set_state):
        ids = seed({"A": 2})
        set_state(ids["cards"]["A"][0], "review", NOW + timedelta(days=2))
        rows = service.agenda_due_by_day(USER, ids["project_id"], 7, now=NOW)
        assert [r.due_review for r in rows] == [0, 0, 1, 0, 0, 0, 0]

    def test_history_and_recent(self, service, seed):
        ids = seed({"A": 2})
        a = ids["cards"]["A"]
        service.rate_card(USER, a[0], "good", now=NOW - timedelta(days=1))
        service.rate_card(USER, a[1], "again", now=NOW)

        hist = service.agenda_history(USER, ids["project_id"], 7, now=NOW)
        assert hist[-1].again == 1
        assert hist[-2].good == 1

        recent = service.agenda_recent_reviews(USER, ids["project_id"])
        assert [r.card_id for r in recent] == [a[1], a[0]]
        assert recent[0].group_title == "A"

    def test_unknown_project(self, service):
        with pytest.raises(NotFound):
            service.agenda_group_counts(USER, 404, now=NOW)
