"""
Tests for the study service surface: identity checks, rating writes and
pomodoro persistence.
"""

from datetime import timedelta

import pytest

from core.errors import NotAuthenticated, NotFound, ValidationError, VersionConflict
from core.focus_timer import DEFAULT_SETTINGS, Phase
from core.practice import PracticeMode, SessionState
from core.scheduler import Stage
from db.models import PomodoroSettingsRow
from conftest import NOW, USER


class TestIdentity:
    @pytest.mark.parametrize("user", [None, "", "   "])
    def test_missing_user_rejected(self, service, seed, user):
        ids = seed({"G": 1})
        with pytest.raises(NotAuthenticated):
            service.agenda_group_counts(user, ids["project_id"], now=NOW)
        with pytest.raises(NotAuthenticated):
            service.rate_card(user, ids["cards"]["G"][0], "good", now=NOW)
        with pytest.raises(NotAuthenticated):
            service.get_pomodoro_settings(user)


class TestRateCard:
    def test_rate_and_read_back(self, service, seed):
        ids = seed({"G": 1})
        card_id = ids["cards"]["G"][0]
        st = service.rate_card(USER, card_id, "easy", now=NOW)
        assert st.stage is Stage.LEARNING
        assert st.due_at == NOW + timedelta(days=1)
        assert service.cards.get_card(USER, card_id).state == st

    def test_expected_version_guards_writes(self, service, seed):
        card_id = seed({"G": 1})["cards"]["G"][0]
        service.rate_card(USER, card_id, "good", now=NOW, expected_version=0)
        with pytest.raises(VersionConflict):
            service.rate_card(USER, card_id, "good", now=NOW, expected_version=0)
        assert service.rate_card(USER, card_id, "good", now=NOW, expected_version=1).version == 2

    def test_invalid_rating(self, service, seed):
        card_id = seed({"G": 1})["cards"]["G"][0]
        with pytest.raises(ValidationError):
            service.rate_card(USER, card_id, "meh", now=NOW)

    def test_unknown_card(self, service):
        with pytest.raises(NotFound):
            service.rate_card(USER, 31337, "good", now=NOW)


class TestPractice:
    def test_fetch_due_cards_checks_group(self, service, seed):
        a = seed({"A": 1})
        b = seed({"B": 1})
        with pytest.raises(NotFound):
            service.fetch_due_cards(USER, a["project_id"], b["groups"]["B"], now=NOW)
        cards = service.fetch_due_cards(USER, a["project_id"], a["groups"]["A"], now=NOW)
        assert [c.id for c in cards] == a["cards"]["A"]

    def test_start_practice(self, service, seed):
        ids = seed({"G": 2})
        s = service.start_practice(USER, ids["project_id"], ids["groups"]["G"], now=NOW)
        assert s.mode is PracticeMode.DUE
        assert s.state is SessionState.ACTIVE
        assert s.remaining == 2
        s.close()

    def test_unknown_mode(self, service, seed):
        ids = seed({"G": 1})
        with pytest.raises(ValidationError):
            service.start_practice(USER, ids["project_id"], ids["groups"]["G"], mode="marathon")


class TestPomodoroSettings:
    def test_defaults_created_on_first_read(self, service, session_factory):
        assert service.get_pomodoro_settings(USER) == DEFAULT_SETTINGS
        with session_factory() as s:
            assert s.get(PomodoroSettingsRow, USER) is not None

    def test_save_normalizes(self, service):
        saved = service.save_pomodoro_settings(USER, {"focus_minutes": 500, "enable_sound": False})
        assert saved.focus_minutes == 180
        assert saved.enable_sound is False
        assert service.get_pomodoro_settings(USER) == saved

    def test_save_is_idempotent(self, service):
        first = service.save_pomodoro_settings(USER, {"short_break_minutes": 7})
        second = service.save_pomodoro_settings(USER, first)
        assert first == second


class TestPomodoroSessions:
    def test_focus_seconds_clamped(self, service):
        service.insert_pomodoro_session(USER, NOW, NOW, 0)
        service.insert_pomodoro_session(USER, NOW + timedelta(hours=1), NOW + timedelta(days=2), 200000)
        rows = service.pomodoro.list_sessions(USER)
        assert [r.focus_seconds for r in rows] == [1, 86400]

    def test_unknown_project(self, service):
        with pytest.raises(NotFound):
            service.insert_pomodoro_session(USER, NOW, NOW, 60, project_id=77)

    def test_timer_logs_completed_focus(self, service, seed, clock):
        ids = seed({"G": 1})
        service.save_pomodoro_settings(USER, {"focus_minutes": 1})
        timer = service.focus_timer(USER, clock=clock)
        timer.start(project_id=ids["project_id"])
        clock.advance(seconds=30)
        timer.skip()
        timer.skip()
        timer.start(project_id=ids["project_id"])
        clock.advance(minutes=1)
        assert timer.tick() is Phase.SHORT_BREAK

        [row] = service.pomodoro.list_sessions(USER)
        assert row.focus_seconds == 60
        assert row.project_id == ids["project_id"]
        assert row.started_at == NOW + timedelta(seconds=30)

    def test_failed_focus_log_does_not_stop_timer(self, service, clock):
        service.save_pomodoro_settings(USER, {"focus_minutes": 1})
        timer = service.focus_timer(USER, clock=clock)
        timer.start(project_id=404)
        clock.advance(minutes=1)
        assert timer.tick() is Phase.SHORT_BREAK
        assert timer.unsaved_records == []
        assert service.pomodoro.list_sessions(USER) == []


class TestSharedTimer:
    def test_state_is_restored_on_next_load(self, service, seed, clock):
        ids = seed({"G": 1})
        timer = service.focus_timer(USER, clock=clock)
        timer.start(project_id=ids["project_id"])
        saved = service.sync_focus_timer(USER, timer)
        assert saved.rev == 1
        assert timer.rev == 1

        clock.advance(minutes=5)
        other = service.focus_timer(USER, clock=clock)
        assert other.phase is Phase.FOCUS
        assert other.running
        assert other.project_id == ids["project_id"]
        assert other.remaining_seconds() == 20 * 60
        assert other.rev == 1

    def test_stale_device_adopts_stored_state(self, service, clock):
        first = service.focus_timer(USER, clock=clock)
        first.start()
        service.sync_focus_timer(USER, first)
        second = service.focus_timer(USER, clock=clock)

        clock.advance(minutes=3)
        first.pause()
        assert service.sync_focus_timer(USER, first).rev == 2

        second.skip()
        adopted = service.sync_focus_timer(USER, second)
        assert adopted.rev == 2
        assert second.phase is Phase.FOCUS
        assert not second.running
        assert second.remaining_seconds() == 22 * 60
        assert second.rev == 2

    def test_fresh_timer_when_nothing_saved(self, service):
        timer = service.focus_timer(USER)
        assert timer.phase is Phase.IDLE
        assert timer.rev == 0
