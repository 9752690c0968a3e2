"""
Suggestion lifecycle, rate limiting and trigger rules.

Usage:
    pytest tests/test_suggestions.py -v
"""

import sqlite3

import pytest

from recall.errors import InvalidTransitionError, NotFoundError
from recall.models import (
    HABIT_TIME,
    STATUS_ACCEPTED,
    STATUS_DISMISSED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_PROPOSED,
    ActivitySession,
    Habit,
)
from recall.suggestions import TriggerCandidate, check_transition

from conftest import BASE_TS, ts

MINUTE = 60


def _candidate(signature='demo', once=False):
    return TriggerCandidate(
        trigger_type='demo', signature=signature, title='Try this', message='Something to do', once=once,
    )


def _session(storage, sid, start, end, app='VS Code', productivity=7.0):
    session = ActivitySession(
        id=sid, title=f"{app} work", start_time=start, end_time=end, application=app,
        category='work', closed=True, closed_at=end, productivity_avg=productivity, created_at=start,
    )
    storage.save_session(session)
    return session


def _morning_habit(storage):
    habit = Habit(
        id='habit-morning', pattern_name='VS Code (work) around 09:00', pattern_type=HABIT_TIME,
        signature='vs code|work|09:00', confidence=0.9, frequency='daily', occurrence_count=10,
        typical_time='09:00', last_occurrence=ts(-1, 9), created_at=ts(-10), updated_at=ts(-1),
    )
    storage.save_habit(habit)
    return habit


@pytest.fixture
def engine(context):
    return context.suggestions


class TestTransitions:
    def test_allowed(self):
        check_transition(STATUS_PROPOSED, STATUS_PENDING)
        for target in (STATUS_ACCEPTED, STATUS_DISMISSED, STATUS_EXPIRED):
            check_transition(STATUS_PENDING, target)

    @pytest.mark.parametrize('current,target', [
        (STATUS_PROPOSED, STATUS_ACCEPTED),
        (STATUS_ACCEPTED, STATUS_DISMISSED),
        (STATUS_EXPIRED, STATUS_PENDING),
        (STATUS_DISMISSED, STATUS_ACCEPTED),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)


class TestLifecycle:
    def test_propose_stores_pending(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        assert suggestion.status == STATUS_PENDING
        assert suggestion.expires_at == BASE_TS + 60 * MINUTE
        assert [s.id for s in engine.get_pending()] == [suggestion.id]

    def test_accept(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        accepted = engine.respond(suggestion.id, True, now=BASE_TS + 10)
        assert accepted.status == STATUS_ACCEPTED
        assert accepted.responded_at == BASE_TS + 10
        assert engine.get_pending() == []

    def test_terminal_state_is_final(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        engine.dismiss(suggestion.id, now=BASE_TS + 10)
        with pytest.raises(InvalidTransitionError):
            engine.respond(suggestion.id, True, now=BASE_TS + 20)
        stored = engine.storage.get_suggestion(suggestion.id)
        assert stored.status == STATUS_DISMISSED
        assert stored.responded_at == BASE_TS + 10

    def test_unknown_id(self, engine):
        with pytest.raises(NotFoundError):
            engine.respond('suggestion-missing', True)

    def test_expiry(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        assert engine.expire_stale(now=BASE_TS + 59 * MINUTE) == 0
        assert engine.expire_stale(now=BASE_TS + 60 * MINUTE) == 1
        stored = engine.storage.get_suggestion(suggestion.id)
        assert stored.status == STATUS_EXPIRED
        assert stored.responded_at == BASE_TS + 60 * MINUTE
        with pytest.raises(InvalidTransitionError):
            engine.respond(suggestion.id, True)

    def test_late_expiry_records_expiry_time(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        assert engine.expire_stale(now=BASE_TS + 90 * MINUTE) == 1
        stored = engine.storage.get_suggestion(suggestion.id)
        assert stored.responded_at == suggestion.expires_at == BASE_TS + 60 * MINUTE


class TestRateLimit:
    def test_one_pending_per_signature(self, engine):
        assert engine.propose(_candidate(), now=BASE_TS)
        assert engine.propose(_candidate(), now=BASE_TS + 5) is None
        assert engine.propose(_candidate('other'), now=BASE_TS + 5)
        assert len(engine.get_pending()) == 2

    def test_cooldown_after_resolution(self, engine):
        suggestion = engine.propose(_candidate(), now=BASE_TS)
        engine.dismiss(suggestion.id, now=BASE_TS + 60)
        assert engine.propose(_candidate(), now=BASE_TS + 60 + 29 * MINUTE) is None
        assert engine.propose(_candidate(), now=BASE_TS + 60 + 30 * MINUTE) is not None

    def test_cooldown_counts_from_expiry(self, engine):
        engine.propose(_candidate(), now=BASE_TS)
        engine.expire_stale(now=BASE_TS + 60 * MINUTE)
        assert engine.propose(_candidate(), now=BASE_TS + 70 * MINUTE) is None
        assert engine.propose(_candidate(), now=BASE_TS + 90 * MINUTE) is not None

    def test_once_never_repeats(self, engine):
        suggestion = engine.propose(_candidate(once=True), now=BASE_TS)
        engine.respond(suggestion.id, True, now=BASE_TS + 60)
        assert engine.propose(_candidate(once=True), now=BASE_TS + 86400) is None

    def test_concurrent_insert_treated_as_rate_limited(self, engine, monkeypatch):
        def conflict(suggestion, conn=None):
            raise sqlite3.IntegrityError("UNIQUE constraint failed")
        monkeypatch.setattr(engine.storage, 'insert_suggestion', conflict)
        assert engine.propose(_candidate(), now=BASE_TS) is None


class TestRules:
    def test_idle_gap_between_sessions(self, engine, storage):
        first = _session(storage, 's-1', ts(0, 9), ts(0, 9, 10))
        second = _session(storage, 's-2', ts(0, 9, 40), ts(0, 9, 50))
        candidates = engine.evaluate_session_closed(second)
        assert [c.signature for c in candidates] == [f"idle:{first.end_time}"]

    def test_short_gap_is_not_idle(self, engine, storage):
        _session(storage, 's-1', ts(0, 9), ts(0, 9, 10))
        second = _session(storage, 's-2', ts(0, 9, 14), ts(0, 9, 20))
        assert engine.evaluate_session_closed(second) == []

    def test_productivity_drop(self, engine, storage):
        for i in range(6):
            start = ts(0, 9, i * 6)
            _session(storage, f"s-{i}", start, start + 5 * MINUTE, productivity=8.0 if i < 3 else 4.0)
        latest = storage.get_session('s-5')
        types = [c.trigger_type for c in engine.evaluate_session_closed(latest)]
        assert types == ['productivity_drop']

    def test_context_switching(self, engine, storage):
        apps = ['Slack', 'VS Code', 'Firefox', 'Terminal', 'Slack', 'Mail']
        for i, app in enumerate(apps):
            start = ts(0, 9) + i * 90
            _session(storage, f"s-{i}", start, start + 80, app=app)
        latest = storage.get_session('s-5')
        types = [c.trigger_type for c in engine.evaluate_session_closed(latest)]
        assert 'context_switch' in types

    def test_break_reminder(self, engine, storage):
        _session(storage, 's-1', ts(0, 9), ts(0, 10))
        second = _session(storage, 's-2', ts(0, 10, 2), ts(0, 10, 40))
        candidates = engine.evaluate_session_closed(second)
        assert [c.signature for c in candidates] == [f"break_reminder:{ts(0, 9)}"]

    def test_habit_deviation(self, engine, storage):
        _morning_habit(storage)
        late = _session(storage, 's-1', ts(0, 9, 50), ts(0, 10), app='Firefox')
        candidates = engine.evaluate_session_closed(late)
        assert [c.signature for c in candidates] == ['habit_deviation:habit-morning:2025-12-08']

        _session(storage, 's-0', ts(0, 8), ts(0, 8, 30), app='VS Code')
        assert engine._habit_deviation(late) == []

    def test_idle_tick(self, engine, ingest):
        ingest(BASE_TS)
        assert engine.evaluate_idle(BASE_TS + 14 * MINUTE) == []
        created = engine.tick(BASE_TS + 15 * MINUTE)
        assert [s.trigger_signature for s in created] == [f"idle:{BASE_TS}"]
        assert engine.tick(BASE_TS + 20 * MINUTE) == []

    def test_inactive_project(self, context, engine, ingest):
        ingest(BASE_TS, project_name='Recall Engine')
        context.grouper.flush(now=BASE_TS + 600)
        project = context.storage.list_projects()[0]

        assert engine.evaluate_projects(BASE_TS + 6 * 86400) == []
        candidates = engine.evaluate_projects(BASE_TS + 8 * 86400)
        assert [c.signature for c in candidates] == [f"project_inactive:{project.id}:{BASE_TS}"]


class TestEvents:
    def test_closed_session_events_processed(self, context, engine, ingest):
        ingest(ts(0, 9))
        ingest(ts(0, 9, 40))
        ingest(ts(0, 10, 30))
        assert engine.process_pending_events() == 2

        pending = engine.get_pending()
        assert [s.trigger_type for s in pending] == ['idle']

    def test_rule_failure_is_contained(self, engine, monkeypatch, storage):
        def broken(session):
            raise RuntimeError("rule crashed")
        monkeypatch.setattr(engine, 'evaluate_session_closed', broken)
        session = _session(storage, 's-1', ts(0, 9), ts(0, 9, 10))
        engine.on_session_closed(session)
        assert engine.process_pending_events() == 1
        assert engine.get_pending() == []

    def test_habit_update_checks_latest_session(self, engine, storage):
        habit = _morning_habit(storage)
        _session(storage, 's-1', ts(0, 9, 50), ts(0, 10), app='Firefox')
        engine.on_habits_updated([habit])
        assert engine.process_pending_events() == 1
        pending = engine.get_pending()
        assert [s.trigger_signature for s in pending] == ['habit_deviation:habit-morning:2025-12-08']
