"""
Habit detection: confidence formula, the three detectors, idempotence and decay.

Usage:
    pytest tests/test_habits.py -v
"""

import pytest

from recall.habits import compute_confidence
from recall.models import HABIT_SEQUENCE, HABIT_TIME, HABIT_TRIGGER, ActivitySession, Habit

from conftest import ts

DAY = 86400


def _session(storage, sid, start, end, app, category='work', has_errors=False):
    session = ActivitySession(
        id=sid, title=f"{app} session", start_time=start, end_time=end,
        application=app, category=category, closed=True, closed_at=end,
        has_errors=has_errors, created_at=start,
    )
    storage.save_session(session)
    return session


def _habits(storage, pattern_type):
    return storage.list_habits(pattern_type)


class TestConfidence:
    def test_regular_pattern_is_confident(self):
        assert compute_confidence(10, 10, 0.95) > 0.8

    def test_two_occurrences_stay_low(self):
        assert compute_confidence(2, 2, 1.0) < 0.3

    def test_monotonic_in_count(self):
        values = [compute_confidence(n, 14, 0.9) for n in range(1, 15)]
        assert values == sorted(values)

    def test_bounds(self):
        assert compute_confidence(0, 10, 1.0) == 0.0
        assert compute_confidence(1000, 1000, 1.0) <= 1.0


class TestTimeBased:
    @pytest.fixture
    def morning_routine(self, storage):
        for day in range(10):
            start = ts(day, 9, day % 5)
            _session(storage, f"s-{day}", start, start + 1800, 'VS Code')

    def test_daily_routine_detected(self, context, morning_routine):
        result = context.habits.detect_all(now=ts(10, 12))
        habits = _habits(context.storage, HABIT_TIME)
        assert result.new == 1
        assert len(habits) == 1
        habit = habits[0]
        assert habit.occurrence_count == 10
        assert habit.confidence > 0.8
        assert habit.typical_time == '09:02'
        assert habit.frequency == 'daily'
        assert habit.signature == 'vs code|work|09:00'
        assert context.markdown.read(habit.markdown_path)

    def test_rerun_is_idempotent(self, context, morning_routine):
        context.habits.detect_all(now=ts(10, 12))
        before = {(h.signature, h.confidence, h.occurrence_count) for h in context.storage.list_habits()}

        result = context.habits.detect_all(now=ts(10, 12))
        after = {(h.signature, h.confidence, h.occurrence_count) for h in context.storage.list_habits()}
        assert result.new == 0
        assert result.updated == 0
        assert before == after

    def test_too_few_occurrences(self, context, storage):
        for day in range(2):
            _session(storage, f"s-{day}", ts(day, 9), ts(day, 9, 30), 'VS Code')
        context.habits.detect_all(now=ts(3, 12))
        assert context.storage.list_habits() == []

    def test_listener_only_sees_changes(self, context, morning_routine):
        calls = []
        context.habits.add_listener(calls.append)
        context.habits.detect_all(now=ts(10, 12))
        context.habits.detect_all(now=ts(10, 12))
        assert len(calls) == 1
        assert calls[0][0].pattern_type == HABIT_TIME


class TestTriggerAndSequence:
    def test_error_trigger_detected(self, context, storage):
        for day in range(6):
            _session(storage, f"t-{day}", ts(day, 10), ts(day, 10, 20), 'Terminal', has_errors=True)
            _session(storage, f"f-{day}", ts(day, 10, 22), ts(day, 10, 40), 'Firefox', 'learning')
        context.habits.detect_all(now=ts(6, 12))

        triggers = {h.signature: h for h in _habits(storage, HABIT_TRIGGER)}
        assert 'error:terminal->firefox' in triggers
        assert 'app:terminal->firefox' in triggers
        habit = triggers['error:terminal->firefox']
        assert habit.occurrence_count == 6
        assert habit.trigger_conditions['kind'] == 'error'
        assert habit.trigger_conditions['then'] == 'Firefox'

    def test_sequence_detected(self, context, storage):
        for day in range(5):
            _session(storage, f"a-{day}", ts(day, 9), ts(day, 9, 5), 'Slack', 'communication')
            _session(storage, f"b-{day}", ts(day, 9, 6), ts(day, 9, 15), 'VS Code')
            _session(storage, f"c-{day}", ts(day, 9, 16), ts(day, 9, 25), 'Firefox', 'learning')
        context.habits.detect_all(now=ts(5, 12))

        sequences = [h.signature for h in _habits(storage, HABIT_SEQUENCE)]
        assert "slack/communication > vs code/work > firefox/learning" in sequences


class TestDecay:
    def _habit(self, hid, confidence, now):
        return Habit(
            id=hid, pattern_name=hid, pattern_type=HABIT_TIME, signature=f"{hid}|work|08:00",
            confidence=confidence, frequency='daily', occurrence_count=5, typical_time='08:00',
            last_occurrence=now - 100 * DAY, created_at=now - 200 * DAY, updated_at=now - 2 * DAY,
        )

    def test_stale_habits_decay_then_disappear(self, context, storage):
        now = ts(0, 12)
        storage.save_habit(self._habit('habit-fading', 0.5, now))
        storage.save_habit(self._habit('habit-gone', 0.2, now))

        result = context.habits.detect_all(now=now)
        assert result.decayed == 1
        assert result.removed == 1
        remaining = storage.list_habits()
        assert [h.id for h in remaining] == ['habit-fading']
        assert remaining[0].confidence == pytest.approx(0.35)

    def test_recently_decayed_habit_left_alone(self, context, storage):
        now = ts(0, 12)
        habit = self._habit('habit-fading', 0.5, now)
        habit.updated_at = now - 3600
        storage.save_habit(habit)
        context.habits.detect_all(now=now)
        assert storage.list_habits()[0].confidence == 0.5
