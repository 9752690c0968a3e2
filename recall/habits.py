"""Habit detection over closed activity sessions.

Three detectors run over the sessions inside the lookback window:

- Time-based: session starts for the same (application, category) are
  clustered by time of day. A cluster seen on enough distinct days with a
  small time-of-day spread becomes a habit whose typical_time is the
  cluster centroid.
- Trigger-based: an antecedent followed by another application within a
  short window. Antecedents are either an application switch (A then B)
  or a session whose analyses reported errors.
- Sequence-based: recurring n-grams of (application, category) across
  consecutive sessions.

Confidence is derived from the occurrence history only:

    support     = 1 - exp(-(count / 5) ** 2)
    data        = 0.5 + 0.5 * min(1, observed_days / min_window_days)
    consistency = 0.6 + 0.4 * c        (c in [0, 1])
    confidence  = min(1, support * data * consistency)

Habits are keyed by (pattern_type, signature); re-detection updates the
stored habit. Habits that stop being detected decay and are eventually
removed.
"""

import logging
import math
import statistics
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from .markdown import slugify
from .models import HABIT_SEQUENCE, HABIT_TIME, HABIT_TRIGGER, ActivitySession, Habit

if TYPE_CHECKING:
    from .config import ConfigManager
    from .markdown import MarkdownWriter
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)

DAY = 86400


def compute_confidence(count: int, observed_days: float, consistency: float,
                       min_window_days: int = 7) -> float:
    """Confidence for a pattern seen ``count`` times over ``observed_days``.

    Args:
        count: Number of occurrences
        observed_days: Days spanned by the occurrences
        consistency: 0-1 regularity (time stability or conditional frequency)
        min_window_days: Days of history needed for full data weight

    Returns:
        Confidence in [0, 1]
    """
    if count <= 0:
        return 0.0
    support = 1.0 - math.exp(-((count / 5.0) ** 2))
    data = 0.5 + 0.5 * min(1.0, max(0.0, observed_days) / max(1, min_window_days))
    regularity = 0.6 + 0.4 * max(0.0, min(1.0, consistency))
    return round(min(1.0, support * data * regularity), 4)


def minutes_to_clock(minutes: float) -> str:
    minutes = int(round(minutes)) % (24 * 60)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def clock_to_minutes(clock: str) -> int:
    hours, minutes = clock.split(':')
    return int(hours) * 60 + int(minutes)


def _minute_of_day(ts: int) -> int:
    dt = datetime.fromtimestamp(ts)
    return dt.hour * 60 + dt.minute


def _day_span(timestamps: List[int]) -> int:
    days = sorted({datetime.fromtimestamp(ts).date() for ts in timestamps})
    return (days[-1] - days[0]).days + 1 if days else 0


def _frequency(count: int, observed_days: int) -> str:
    if observed_days <= 0:
        return "once"
    per_day = count / observed_days
    if per_day >= 0.8:
        return "daily"
    if per_day * 7 >= 0.8:
        return "weekly"
    return f"{count} times in {observed_days} days"


@dataclass
class HabitCandidate:
    """A detected pattern before it is matched against stored habits."""
    pattern_type: str
    signature: str
    pattern_name: str
    count: int
    observed_days: int
    consistency: float
    frequency: str
    last_occurrence: int
    typical_time: Optional[str] = None
    trigger_conditions: Optional[dict] = None


@dataclass
class DetectionResult:
    """Counts from one detection pass."""
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    decayed: int = 0
    removed: int = 0
    habits: List[Habit] = field(default_factory=list)
    changed: List[Habit] = field(default_factory=list)


class HabitDetector:
    """Periodic habit detection pass.

    Attributes:
        storage: MemoryStorage instance
        config: ConfigManager instance
        markdown: MarkdownWriter for habit artifacts
        batch_lock: Lock shared with the summary generator so batch passes
            never interleave
    """

    def __init__(self, storage: "MemoryStorage", config: "ConfigManager",
                 markdown: "MarkdownWriter", batch_lock: Optional[threading.Lock] = None):
        self.storage = storage
        self.config = config
        self.markdown = markdown
        self.batch_lock = batch_lock or threading.Lock()
        self._listeners: List[Callable[[List[Habit]], None]] = []

    def add_listener(self, callback: Callable[[List[Habit]], None]) -> None:
        """Register a callback invoked with habits created or changed by a pass."""
        self._listeners.append(callback)

    def detect_all(self, now: Optional[int] = None) -> DetectionResult:
        """Run all detectors over the lookback window and persist the results.

        Args:
            now: Reference time; the window is [now - lookback_days, now]

        Returns:
            DetectionResult with per-outcome counts
        """
        now = int(time.time()) if now is None else now
        cfg = self.config.config.habits

        with self.batch_lock:
            sessions = self.storage.get_sessions_in_range(
                now - cfg.lookback_days * DAY, now, closed_only=True
            )
            logger.info(f"Habit detection over {len(sessions)} sessions")

            candidates: List[HabitCandidate] = []
            for detector in (self.detect_time_based, self.detect_trigger_based,
                             self.detect_sequence_based):
                try:
                    candidates.extend(detector(sessions))
                except Exception as e:
                    logger.warning(f"{detector.__name__} failed: {e}", exc_info=True)

            result = self.storage.run_transaction(lambda conn: self._apply(conn, candidates, now))

        changed = result.changed
        logger.info(
            f"Habit detection: {result.new} new, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.failed} failed, "
            f"{result.decayed} decayed, {result.removed} removed"
        )
        if changed:
            for callback in self._listeners:
                try:
                    callback(changed)
                except Exception as e:
                    logger.error(f"Habit listener failed: {e}", exc_info=True)
        return result

    def _apply(self, conn, candidates: List[HabitCandidate], now: int) -> DetectionResult:
        cfg = self.config.config.habits
        result = DetectionResult()
        seen = set()

        for candidate in candidates:
            conn.execute("SAVEPOINT habit_candidate")
            try:
                confidence = compute_confidence(
                    candidate.count, candidate.observed_days, candidate.consistency,
                    cfg.min_window_days,
                )
                if candidate.count < cfg.min_occurrences or confidence < cfg.min_confidence:
                    conn.execute("RELEASE habit_candidate")
                    continue
                habit, outcome = self._upsert(conn, candidate, confidence, now)
                seen.add((habit.pattern_type, habit.signature))
                setattr(result, outcome, getattr(result, outcome) + 1)
                result.habits.append(habit)
                if outcome != 'unchanged':
                    result.changed.append(habit)
                conn.execute("RELEASE habit_candidate")
            except Exception as e:
                conn.execute("ROLLBACK TO habit_candidate")
                conn.execute("RELEASE habit_candidate")
                result.failed += 1
                logger.warning(f"Skipping habit candidate {candidate.signature!r}: {e}")

        self._decay_stale(conn, seen, now, result)
        return result

    def _match_existing(self, conn, candidate: HabitCandidate) -> Optional[Habit]:
        existing = self.storage.get_habit(candidate.pattern_type, candidate.signature, conn)
        if existing or candidate.pattern_type != HABIT_TIME:
            return existing
        # Time habits drift; match on app/category with a nearby centroid
        prefix = candidate.signature.rsplit('|', 1)[0] + '|'
        target = clock_to_minutes(candidate.typical_time)
        tolerance = self.config.config.habits.cluster_gap_minutes
        best = None
        for habit in self.storage.list_habits(HABIT_TIME, conn):
            if not habit.signature.startswith(prefix) or not habit.typical_time:
                continue
            distance = abs(clock_to_minutes(habit.typical_time) - target)
            if distance <= tolerance and (best is None or distance < best[0]):
                best = (distance, habit)
        return best[1] if best else None

    def _upsert(self, conn, candidate: HabitCandidate, confidence: float,
                now: int) -> Tuple[Habit, str]:
        existing = self._match_existing(conn, candidate)
        if existing is None:
            habit = Habit(
                id=f"habit-{slugify(candidate.pattern_type + ' ' + candidate.signature)}",
                pattern_name=candidate.pattern_name,
                pattern_type=candidate.pattern_type,
                signature=candidate.signature,
                confidence=confidence,
                frequency=candidate.frequency,
                occurrence_count=candidate.count,
                trigger_conditions=candidate.trigger_conditions,
                typical_time=candidate.typical_time,
                last_occurrence=candidate.last_occurrence,
                created_at=now,
                updated_at=now,
            )
            outcome = 'new'
        else:
            habit = existing
            changed = (
                habit.confidence != confidence
                or habit.occurrence_count != candidate.count
                or habit.last_occurrence != candidate.last_occurrence
                or habit.typical_time != candidate.typical_time
            )
            habit.pattern_name = candidate.pattern_name
            habit.confidence = confidence
            habit.frequency = candidate.frequency
            habit.occurrence_count = candidate.count
            habit.trigger_conditions = candidate.trigger_conditions
            habit.typical_time = candidate.typical_time
            habit.last_occurrence = candidate.last_occurrence
            habit.updated_at = now
            outcome = 'updated' if changed else 'unchanged'

        habit.markdown_path = self.markdown.habit_path(habit)
        self.storage.save_habit(habit, conn)
        self.storage.after_commit(lambda: self.markdown.write_habit(habit))
        return habit, outcome

    def _decay_stale(self, conn, seen: set, now: int, result: DetectionResult) -> None:
        cfg = self.config.config.habits
        stale_after = 2 * cfg.lookback_days * DAY
        for habit in self.storage.list_habits(conn=conn):
            if (habit.pattern_type, habit.signature) in seen:
                continue
            last = habit.last_occurrence or habit.created_at
            if now - last <= stale_after:
                continue
            if now - habit.updated_at < cfg.interval_hours * 3600:
                continue
            habit.confidence = round(habit.confidence * cfg.decay_factor, 4)
            habit.updated_at = now
            if habit.confidence < cfg.remove_threshold:
                self.storage.delete_habit(habit.id, conn)
                result.removed += 1
                logger.info(f"Removed stale habit {habit.id}")
            else:
                self.storage.save_habit(habit, conn)
                result.decayed += 1

    def detect_time_based(self, sessions: List[ActivitySession]) -> List[HabitCandidate]:
        """Cluster session start times per (application, category)."""
        cfg = self.config.config.habits
        groups: Dict[Tuple[str, str], List[ActivitySession]] = defaultdict(list)
        display: Dict[Tuple[str, str], str] = {}
        for session in sessions:
            key = ((session.application or '').lower(), session.category)
            groups[key].append(session)
            display.setdefault(key, session.application)

        candidates = []
        for key, members in groups.items():
            members.sort(key=lambda s: (_minute_of_day(s.start_time), s.start_time))
            clusters: List[List[ActivitySession]] = [[members[0]]]
            for session in members[1:]:
                previous = _minute_of_day(clusters[-1][-1].start_time)
                if _minute_of_day(session.start_time) - previous > cfg.cluster_gap_minutes:
                    clusters.append([session])
                else:
                    clusters[-1].append(session)

            for cluster in clusters:
                # one occurrence per day: the earliest start in the cluster
                per_day: Dict[str, int] = {}
                for session in cluster:
                    day = datetime.fromtimestamp(session.start_time).strftime('%Y-%m-%d')
                    if day not in per_day or session.start_time < per_day[day]:
                        per_day[day] = session.start_time
                starts = sorted(per_day.values())
                count = len(starts)
                if count < cfg.min_occurrences:
                    continue
                minutes = [_minute_of_day(ts) for ts in starts]
                spread = statistics.pstdev(minutes) if count > 1 else 0.0
                if spread > cfg.max_time_std_minutes:
                    continue
                centroid = statistics.fmean(minutes)
                typical = minutes_to_clock(centroid)
                rounded = minutes_to_clock(round(centroid / 30) * 30)
                observed = _day_span(starts)
                app, category = key
                candidates.append(HabitCandidate(
                    pattern_type=HABIT_TIME,
                    signature=f"{app}|{category}|{rounded}",
                    pattern_name=f"{display[key]} ({category}) around {typical}",
                    count=count,
                    observed_days=observed,
                    consistency=max(0.0, 1.0 - spread / max(1, cfg.max_time_std_minutes)),
                    frequency=_frequency(count, observed),
                    last_occurrence=starts[-1],
                    typical_time=typical,
                ))
        return candidates

    def detect_trigger_based(self, sessions: List[ActivitySession]) -> List[HabitCandidate]:
        """App switches and error sessions reliably followed by another app."""
        cfg = self.config.config.habits
        ordered = sorted(sessions, key=lambda s: s.start_time)
        names: Dict[str, str] = {}
        antecedents: Counter = Counter()
        error_antecedents: Counter = Counter()
        pairs: Dict[Tuple[str, str, str], List[int]] = defaultdict(list)

        for current, following in zip(ordered, ordered[1:]):
            a = (current.application or '').lower()
            b = (following.application or '').lower()
            names.setdefault(a, current.application)
            names.setdefault(b, following.application)
            within = 0 <= following.start_time - current.end_time <= cfg.trigger_window_seconds
            antecedents[a] += 1
            if current.has_errors:
                error_antecedents[a] += 1
            if not within or a == b:
                continue
            pairs[('app', a, b)].append(following.start_time)
            if current.has_errors:
                pairs[('error', a, b)].append(following.start_time)

        candidates = []
        for (kind, a, b), times in pairs.items():
            total = error_antecedents[a] if kind == 'error' else antecedents[a]
            if not total:
                continue
            probability = len(times) / total
            observed = _day_span(times)
            if kind == 'error':
                name = f"Switches to {names[b]} after errors in {names[a]}"
                conditions = {'kind': 'error', 'application': names[a], 'then': names[b],
                              'window_seconds': cfg.trigger_window_seconds}
            else:
                name = f"Switches from {names[a]} to {names[b]}"
                conditions = {'kind': 'app_transition', 'from': names[a], 'to': names[b],
                              'window_seconds': cfg.trigger_window_seconds}
            candidates.append(HabitCandidate(
                pattern_type=HABIT_TRIGGER,
                signature=f"{kind}:{a}->{b}",
                pattern_name=name,
                count=len(times),
                observed_days=observed,
                consistency=probability,
                frequency=f"{probability:.0%} of the time",
                last_occurrence=max(times),
                trigger_conditions=conditions,
            ))
        return candidates

    def detect_sequence_based(self, sessions: List[ActivitySession]) -> List[HabitCandidate]:
        """Recurring n-grams of (application, category) over consecutive sessions."""
        cfg = self.config.config.habits
        n = cfg.sequence_length
        ordered = sorted(sessions, key=lambda s: s.start_time)
        grams: Dict[Tuple, List[int]] = defaultdict(list)
        starts: Counter = Counter()
        labels: Dict[Tuple[str, str], str] = {}

        for i in range(len(ordered) - n + 1):
            window = ordered[i:i + n]
            if window[-1].end_time - window[0].start_time > cfg.sequence_window_seconds:
                continue
            steps = tuple(((s.application or '').lower(), s.category) for s in window)
            if any(steps[j] == steps[j + 1] for j in range(n - 1)):
                continue
            for session, step in zip(window, steps):
                labels.setdefault(step, f"{session.application}/{session.category}")
            grams[steps].append(window[0].start_time)
            starts[steps[0]] += 1

        candidates = []
        for steps, times in grams.items():
            count = len(times)
            observed = _day_span(times)
            signature = " > ".join(f"{app}/{category}" for app, category in steps)
            candidates.append(HabitCandidate(
                pattern_type=HABIT_SEQUENCE,
                signature=signature,
                pattern_name="Sequence: " + " > ".join(labels[s] for s in steps),
                count=count,
                observed_days=observed,
                consistency=count / starts[steps[0]],
                frequency=_frequency(count, observed),
                last_occurrence=max(times),
            ))
        return candidates
