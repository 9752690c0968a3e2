"""Proactive suggestions and their lifecycle.

The engine listens for session-closed and habit-updated events plus a
periodic tick. Events are queued and evaluated on a background thread so a
slow rule never holds up grouping. Each rule produces TriggerCandidates;
``propose`` turns a candidate into a stored suggestion unless the rate
limit for its trigger signature says no.

Lifecycle:
    proposed -> pending -> accepted | dismissed | expired

A proposed suggestion is persisted directly as pending. Terminal states
are final.
"""

import logging
import queue
import sqlite3
import statistics
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from .errors import InvalidTransitionError, NotFoundError
from .habits import clock_to_minutes
from .models import (
    HABIT_TIME,
    STATUS_ACCEPTED,
    STATUS_DISMISSED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_PROPOSED,
    TRANSITIONS,
    ActivitySession,
    Habit,
    ProactiveSuggestion,
)

if TYPE_CHECKING:
    from .config import ConfigManager
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)

CONTEXT_SWITCH_WINDOW = 600


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if target not in TRANSITIONS.get(current, ()):
        raise InvalidTransitionError(f"Cannot move suggestion from {current} to {target}")


@dataclass
class TriggerCandidate:
    """A condition a rule wants to tell the user about.

    Attributes:
        trigger_type: Rule name (idle, habit_deviation, ...)
        signature: Rate-limit key; equal signatures describe the same condition
        title: Short headline
        message: Body text
        priority: low, normal or high
        once: Never propose again once a suggestion for this signature resolved
    """
    trigger_type: str
    signature: str
    title: str
    message: str
    priority: str = 'normal'
    once: bool = False


class SuggestionEngine:
    """Evaluates trigger rules and manages suggestion state.

    Attributes:
        storage: MemoryStorage for suggestions and the data rules read
        config: ConfigManager; the suggestions section is read per evaluation
    """

    def __init__(self, storage: "MemoryStorage", config: "ConfigManager"):
        self.storage = storage
        self.config = config
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._events: queue.Queue = queue.Queue()

    def start(self):
        """Start the background evaluation thread."""
        if self._running:
            logger.warning("SuggestionEngine already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info("SuggestionEngine started")

    def stop(self):
        """Stop the background thread. Queued events stay queued."""
        if not self._running:
            return

        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("SuggestionEngine stopped")

    # Event intake

    def on_session_closed(self, session: ActivitySession) -> None:
        self._events.put(('session_closed', session, None))

    def on_habits_updated(self, habits: List[Habit]) -> None:
        self._events.put(('habits_updated', habits, None))

    def queue_tick(self, now: Optional[int] = None) -> None:
        self._events.put(('tick', None, now))

    def _run_loop(self):
        logger.info("SuggestionEngine run loop started")

        while self._running:
            try:
                event = self._events.get(timeout=1)
            except queue.Empty:
                continue
            self._handle(event)

        logger.info("SuggestionEngine run loop stopped")

    def process_pending_events(self) -> int:
        """Evaluate every queued event on the calling thread.

        Returns:
            Number of events processed
        """
        processed = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return processed
            self._handle(event)
            processed += 1

    def _handle(self, event) -> List[ProactiveSuggestion]:
        event_type, payload, now = event
        try:
            if event_type == 'session_closed':
                now = payload.closed_at or payload.end_time
                candidates = self.evaluate_session_closed(payload)
            elif event_type == 'habits_updated':
                now = int(time.time()) if now is None else now
                candidates = []
                latest = self.storage.get_recent_closed_sessions(1)
                if latest:
                    candidates += self._habit_deviation(latest[0])
                candidates += self.evaluate_projects(now)
            elif event_type == 'tick':
                now = int(time.time()) if now is None else now
                return self.tick(now)
            else:
                logger.warning(f"Unknown suggestion event: {event_type}")
                return []
            return self._propose_all(candidates, now)
        except Exception as e:
            logger.error(f"Suggestion evaluation for {event_type} failed: {e}", exc_info=True)
            return []

    def _propose_all(self, candidates: List[TriggerCandidate], now: int) -> List[ProactiveSuggestion]:
        created = []
        for candidate in candidates:
            suggestion = self.propose(candidate, now)
            if suggestion:
                created.append(suggestion)
        return created

    def tick(self, now: Optional[int] = None) -> List[ProactiveSuggestion]:
        """Periodic pass: expire stale suggestions, then run time-driven rules."""
        now = int(time.time()) if now is None else now
        self.expire_stale(now)
        candidates = self.evaluate_idle(now) + self.evaluate_projects(now)
        return self._propose_all(candidates, now)

    # Rules

    def evaluate_session_closed(self, session: ActivitySession) -> List[TriggerCandidate]:
        """Rules that react to a freshly closed session."""
        candidates = []
        candidates.extend(self._habit_deviation(session))
        candidates.extend(self._idle_gap(session))
        candidates.extend(self._productivity_drop())
        candidates.extend(self._context_switching(session))
        candidates.extend(self._break_reminder(session))
        return candidates

    def _habit_deviation(self, session: ActivitySession) -> List[TriggerCandidate]:
        cfg = self.config.config.suggestions
        end = datetime.fromtimestamp(session.end_time)
        day_start = int(end.replace(hour=0, minute=0, second=0, microsecond=0).timestamp())
        minute = end.hour * 60 + end.minute
        today_apps = None

        candidates = []
        for habit in self.storage.list_habits(HABIT_TIME):
            if habit.confidence < cfg.habit_min_confidence or not habit.typical_time:
                continue
            if minute <= clock_to_minutes(habit.typical_time) + cfg.habit_tolerance_minutes:
                continue
            if habit.last_occurrence and habit.last_occurrence >= day_start:
                continue
            app = habit.signature.split('|')[0]
            if today_apps is None:
                today_apps = {
                    (s.application or '').lower()
                    for s in self.storage.get_sessions_in_range(day_start, session.end_time)
                }
            if app in today_apps:
                continue
            candidates.append(TriggerCandidate(
                trigger_type='habit_deviation',
                signature=f"habit_deviation:{habit.id}:{end.strftime('%Y-%m-%d')}",
                title="Skipped a usual routine?",
                message=f"You usually start {habit.pattern_name.split(' around ')[0]} "
                        f"around {habit.typical_time}, but haven't today.",
                once=True,
            ))
        return candidates

    def _idle_gap(self, session: ActivitySession) -> List[TriggerCandidate]:
        cfg = self.config.config.suggestions
        previous = [s for s in self.storage.get_recent_closed_sessions(5)
                    if s.id != session.id and s.end_time <= session.start_time]
        if not previous:
            return []
        gap = session.start_time - previous[0].end_time
        if gap < cfg.idle_threshold_minutes * 60:
            return []
        return [TriggerCandidate(
            trigger_type='idle',
            signature=f"idle:{previous[0].end_time}",
            title="Welcome back",
            message=f"You were away for {gap // 60} minutes. Your last activity was "
                    f"\"{previous[0].title}\".",
            priority='low',
            once=True,
        )]

    def evaluate_idle(self, now: int) -> List[TriggerCandidate]:
        """Idle rule for the periodic tick: nothing captured for a while."""
        cfg = self.config.config.suggestions
        latest = self.storage.get_latest_capture_time()
        if latest is None or now - latest < cfg.idle_threshold_minutes * 60:
            return []
        return [TriggerCandidate(
            trigger_type='idle',
            signature=f"idle:{latest}",
            title="Idle",
            message=f"No activity for {(now - latest) // 60} minutes.",
            priority='low',
            once=True,
        )]

    def _productivity_drop(self) -> List[TriggerCandidate]:
        cfg = self.config.config.suggestions
        window = cfg.productivity_window
        sessions = self.storage.get_recent_closed_sessions(window * 2)
        if len(sessions) < window * 2:
            return []
        recent = statistics.fmean(s.productivity_avg for s in sessions[:window])
        before = statistics.fmean(s.productivity_avg for s in sessions[window:])
        if before - recent < cfg.productivity_drop_threshold:
            return []
        return [TriggerCandidate(
            trigger_type='productivity_drop',
            signature='productivity_drop',
            title="Productivity dipped",
            message=f"Your last {window} activities averaged {recent:.1f}/10, "
                    f"down from {before:.1f}. Maybe time for a short break?",
        )]

    def _context_switching(self, session: ActivitySession) -> List[TriggerCandidate]:
        cfg = self.config.config.suggestions
        recent = self.storage.get_sessions_in_range(session.end_time - CONTEXT_SWITCH_WINDOW,
                                                    session.end_time)
        if len(recent) < cfg.context_switch_threshold:
            return []
        apps = sorted({s.application for s in recent if s.application})
        return [TriggerCandidate(
            trigger_type='context_switch',
            signature='context_switch',
            title="Lots of switching",
            message=f"{len(recent)} different activities in the last 10 minutes "
                    f"({', '.join(apps[:4])}). Consider focusing on one.",
            priority='low',
        )]

    def _break_reminder(self, session: ActivitySession) -> List[TriggerCandidate]:
        cfg = self.config.config.suggestions
        max_gap = cfg.idle_threshold_minutes * 60
        start = session.start_time
        for previous in self.storage.get_recent_closed_sessions(50):
            if previous.id == session.id or previous.end_time > start:
                continue
            if start - previous.end_time >= max_gap:
                break
            start = previous.start_time
        worked = session.end_time - start
        if worked < cfg.break_after_minutes * 60:
            return []
        return [TriggerCandidate(
            trigger_type='break_reminder',
            signature=f"break_reminder:{start}",
            title="Time for a break",
            message=f"You've been working for {worked // 60} minutes without a break.",
            once=True,
        )]

    def evaluate_projects(self, now: int) -> List[TriggerCandidate]:
        """Projects that have gone quiet."""
        days = self.config.config.suggestions.project_inactive_days
        cutoff = now - days * 86400
        candidates = []
        for project in self.storage.list_projects():
            if project.last_seen >= cutoff:
                continue
            idle_days = (now - project.last_seen) // 86400
            candidates.append(TriggerCandidate(
                trigger_type='project_inactive',
                signature=f"project_inactive:{project.id}:{project.last_seen}",
                title=f"{project.name} has gone quiet",
                message=f"No activity on {project.name} for {idle_days} days.",
                priority='low',
                once=True,
            ))
        return candidates

    # Lifecycle

    def propose(self, candidate: TriggerCandidate, now: Optional[int] = None) -> Optional[ProactiveSuggestion]:
        """Create a pending suggestion unless rate limited.

        The pending check and the cooldown check run in the same
        transaction as the insert.

        Returns:
            The stored suggestion, or None if rate limited
        """
        now = int(time.time()) if now is None else now
        cfg = self.config.config.suggestions
        suggestion = ProactiveSuggestion(
            id=f"suggestion-{uuid.uuid4().hex[:12]}",
            trigger_type=candidate.trigger_type,
            trigger_signature=candidate.signature,
            title=candidate.title,
            message=candidate.message,
            priority=candidate.priority,
            status=STATUS_PROPOSED,
            created_at=now,
            expires_at=now + cfg.timeout_minutes * 60,
        )

        def unit(conn):
            if self.storage.get_pending_for_signature(candidate.signature, conn):
                return None
            resolved_at = self.storage.get_last_resolution_time(candidate.signature, conn)
            if resolved_at is not None:
                if candidate.once or now - resolved_at < cfg.cooldown_minutes * 60:
                    return None
            check_transition(suggestion.status, STATUS_PENDING)
            suggestion.status = STATUS_PENDING
            self.storage.insert_suggestion(suggestion, conn)
            return suggestion

        try:
            created = self.storage.run_transaction(unit)
        except sqlite3.IntegrityError:
            logger.debug(f"Suggestion for {candidate.signature} already pending")
            return None
        if created:
            logger.info(f"New suggestion {created.id} ({created.trigger_type}): {created.title}")
        else:
            logger.debug(f"Suggestion for {candidate.signature} rate limited")
        return created

    def _resolve(self, suggestion_id: str, target: str, response: Optional[str],
                 now: Optional[int]) -> ProactiveSuggestion:
        now = int(time.time()) if now is None else now

        def unit(conn):
            suggestion = self.storage.get_suggestion(suggestion_id, conn)
            if suggestion is None:
                raise NotFoundError(f"Suggestion {suggestion_id} not found")
            check_transition(suggestion.status, target)
            suggestion.status = target
            suggestion.response = response
            suggestion.responded_at = now
            self.storage.update_suggestion_status(suggestion.id, target, response, now, conn)
            return suggestion

        return self.storage.run_transaction(unit)

    def respond(self, suggestion_id: str, accepted: bool, now: Optional[int] = None,
                response: Optional[str] = None) -> ProactiveSuggestion:
        """Record the user's answer to a pending suggestion.

        Raises:
            NotFoundError: Unknown suggestion id
            InvalidTransitionError: The suggestion is not pending
        """
        target = STATUS_ACCEPTED if accepted else STATUS_DISMISSED
        return self._resolve(suggestion_id, target, response or target, now)

    def dismiss(self, suggestion_id: str, now: Optional[int] = None) -> ProactiveSuggestion:
        return self.respond(suggestion_id, False, now)

    def expire_stale(self, now: Optional[int] = None) -> int:
        """Move pending suggestions past their expiry to expired."""
        now = int(time.time()) if now is None else now

        def unit(conn):
            stale = self.storage.get_expirable_suggestions(now, conn)
            for suggestion in stale:
                check_transition(suggestion.status, STATUS_EXPIRED)
                self.storage.update_suggestion_status(
                    suggestion.id, STATUS_EXPIRED, None, suggestion.expires_at, conn
                )
            return len(stale)

        expired = self.storage.run_transaction(unit)
        if expired:
            logger.info(f"Expired {expired} suggestions")
        return expired

    def get_pending(self) -> List[ProactiveSuggestion]:
        return self.storage.get_suggestions(STATUS_PENDING)
