"""Activity grouper: merges ordered analyses into activity sessions.

There is at most one open session at a time, persisted with ``closed = 0``
so a restart resumes it. Each incoming analysis is handled in its own
transaction:

1. Invalid analyses are marked ``excluded`` and skipped.
2. Analyses older than the newest session member are marked ``rejected``.
3. With no open session, or after an idle gap longer than
   ``max_gap_seconds``, or when the session would run past
   ``max_duration_seconds``, the open session is closed and a new one is
   seeded by the analysis.
4. Otherwise a continuation score decides between merge and split::

       score = w_cont * is_continuation
             + w_app  * (application == session application)
             + w_tags * |new tags & session tags| / |new tags|

   A score at or above ``merge_threshold`` merges.

Closing writes the markdown artifact and marks the session indexed.
Closing an already closed session does nothing.
"""

import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, TYPE_CHECKING

from .errors import NotFoundError
from .models import (
    GROUPING_EXCLUDED,
    GROUPING_GROUPED,
    GROUPING_PENDING,
    GROUPING_REJECTED,
    ActivitySession,
    ScreenshotAnalysis,
)

if TYPE_CHECKING:
    from .config import ConfigManager
    from .markdown import MarkdownWriter
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)

SCORE_EPSILON = 1e-9


@dataclass
class GroupingResult:
    """Outcome of grouping one analysis.

    Attributes:
        segment_id: The analysis that was processed
        action: opened, merged, split, excluded, rejected or skipped
        session_id: Session the analysis joined (None unless grouped)
        score: Continuation score when one was computed
        reason: Why a new session was started, or why the analysis was dropped
        closed_sessions: Sessions closed as a side effect
    """
    segment_id: str
    action: str
    session_id: Optional[str] = None
    score: Optional[float] = None
    reason: Optional[str] = None
    closed_sessions: List[ActivitySession] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'segment_id': self.segment_id,
            'action': self.action,
            'session_id': self.session_id,
            'score': self.score,
            'reason': self.reason,
            'closed_sessions': [s.id for s in self.closed_sessions],
        }


def new_session_id(start_time: int) -> str:
    day = datetime.fromtimestamp(start_time).strftime('%Y-%m-%d')
    return f"activity-{day}-{uuid.uuid4().hex[:8]}"


def tag_overlap(new_tags: List[str], session_tags: List[str]) -> float:
    """Share of the new analysis's tags already present in the session."""
    if not new_tags:
        return 0.0
    existing = {t.lower() for t in session_tags}
    hits = sum(1 for t in new_tags if t.lower() in existing)
    return hits / len(new_tags)


def _dominant(values: List[str], fallback: str) -> str:
    """Most common value, ties broken by first appearance."""
    values = [v for v in values if v]
    if not values:
        return fallback
    counts = Counter(values)
    best = max(counts.values())
    for value in values:
        if counts[value] == best:
            return value
    return fallback


def build_title(application: str, members: List[ScreenshotAnalysis]) -> str:
    description = next((m.activity_description for m in members if m.activity_description), '')
    files = []
    for member in members:
        for name in member.file_names:
            if name not in files:
                files.append(name)
    title = f"{application}: {description}" if description else application
    if files:
        title += f" ({', '.join(files[:3])})"
    return title


class ActivityGrouper:
    """Groups analyses into non-overlapping, ordered activity sessions.

    Attributes:
        storage: MemoryStorage used for every read and write
        config: ConfigManager; grouping knobs are read on every call so
            runtime changes apply immediately
        markdown: MarkdownWriter for session artifacts
    """

    def __init__(self, storage: "MemoryStorage", config: "ConfigManager",
                 markdown: "MarkdownWriter"):
        self.storage = storage
        self.config = config
        self.markdown = markdown
        self._listeners: List[Callable[[ActivitySession], None]] = []

    def add_listener(self, callback: Callable[[ActivitySession], None]) -> None:
        """Register a callback invoked with each newly closed session."""
        self._listeners.append(callback)

    def _notify(self, sessions: List[ActivitySession]) -> None:
        for session in sessions:
            for callback in self._listeners:
                try:
                    callback(session)
                except Exception as e:
                    logger.error(f"Session-closed listener failed for {session.id}: {e}", exc_info=True)

    def continuation_score(self, analysis: ScreenshotAnalysis, session: ActivitySession) -> float:
        cfg = self.config.config.grouping
        same_app = (analysis.application or '').lower() == (session.application or '').lower()
        return (
            cfg.continuation_weight * (1.0 if analysis.is_continuation else 0.0)
            + cfg.same_app_weight * (1.0 if same_app else 0.0)
            + cfg.tag_overlap_weight * tag_overlap(analysis.context_tags, session.tags)
        )

    def process(self, analysis: ScreenshotAnalysis, now: Optional[int] = None) -> GroupingResult:
        """Group one analysis and persist the decision atomically.

        Args:
            analysis: The analysis to place. It is stored first if the
                store does not have it yet.
            now: Clock override for closed_at timestamps

        Returns:
            GroupingResult describing what happened
        """
        now = int(time.time()) if now is None else now
        result = self.storage.run_transaction(lambda conn: self._process_unit(conn, analysis, now))
        self._notify(result.closed_sessions)
        return result

    def _process_unit(self, conn, analysis: ScreenshotAnalysis, now: int) -> GroupingResult:
        current = self.storage.get_analysis(analysis.segment_id, conn)
        if current is None:
            self.storage.save_analysis(analysis, conn)
            current = analysis
        if current.grouping_status != GROUPING_PENDING:
            return GroupingResult(current.segment_id, 'skipped', reason=current.grouping_status)

        if not current.is_valid:
            self.storage.set_grouping_status(current.segment_id, GROUPING_EXCLUDED, conn)
            logger.warning(
                f"Excluding malformed analysis {current.segment_id} from grouping: "
                f"{current.validation_error}"
            )
            return GroupingResult(current.segment_id, 'excluded', reason=current.validation_error)

        cfg = self.config.config.grouping
        open_session = self.storage.get_open_session(conn)
        last = open_session or self.storage.get_last_session(conn)
        if last is not None and current.captured_at < last.end_time:
            self.storage.set_grouping_status(current.segment_id, GROUPING_REJECTED, conn)
            logger.warning(
                f"Rejecting out-of-order analysis {current.segment_id}: captured at "
                f"{current.captured_at}, latest session ends at {last.end_time}"
            )
            return GroupingResult(current.segment_id, 'rejected', reason='out_of_order')

        if open_session is None:
            session = self._open(conn, current, now)
            return GroupingResult(current.segment_id, 'opened', session.id, reason='no_open_session')

        gap = current.captured_at - open_session.end_time
        if gap > cfg.max_gap_seconds:
            return self._split(conn, open_session, current, now, None, 'idle_gap')
        if current.captured_at - open_session.start_time > cfg.max_duration_seconds:
            return self._split(conn, open_session, current, now, None, 'max_duration')

        score = self.continuation_score(current, open_session)
        if score + SCORE_EPSILON >= cfg.merge_threshold:
            self._append(conn, open_session, current)
            logger.debug(f"Merged {current.segment_id} into {open_session.id} (score {score:.2f})")
            return GroupingResult(current.segment_id, 'merged', open_session.id, score=score)

        return self._split(conn, open_session, current, now, score, 'low_score')

    def _split(self, conn, open_session: ActivitySession, analysis: ScreenshotAnalysis,
               now: int, score: Optional[float], reason: str) -> GroupingResult:
        closed = self._close(conn, open_session, now)
        session = self._open(conn, analysis, now)
        logger.debug(f"Split at {analysis.segment_id} ({reason})")
        return GroupingResult(analysis.segment_id, 'split', session.id, score=score,
                              reason=reason, closed_sessions=[closed])

    def _open(self, conn, analysis: ScreenshotAnalysis, now: int) -> ActivitySession:
        session = ActivitySession(
            id=new_session_id(analysis.captured_at),
            title=build_title(analysis.application, [analysis]),
            start_time=analysis.captured_at,
            end_time=analysis.captured_at,
            application=analysis.application,
            category=analysis.activity_category,
            created_at=now,
        )
        self.storage.save_session(session, conn)
        self._append(conn, session, analysis)
        logger.info(f"Opened session {session.id} ({analysis.application})")
        return session

    def _append(self, conn, session: ActivitySession, analysis: ScreenshotAnalysis) -> None:
        self.storage.add_session_segment(session.id, analysis.segment_id, len(session.segment_ids), conn)
        self.storage.set_grouping_status(analysis.segment_id, GROUPING_GROUPED, conn)
        members = self.storage.get_session_analyses(session.id, conn)
        self._refresh(session, members)
        self.storage.save_session(session, conn)

    def _refresh(self, session: ActivitySession, members: List[ScreenshotAnalysis]) -> None:
        """Recompute derived session fields from its members."""
        session.segment_ids = [m.segment_id for m in members]
        session.start_time = members[0].captured_at
        session.end_time = members[-1].captured_at
        session.application = _dominant([m.application for m in members], session.application)
        session.category = _dominant([m.activity_category for m in members], session.category)
        tags = []
        for member in members:
            for tag in member.context_tags:
                if tag not in tags:
                    tags.append(tag)
        session.tags = tags
        session.segment_summaries = [
            m.activity_summary or m.activity_description for m in members
        ]
        session.productivity_avg = round(
            sum(m.productivity_score for m in members) / len(members), 2
        )
        session.has_errors = any(m.error_indicators for m in members)
        session.title = build_title(session.application, members)

    def _close(self, conn, session: ActivitySession, now: int) -> ActivitySession:
        members = self.storage.get_session_analyses(session.id, conn)
        if members:
            self._refresh(session, members)
        summaries = [s for s in session.segment_summaries if s]
        if summaries and not session.summary:
            session.summary = " ".join(dict.fromkeys(summaries))
        technologies = []
        accomplishments = []
        for member in members:
            technologies += [t for t in member.technologies if t not in technologies]
            accomplishments += [a for a in member.accomplishments if a not in accomplishments]
        session.closed = True
        session.closed_at = now
        session.markdown_path = self.markdown.session_path(session)
        session.indexed = True
        self.storage.save_session(session, conn)
        self.storage.after_commit(lambda: self.markdown.write_session(session, technologies, accomplishments))
        logger.info(
            f"Closed session {session.id}: {len(session.segment_ids)} segments, "
            f"{session.duration_seconds}s"
        )
        return session

    def close_session(self, session_id: str, now: Optional[int] = None) -> Optional[ActivitySession]:
        """Finalize a session by id.

        Returns:
            The closed session, or None if it was already closed

        Raises:
            NotFoundError: If no session has that id
        """
        now = int(time.time()) if now is None else now

        def unit(conn):
            session = self.storage.get_session(session_id, conn)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            if session.closed:
                return None
            return self._close(conn, session, now)

        closed = self.storage.run_transaction(unit)
        if closed:
            self._notify([closed])
        return closed

    def flush(self, now: Optional[int] = None, idle_only: bool = False) -> Optional[ActivitySession]:
        """Close the open session.

        Args:
            now: Clock override
            idle_only: Only close when the session has been idle for at
                least max_gap_seconds

        Returns:
            The closed session, or None when nothing was closed
        """
        now = int(time.time()) if now is None else now
        max_gap = self.config.config.grouping.max_gap_seconds

        def unit(conn):
            session = self.storage.get_open_session(conn)
            if session is None:
                return None
            if idle_only and now - session.end_time < max_gap:
                return None
            return self._close(conn, session, now)

        closed = self.storage.run_transaction(unit)
        if closed:
            self._notify([closed])
        return closed

    def drain(self, now: Optional[int] = None, should_stop: Optional[Callable[[], bool]] = None,
              batch_size: int = 100) -> List[GroupingResult]:
        """Group every pending analysis in capture order.

        Args:
            now: Clock override
            should_stop: Checked between analyses; True stops the drain
                after the current unit commits
            batch_size: Rows fetched per query

        Returns:
            One GroupingResult per analysis processed
        """
        results = []
        while True:
            batch = self.storage.get_pending_analyses(limit=batch_size)
            if not batch:
                break
            for analysis in batch:
                if should_stop and should_stop():
                    logger.info(f"Grouping drain stopped with backlog remaining after {len(results)} analyses")
                    return results
                results.append(self.process(analysis, now))
        if results:
            logger.debug(f"Drained {len(results)} analyses")
        return results
