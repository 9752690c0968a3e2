"""Summary generation for Daily, Weekly and Monthly periods.

A summary rolls up the closed sessions intersecting an inclusive date
range together with the projects they link to and the habits observed in
the range. Content is a markdown report built from a fixed template, with
an optional LLM-written narrative paragraph.

Guarantees:
- Idempotent: inputs are fingerprinted (SHA-256). Regenerating with an
  unchanged fingerprint returns the stored summary untouched.
- Disjoint: saving a summary removes any other summary of the same type
  whose range overlaps it, in the same transaction.
- Never fails for lack of data: fewer than ``min_sessions`` sessions
  yields an "insufficient data" summary.

Example:
    >>> generator = SummaryGenerator(storage, config, markdown)
    >>> summary = generator.generate_daily(date(2025, 12, 8))
    >>> print(summary.content)
"""

import hashlib
import json
import logging
import threading
import time
from collections import Counter, defaultdict
from datetime import date, datetime
from typing import List, Optional, TYPE_CHECKING

from .markdown import format_duration
from .models import (
    SUMMARY_DAILY,
    SUMMARY_MONTHLY,
    SUMMARY_TYPES,
    SUMMARY_WEEKLY,
    ActivitySession,
    Habit,
    Project,
    ScreenshotAnalysis,
    Summary,
)
from .errors import ValidationError
from .timeparser import date_range_timestamps, parse_date, period_bounds, previous_period

if TYPE_CHECKING:
    from .config import ConfigManager
    from .markdown import MarkdownWriter
    from .providers import VisionProvider
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)

MAX_HIGHLIGHTS = 10
TOP_APPS = 5


def summary_id(summary_type: str, date_start: date) -> str:
    return f"summary-{summary_type.lower()}-{date_start.isoformat()}"


class SummaryGenerator:
    """Builds and stores period summaries.

    Attributes:
        storage: MemoryStorage instance
        config: ConfigManager instance
        markdown: MarkdownWriter for summary artifacts
        provider: Optional VisionProvider used for the narrative paragraph
        batch_lock: Lock shared with the habit detector
    """

    def __init__(self, storage: "MemoryStorage", config: "ConfigManager",
                 markdown: "MarkdownWriter", provider: Optional["VisionProvider"] = None,
                 batch_lock: Optional[threading.Lock] = None):
        self.storage = storage
        self.config = config
        self.markdown = markdown
        self.provider = provider
        self.batch_lock = batch_lock or threading.Lock()

    def generate_daily(self, day) -> Summary:
        return self.generate_for(SUMMARY_DAILY, day)

    def generate_weekly(self, day) -> Summary:
        return self.generate_for(SUMMARY_WEEKLY, day)

    def generate_monthly(self, day) -> Summary:
        return self.generate_for(SUMMARY_MONTHLY, day)

    def generate_for(self, summary_type: str, day) -> Summary:
        """Generate the summary of the period of ``summary_type`` containing ``day``."""
        start, end = period_bounds(summary_type, parse_date(day))
        return self.generate(summary_type, start, end)

    def generate(self, summary_type: str, date_start, date_end, now: Optional[int] = None) -> Summary:
        """Generate (or regenerate) a summary for an explicit inclusive range.

        Args:
            summary_type: Daily, Weekly or Monthly
            date_start: First day of the range (date or ISO string)
            date_end: Last day of the range (date or ISO string)
            now: Clock override for created_at

        Returns:
            The stored Summary

        Raises:
            ValidationError: For an unknown type or an inverted range
        """
        if summary_type not in SUMMARY_TYPES:
            raise ValidationError(f"Unknown summary type: {summary_type}")
        start = parse_date(date_start)
        end = parse_date(date_end)
        if end < start:
            raise ValidationError(f"Summary range ends before it starts: {start} > {end}")
        now = int(time.time()) if now is None else now

        with self.batch_lock:
            return self._generate(summary_type, start, end, now)

    def _generate(self, summary_type: str, start: date, end: date, now: int) -> Summary:
        start_ts, end_ts = date_range_timestamps(start, end)
        sessions = self.storage.get_sessions_in_range(start_ts, end_ts, closed_only=True)
        project_ids = self.storage.get_project_ids_for_sessions([s.id for s in sessions])
        projects = [p for p in (self.storage.get_project(pid) for pid in project_ids) if p]
        habits = [
            h for h in self.storage.list_habits()
            if h.last_occurrence is not None and start_ts <= h.last_occurrence <= end_ts
        ]
        members = {s.id: self.storage.get_session_analyses(s.id) for s in sessions}

        sid = summary_id(summary_type, start)
        fingerprint = self._fingerprint(summary_type, start, end, sessions, projects, habits, members)
        existing = self.storage.get_summary(sid)
        if (existing and existing.input_fingerprint == fingerprint
                and existing.date_end == end.isoformat()):
            logger.debug(f"Summary {sid} inputs unchanged, keeping stored version")
            return existing

        min_sessions = self.config.config.summaries.min_sessions
        insufficient = len(sessions) < max(1, min_sessions)
        if insufficient:
            content = self._render_insufficient(summary_type, start, end, len(sessions), min_sessions)
        else:
            content = self._render(summary_type, start, end, sessions, projects, habits, members)

        summary = Summary(
            id=sid,
            summary_type=summary_type,
            date_start=start.isoformat(),
            date_end=end.isoformat(),
            content=content,
            activity_ids=[s.id for s in sessions],
            project_ids=[p.id for p in projects],
            insufficient_data=insufficient,
            input_fingerprint=fingerprint,
            created_at=now,
        )

        def unit(conn):
            removed = self.storage.delete_overlapping_summaries(
                summary_type, summary.date_start, summary.date_end, keep_id=summary.id, conn=conn
            )
            if removed:
                logger.info(f"Replaced {removed} overlapping {summary_type} summaries")
            summary.markdown_path = self.markdown.summary_path(summary)
            self.storage.save_summary(summary, conn)
            self.storage.after_commit(lambda: self.markdown.write_summary(summary))

        self.storage.run_transaction(unit)
        logger.info(
            f"Generated {summary_type} summary {sid} ({len(sessions)} sessions"
            f"{', insufficient data' if insufficient else ''})"
        )
        return summary

    def _fingerprint(self, summary_type, start, end, sessions, projects, habits, members) -> str:
        payload = {
            'type': summary_type,
            'range': [start.isoformat(), end.isoformat()],
            'ai': bool(self.config.config.summaries.use_ai and self.provider),
            'min_sessions': self.config.config.summaries.min_sessions,
            'sessions': [
                [s.id, s.start_time, s.end_time, s.title, s.application, s.category,
                 s.productivity_avg, s.summary, s.tags, s.segment_ids]
                for s in sessions
            ],
            'analyses': [
                [a.segment_id, a.focus_level, a.accomplishments]
                for s in sessions for a in members.get(s.id, [])
            ],
            'projects': [[p.id, p.name, p.technologies] for p in projects],
            'habits': [[h.id, h.pattern_name, h.confidence, h.occurrence_count] for h in habits],
        }
        encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def _title(self, summary_type: str, start: date, end: date) -> str:
        if summary_type == SUMMARY_DAILY and start == end:
            return f"Daily Summary: {start.strftime('%A, %B %d, %Y')}"
        if summary_type == SUMMARY_MONTHLY:
            return f"Monthly Summary: {start.strftime('%B %Y')}"
        return f"{summary_type} Summary: {start.strftime('%b %d')} - {end.strftime('%b %d, %Y')}"

    def _render_insufficient(self, summary_type, start, end, count, min_sessions) -> str:
        return "\n".join([
            f"# {self._title(summary_type, start, end)}",
            "",
            "Insufficient data for this period.",
            "",
            f"{count} session(s) recorded; at least {max(1, min_sessions)} needed for a summary.",
        ])

    def _render(self, summary_type: str, start: date, end: date,
                sessions: List[ActivitySession], projects: List[Project],
                habits: List[Habit], members: dict) -> str:
        segment_seconds = self.config.config.capture.segment_seconds
        analyses: List[ScreenshotAnalysis] = [a for s in sessions for a in members.get(s.id, [])]

        total_seconds = 0
        by_category = defaultdict(int)
        by_app = defaultdict(int)
        for session in sessions:
            active = session.duration_seconds + segment_seconds
            total_seconds += active
            by_category[session.category] += active
            by_app[session.application] += active

        segment_count = sum(len(s.segment_ids) for s in sessions) or 1
        productivity = sum(s.productivity_avg * len(s.segment_ids) for s in sessions) / segment_count
        deep = sum(1 for a in analyses if a.focus_level == 'deep')
        deep_share = deep / len(analyses) if analyses else 0.0

        lines = [f"# {self._title(summary_type, start, end)}", "", "## Overview", ""]
        lines.append(f"- Active time: {format_duration(total_seconds)} across {len(sessions)} sessions")
        lines.append(f"- Average productivity: {productivity:.1f}/10")
        lines.append(f"- Deep focus: {deep_share:.0%} of segments")

        narrative = self._narrative(summary_type, start, end, sessions, analyses)
        if narrative:
            lines += ["", "## Narrative", "", narrative]

        lines += ["", "## Time by category", ""]
        for category, seconds in sorted(by_category.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"- {category}: {format_duration(seconds)} ({seconds / total_seconds:.0%})")

        lines += ["", "## Top applications", ""]
        for app, seconds in sorted(by_app.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_APPS]:
            lines.append(f"- {app}: {format_duration(seconds)}")

        highlights = []
        for analysis in analyses:
            for item in analysis.accomplishments:
                if item.lower() not in {h.lower() for h in highlights}:
                    highlights.append(item)
        if highlights:
            lines += ["", "## Highlights", ""]
            lines += [f"- {item}" for item in highlights[:MAX_HIGHLIGHTS]]

        if projects:
            lines += ["", "## Projects", ""]
            for project in sorted(projects, key=lambda p: p.name.lower()):
                tech = f" ({', '.join(project.technologies)})" if project.technologies else ""
                lines.append(f"- {project.name}{tech}")

        if habits:
            lines += ["", "## Habits observed", ""]
            for habit in habits:
                lines.append(f"- {habit.pattern_name} (confidence {habit.confidence:.0%})")

        if summary_type == SUMMARY_DAILY:
            lines += ["", "## Sessions", ""]
            for session in sessions:
                began = datetime.fromtimestamp(session.start_time).strftime('%H:%M')
                ended = datetime.fromtimestamp(session.end_time).strftime('%H:%M')
                lines.append(f"- {began}-{ended} {session.title}")
        else:
            per_day = Counter(
                datetime.fromtimestamp(s.start_time).date().isoformat() for s in sessions
            )
            lines += ["", "## Sessions per day", ""]
            lines += [f"- {day}: {count}" for day, count in sorted(per_day.items())]

        return "\n".join(lines)

    def _narrative(self, summary_type, start, end, sessions, analyses) -> Optional[str]:
        if not (self.config.config.summaries.use_ai and self.provider):
            return None
        descriptions = [a.activity_summary or a.activity_description for a in analyses]
        prompt = (
            f"Write a short {summary_type.lower()} recap (3-5 sentences, second person) of this "
            f"computer activity between {start.isoformat()} and {end.isoformat()}.\n\n"
            + "\n".join(f"- {s.title}" for s in sessions)
            + "\n\nSegment notes:\n"
            + "\n".join(f"- {d}" for d in descriptions[:50] if d)
        )
        try:
            text = self.provider.generate_text(prompt).strip()
        except Exception as e:
            logger.warning(f"AI narrative failed, using template only: {e}")
            return None
        return text or None

    def run_due(self, now: Optional[int] = None) -> List[Summary]:
        """Generate summaries for periods that have ended and are missing.

        Today's daily summary is also generated once the configured
        ``daily_hour`` has passed.

        Returns:
            Summaries generated by this call
        """
        now = int(time.time()) if now is None else now
        current = datetime.fromtimestamp(now)
        today = current.date()
        due = []
        for summary_type in SUMMARY_TYPES:
            start, end = previous_period(summary_type, today)
            if self.storage.get_summary(summary_id(summary_type, start)) is None:
                due.append((summary_type, start, end))
        if current.hour >= self.config.config.summaries.daily_hour:
            due.append((SUMMARY_DAILY, today, today))

        generated = []
        for summary_type, start, end in due:
            try:
                generated.append(self.generate(summary_type, start, end, now))
            except Exception as e:
                logger.warning(f"Scheduled {summary_type} summary for {start} failed: {e}")
        return generated
