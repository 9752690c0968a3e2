"""Read and command surface used by the presentation layer.

Every call returns a QueryResult. When the pipeline is switched off or
the schema is not at the latest generation the result is
``available=False`` with a reason, never partial data. Bad input and
lifecycle errors are raised (ValidationError, NotFoundError,
InvalidTransitionError) for the caller to map.

Settings calls only require a ready schema, so the pipeline can be
switched back on while it is off.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, TYPE_CHECKING

from .errors import NotFoundError, ValidationError
from .models import STATUS_PENDING, SUMMARY_TYPES, to_timestamp
from .timeparser import TimeParser, parse_date

if TYPE_CHECKING:
    from .models import ActivitySession
    from .pipeline import PipelineContext

logger = logging.getLogger(__name__)

STOPWORDS = {'the', 'a', 'an', 'and', 'or', 'of', 'in', 'on', 'for', 'to', 'with', 'what', 'did', 'i'}

# points per matching term, by field
FIELD_WEIGHTS = (
    ('title', 3.0),
    ('tags', 2.0),
    ('application', 2.0),
    ('summary', 1.0),
    ('segment_summaries', 1.0),
)
MAX_TERM_SCORE = sum(w for _, w in FIELD_WEIGHTS)


@dataclass
class QueryResult:
    """Outcome of a facade call.

    Attributes:
        available: False when the pipeline cannot answer right now
        data: Payload (lists and dicts of plain values)
        reason: Why the result is unavailable
    """
    available: bool
    data: Any = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {'available': self.available, 'data': self.data, 'reason': self.reason}


def search_terms(query: str) -> List[str]:
    words = re.findall(r"[\w.#+-]+", (query or '').lower())
    return [w for w in words if len(w) > 1 and w not in STOPWORDS]


def relevance(session: "ActivitySession", terms: List[str]) -> float:
    """Keyword score in [0, 1] of a session against the search terms."""
    if not terms:
        return 0.0
    fields = {
        'title': (session.title or '').lower(),
        'tags': ' '.join(session.tags).lower(),
        'application': (session.application or '').lower(),
        'summary': (session.summary or '').lower(),
        'segment_summaries': ' '.join(session.segment_summaries).lower(),
    }
    score = 0.0
    for term in terms:
        for name, weight in FIELD_WEIGHTS:
            if term in fields[name]:
                score += weight
    return round(score / (MAX_TERM_SCORE * len(terms)), 3)


class QueryFacade:
    """Answers activity, summary and suggestion queries for one context."""

    def __init__(self, context: "PipelineContext"):
        self.context = context

    @property
    def storage(self):
        return self.context.storage

    def _unavailable(self) -> Optional[QueryResult]:
        reason = self.context.unavailable_reason()
        if reason:
            return QueryResult(False, None, reason)
        return None

    def _schema_unavailable(self) -> Optional[QueryResult]:
        if self.storage.migrating:
            return QueryResult(False, None, "migrating")
        if not self.storage.ready:
            return QueryResult(False, None, "schema not ready")
        return None

    # Activities

    def search_activities(self, query: str, limit: int = 20) -> QueryResult:
        """Keyword search over sessions, best match first."""
        blocked = self._unavailable()
        if blocked:
            return blocked
        terms = search_terms(query)
        if not terms:
            raise ValidationError("Search query has no usable terms")

        scored = [(relevance(s, terms), s) for s in self.storage.search_sessions(terms)]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].start_time))
        results = [
            {
                'id': session.id,
                'title': session.title,
                'start_time': session.start_time,
                'duration': session.duration_seconds,
                'application': session.application,
                'relevance': score,
            }
            for score, session in scored[:max(1, limit)]
            if score > 0
        ]
        return QueryResult(True, results)

    def get_activity_detail(self, session_id: str) -> QueryResult:
        """Full session with its member analyses and linked projects.

        Raises:
            NotFoundError: Unknown session id
        """
        blocked = self._unavailable()
        if blocked:
            return blocked
        session = self.storage.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Activity {session_id} not found")

        detail = session.to_dict()
        detail['segments'] = [
            {
                'segment_id': a.segment_id,
                'captured_at': a.captured_at,
                'description': a.activity_description,
                'productivity_score': a.productivity_score,
            }
            for a in self.storage.get_session_analyses(session_id)
        ]
        detail['project_ids'] = self.storage.get_project_ids_for_sessions([session_id])
        return QueryResult(True, detail)

    def get_activities_in_range(self, start, end=None) -> QueryResult:
        """Sessions overlapping a range, ordered by start.

        ``start`` may be a natural-language range ("yesterday", "last
        week") when ``end`` is omitted.
        """
        blocked = self._unavailable()
        if blocked:
            return blocked
        start_ts, end_ts = self._resolve_range(start, end)
        sessions = self.storage.get_sessions_in_range(start_ts, end_ts)
        return QueryResult(True, [s.to_dict() for s in sessions])

    def _resolve_range(self, start, end):
        if end is None:
            if start is None:
                raise ValidationError("A start or range is required")
            try:
                return TimeParser().parse_timestamps(str(start))
            except ValueError as e:
                raise ValidationError(str(e)) from e
        try:
            start_ts = to_timestamp(start)
            end_ts = to_timestamp(end)
        except ValueError as e:
            raise ValidationError(f"Could not parse range {start!r} - {end!r}") from e
        if start_ts is None or end_ts is None:
            raise ValidationError(f"Could not parse range {start!r} - {end!r}")
        if end_ts < start_ts:
            raise ValidationError("Range ends before it starts")
        return start_ts, end_ts

    # Suggestions

    def get_pending_suggestions(self) -> QueryResult:
        blocked = self._unavailable()
        if blocked:
            return blocked
        return QueryResult(True, [s.to_dict() for s in self.storage.get_suggestions(STATUS_PENDING)])

    def dismiss_suggestion(self, suggestion_id: str) -> QueryResult:
        blocked = self._unavailable()
        if blocked:
            return blocked
        return QueryResult(True, self.context.suggestions.dismiss(suggestion_id).to_dict())

    def respond_to_suggestion(self, suggestion_id: str, accepted: bool) -> QueryResult:
        blocked = self._unavailable()
        if blocked:
            return blocked
        if not isinstance(accepted, bool):
            raise ValidationError("accepted must be true or false")
        return QueryResult(True, self.context.suggestions.respond(suggestion_id, accepted).to_dict())

    # Summaries

    def get_summaries(self, summary_type: Optional[str] = None, start=None, end=None) -> QueryResult:
        blocked = self._unavailable()
        if blocked:
            return blocked
        if summary_type and summary_type not in SUMMARY_TYPES:
            raise ValidationError(f"Unknown summary type: {summary_type}")
        try:
            start_iso = parse_date(start).isoformat() if start else None
            end_iso = parse_date(end).isoformat() if end else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        summaries = self.storage.get_summaries(summary_type, start_iso, end_iso)
        return QueryResult(True, [s.to_dict() for s in summaries])

    def generate_summary(self, summary_type: str, day) -> QueryResult:
        blocked = self._unavailable()
        if blocked:
            return blocked
        if summary_type not in SUMMARY_TYPES:
            raise ValidationError(f"Unknown summary type: {summary_type}")
        try:
            target = parse_date(day)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return QueryResult(True, self.context.summaries.generate_for(summary_type, target).to_dict())

    # Settings

    def get_pipeline_settings(self) -> QueryResult:
        blocked = self._schema_unavailable()
        if blocked:
            return blocked
        cfg = self.context.config.config
        return QueryResult(True, {
            'enabled': self.context.enabled,
            'capture_interval_seconds': cfg.capture.interval_seconds,
            'segment_seconds': cfg.capture.segment_seconds,
            'schema_version': self.storage.schema_version(),
            'analyses': self.storage.count_analyses_by_status(),
        })

    def set_pipeline_enabled(self, enabled: bool) -> QueryResult:
        blocked = self._schema_unavailable()
        if blocked:
            return blocked
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be true or false")
        self.context.set_enabled(enabled)
        return self.get_pipeline_settings()

    def set_capture_interval(self, seconds: int) -> QueryResult:
        """Raw capture cadence, 1-15 seconds.

        Raises:
            ValidationError: Outside the allowed range
        """
        self.context.config.update('capture', 'interval_seconds', seconds)
        return self.get_pipeline_settings()

    def set_segment_length(self, seconds: int) -> QueryResult:
        """Analysis segment length, 30-300 seconds.

        Raises:
            ValidationError: Outside the allowed range
        """
        self.context.config.update('capture', 'segment_seconds', seconds)
        return self.get_pipeline_settings()
