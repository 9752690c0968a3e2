"""Record types for the memory pipeline.

Every entity is a plain dataclass. Cross references are held as id lists,
never as nested objects: a session knows its segment ids, a project knows
its session ids, a summary knows the activity and project ids it covers.

ScreenshotAnalysis.from_payload is the single entry point for AI output.
It never raises on bad content; instead the record is marked invalid with
a reason so it can be stored for audit and kept out of grouping.
"""

import json
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional

from dateutil import parser as dateutil_parser

from .errors import ValidationError

CATEGORIES = ('work', 'entertainment', 'communication', 'learning', 'other')
FOCUS_LEVELS = ('deep', 'normal', 'fragmented')
INTERACTION_MODES = ('typing', 'reading', 'navigating', 'watching', 'idle', 'mixed')

HABIT_TIME = 'TimeBased'
HABIT_TRIGGER = 'TriggerBased'
HABIT_SEQUENCE = 'SequenceBased'
HABIT_TYPES = (HABIT_TIME, HABIT_TRIGGER, HABIT_SEQUENCE)

SUMMARY_DAILY = 'Daily'
SUMMARY_WEEKLY = 'Weekly'
SUMMARY_MONTHLY = 'Monthly'
SUMMARY_TYPES = (SUMMARY_DAILY, SUMMARY_WEEKLY, SUMMARY_MONTHLY)

# Suggestion lifecycle
STATUS_PROPOSED = 'proposed'
STATUS_PENDING = 'pending'
STATUS_ACCEPTED = 'accepted'
STATUS_DISMISSED = 'dismissed'
STATUS_EXPIRED = 'expired'
TERMINAL_STATUSES = (STATUS_ACCEPTED, STATUS_DISMISSED, STATUS_EXPIRED)
TRANSITIONS = {
    STATUS_PROPOSED: (STATUS_PENDING,),
    STATUS_PENDING: TERMINAL_STATUSES,
}

PRIORITIES = ('low', 'normal', 'high')

# grouping_status values for stored analyses
GROUPING_PENDING = 'pending'
GROUPING_GROUPED = 'grouped'
GROUPING_EXCLUDED = 'excluded'
GROUPING_REJECTED = 'rejected'

MAX_CONTEXT_TAGS = 5


def _as_list(value) -> List[str]:
    """Coerce an AI field into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return []
        if value.startswith('['):
            try:
                return _as_list(json.loads(value))
            except ValueError:
                pass
        return [part.strip() for part in value.split(',') if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1')
    return bool(value)


def to_timestamp(value) -> Optional[int]:
    """Convert an int/float/ISO string/datetime into unix seconds.

    Raises:
        ValueError: If the value cannot be interpreted as a time.
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp())
    text = str(value).strip()
    if text.lstrip('-').isdigit():
        return int(text)
    return int(dateutil_parser.isoparse(text).timestamp())


@dataclass
class ScreenshotAnalysis:
    """Structured AI analysis of one capture segment."""
    segment_id: str
    captured_at: int
    application: Optional[str] = None
    activity_category: Optional[str] = None
    window_title: Optional[str] = None
    url: Optional[str] = None
    productivity_score: int = 5
    focus_level: str = 'normal'
    interaction_mode: str = 'mixed'
    is_continuation: bool = False
    activity_description: str = ''
    activity_summary: str = ''
    accomplishments: List[str] = field(default_factory=list)
    context_tags: List[str] = field(default_factory=list)
    project_name: Optional[str] = None
    people_mentioned: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    ocr_text: Optional[str] = None
    file_names: List[str] = field(default_factory=list)
    error_indicators: List[str] = field(default_factory=list)
    raw_payload: Optional[str] = None
    analyzed_at: int = 0
    is_valid: bool = True
    validation_error: Optional[str] = None
    grouping_status: str = GROUPING_PENDING

    @classmethod
    def from_payload(
        cls,
        payload: dict,
        segment_id: Optional[str] = None,
        captured_at=None,
        raw_text: Optional[str] = None,
    ) -> "ScreenshotAnalysis":
        """Build a record from an AI payload dictionary.

        Optional fields default to empty values. A missing application or
        category does not raise: the record comes back with is_valid=False
        and a validation_error describing what was missing.

        Args:
            payload: Parsed JSON object returned by the vision model
            segment_id: Overrides payload['segment_id']
            captured_at: Overrides payload['captured_at'] (int or ISO string)
            raw_text: Original response text kept for audit

        Returns:
            ScreenshotAnalysis, possibly marked invalid

        Raises:
            ValidationError: If there is no segment id, so the record
                cannot be stored at all.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Analysis payload must be a JSON object")

        segment_id = segment_id or _as_text(payload.get('segment_id'))
        if not segment_id:
            raise ValidationError("Analysis payload has no segment_id")

        now = int(time.time())
        problems = []

        try:
            captured = to_timestamp(captured_at if captured_at is not None
                                    else payload.get('captured_at', payload.get('timestamp')))
        except (ValueError, OverflowError):
            captured = None
            problems.append("unparseable captured_at")
        if captured is None:
            captured = now
            if not problems:
                problems.append("missing captured_at")

        application = _as_text(payload.get('application'))
        if not application:
            problems.append("missing application")

        category = _as_text(payload.get('activity_category'))
        if not category:
            problems.append("missing activity_category")
        else:
            category = category.lower()
            if category not in CATEGORIES:
                category = 'other'

        try:
            productivity = int(round(float(payload.get('productivity_score', 5))))
        except (TypeError, ValueError):
            productivity = 5
        productivity = max(1, min(10, productivity))

        focus = (_as_text(payload.get('focus_level')) or 'normal').lower()
        if focus not in FOCUS_LEVELS:
            focus = 'normal'
        mode = (_as_text(payload.get('interaction_mode')) or 'mixed').lower()
        if mode not in INTERACTION_MODES:
            mode = 'mixed'

        tags = []
        for tag in _as_list(payload.get('context_tags')):
            tag = tag.lower()
            if tag not in tags:
                tags.append(tag)

        if raw_text is None:
            raw_text = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)

        return cls(
            segment_id=segment_id,
            captured_at=captured,
            application=application,
            activity_category=category,
            window_title=_as_text(payload.get('window_title')),
            url=_as_text(payload.get('url')),
            productivity_score=productivity,
            focus_level=focus,
            interaction_mode=mode,
            is_continuation=_as_bool(payload.get('is_continuation', False)),
            activity_description=_as_text(payload.get('activity_description')) or '',
            activity_summary=_as_text(payload.get('activity_summary')) or '',
            accomplishments=_as_list(payload.get('accomplishments')),
            context_tags=tags[:MAX_CONTEXT_TAGS],
            project_name=_as_text(payload.get('project_name')),
            people_mentioned=_as_list(payload.get('people_mentioned')),
            technologies=_as_list(payload.get('technologies')),
            ocr_text=_as_text(payload.get('ocr_text')),
            file_names=_as_list(payload.get('file_names')),
            error_indicators=_as_list(payload.get('error_indicators')),
            raw_payload=raw_text,
            analyzed_at=now,
            is_valid=not problems,
            validation_error='; '.join(problems) or None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ActivitySession:
    """A contiguous run of analyses judged to be one task."""
    id: str
    title: str
    start_time: int
    end_time: int
    application: str
    category: str
    segment_ids: List[str] = field(default_factory=list)
    segment_summaries: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    markdown_path: Optional[str] = None
    summary: Optional[str] = None
    indexed: bool = False
    closed: bool = False
    productivity_avg: float = 5.0
    has_errors: bool = False
    created_at: int = 0
    closed_at: Optional[int] = None

    @property
    def duration_seconds(self) -> int:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        data = asdict(self)
        data['duration_seconds'] = self.duration_seconds
        data['member_count'] = len(self.segment_ids)
        return data


@dataclass
class Project:
    """A recurring work context resolved by normalized name."""
    id: str
    name: str
    normalized_name: str
    technologies: List[str] = field(default_factory=list)
    first_seen: int = 0
    last_seen: int = 0
    session_ids: List[str] = field(default_factory=list)
    markdown_path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Habit:
    """A recurring behavior pattern with a derived confidence."""
    id: str
    pattern_name: str
    pattern_type: str
    signature: str
    confidence: float
    frequency: str
    occurrence_count: int
    trigger_conditions: Optional[dict] = None
    typical_time: Optional[str] = None
    last_occurrence: Optional[int] = None
    markdown_path: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Summary:
    """A rollup over an inclusive date range."""
    id: str
    summary_type: str
    date_start: str
    date_end: str
    content: str
    activity_ids: List[str] = field(default_factory=list)
    project_ids: List[str] = field(default_factory=list)
    markdown_path: Optional[str] = None
    insufficient_data: bool = False
    input_fingerprint: Optional[str] = None
    created_at: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProactiveSuggestion:
    """A user-facing proposal and its lifecycle state."""
    id: str
    trigger_type: str
    trigger_signature: str
    title: str
    message: str
    priority: str = 'normal'
    status: str = STATUS_PROPOSED
    response: Optional[str] = None
    created_at: int = 0
    responded_at: Optional[int] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)
