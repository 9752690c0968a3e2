"""
Analysis payload validation and storage of malformed or reprocessed records.

Usage:
    pytest tests/test_models.py -v
"""

import pytest

from recall.errors import ValidationError
from recall.models import GROUPING_EXCLUDED, GROUPING_PENDING, ScreenshotAnalysis, to_timestamp

from conftest import BASE_TS


class TestFromPayload:
    def test_complete_payload_is_valid(self, make_payload):
        analysis = ScreenshotAnalysis.from_payload(make_payload())
        assert analysis.is_valid
        assert analysis.validation_error is None
        assert analysis.captured_at == BASE_TS
        assert analysis.application == 'VS Code'
        assert analysis.context_tags == ['python', 'grouping']
        assert analysis.raw_payload

    def test_missing_segment_id_raises(self, make_payload):
        payload = make_payload()
        del payload['segment_id']
        with pytest.raises(ValidationError):
            ScreenshotAnalysis.from_payload(payload)

    def test_non_dict_raises(self):
        with pytest.raises(ValidationError):
            ScreenshotAnalysis.from_payload(["not", "a", "dict"])

    def test_missing_required_fields_marks_invalid(self, make_payload):
        analysis = ScreenshotAnalysis.from_payload(make_payload(application=None, activity_category=''))
        assert not analysis.is_valid
        assert 'missing application' in analysis.validation_error
        assert 'missing activity_category' in analysis.validation_error

    def test_missing_captured_at_marks_invalid(self, make_payload):
        payload = make_payload()
        del payload['captured_at']
        analysis = ScreenshotAnalysis.from_payload(payload)
        assert not analysis.is_valid
        assert analysis.validation_error == 'missing captured_at'

    def test_unparseable_captured_at_marks_invalid(self, make_payload):
        analysis = ScreenshotAnalysis.from_payload(make_payload(captured_at='yesterday-ish'))
        assert not analysis.is_valid
        assert 'unparseable captured_at' in analysis.validation_error

    def test_values_normalised(self, make_payload):
        analysis = ScreenshotAnalysis.from_payload(make_payload(
            activity_category='Gaming',
            productivity_score=42,
            focus_level='laser',
            context_tags='Python, Docs, python, A, B, C, D',
            is_continuation='yes',
        ))
        assert analysis.is_valid
        assert analysis.activity_category == 'other'
        assert analysis.productivity_score == 10
        assert analysis.focus_level == 'normal'
        assert analysis.context_tags == ['python', 'docs', 'a', 'b', 'c']
        assert analysis.is_continuation is True

    def test_iso_timestamp_accepted(self, make_payload):
        analysis = ScreenshotAnalysis.from_payload(make_payload(captured_at='2025-12-08T09:00:00'))
        assert analysis.captured_at == BASE_TS


class TestToTimestamp:
    def test_conversions(self):
        assert to_timestamp(None) is None
        assert to_timestamp(12.7) == 12
        assert to_timestamp('1700000000') == 1700000000
        with pytest.raises(ValueError):
            to_timestamp(True)


class TestStoredAnalyses:
    def test_malformed_record_kept_for_audit_and_excluded(self, context, ingest):
        analysis, results = ingest(application=None)
        assert results[0].action == 'excluded'

        stored = context.storage.get_analysis(analysis.segment_id)
        assert stored is not None
        assert not stored.is_valid
        assert stored.grouping_status == GROUPING_EXCLUDED
        assert context.storage.get_open_session() is None

    def test_reprocessing_replaces_content_in_place(self, context, make_payload):
        bad = make_payload(application=None)
        context.ingest.ingest(bad)

        fixed = dict(bad, application='VS Code')
        analysis, results = context.ingest.ingest(fixed)
        assert analysis.is_valid
        assert results[0].action == 'opened'

        stored = context.storage.get_analysis(bad['segment_id'])
        assert stored.application == 'VS Code'
        assert stored.grouping_status != GROUPING_PENDING
