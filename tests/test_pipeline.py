"""
Pipeline wiring, periodic maintenance and the daemon entry point.

Usage:
    pytest tests/test_pipeline.py -v
"""

import json

import pytest
import yaml
from PIL import Image

from recall.config import ConfigManager
from recall.daemon import main
from recall.errors import PipelineUnavailableError
from recall.pipeline import STATE_LAST_HABIT_RUN, build_context

from conftest import BASE_TS, ts

HOUR = 3600


class ScriptedProvider:
    name = 'scripted'

    def __init__(self, reply):
        self.reply = reply

    def analyze_images(self, images, prompt):
        return self.reply

    def generate_text(self, prompt):
        return self.reply


class TestContext:
    def test_enabled_flag_persists(self, context, config_manager):
        assert context.enabled
        context.set_enabled(False)
        reopened = build_context(config_manager, use_provider=False)
        assert not reopened.enabled
        assert reopened.unavailable_reason() == 'pipeline disabled'

    def test_config_default_respected(self, config_manager):
        config_manager.config.pipeline.enabled = False
        context = build_context(config_manager, use_provider=False)
        assert not context.enabled

    def test_stop_closes_open_session(self, context, ingest):
        ingest(BASE_TS)
        context.stop(now=BASE_TS + 30)
        session = context.storage.get_last_session()
        assert session.closed
        assert session.closed_at == BASE_TS + 30


class TestIngestSegment:
    def test_without_provider(self, context, tmp_path):
        with pytest.raises(PipelineUnavailableError):
            context.ingest.ingest_segment('seg-0001', BASE_TS, [str(tmp_path / 'missing.png')])

    def test_frames_to_session(self, config_manager, tmp_path):
        frame = tmp_path / 'frame.png'
        Image.new('RGB', (320, 200), 'white').save(frame)
        reply = json.dumps({'application': 'Terminal', 'activity_category': 'work',
                            'activity_description': 'running migrations'})
        context = build_context(config_manager, provider=ScriptedProvider(reply))

        analysis, results = context.ingest.ingest_segment('seg-0001', BASE_TS, [str(frame)])
        assert analysis.is_valid
        assert results[0].action == 'opened'
        assert context.storage.get_analysis('seg-0001').application == 'Terminal'


class TestIntervalTask:
    def test_idle_session_flushed_and_extracted(self, context, ingest):
        ingest(BASE_TS, project_name='Recall Engine')
        context.interval.run_once(now=BASE_TS + 10 * 60)

        assert context.storage.get_open_session() is None
        assert [p.name for p in context.storage.list_projects()] == ['Recall Engine']

    def test_nothing_runs_while_disabled(self, context, ingest):
        ingest(BASE_TS)
        context.set_enabled(False)
        context.interval.run_once(now=BASE_TS + 10 * 60)
        assert context.storage.get_open_session() is not None
        assert context.storage.get_state(STATE_LAST_HABIT_RUN) is None

    def test_habit_detection_gated_by_interval(self, context, monkeypatch):
        runs = []
        monkeypatch.setattr(context.habits, 'detect_all', lambda now=None: runs.append(now))

        context.interval.run_once(now=ts(1, 3))
        context.interval.run_once(now=ts(1, 3) + 23 * HOUR)
        context.interval.run_once(now=ts(1, 3) + 24 * HOUR)
        assert runs == [ts(1, 3), ts(1, 3) + 24 * HOUR]

    def test_failing_job_does_not_stop_others(self, context, ingest, monkeypatch):
        def broken(now=None):
            raise RuntimeError("backfill exploded")
        monkeypatch.setattr(context.projects, 'process_unlinked', broken)
        ingest(BASE_TS)
        context.grouper.flush(now=BASE_TS + 600)

        context.interval.run_once(now=ts(1, 1))
        assert context.storage.get_state(STATE_LAST_HABIT_RUN) == str(ts(1, 1))
        assert context.storage.get_summary('summary-daily-2025-12-08') is not None

    def test_tick_queues_suggestion_evaluation(self, context, ingest):
        ingest(BASE_TS)
        context.interval.run_once(now=BASE_TS + 20 * 60)
        context.suggestions.process_pending_events()
        types = {s.trigger_type for s in context.suggestions.get_pending()}
        assert 'idle' in types


class TestDaemon:
    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'storage': {'data_dir': str(tmp_path / 'data')}}))
        return path

    def test_once_with_ingest_file(self, config_path, tmp_path, make_payload):
        payloads = tmp_path / 'payloads.jsonl'
        lines = [make_payload(BASE_TS), make_payload(BASE_TS + 60), {'captured_at': BASE_TS}]
        payloads.write_text('\n'.join(json.dumps(p) for p in lines))

        assert main(['--config', str(config_path), '--ingest', str(payloads), '--once']) == 0

        context = build_context(ConfigManager(config_path), use_provider=False)
        assert context.storage.get_analysis('seg-0001') is not None
        assert context.storage.get_analysis('seg-0002') is not None
        assert len(context.storage.get_sessions_in_range(0, 2 ** 40)) == 1

    def test_init_config_writes_defaults(self, tmp_path):
        path = tmp_path / 'fresh' / 'config.yaml'
        assert main(['--config', str(path), '--init-config']) == 0
        written = yaml.safe_load(path.read_text())
        assert written['capture']['segment_seconds'] == 60
        assert written['grouping']['merge_threshold'] == 0.5

    def test_json_list_file(self, config_path, tmp_path, make_payload):
        payloads = tmp_path / 'payloads.json'
        payloads.write_text(json.dumps([make_payload(BASE_TS)]))
        assert main(['--config', str(config_path), '--ingest', str(payloads), '--once']) == 0
