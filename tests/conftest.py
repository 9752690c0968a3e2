"""Shared fixtures: an isolated config, a built pipeline and payload factories."""

import itertools
from datetime import datetime, timedelta

import pytest

from recall.config import Config, ConfigManager
from recall.pipeline import build_context

# Monday 2025-12-08 09:00 local time
BASE_TS = int(datetime(2025, 12, 8, 9, 0).timestamp())


def ts(day: int = 0, hour: int = 9, minute: int = 0, second: int = 0) -> int:
    """Local unix time on the ``day``-th day after the base Monday."""
    moment = datetime(2025, 12, 8) + timedelta(days=day, hours=hour, minutes=minute, seconds=second)
    return int(moment.timestamp())


@pytest.fixture
def config_manager(tmp_path):
    config = Config()
    config.storage.data_dir = str(tmp_path / "data")
    return ConfigManager(path=tmp_path / "config.yaml", config=config)


@pytest.fixture
def context(config_manager):
    return build_context(config_manager, use_provider=False)


@pytest.fixture
def storage(context):
    return context.storage


@pytest.fixture
def make_payload():
    """Factory for analysis payloads as a vision model would return them."""
    counter = itertools.count(1)

    def factory(captured_at: int = BASE_TS, **overrides) -> dict:
        n = next(counter)
        payload = {
            'segment_id': f"seg-{n:04d}",
            'captured_at': captured_at,
            'application': 'VS Code',
            'window_title': 'grouper.py - recall - Visual Studio Code',
            'activity_category': 'work',
            'productivity_score': 7,
            'focus_level': 'deep',
            'interaction_mode': 'typing',
            'is_continuation': True,
            'activity_description': 'editing grouper.py',
            'activity_summary': 'Refining the session grouping logic.',
            'accomplishments': [],
            'context_tags': ['python', 'grouping'],
            'project_name': None,
            'technologies': ['Python'],
            'file_names': ['grouper.py'],
            'error_indicators': [],
        }
        payload.update(overrides)
        return payload

    return factory


@pytest.fixture
def ingest(context, make_payload):
    """Ingest a payload built from overrides and return (analysis, results)."""
    def _ingest(captured_at: int = BASE_TS, now: int = None, **overrides):
        return context.ingest.ingest(make_payload(captured_at, **overrides), now=now)
    return _ingest
