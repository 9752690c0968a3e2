"""
Provider adapters, response parsing and the segment analyzer.

HTTP calls are replaced with monkeypatched ``requests`` functions, so no
model server is needed.

Usage:
    pytest tests/test_providers.py -v
"""

import json

import pytest
import requests
from PIL import Image

from recall import providers
from recall.analyzer import SegmentAnalyzer, prepare_image
from recall.config import AIConfig
from recall.errors import AnalysisParseError, ProviderError, ValidationError
from recall.providers import (
    OllamaProvider,
    OpenAICompatibleProvider,
    create_provider,
    parse_analysis_response,
)

from conftest import BASE_TS

GOOD_REPLY = json.dumps({
    'application': 'Terminal',
    'activity_category': 'work',
    'productivity_score': 8,
    'activity_description': 'running pytest',
    'context_tags': ['tests'],
})


class FakeResponse:
    def __init__(self, payload=None, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON")
        return self.payload


class ScriptedProvider:
    """Returns queued replies; an exception instance in the queue is raised."""

    name = 'scripted'

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def analyze_images(self, images, prompt):
        self.calls.append((images, prompt))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def frame(tmp_path):
    path = tmp_path / 'frame.png'
    Image.new('RGBA', (2048, 1024), (30, 120, 200, 255)).save(path)
    return str(path)


class TestParseResponse:
    def test_plain_json(self):
        assert parse_analysis_response(GOOD_REPLY)['application'] == 'Terminal'

    def test_code_fence(self):
        text = f"Here you go:\n```json\n{GOOD_REPLY}\n```\nAnything else?"
        assert parse_analysis_response(text)['productivity_score'] == 8

    def test_prose_around_object(self):
        text = f"The analysis is {GOOD_REPLY} as requested."
        assert parse_analysis_response(text)['activity_description'] == 'running pytest'

    @pytest.mark.parametrize('text', ['', '   ', 'no json here', '[1, 2, 3]', '{"broken": '])
    def test_unparseable(self, text):
        with pytest.raises(AnalysisParseError):
            parse_analysis_response(text)


class TestOllama:
    def test_chat_payload(self, monkeypatch):
        sent = {}

        def fake_post(url, json=None, timeout=None, **kwargs):
            sent.update(url=url, body=json, timeout=timeout)
            return FakeResponse({'message': {'content': GOOD_REPLY}})

        monkeypatch.setattr(requests, 'post', fake_post)
        provider = OllamaProvider('llava:13b', 'http://ollama:11434/', timeout=30)
        assert provider.analyze_images(['aW1n'], 'describe') == GOOD_REPLY
        assert sent['url'] == 'http://ollama:11434/api/chat'
        assert sent['body']['messages'][0]['images'] == ['aW1n']
        assert sent['body']['stream'] is False
        assert sent['timeout'] == 30

    @pytest.mark.parametrize('error', [
        requests.exceptions.Timeout('slow'),
        requests.exceptions.ConnectionError('refused'),
    ])
    def test_transport_errors_mapped(self, monkeypatch, error):
        def fake_post(*args, **kwargs):
            raise error
        monkeypatch.setattr(requests, 'post', fake_post)
        with pytest.raises(ProviderError):
            OllamaProvider('llava').generate_text('hi')

    def test_http_and_shape_errors_mapped(self, monkeypatch):
        monkeypatch.setattr(requests, 'post', lambda *a, **k: FakeResponse(status=500))
        with pytest.raises(ProviderError):
            OllamaProvider('llava').generate_text('hi')

        monkeypatch.setattr(requests, 'post', lambda *a, **k: FakeResponse({'unexpected': True}))
        with pytest.raises(ProviderError):
            OllamaProvider('llava').generate_text('hi')

    def test_is_available_checks_model(self, monkeypatch):
        tags = FakeResponse({'models': [{'name': 'llava:13b'}, {'name': 'gemma3:4b'}]})
        monkeypatch.setattr(requests, 'get', lambda *a, **k: tags)
        assert OllamaProvider('llava:7b').is_available()
        assert not OllamaProvider('qwen2.5vl').is_available()

    def test_is_available_without_server(self, monkeypatch):
        def refused(*args, **kwargs):
            raise requests.exceptions.ConnectionError('refused')
        monkeypatch.setattr(requests, 'get', refused)
        assert not OllamaProvider('llava').is_available()


class TestOpenAICompatible:
    def test_image_content_and_auth(self, monkeypatch):
        sent = {}

        def fake_post(url, json=None, headers=None, timeout=None):
            sent.update(url=url, body=json, headers=headers)
            return FakeResponse({'choices': [{'message': {'content': 'ok'}}]})

        monkeypatch.setattr(requests, 'post', fake_post)
        provider = OpenAICompatibleProvider('gpt-4o-mini', 'https://api.example.com', api_key='sk-test')
        assert provider.analyze_images(['aW1n'], 'describe') == 'ok'
        assert sent['url'] == 'https://api.example.com/v1/chat/completions'
        assert sent['headers']['Authorization'] == 'Bearer sk-test'
        content = sent['body']['messages'][0]['content']
        assert content[0] == {'type': 'text', 'text': 'describe'}
        assert content[1]['image_url']['url'] == 'data:image/jpeg;base64,aW1n'

    def test_empty_choices_mapped(self, monkeypatch):
        monkeypatch.setattr(requests, 'post', lambda *a, **k: FakeResponse({'choices': []}))
        with pytest.raises(ProviderError):
            OpenAICompatibleProvider('m', 'http://localhost:8000').generate_text('hi')


class TestCreateProvider:
    def test_known_providers(self):
        assert isinstance(create_provider(AIConfig()), OllamaProvider)
        assert isinstance(create_provider(AIConfig(provider='openai', host='http://h')),
                          OpenAICompatibleProvider)

    def test_unknown_provider(self):
        with pytest.raises(ValidationError):
            create_provider(AIConfig(provider='carrier-pigeon'))

    def test_interface(self):
        assert issubclass(OllamaProvider, providers.VisionProvider)


class TestAnalyzer:
    def test_prepare_image_downscales(self, frame):
        import base64
        import io

        encoded = prepare_image(frame)
        with Image.open(io.BytesIO(base64.b64decode(encoded))) as img:
            assert img.format == 'JPEG'
            assert img.mode == 'RGB'
            assert img.size == (1024, 512)

    def test_successful_analysis(self, frame):
        provider = ScriptedProvider(GOOD_REPLY)
        analysis = SegmentAnalyzer(provider).analyze('seg-0001', BASE_TS, [frame], 'writing tests')
        assert analysis.is_valid
        assert analysis.segment_id == 'seg-0001'
        assert analysis.captured_at == BASE_TS
        assert analysis.application == 'Terminal'
        assert analysis.raw_payload == GOOD_REPLY
        assert 'The previous segment was: writing tests' in provider.calls[0][1]

    def test_prompt_without_previous(self):
        prompt = SegmentAnalyzer(ScriptedProvider()).build_prompt()
        assert '{previous}' not in prompt
        assert prompt.endswith('Reply with the JSON object only.')

    def test_retries_then_succeeds(self, frame):
        provider = ScriptedProvider(ProviderError('timeout'), 'not json', GOOD_REPLY)
        analysis = SegmentAnalyzer(provider, max_retries=2).analyze('seg-0002', BASE_TS, [frame])
        assert analysis.is_valid
        assert len(provider.calls) == 3

    def test_unparseable_reply_becomes_invalid_record(self, frame):
        provider = ScriptedProvider('I cannot help', 'still no json')
        analysis = SegmentAnalyzer(provider, max_retries=1).analyze('seg-0003', BASE_TS, [frame])
        assert not analysis.is_valid
        assert analysis.validation_error.startswith('unparseable response')
        assert analysis.raw_payload == 'still no json'

    def test_provider_down_raises(self, frame):
        provider = ScriptedProvider(ProviderError('down'), ProviderError('down'))
        with pytest.raises(ProviderError):
            SegmentAnalyzer(provider, max_retries=1).analyze('seg-0004', BASE_TS, [frame])

    def test_unreadable_frames_skipped(self, frame, tmp_path):
        broken = tmp_path / 'broken.png'
        broken.write_bytes(b'not an image')
        provider = ScriptedProvider(GOOD_REPLY)
        SegmentAnalyzer(provider).analyze('seg-0005', BASE_TS, [str(broken), frame])
        assert len(provider.calls[0][0]) == 1

        with pytest.raises(ProviderError):
            SegmentAnalyzer(ScriptedProvider()).analyze('seg-0006', BASE_TS, [str(broken)])
