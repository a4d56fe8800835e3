"""
Tests for provider plumbing: prompt building, response parsing, provider
selection, and the HTTP providers with their clients mocked out.
"""
import json
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from daytrace.analysis.media import MediaBundle
from daytrace.analysis.providers.backend import BackendProvider
from daytrace.analysis.providers.base import (
    SynthesisContext,
    card_prompt,
    parse_cards,
    parse_json,
    parse_segments,
)
from daytrace.analysis.providers.gemini import GeminiProvider
from daytrace.analysis.providers.registry import build_provider, provider_from_config
from daytrace.config import BackendConfig, CategoryConfig, Config, GeminiConfig
from daytrace.errors import (
    MalformedResponseError,
    ProviderError,
    ProviderNotConfiguredError,
    RateLimitError,
    TransientProviderError,
)
from daytrace.storage.models import Observation

from conftest import BASE_TS, make_card


class TestParseJson:
    def test_plain(self):
        assert parse_json('[{"a": 1}]') == [{"a": 1}]

    def test_markdown_fence(self):
        assert parse_json('```json\n{"cards": []}\n```') == {"cards": []}

    def test_prose_around_array(self):
        assert parse_json('Here you go:\n[1, 2, 3]\nHope that helps') == [1, 2, 3]

    def test_garbage(self):
        assert parse_json("not json at all") is None


class TestParseSegments:
    def test_offsets_become_absolute(self):
        raw = json.dumps([
            {"start": "00:00", "end": "05:00", "description": "Reading email"},
            {"start": "05:00", "end": "15:00", "description": "Writing code"},
        ])
        observations = parse_segments(raw, BASE_TS, duration=900, model_id="m")

        assert [(o.start_ts, o.end_ts, o.text) for o in observations] == [
            (BASE_TS, BASE_TS + 300, "Reading email"),
            (BASE_TS + 300, BASE_TS + 900, "Writing code"),
        ]
        assert observations[0].model_id == "m"

    def test_wrapped_object_and_camel_case_keys(self):
        raw = json.dumps({"segments": [
            {"startTimestamp": "00:00", "endTimestamp": "02:00", "description": "Slack"},
        ]})
        assert len(parse_segments(raw, BASE_TS, duration=120)) == 1

    def test_overlaps_are_clamped(self):
        raw = json.dumps([
            {"start": "00:00", "end": "06:00", "description": "A"},
            {"start": "05:00", "end": "10:00", "description": "B"},
        ])
        observations = parse_segments(raw, BASE_TS, duration=600)
        assert observations[1].start_ts == observations[0].end_ts

    def test_segment_past_video_end_rejects_response(self):
        """A 15-minute clip cannot have a segment ending at 20:00."""
        raw = json.dumps([{"start": "10:00", "end": "20:00", "description": "Hallucinated"}])
        with pytest.raises(MalformedResponseError):
            parse_segments(raw, BASE_TS, duration=900, tolerance=120)

    def test_small_overrun_is_tolerated(self):
        raw = json.dumps([{"start": "00:00", "end": "15:30", "description": "Coding"}])
        observations = parse_segments(raw, BASE_TS, duration=900, tolerance=120)
        assert observations[0].end_ts == BASE_TS + 900

    def test_empty_response_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            parse_segments("[]", BASE_TS, duration=900)
        with pytest.raises(MalformedResponseError):
            parse_segments("sorry, I can't see the video", BASE_TS, duration=900)


class TestParseCards:
    def test_clock_times_resolve_against_base(self):
        raw = json.dumps([{
            "start_time": "9:00 AM",
            "end_time": "9:30 AM",
            "category": "Work",
            "subcategory": "Coding",
            "title": "Parser fixes",
            "summary": "Fixed tokenizer",
            "detailed_summary": "Long form",
            "distractions": [
                {"start_time": "9:10 AM", "end_time": "9:12 AM", "title": "Twitter", "summary": "Feed"},
            ],
        }])
        cards = parse_cards(raw, BASE_TS)

        assert len(cards) == 1
        card = cards[0]
        assert (card.start_ts, card.end_ts) == (BASE_TS, BASE_TS + 1800)
        assert card.subcategory == "Coding"
        assert card.distractions[0].start_ts == BASE_TS + 600
        assert card.distractions[0].duration == 120

    def test_unreadable_times_dropped_and_defaults_filled(self):
        raw = json.dumps({"cards": [
            {"start_time": "soon", "end_time": "later", "title": "Bad"},
            {"start_time": "9:00 AM", "end_time": "9:20 AM"},
        ]})
        cards = parse_cards(raw, BASE_TS)
        assert len(cards) == 1
        assert cards[0].title == "Untitled"
        assert cards[0].category == "Uncategorized"

    def test_not_json_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            parse_cards("no cards today", BASE_TS)

    def test_continuation_card_after_midnight_keeps_its_start(self):
        base = int(datetime(2024, 5, 2, 0, 30).timestamp())
        raw = json.dumps([{"start_time": "12:10 AM", "end_time": "12:50 AM", "title": "Late reading"}])

        cards = parse_cards(raw, base)

        assert (cards[0].start_ts, cards[0].end_ts) == (base - 1200, base + 1200)


class TestCardPrompt:
    def test_includes_idle_category_and_context(self):
        context = SynthesisContext(
            existing_cards=[make_card(BASE_TS, BASE_TS + 900, "Earlier work")],
            categories=[CategoryConfig(name="Work", description="Focused work")],
        )
        observations = [Observation(1, BASE_TS + 900, BASE_TS + 1200, "Editing README")]

        prompt = card_prompt(observations, context)

        assert "- Work: Focused work" in prompt
        assert "- Idle:" in prompt
        assert "Earlier work" in prompt
        assert "Editing README" in prompt
        assert "PREVIOUS ATTEMPT FAILED" not in prompt

    def test_retry_feedback_appended(self):
        context = SynthesisContext(retry_feedback="- Missing coverage for time segments: 9:10 AM-9:15 AM (4 min)")
        prompt = card_prompt([Observation(1, BASE_TS, BASE_TS + 60, "x")], context)
        assert "PREVIOUS ATTEMPT FAILED" in prompt
        assert "Missing coverage" in prompt


class TestRegistry:
    def test_none_is_not_configured(self):
        config = Config()
        config.provider.kind = "none"
        with pytest.raises(ProviderNotConfiguredError):
            build_provider(config)

    def test_gemini_needs_api_key(self):
        config = Config()
        config.provider.kind = "gemini"
        config.gemini.api_key = ""
        with pytest.raises(ProviderNotConfiguredError):
            build_provider(config)

    def test_backend_needs_token(self):
        config = Config()
        config.provider.kind = "backend"
        with pytest.raises(ProviderNotConfiguredError):
            build_provider(config)

    def test_factory_reloads_config_each_call(self):
        configs = []

        def loader():
            config = Config()
            config.provider.kind = "gemini"
            config.gemini.api_key = f"key-{len(configs)}"
            configs.append(config)
            return config

        factory = provider_from_config(loader)
        first, second = factory(), factory()
        assert isinstance(first, GeminiProvider)
        assert first.config.api_key == "key-0"
        assert second.config.api_key == "key-1"


@pytest.fixture
def clip(tmp_path) -> MediaBundle:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00" * 16)
    return MediaBundle(path=path, duration=900.0, origin_ts=BASE_TS)


class TestBackendProvider:
    def _provider(self, response=None, error=None) -> BackendProvider:
        provider = BackendProvider(BackendConfig(token="secret"))
        provider._client = MagicMock()
        if error is not None:
            provider._client.post.side_effect = error
        else:
            provider._client.post.return_value = response
        return provider

    def test_transcribe(self, clip):
        body = json.dumps({"segments": [{"start": "00:00", "end": "15:00", "description": "Coding"}]})
        provider = self._provider(httpx.Response(200, text=body))

        observations, call = provider.transcribe(clip, "describe", BASE_TS)

        assert observations[0].end_ts == BASE_TS + 900
        assert call.operation == "transcribe"
        assert provider._client.post.call_args.args[0] == "/v1/transcribe"

    def test_synthesize_sends_observations(self):
        body = json.dumps({"cards": [
            {"start_time": "9:00 AM", "end_time": "9:15 AM", "category": "Work", "title": "Coding"},
        ]})
        provider = self._provider(httpx.Response(200, text=body))
        observations = [Observation(1, BASE_TS, BASE_TS + 900, "Coding")]

        cards, call = provider.synthesize(observations, SynthesisContext(attempt=2))

        assert cards[0].title == "Coding"
        assert call.attempt == 2
        payload = provider._client.post.call_args.kwargs["json"]
        assert payload["observations"][0]["text"] == "Coding"

    def test_close_releases_http_client(self):
        provider = BackendProvider(BackendConfig(token="secret"))
        provider.close()
        assert provider._client.is_closed

    def test_rate_limit_carries_retry_after(self, clip):
        provider = self._provider(httpx.Response(429, headers={"Retry-After": "12"}, text="slow down"))
        with pytest.raises(RateLimitError) as info:
            provider.transcribe(clip, "describe", BASE_TS)
        assert info.value.retry_after == 12.0

    def test_server_error_is_transient(self, clip):
        provider = self._provider(httpx.Response(503, text="overloaded"))
        with pytest.raises(TransientProviderError):
            provider.transcribe(clip, "describe", BASE_TS)

    def test_auth_error_is_not_transient(self, clip):
        provider = self._provider(httpx.Response(401, text="bad token"))
        with pytest.raises(ProviderError) as info:
            provider.transcribe(clip, "describe", BASE_TS)
        assert not isinstance(info.value, TransientProviderError)
        assert info.value.status_code == 401

    def test_connection_error_is_transient(self, clip):
        provider = self._provider(error=httpx.ConnectError("connection refused"))
        with pytest.raises(TransientProviderError):
            provider.transcribe(clip, "describe", BASE_TS)


class TestGeminiProvider:
    def _provider(self) -> GeminiProvider:
        provider = GeminiProvider(GeminiConfig(api_key="k", poll_interval=0, upload_timeout=5))
        provider._client = MagicMock()
        return provider

    def test_transcribe_uploads_polls_and_deletes(self, clip):
        provider = self._provider()
        client = provider._client
        client.files.upload.return_value = SimpleNamespace(name="files/1", state=SimpleNamespace(name="PROCESSING"))
        client.files.get.side_effect = [
            SimpleNamespace(name="files/1", state=SimpleNamespace(name="PROCESSING")),
            SimpleNamespace(name="files/1", state=SimpleNamespace(name="ACTIVE")),
        ]
        client.models.generate_content.return_value = SimpleNamespace(
            text=json.dumps([{"start": "00:00", "end": "15:00", "description": "Coding"}])
        )

        observations, call = provider.transcribe(clip, "describe", BASE_TS)

        assert len(observations) == 1
        assert client.files.get.call_count == 2
        client.files.delete.assert_called_once_with(name="files/1")
        assert call.status == "success"

    def test_failed_upload_is_provider_error(self, clip):
        provider = self._provider()
        client = provider._client
        client.files.upload.return_value = SimpleNamespace(name="files/2", state=None)
        client.files.get.return_value = SimpleNamespace(name="files/2", state=SimpleNamespace(name="FAILED"))

        with pytest.raises(ProviderError):
            provider.transcribe(clip, "describe", BASE_TS)
        client.models.generate_content.assert_not_called()
        client.files.delete.assert_called_with(name="files/2")

    def test_synthesize(self):
        provider = self._provider()
        provider._client.models.generate_content.return_value = SimpleNamespace(
            text=json.dumps([{"start_time": "9:00 AM", "end_time": "9:15 AM", "category": "Work", "title": "Coding"}])
        )
        observations = [Observation(1, BASE_TS, BASE_TS + 900, "Coding")]

        cards, _ = provider.synthesize(observations, SynthesisContext())

        assert (cards[0].start_ts, cards[0].end_ts) == (BASE_TS, BASE_TS + 900)


class TestOllamaProvider:
    def _provider(self, monkeypatch, responses):
        from daytrace.analysis.providers import ollama_provider
        from daytrace.config import OllamaConfig

        def fake_frames(media, interval, out_dir):
            frames = []
            for i in range(3):
                path = out_dir / f"frame_{i:05d}.jpg"
                path.write_bytes(b"jpeg")
                frames.append((i * interval, path))
            return frames

        monkeypatch.setattr(ollama_provider, "ensure_ollama_running", lambda host: None)
        monkeypatch.setattr(ollama_provider, "extract_frames", fake_frames)
        provider = ollama_provider.OllamaProvider(OllamaConfig(frame_interval_seconds=300))
        provider._client = MagicMock()
        provider._client.generate.side_effect = [{"response": r} for r in responses]
        return provider

    def test_transcribe_describes_frames_then_merges(self, monkeypatch, clip):
        merged = json.dumps([{"start": "00:00", "end": "15:00", "description": "Coding in an editor"}])
        provider = self._provider(monkeypatch, ["Editor open", "Editor open", "Terminal", merged])

        observations, call = provider.transcribe(clip, "unused", BASE_TS)

        assert [o.text for o in observations] == ["Coding in an editor"]
        generate = provider._client.generate
        assert generate.call_count == 4
        assert generate.call_args_list[0].kwargs["images"] == [b"jpeg"]
        assert generate.call_args_list[-1].kwargs["format"] == "json"
        assert "[10:00] Terminal" in generate.call_args_list[-1].kwargs["prompt"]
        assert call.operation == "transcribe"

    def test_synthesize_uses_json_mode(self, monkeypatch):
        cards_json = json.dumps({"cards": [
            {"start_time": "9:00 AM", "end_time": "9:15 AM", "category": "Work", "title": "Coding"},
        ]})
        provider = self._provider(monkeypatch, [cards_json])
        observations = [Observation(1, BASE_TS, BASE_TS + 900, "Coding")]

        cards, _ = provider.synthesize(observations, SynthesisContext())

        assert cards[0].title == "Coding"
        assert provider._client.generate.call_args.kwargs["format"] == "json"
