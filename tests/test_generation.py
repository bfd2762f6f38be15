"""Tests for completion target resolution and provider streams."""
import json

import pytest
import requests

from ragdesk import generation
from ragdesk.config import settings
from ragdesk.errors import PaymentRequiredError, ProviderError, RateLimitError
from ragdesk.generation import (
    FAMILY_GATEWAY,
    FAMILY_OLLAMA,
    FAMILY_OPENAI,
    CompletionTarget,
    build_payload,
    iter_events,
    normalize_completions_url,
    open_stream,
    resolve_target,
)
from ragdesk.models import ChatProvider, UserSettings

from helpers import FakeStreamResponse, content_delta

TOOLS = [{"type": "function", "function": {"name": "calculate"}}]
MESSAGES = [{"role": "user", "content": "hi"}]


def target(family=FAMILY_OPENAI, api_key="sk-test"):
    return CompletionTarget(url="https://llm.example/v1/chat/completions", api_key=api_key,
                            model="m", display_name="M", family=family)


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "base,expected",
        [
            ("https://llm.example", "https://llm.example/v1/chat/completions"),
            ("https://llm.example/", "https://llm.example/v1/chat/completions"),
            ("https://llm.example/v1", "https://llm.example/v1/chat/completions"),
            ("https://llm.example/v1/", "https://llm.example/v1/chat/completions"),
            ("https://llm.example/v1/chat/completions", "https://llm.example/v1/chat/completions"),
        ],
    )
    def test_normalize(self, base, expected):
        assert normalize_completions_url(base) == expected


class TestResolveTarget:
    def test_gateway_default(self, db):
        t = resolve_target(db, None)
        assert t.family == FAMILY_GATEWAY
        assert t.model == settings.DEFAULT_CHAT_MODEL
        assert t.url == settings.CHAT_GATEWAY_URL

    def test_selected_model(self, db):
        db.add(UserSettings(user_id="u", selected_model="gpt-4.1"))
        db.commit()
        t = resolve_target(db, "u")
        assert t.model == "gpt-4.1"
        assert t.display_name == "gpt-4.1"

    def test_custom_provider_wins(self, db):
        db.add(UserSettings(user_id="u", selected_model="gpt-4.1"))
        provider = ChatProvider(user_id="u", provider_name="openai-compatible", display_name="My LLM",
                                base_url="https://llm.example/v1/", api_key="k", model_id="llama3",
                                is_default=True)
        db.add(provider)
        db.commit()
        t = resolve_target(db, "u")
        assert t.family == FAMILY_OPENAI
        assert t.url == "https://llm.example/v1/chat/completions"
        assert t.model == "llama3"
        assert t.display_name == "My LLM"
        assert t.model_ref == f"custom:{provider.id}"

    def test_ollama_provider(self, db):
        db.add(ChatProvider(user_id="u", provider_name="ollama", display_name="Local",
                            base_url="http://localhost:11434/", model_id="llama3", is_default=True))
        db.commit()
        t = resolve_target(db, "u")
        assert t.family == FAMILY_OLLAMA
        assert t.url == "http://localhost:11434/api/chat"
        assert not t.supports_tools

    def test_disabled_provider_is_ignored(self, db):
        db.add(ChatProvider(user_id="u", provider_name="openai-compatible", display_name="Off",
                            base_url="https://x", is_default=True, is_enabled=False))
        db.commit()
        assert resolve_target(db, "u").family == FAMILY_GATEWAY


class TestBuildPayload:
    def test_tools_included(self):
        payload = build_payload(target(), MESSAGES, TOOLS)
        assert payload == {"model": "m", "messages": MESSAGES, "stream": True, "tools": TOOLS}

    def test_ollama_never_gets_tools(self):
        payload = build_payload(target(FAMILY_OLLAMA), MESSAGES, TOOLS)
        assert "tools" not in payload


class TestOpenStream:
    def test_posts_streaming_request(self, monkeypatch):
        captured = {}

        def fake_post(url, json=None, headers=None, stream=False, timeout=None):
            captured.update(url=url, json=json, headers=headers, stream=stream)
            return FakeStreamResponse([])

        monkeypatch.setattr(generation.requests, "post", fake_post)
        open_stream(target(), MESSAGES, TOOLS)
        assert captured["stream"] is True
        assert captured["headers"]["Authorization"] == "Bearer sk-test"
        assert captured["json"]["tools"] == TOOLS

    def test_no_auth_header_without_key(self, monkeypatch):
        captured = {}

        def fake_post(url, **kwargs):
            captured.update(kwargs)
            return FakeStreamResponse([])

        monkeypatch.setattr(generation.requests, "post", fake_post)
        open_stream(target(api_key=""), MESSAGES)
        assert "Authorization" not in captured["headers"]

    @pytest.mark.parametrize(
        "status,exc,code",
        [(429, RateLimitError, 429), (402, PaymentRequiredError, 402), (500, ProviderError, 500), (401, ProviderError, 500)],
    )
    def test_status_mapping(self, monkeypatch, status, exc, code):
        resp = FakeStreamResponse([], status_code=status, text="upstream says no")
        monkeypatch.setattr(generation.requests, "post", lambda *a, **k: resp)
        with pytest.raises(exc) as info:
            open_stream(target(), MESSAGES)
        assert info.value.status_code == code
        assert info.value.upstream_status == status
        assert resp.closed

    def test_connection_failure(self, monkeypatch):
        def boom(*a, **k):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(generation.requests, "post", boom)
        with pytest.raises(ProviderError):
            open_stream(target(), MESSAGES)


class TestIterEvents:
    def test_openai_frames_pass_through(self):
        resp = FakeStreamResponse([": keep-alive", "", content_delta("Hel"), content_delta("lo"), "data: [DONE]"])
        events = list(iter_events(target(), resp))
        assert [e.delta["content"] for e in events] == ["Hel", "lo"]
        assert events[0].frame == content_delta("Hel") + "\n\n"
        assert resp.closed

    def test_unparseable_frame_is_forwarded_without_payload(self):
        events = list(iter_events(target(), FakeStreamResponse(["data: {oops"])))
        assert events[0].payload is None
        assert events[0].delta == {}

    def test_ollama_ndjson_is_reshaped(self):
        lines = [
            json.dumps({"message": {"role": "assistant", "content": "The sky"}, "done": False}),
            "not json",
            json.dumps({"message": {"role": "assistant", "content": " is blue."}, "done": False}),
            json.dumps({"message": {"role": "assistant", "content": ""}, "done": True}),
        ]
        events = list(iter_events(target(FAMILY_OLLAMA), FakeStreamResponse(lines)))
        assert [e.delta["content"] for e in events] == ["The sky", " is blue."]
        frame = json.loads(events[0].frame[6:])
        assert frame == {"choices": [{"index": 0, "delta": {"content": "The sky"}}]}

    def test_mid_stream_failure(self):
        class Broken(FakeStreamResponse):
            def iter_lines(self):
                yield content_delta("partial").encode()
                raise requests.ConnectionError("reset")

        resp = Broken()
        gen = iter_events(target(), resp)
        assert next(gen).delta["content"] == "partial"
        with pytest.raises(ProviderError):
            next(gen)
        assert resp.closed
