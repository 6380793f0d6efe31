# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import json

import httpx
import pytest

import mock_upstream
from ecash_gate.errors import UpstreamError
from ecash_gate.upstream import (
    SseUsageTracker,
    UpstreamDispatcher,
    UpstreamEntry,
    resolve_upstream,
    upstreams_from_env,
    usage_from_payload,
)

ENTRIES = [
    UpstreamEntry(match="*", base_url="http://router"),
    UpstreamEntry(match="gpt-*", base_url="http://openai"),
    UpstreamEntry(match="gpt-4o", base_url="http://exact"),
]


class TestResolve:
    @pytest.mark.parametrize(
        "model,expected",
        [("gpt-4o", "http://exact"), ("gpt-4o-mini", "http://openai"), ("claude-3", "http://router")],
    )
    def test_precedence(self, model, expected):
        assert resolve_upstream(model, ENTRIES).base_url == expected

    def test_no_match(self):
        assert resolve_upstream("claude-3", ENTRIES[1:]) is None


class TestUpstreamsFromEnv:
    def test_json_wins(self, monkeypatch):
        monkeypatch.setenv("UPSTREAMS_JSON", '[{"match": "*", "base_url": "http://x", "api_key": "k"}]')
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        assert [e.base_url for e in upstreams_from_env()] == ["http://x"]

    def test_provider_keys(self, monkeypatch):
        monkeypatch.delenv("UPSTREAMS_JSON", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or")
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
        monkeypatch.delenv("OPENROUTER_BASE_URL", raising=False)

        entries = upstreams_from_env()

        assert [(e.match, e.base_url) for e in entries] == [
            ("gpt-*", "https://api.openai.com"),
            ("*", "https://openrouter.ai/api"),
        ]


def test_usage_from_payload():
    assert usage_from_payload({"usage": {"prompt_tokens": 3, "completion_tokens": 4}}).completion_tokens == 4
    assert usage_from_payload({"choices": []}) is None
    assert usage_from_payload(["not", "a", "map"]) is None


class TestSseUsageTracker:
    def test_usage_split_across_chunks(self):
        line = "data: " + json.dumps({"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 9}}) + "\n\n"
        tracker = SseUsageTracker()
        tracker.feed(b'data: {"choices": [{"delta": {}}]}\n\n')
        tracker.feed(line[:20].encode())
        tracker.feed(line[20:].encode())
        tracker.feed(b"data: [DONE]\n\n")
        tracker.close()

        assert (tracker.usage.prompt_tokens, tracker.usage.completion_tokens) == (7, 9)

    def test_no_usage(self):
        tracker = SseUsageTracker()
        tracker.feed(b"data: not json\n\n: keepalive\n")
        tracker.close()
        assert tracker.usage is None


@pytest.mark.asyncio
class TestDispatcher:
    async def test_forwards_bytes_and_api_key(self, upstream_transport):
        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://u", api_key="sk-1")], transport=upstream_transport)
        body = b'{"model": "m", "messages": []}'

        resp = await dispatcher.dispatch(dispatcher.resolve("m"), body, "req-1")

        assert resp.status_code == 200
        assert resp.usage.total_tokens == 15
        assert mock_upstream.REQUESTS[-1]["raw"] == body
        assert mock_upstream.REQUESTS[-1]["headers"]["authorization"] == "Bearer sk-1"

    async def test_non_2xx_carries_status_and_text(self, upstream_transport):
        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://u")], transport=upstream_transport)
        body = json.dumps({"model": "m", "messages": [], "mock": {"status": 429}}).encode()

        with pytest.raises(UpstreamError) as exc:
            await dispatcher.dispatch(dispatcher.resolve("m"), body)

        assert exc.value.status_code == 429
        assert exc.value.message.startswith("LLM API returned 429:")

    async def test_network_failure_is_bad_gateway(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://u")], transport=httpx.MockTransport(refuse))

        with pytest.raises(UpstreamError) as exc:
            await dispatcher.dispatch(dispatcher.resolve("m"), b"{}")

        assert exc.value.status_code == 502

    async def test_timeout_is_gateway_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://u")], transport=httpx.MockTransport(slow))

        with pytest.raises(UpstreamError) as exc:
            await dispatcher.dispatch(dispatcher.resolve("m"), b"{}")

        assert exc.value.status_code == 504

    async def test_open_stream(self, upstream_transport):
        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://u")], transport=upstream_transport)
        body = json.dumps({"model": "m", "messages": [], "stream": True}).encode()

        stream = await dispatcher.open_stream(dispatcher.resolve("m"), body)
        data = b"".join([c async for c in stream.aiter_raw()])
        await stream.aclose()

        assert data.endswith(b"data: [DONE]\n\n")
