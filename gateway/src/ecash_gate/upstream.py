# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Upstream routing and dispatch for the protected chat-completions API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from .errors import UpstreamError
from .models import TokenUsage

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
_ERROR_TEXT_LIMIT = 500


class UpstreamEntry(BaseModel):
    match: str = Field(..., description='Exact model, prefix ending in "*", or "*"')
    base_url: str
    api_key: str = ""


def resolve_upstream(model: str, entries: Sequence[UpstreamEntry]) -> Optional[UpstreamEntry]:
    """Exact match > prefix match (``gpt-*``) > wildcard ``*``."""
    for e in entries:
        if e.match == model:
            return e
    for e in entries:
        if e.match != "*" and e.match.endswith("*") and model.startswith(e.match[:-1]):
            return e
    for e in entries:
        if e.match == "*":
            return e
    return None


def upstreams_from_env() -> List[UpstreamEntry]:
    """UPSTREAMS_JSON if set, else OpenAI (``gpt-*``) and OpenRouter (``*``) keys."""
    raw = os.getenv("UPSTREAMS_JSON")
    if raw and raw.strip():
        try:
            return [UpstreamEntry.model_validate(e) for e in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring invalid UPSTREAMS_JSON: {e}")
    entries: List[UpstreamEntry] = []
    if os.getenv("OPENAI_API_KEY"):
        entries.append(
            UpstreamEntry(
                match="gpt-*",
                base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com").rstrip("/"),
                api_key=os.environ["OPENAI_API_KEY"],
            )
        )
    if os.getenv("OPENROUTER_API_KEY"):
        entries.append(
            UpstreamEntry(
                match="*",
                base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api").rstrip("/"),
                api_key=os.environ["OPENROUTER_API_KEY"],
            )
        )
    return entries


def usage_from_payload(payload: Any) -> Optional[TokenUsage]:
    if not isinstance(payload, dict):
        return None
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        return TokenUsage.model_validate(usage)
    except ValueError:
        return None


class UpstreamResponse(BaseModel):
    status_code: int
    content: bytes
    content_type: str = "application/json"

    def json_body(self) -> Any:
        try:
            return json.loads(self.content)
        except ValueError:
            return None

    @property
    def usage(self) -> Optional[TokenUsage]:
        return usage_from_payload(self.json_body())


class UpstreamStream:
    """An open SSE response. The owning client is closed with it."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response
        self.status_code = response.status_code

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Upstream stream timed out: {type(e).__name__}", status_code=504)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream stream failed: {type(e).__name__}", status_code=502)

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


class SseUsageTracker:
    """Incrementally scans SSE bytes for the last ``usage`` object."""

    def __init__(self) -> None:
        self._buffer = b""
        self.usage: Optional[TokenUsage] = None

    def feed(self, chunk: bytes) -> None:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            self._scan(line.strip())

    def close(self) -> None:
        if self._buffer:
            self._scan(self._buffer.strip())
            self._buffer = b""

    def _scan(self, line: bytes) -> None:
        if not line.startswith(b"data:"):
            return
        data = line[len(b"data:"):].strip()
        if not data or data == b"[DONE]":
            return
        try:
            payload = json.loads(data)
        except ValueError:
            return
        usage = usage_from_payload(payload)
        if usage is not None:
            self.usage = usage


class UpstreamDispatcher:
    def __init__(
        self,
        entries: Sequence[UpstreamEntry],
        timeout_s: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.entries = list(entries)
        self.timeout_s = timeout_s
        self._transport = transport

    def resolve(self, model: str) -> Optional[UpstreamEntry]:
        return resolve_upstream(model, self.entries)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport, follow_redirects=True)

    @staticmethod
    def _request_headers(entry: UpstreamEntry) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if entry.api_key:
            headers["Authorization"] = f"Bearer {entry.api_key}"
        return headers

    async def dispatch(self, entry: UpstreamEntry, body: bytes, req_id: str = "-") -> UpstreamResponse:
        url = f"{entry.base_url.rstrip('/')}{CHAT_COMPLETIONS_PATH}"
        logger.info(f"[{req_id}] [UPSTREAM] POST {url}")
        try:
            async with self._client() as client:
                resp = await client.post(url, content=body, headers=self._request_headers(entry))
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Upstream timed out: {type(e).__name__}", status_code=504)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream unreachable: {type(e).__name__}", status_code=502)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise UpstreamError(
                f"LLM API returned {resp.status_code}: {resp.text[:_ERROR_TEXT_LIMIT]}",
                status_code=resp.status_code,
            )
        return UpstreamResponse(
            status_code=resp.status_code,
            content=resp.content,
            content_type=resp.headers.get("content-type", "application/json"),
        )

    async def open_stream(self, entry: UpstreamEntry, body: bytes, req_id: str = "-") -> UpstreamStream:
        url = f"{entry.base_url.rstrip('/')}{CHAT_COMPLETIONS_PATH}"
        logger.info(f"[{req_id}] [UPSTREAM] POST {url} (stream)")
        client = self._client()
        try:
            request = client.build_request("POST", url, content=body, headers=self._request_headers(entry))
            resp = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            await client.aclose()
            raise UpstreamError(f"Upstream timed out: {type(e).__name__}", status_code=504)
        except httpx.HTTPError as e:
            await client.aclose()
            raise UpstreamError(f"Upstream unreachable: {type(e).__name__}", status_code=502)
        if resp.status_code < 200 or resp.status_code >= 300:
            text = (await resp.aread()).decode("utf-8", errors="replace")
            await resp.aclose()
            await client.aclose()
            raise UpstreamError(
                f"LLM API returned {resp.status_code}: {text[:_ERROR_TEXT_LIMIT]}",
                status_code=resp.status_code,
            )
        return UpstreamStream(client, resp)
