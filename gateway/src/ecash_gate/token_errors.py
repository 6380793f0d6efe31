# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Failed token decodes, kept for 24h (newest 100) for investigation."""

from __future__ import annotations

import hashlib
import secrets
import time
from typing import Any, Dict, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel

from .tokens import DecodeDiagnostics

TTL_SECONDS = 24 * 60 * 60
MAX_ENTRIES = 100
MAX_TOKEN_LENGTH = 2000


class TokenDecodeError(BaseModel):
    ts: int
    token_version: str
    error: str
    raw_prefix: str
    raw_token: Optional[str] = None
    decode_time_ms: float
    cbor_structure: Optional[str] = None
    ip_hash: Optional[str] = None
    user_agent: Optional[str] = None


def hash_ip(ip: str, salt: str) -> str:
    return hashlib.sha256((ip + salt).encode("utf-8")).hexdigest()[:16]


def simplify_error(error: str) -> str:
    lower = error.lower()
    if "cbor" in lower:
        return "CBOR decode"
    if "base64" in lower:
        return "Base64 decode"
    if "empty" in lower:
        return "Empty token"
    if "mint" in lower:
        return "Missing mint"
    if "proof" in lower:
        return "Missing proofs"
    if "invalid" in lower:
        return "Invalid format"
    return "Other"


class TokenErrorLog:
    def __init__(self, maxsize: int = MAX_ENTRIES, ttl: int = TTL_SECONDS):
        self._entries: TTLCache[str, TokenDecodeError] = TTLCache(maxsize=maxsize, ttl=ttl)

    def record(
        self,
        diagnostics: DecodeDiagnostics,
        raw_token: str,
        ip_hash: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenDecodeError:
        ts = int(time.time() * 1000)
        if len(raw_token) > MAX_TOKEN_LENGTH:
            raw_token = raw_token[:MAX_TOKEN_LENGTH] + "...[truncated]"
        entry = TokenDecodeError(
            ts=ts,
            token_version=diagnostics.token_version.value,
            error=diagnostics.error or "Unknown error",
            raw_prefix=diagnostics.raw_prefix,
            raw_token=raw_token,
            decode_time_ms=diagnostics.decode_time_ms,
            cbor_structure=diagnostics.cbor_structure,
            ip_hash=ip_hash,
            user_agent=user_agent,
        )
        self._entries[f"token_error:{ts}:{secrets.token_hex(3)}"] = entry
        return entry

    def recent(self, limit: int = 50) -> List[TokenDecodeError]:
        return sorted(self._entries.values(), key=lambda e: e.ts, reverse=True)[:limit]

    def summary(self) -> Dict[str, Any]:
        errors = self.recent(limit=MAX_ENTRIES)
        by_version: Dict[str, int] = {}
        by_error: Dict[str, int] = {}
        for e in errors:
            by_version[e.token_version] = by_version.get(e.token_version, 0) + 1
            kind = simplify_error(e.error)
            by_error[kind] = by_error.get(kind, 0) + 1
        return {"total_errors": len(errors), "by_version": by_version, "by_error": by_error}
