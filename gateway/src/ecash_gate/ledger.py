# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Gate-held float: proofs the gate retained after redemption.

Key schema: ``proofs:<unix_ms>:<rand>`` -> ``{"mint_url", "proofs"}``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from .models import Proof, sum_proofs

logger = logging.getLogger(__name__)

KEY_PREFIX = "proofs:"
_ALPHABET = string.ascii_lowercase + string.digits


class ProofEntry(BaseModel):
    key: str
    mint_url: str
    proofs: List[Proof]

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)


def new_key() -> str:
    rand = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{KEY_PREFIX}{int(time.time() * 1000)}:{rand}"


class ProofLedger:
    """In-process key-value store; the lock keeps list/delete consistent across requests."""

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, object]] = {}
        self._lock = asyncio.Lock()

    async def store(self, mint_url: str, proofs: Sequence[Proof]) -> str:
        async with self._lock:
            key = new_key()
            while key in self._entries:
                key = new_key()
            self._entries[key] = {"mint_url": mint_url, "proofs": [p.model_dump() for p in proofs]}
        logger.debug(f"[LEDGER] stored {sum_proofs(proofs)} under {key}")
        return key

    async def get(self, key: str) -> Optional[ProofEntry]:
        async with self._lock:
            data = self._entries.get(key)
        if data is None:
            return None
        return ProofEntry(key=key, mint_url=str(data["mint_url"]), proofs=data["proofs"])

    async def replace(self, key: str, proofs: Sequence[Proof]) -> None:
        async with self._lock:
            if key in self._entries:
                self._entries[key]["proofs"] = [p.model_dump() for p in proofs]

    async def list_all(self) -> List[ProofEntry]:
        async with self._lock:
            items = list(self._entries.items())
        return [ProofEntry(key=k, mint_url=str(v["mint_url"]), proofs=v["proofs"]) for k, v in items if k.startswith(KEY_PREFIX)]

    async def balance(self) -> int:
        return sum(e.amount for e in await self.list_all())

    async def balance_by_mint(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in await self.list_all():
            out[e.mint_url] = out.get(e.mint_url, 0) + e.amount
        return out

    async def delete_keys(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for k in keys:
                self._entries.pop(k, None)
