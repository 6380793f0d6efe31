# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Dynamic per-token pricing from OpenRouter's public model list.

OpenRouter quotes USD per token as decimal strings; rules are converted to
integer units per million tokens and merged *under* the configured rules.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Sequence

import httpx
from cachetools import TTLCache

from .models import PricingMode, PricingRule

logger = logging.getLogger(__name__)

OPENROUTER_MODELS_URL = "https://openrouter.ai/api/v1/models"
USD_TO_UNITS = 100_000
DEFAULT_TTL_S = 60 * 60
RETRY_AFTER_S = 60

_PER_MILLION_UNITS = Decimal(1_000_000 * USD_TO_UNITS)


class PricingFetchError(Exception):
    pass


def _units_per_million(per_token_usd: Any) -> Optional[int]:
    try:
        value = Decimal(str(per_token_usd))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return int((value * _PER_MILLION_UNITS).to_integral_value(rounding=ROUND_HALF_UP))


def convert_to_pricing_rules(
    models: Sequence[Any],
    model_id_transform: Optional[Callable[[str], str]] = None,
    model_filter: Optional[Callable[[str], bool]] = None,
) -> List[PricingRule]:
    """Entries without both prompt and completion prices, or with unparsable ones, are skipped."""
    rules: List[PricingRule] = []
    for m in models:
        if not isinstance(m, dict) or not isinstance(m.get("id"), str):
            continue
        pricing = m.get("pricing")
        if not isinstance(pricing, dict) or pricing.get("prompt") is None or pricing.get("completion") is None:
            continue
        if model_filter is not None and not model_filter(m["id"]):
            continue
        input_rate = _units_per_million(pricing["prompt"])
        output_rate = _units_per_million(pricing["completion"])
        if input_rate is None or output_rate is None or input_rate < 0 or output_rate < 0:
            continue
        rules.append(
            PricingRule(
                model=model_id_transform(m["id"]) if model_id_transform else m["id"],
                mode=PricingMode.per_token,
                input_per_million=input_rate,
                output_per_million=output_rate,
            )
        )
    return rules


async def fetch_openrouter_pricing(
    url: str = OPENROUTER_MODELS_URL,
    timeout_s: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[PricingRule]:
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            resp = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        raise PricingFetchError(f"Failed to fetch OpenRouter pricing: {type(e).__name__}: {e}") from e
    if resp.status_code >= 400:
        raise PricingFetchError(f"Failed to fetch OpenRouter pricing: {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise PricingFetchError("Invalid OpenRouter API response: not JSON") from e
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise PricingFetchError("Invalid OpenRouter API response: missing data array")
    return convert_to_pricing_rules(data["data"])


class OpenRouterPricingCache:
    """Fetched rules cached for `ttl_s`; a failed refresh serves the stale copy."""

    def __init__(
        self,
        ttl_s: float = DEFAULT_TTL_S,
        url: str = OPENROUTER_MODELS_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_after_s: float = RETRY_AFTER_S,
    ):
        self.url = url
        self._transport = transport
        self._cache: TTLCache[str, List[PricingRule]] = TTLCache(maxsize=1, ttl=ttl_s)
        # last failure, so an outage is not refetched on every request
        self._failed: TTLCache[str, str] = TTLCache(maxsize=1, ttl=retry_after_s)
        self._stale: Optional[List[PricingRule]] = None
        self._lock = asyncio.Lock()

    def clear(self) -> None:
        self._cache.clear()
        self._failed.clear()
        self._stale = None

    async def get(self) -> List[PricingRule]:
        rules = self._cache.get("rules")
        if rules is not None:
            return rules
        async with self._lock:
            rules = self._cache.get("rules")
            if rules is not None:
                return rules
            if self._stale is None and "error" in self._failed:
                raise PricingFetchError(f"OpenRouter pricing unavailable: {self._failed['error']}")
            try:
                rules = await fetch_openrouter_pricing(self.url, transport=self._transport)
            except PricingFetchError as e:
                self._failed["error"] = str(e)
                if self._stale is None:
                    raise
                # serve the stale copy for another ttl before retrying
                self._cache["rules"] = self._stale
                logger.warning(f"[PRICING] refresh failed, using stale OpenRouter pricing: {e}")
                return self._stale
            logger.info(f"[PRICING] loaded {len(rules)} OpenRouter rules")
            self._cache["rules"] = rules
            self._stale = rules
            return rules
