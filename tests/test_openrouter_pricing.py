# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import httpx
import pytest

from ecash_gate.models import PricingMode, PricingRule
from ecash_gate.openrouter_pricing import (
    OpenRouterPricingCache,
    PricingFetchError,
    convert_to_pricing_rules,
    fetch_openrouter_pricing,
)
from ecash_gate.pricing import lookup, merge_pricing
from ecash_gate.settlement import SettlementCoordinator
from ecash_gate.upstream import UpstreamDispatcher, UpstreamEntry

MODELS = {
    "data": [
        {"id": "openai/gpt-4o-mini", "pricing": {"prompt": "0.00000015", "completion": "0.0000006"}},
        {"id": "meta/free", "pricing": {"prompt": "0", "completion": "0"}},
        {"id": "no/pricing"},
        {"id": "half/priced", "pricing": {"prompt": "0.000001"}},
        {"id": "bad/price", "pricing": {"prompt": "n/a", "completion": "0.000001"}},
        {"id": "negative/price", "pricing": {"prompt": "-1", "completion": "-1"}},
    ]
}


class _Upstream:
    """OpenRouter stand-in that counts calls and can be switched off."""

    def __init__(self, payload=MODELS, status=200):
        self.payload = payload
        self.status = status
        self.calls = 0

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            self.calls += 1
            if self.status != 200:
                return httpx.Response(self.status, text="unavailable")
            return httpx.Response(200, json=self.payload)

        return httpx.MockTransport(handler)


class TestConvert:
    def test_usd_per_token_becomes_units_per_million(self):
        rules = convert_to_pricing_rules(MODELS["data"])
        by_model = {r.model: r for r in rules}

        gpt = by_model["openai/gpt-4o-mini"]
        assert gpt.mode == PricingMode.per_token
        assert gpt.input_per_million == 15000
        assert gpt.output_per_million == 60000
        assert by_model["meta/free"].input_per_million == 0

    def test_incomplete_or_invalid_prices_are_skipped(self):
        models = {r.model for r in convert_to_pricing_rules(MODELS["data"])}

        assert models == {"openai/gpt-4o-mini", "meta/free"}

    def test_transform_and_filter(self):
        rules = convert_to_pricing_rules(
            MODELS["data"],
            model_id_transform=lambda m: m.split("/", 1)[1],
            model_filter=lambda m: m.startswith("openai/"),
        )

        assert [r.model for r in rules] == ["gpt-4o-mini"]


@pytest.mark.asyncio
class TestFetch:
    async def test_fetch_converts_models(self):
        rules = await fetch_openrouter_pricing(transport=_Upstream().transport())

        assert len(rules) == 2

    @pytest.mark.parametrize(
        "upstream",
        [
            _Upstream(status=503),
            _Upstream(payload={"models": []}),
            _Upstream(payload=["not", "an", "object"]),
        ],
    )
    async def test_bad_answers_raise(self, upstream):
        with pytest.raises(PricingFetchError):
            await fetch_openrouter_pricing(transport=upstream.transport())

    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PricingFetchError, match="ConnectError"):
            await fetch_openrouter_pricing(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestCache:
    async def test_rules_are_cached(self):
        upstream = _Upstream()
        cache = OpenRouterPricingCache(transport=upstream.transport())

        await cache.get()
        await cache.get()

        assert upstream.calls == 1

    async def test_failed_refresh_serves_stale_rules(self):
        upstream = _Upstream()
        cache = OpenRouterPricingCache(transport=upstream.transport())
        first = await cache.get()

        cache._cache.clear()
        upstream.status = 500
        again = await cache.get()

        assert again == first
        assert upstream.calls == 2

    async def test_failure_without_stale_copy_raises_and_backs_off(self):
        upstream = _Upstream(status=500)
        cache = OpenRouterPricingCache(transport=upstream.transport())

        with pytest.raises(PricingFetchError):
            await cache.get()
        with pytest.raises(PricingFetchError, match="unavailable"):
            await cache.get()

        assert upstream.calls == 1

    async def test_clear_forgets_everything(self):
        upstream = _Upstream()
        cache = OpenRouterPricingCache(transport=upstream.transport())
        await cache.get()

        cache.clear()
        await cache.get()

        assert upstream.calls == 2


def test_configured_rules_win_over_dynamic():
    custom = [PricingRule(model="openai/gpt-4o-mini", mode=PricingMode.per_request, per_request=7)]
    dynamic = convert_to_pricing_rules(MODELS["data"])

    merged = merge_pricing(dynamic, custom)

    assert lookup("openai/gpt-4o-mini", merged).per_request == 7
    assert lookup("meta/free", merged).mode == PricingMode.per_token
    assert len(merged) == 2


@pytest.mark.asyncio
class TestCoordinatorPricing:
    async def test_refresh_merges_dynamic_rules(self, redeemer, pricing_rules, upstream_transport):
        dispatcher = UpstreamDispatcher([UpstreamEntry(match="*", base_url="http://upstream.test")], transport=upstream_transport)
        coordinator = SettlementCoordinator(
            redeemer,
            dispatcher,
            pricing_rules,
            pricing_source=OpenRouterPricingCache(transport=_Upstream().transport()),
        )

        await coordinator.refresh_pricing()

        assert lookup("openai/gpt-4o-mini", coordinator.pricing).input_per_million == 15000
        assert lookup("flat", coordinator.pricing).per_request == 4

    async def test_outage_keeps_configured_rules(self, coordinator, pricing_rules, caplog):
        coordinator.pricing_source = OpenRouterPricingCache(transport=_Upstream(status=502).transport())

        await coordinator.refresh_pricing()

        assert coordinator.pricing == pricing_rules
        assert "dynamic pricing unavailable" in caplog.text
