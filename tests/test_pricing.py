# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the pricing engine: rule lookup, pessimistic estimate, actual cost.
"""

import json
import logging

import pytest
from pydantic import ValidationError

from ecash_gate.errors import InvalidRule
from ecash_gate.models import EstimateContext, PricingMode, PricingRule, Proof, Stamp, TokenUsage, TokenVersion
from ecash_gate.pricing import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_PRICING,
    actual_cost,
    estimate_max_cost,
    estimate_request,
    load_pricing,
    lookup,
    price_header,
    required_amount,
    validate_amount,
)


def _per_token(input_rate: float, output_rate: float, model: str = "m") -> PricingRule:
    return PricingRule(model=model, mode=PricingMode.per_token, input_per_million=input_rate, output_per_million=output_rate)


def _stamp(amount: int) -> Stamp:
    return Stamp(
        raw="cashuBtest",
        version=TokenVersion.v4,
        mint_url="https://m",
        unit="usd",
        proofs=[Proof(id="00ab", amount=amount, secret="s", C="02ff")],
    )


class TestLookup:
    def test_exact_match_wins_over_wildcard(self):
        rules = [
            PricingRule(model="a", mode=PricingMode.per_request, per_request=5),
            PricingRule(model="*", mode=PricingMode.per_request, per_request=10),
        ]

        assert lookup("a", rules).per_request == 5

    def test_wildcard_is_rewritten_with_model_name(self):
        rules = [
            PricingRule(model="a", mode=PricingMode.per_request, per_request=5),
            PricingRule(model="*", mode=PricingMode.per_request, per_request=10),
        ]

        rule = lookup("b", rules)

        assert rule.model == "b"
        assert rule.per_request == 10
        assert rules[1].model == "*"

    def test_unpriced_model_is_none(self):
        assert lookup("b", [PricingRule(model="a", mode=PricingMode.per_request, per_request=5)]) is None


class TestRequiredAmount:
    def test_per_request_returns_fixed_price(self):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=4)
        assert required_amount(rule) == 4

    @pytest.mark.parametrize("price", [None, -1])
    def test_per_request_invalid_price_raises(self, price):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=price)
        with pytest.raises(InvalidRule):
            required_amount(rule)

    def test_per_request_zero_is_floored_at_one(self):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=0)
        assert required_amount(rule) == 1

    def test_per_token_charges_for_max_output(self):
        rule = _per_token(1_000_000, 2_000_000)
        assert required_amount(rule, EstimateContext(input_tokens=10, max_output_tokens=20)) == 50

    def test_per_token_without_estimate_uses_default(self):
        rule = _per_token(1_000_000, 1_000_000)
        assert required_amount(rule) == 1000 + DEFAULT_MAX_TOKENS

    def test_per_token_rounds_up(self):
        rule = _per_token(150_000, 0)
        # 10 tokens * 0.15 = 1.5
        assert required_amount(rule, EstimateContext(input_tokens=10, max_output_tokens=0)) == 2

    @pytest.mark.parametrize("tokens", [0, 1, 1000])
    def test_never_below_one(self, tokens):
        rule = _per_token(0.01, 0.02)
        assert required_amount(rule, EstimateContext(input_tokens=tokens, max_output_tokens=tokens)) >= 1
        assert actual_cost(rule, TokenUsage(prompt_tokens=tokens, completion_tokens=tokens)) >= 1

    def test_estimate_max_cost_requires_per_token(self):
        with pytest.raises(ValueError):
            estimate_max_cost(PricingRule(model="a", mode=PricingMode.per_request, per_request=1), 10)


class TestValidateAmount:
    def test_sufficient(self):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=4)
        v = validate_amount(_stamp(4), rule)
        assert (v.ok, v.required, v.provided) == (True, 4, 4)

    def test_insufficient(self):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=4)
        v = validate_amount(_stamp(3), rule)
        assert (v.ok, v.required, v.provided) == (False, 4, 3)


class TestActualCost:
    def test_small_usage_is_floored_to_one(self):
        rule = _per_token(0.01, 0.02)
        assert actual_cost(rule, TokenUsage(prompt_tokens=1000, completion_tokens=500)) == 1

    def test_per_request_ignores_usage(self):
        rule = PricingRule(model="a", mode=PricingMode.per_request, per_request=7)
        assert actual_cost(rule, TokenUsage(prompt_tokens=10**6, completion_tokens=10**6)) == 7

    @pytest.mark.parametrize(
        "rates,prompt,completion,max_out",
        [
            ((15_000, 60_000), 1200, 300, 4096),
            ((1_000_000, 1_000_000), 100, 50, 50),
            ((3, 7), 5, 0, 0),
        ],
    )
    def test_actual_never_exceeds_estimate(self, rates, prompt, completion, max_out):
        rule = _per_token(*rates)
        usage = TokenUsage(prompt_tokens=prompt, completion_tokens=completion)
        assert actual_cost(rule, usage) <= estimate_max_cost(rule, prompt, max_out)


class TestEstimateRequest:
    def test_minimum_estimate(self):
        ctx = estimate_request({"model": "m", "messages": [{"role": "user", "content": "hi"}]})
        assert ctx.input_tokens == 100
        assert ctx.max_output_tokens == DEFAULT_MAX_TOKENS

    def test_text_and_images(self):
        body = {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "x" * 400},
                        {"type": "image_url", "image_url": {"url": "data:"}},
                    ],
                }
            ],
            "max_tokens": 64,
        }
        ctx = estimate_request(body)
        # (100 + 800 + 4) * 1.1
        assert ctx.input_tokens == 995
        assert ctx.max_output_tokens == 64

    def test_max_completion_tokens_alias(self):
        assert estimate_request({"messages": [], "max_completion_tokens": 12}).max_output_tokens == 12


class TestLoadPricing:
    def test_empty_uses_defaults(self):
        assert load_pricing(None) == DEFAULT_PRICING
        assert load_pricing("  ") == DEFAULT_PRICING

    def test_valid_list_replaces_defaults(self):
        rules = load_pricing(json.dumps([{"model": "x", "mode": "per_request", "per_request": 3}]))
        assert len(rules) == 1
        assert rules[0].mode == PricingMode.per_request

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            "[]",
            '{"model": "x"}',
            '[{"mode": "per_token"}]',
            # mode omitted: never guessed
            '[{"model": "a", "per_request": 5}]',
            '[{"model": "a", "mode": "per_token"}]',
        ],
    )
    def test_invalid_falls_back_with_warning(self, raw, caplog):
        with caplog.at_level(logging.WARNING):
            assert load_pricing(raw) == DEFAULT_PRICING
        assert "PRICING_JSON" in caplog.text

    def test_per_token_rule_without_rates_is_rejected(self):
        with pytest.raises(ValidationError):
            PricingRule(model="a", mode=PricingMode.per_token)

    def test_default_table_has_catch_all(self):
        assert lookup("some/new-model", DEFAULT_PRICING).model == "some/new-model"


def test_price_header_describes_rule():
    header = price_header(_per_token(15_000, 60_000, model="gpt"), "usd")
    assert json.loads(header["X-Cashu-Price"]) == {
        "mode": "per_token",
        "input_per_million": 15_000,
        "output_per_million": 60_000,
        "unit": "usd",
        "model": "gpt",
    }
