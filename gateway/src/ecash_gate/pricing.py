# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Pricing engine.

Two pure functions share one rounding policy (ceil, never below 1):
`required_amount` charges pessimistically for the maximum output before the
upstream call; `actual_cost` prices the real usage afterwards.

Rates are integer units per million tokens (1 USD = 100,000 units).
"""

from __future__ import annotations

import json
import logging
import math
from decimal import ROUND_CEILING, Decimal
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .errors import InvalidRule
from .models import AmountValidation, EstimateContext, PricingMode, PricingRule, Stamp, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_INPUT_TOKENS = 1000

CHARS_PER_TOKEN = 4
IMAGE_TOKEN_ESTIMATE = 800
TOKEN_OVERHEAD_FACTOR = Decimal("1.1")
MIN_TOKEN_ESTIMATE = 100

_MILLION = Decimal(1_000_000)


def _rule(model: str, input_per_million: int, output_per_million: int) -> PricingRule:
    return PricingRule(
        model=model,
        mode=PricingMode.per_token,
        input_per_million=input_per_million,
        output_per_million=output_per_million,
    )


DEFAULT_PRICING: List[PricingRule] = [
    # OpenAI
    _rule("openai/gpt-4o-mini", 15_000, 60_000),
    _rule("openai/gpt-4o", 250_000, 1_000_000),
    _rule("openai/o3-mini", 110_000, 440_000),
    _rule("openai/o3-pro", 2_000_000, 8_000_000),
    # Anthropic
    _rule("anthropic/claude-sonnet-4", 300_000, 1_500_000),
    _rule("anthropic/claude-opus-4", 1_500_000, 7_500_000),
    _rule("anthropic/claude-3.5-haiku", 80_000, 400_000),
    # Google
    _rule("google/gemini-2.5-pro-preview", 125_000, 1_000_000),
    _rule("google/gemini-2.5-flash-preview", 15_000, 60_000),
    # DeepSeek
    _rule("deepseek/deepseek-r1", 55_000, 219_000),
    _rule("deepseek/deepseek-chat", 27_000, 110_000),
    # Qwen / Meta / Moonshot
    _rule("qwen/qwen3-235b", 30_000, 120_000),
    _rule("meta-llama/llama-4-maverick", 20_000, 60_000),
    _rule("moonshotai/kimi-k2", 60_000, 200_000),
    # Catch-all for unknown models
    _rule("*", 100_000, 500_000),
]


def lookup(model: str, rules: Sequence[PricingRule]) -> Optional[PricingRule]:
    """Exact match, else the wildcard rewritten to carry `model`, else None."""
    for r in rules:
        if r.model == model:
            return r
    for r in rules:
        if r.model == "*":
            return r.model_copy(update={"model": model})
    return None


def _ceil_units(value: Decimal) -> int:
    return max(1, int(value.to_integral_value(rounding=ROUND_CEILING)))


def _token_cost(rule: PricingRule, input_tokens: int, output_tokens: int) -> int:
    input_rate = Decimal(str(rule.input_per_million or 0))
    output_rate = Decimal(str(rule.output_per_million or 0))
    total = Decimal(input_tokens) / _MILLION * input_rate + Decimal(output_tokens) / _MILLION * output_rate
    return _ceil_units(total)


def estimate_max_cost(rule: PricingRule, input_tokens: int, max_output_tokens: Optional[int] = None) -> int:
    if rule.mode != PricingMode.per_token:
        raise ValueError(f"estimate_max_cost requires per_token mode, got {rule.mode.value}")
    return _token_cost(rule, input_tokens, DEFAULT_MAX_TOKENS if max_output_tokens is None else max_output_tokens)


def _fixed_price(rule: PricingRule) -> int:
    if rule.per_request is None or rule.per_request < 0:
        raise InvalidRule(f"Invalid per_request price for model {rule.model}", details={"model": rule.model})
    return _ceil_units(Decimal(str(rule.per_request)))


def required_amount(rule: PricingRule, estimate: Optional[EstimateContext] = None) -> int:
    if rule.mode == PricingMode.per_request:
        return _fixed_price(rule)
    if estimate is None:
        return estimate_max_cost(rule, DEFAULT_INPUT_TOKENS, DEFAULT_MAX_TOKENS)
    return estimate_max_cost(rule, estimate.input_tokens, estimate.max_output_tokens)


def validate_amount(stamp: Stamp, rule: PricingRule, estimate: Optional[EstimateContext] = None) -> AmountValidation:
    required = required_amount(rule, estimate)
    return AmountValidation(ok=stamp.amount >= required, required=required, provided=stamp.amount)


def actual_cost(rule: PricingRule, usage: TokenUsage) -> int:
    if rule.mode == PricingMode.per_request:
        return _fixed_price(rule)
    return _token_cost(rule, usage.prompt_tokens, usage.completion_tokens)


def estimate_request(body: Dict[str, Any]) -> EstimateContext:
    """Rough input-token estimate for a chat-completions body."""
    tokens = 0
    messages = body.get("messages")
    if isinstance(messages, list):
        for msg in messages:
            content = msg.get("content") if isinstance(msg, dict) else None
            if isinstance(content, str):
                tokens += math.ceil(len(content) / CHARS_PER_TOKEN)
            elif isinstance(content, list):
                for part in content:
                    if not isinstance(part, dict):
                        continue
                    if part.get("type") == "text" and isinstance(part.get("text"), str):
                        tokens += math.ceil(len(part["text"]) / CHARS_PER_TOKEN)
                    elif part.get("type") == "image_url":
                        tokens += IMAGE_TOKEN_ESTIMATE
            # per-message framing
            tokens += CHARS_PER_TOKEN
    tokens = int((Decimal(tokens) * TOKEN_OVERHEAD_FACTOR).to_integral_value(rounding=ROUND_CEILING))
    max_tokens = body.get("max_tokens")
    if max_tokens is None:
        max_tokens = body.get("max_completion_tokens")
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens < 0:
        max_tokens = DEFAULT_MAX_TOKENS
    return EstimateContext(input_tokens=max(MIN_TOKEN_ESTIMATE, tokens), max_output_tokens=max_tokens)


def load_pricing(pricing_json: Optional[str]) -> List[PricingRule]:
    """Parse PRICING_JSON. A valid non-empty list replaces the defaults wholesale."""
    if not pricing_json or not pricing_json.strip():
        return list(DEFAULT_PRICING)
    try:
        parsed = json.loads(pricing_json)
    except ValueError as e:
        logger.warning(f"Failed to parse PRICING_JSON: {e}. Using defaults.")
        return list(DEFAULT_PRICING)
    if not isinstance(parsed, list) or not parsed:
        logger.warning("PRICING_JSON is not a non-empty array, using defaults")
        return list(DEFAULT_PRICING)
    try:
        return [PricingRule.model_validate(r) for r in parsed]
    except ValidationError as e:
        logger.warning(f"PRICING_JSON contains an invalid rule ({e.error_count()} errors). Using defaults.")
        return list(DEFAULT_PRICING)


def merge_pricing(dynamic: Sequence[PricingRule], custom: Sequence[PricingRule]) -> List[PricingRule]:
    """Custom rules first; dynamic rules only for models custom does not name."""
    named = {r.model for r in custom}
    return list(custom) + [r for r in dynamic if r.model not in named]


def price_header(rule: PricingRule, unit: str) -> Dict[str, str]:
    """X-Cashu-Price header describing `rule`, attached to 402 answers."""
    if rule.mode == PricingMode.per_token:
        payload: Dict[str, Any] = {
            "mode": "per_token",
            "input_per_million": rule.input_per_million or 0,
            "output_per_million": rule.output_per_million or 0,
            "unit": unit,
            "model": rule.model,
        }
    else:
        payload = {"mode": "per_request", "amount": rule.per_request or 0, "unit": unit, "model": rule.model}
    return {"X-Cashu-Price": json.dumps(payload, separators=(",", ":"))}
