# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Ecash Gate

Pay-per-request gateway for OpenAI-compatible APIs, paid with Cashu ecash
presented in the ``X-Cashu`` header.

Usage:
    from ecash_gate import router

    app = FastAPI()
    app.include_router(router)
"""

__version__ = "0.1.0"

from .errors import (
    DecodeError,
    EmptyProofs,
    GateError,
    InsufficientFunds,
    MalformedToken,
    PricingError,
    RedeemFailure,
    RedemptionError,
    UnsupportedVersion,
    UpstreamError,
)
from .metrics import MetricsRecord, MetricsStore
from .mint import CashuWalletMint, InMemoryMint, MintBackend, Redeemer
from .models import PricingRule, Proof, Receipt, RedeemResult, Stamp, TokenUsage, TokenVersion
from .openrouter_pricing import OpenRouterPricingCache, fetch_openrouter_pricing
from .pricing import actual_cost, lookup, merge_pricing, required_amount, validate_amount
from .receipts import issue_receipt, issue_refund
from .routes import GateRuntimeConfig, build_coordinator, get_coordinator, get_gate_cfg, router
from .settlement import Settlement, SettlementCoordinator, SettlementState
from .tokens import decode_stamp, decode_stamp_with_diagnostics, encode_token

__all__ = [
    "router",
    "GateRuntimeConfig",
    "get_gate_cfg",
    "get_coordinator",
    "build_coordinator",
    "SettlementCoordinator",
    "Settlement",
    "SettlementState",
    "Redeemer",
    "MintBackend",
    "InMemoryMint",
    "CashuWalletMint",
    "decode_stamp",
    "decode_stamp_with_diagnostics",
    "encode_token",
    "lookup",
    "required_amount",
    "validate_amount",
    "actual_cost",
    "merge_pricing",
    "fetch_openrouter_pricing",
    "OpenRouterPricingCache",
    "MetricsStore",
    "MetricsRecord",
    "issue_receipt",
    "issue_refund",
    "Proof",
    "Stamp",
    "PricingRule",
    "TokenUsage",
    "TokenVersion",
    "Receipt",
    "RedeemResult",
    "GateError",
    "DecodeError",
    "MalformedToken",
    "UnsupportedVersion",
    "EmptyProofs",
    "PricingError",
    "InsufficientFunds",
    "RedeemFailure",
    "RedemptionError",
    "UpstreamError",
]
