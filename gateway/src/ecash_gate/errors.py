# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class GateError(Exception):
    """Base for every request-scoped failure the gate reports to a client."""

    code = "gate_error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


# -------------------------------
# Decode
# -------------------------------


class DecodeError(GateError):
    code = "invalid_token"


class MalformedToken(DecodeError):
    code = "invalid_token"


class UnsupportedVersion(DecodeError):
    code = "unsupported_token_version"


class EmptyProofs(DecodeError):
    code = "empty_token"


# -------------------------------
# Request / pricing
# -------------------------------


class PaymentRequired(GateError):
    code = "payment_required"
    status_code = 402


class InvalidRequest(GateError):
    code = "invalid_request"


class PricingError(GateError):
    code = "pricing_error"


class UnpricedModel(PricingError):
    code = "model_not_found"


class InvalidRule(PricingError):
    code = "invalid_pricing_rule"
    status_code = 500


class InsufficientFunds(GateError):
    code = "insufficient_payment"
    status_code = 402

    def __init__(self, message: str, *, required: int, provided: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"required": required, "provided": provided, **(details or {})})
        self.required = required
        self.provided = provided


# -------------------------------
# Redemption
# -------------------------------


class RedeemFailure(str, Enum):
    token_spent = "token_spent"
    invalid_proof = "invalid_proof"
    mint_unreachable = "mint_unreachable"
    timeout = "timeout"

    @property
    def definitive(self) -> bool:
        """True when the proofs are known not to have been collected by this attempt."""
        return self in (RedeemFailure.token_spent, RedeemFailure.invalid_proof)


_REDEEM_STATUS = {
    RedeemFailure.token_spent: 400,
    RedeemFailure.invalid_proof: 400,
    RedeemFailure.mint_unreachable: 502,
    RedeemFailure.timeout: 504,
}


class RedemptionError(GateError):
    def __init__(self, kind: RedeemFailure, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.kind = kind
        self.code = kind.value
        self.status_code = _REDEEM_STATUS[kind]


class MintError(Exception):
    """Protocol-level error answered by a mint (as opposed to a transport failure)."""

    TOKEN_ALREADY_SPENT = 11001
    TRANSACTION_UNBALANCED = 11002
    PROOF_INVALID = 10003
    KEYSET_UNKNOWN = 12001

    def __init__(self, code: int, detail: str):
        super().__init__(f"{detail} (Code: {code})")
        self.code = code
        self.detail = detail


# -------------------------------
# Upstream
# -------------------------------


class NoUpstream(GateError):
    code = "no_upstream"
    status_code = 502


class UpstreamError(GateError):
    code = "upstream_error"

    def __init__(self, message: str, *, status_code: int = 502, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class SettlementInvariantError(RuntimeError):
    """Raised when a terminal settlement would create or destroy value."""
