# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Request-scoped value objects shared by the settlement pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import RedeemFailure


def sum_proofs(proofs: Sequence["Proof"]) -> int:
    return sum(p.amount for p in proofs)


class Proof(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Keyset identifier")
    amount: int
    secret: str
    C: str = Field(..., description="Mint signature (compressed point, hex)")
    dleq: Optional[Dict[str, str]] = None
    witness: Optional[str] = None


class TokenVersion(str, Enum):
    v3 = "V3"
    v4 = "V4"
    unknown = "unknown"


class Stamp(BaseModel):
    """Decoded X-Cashu token. `amount` is always derived from the proofs."""

    model_config = ConfigDict(frozen=True)

    raw: str
    version: TokenVersion
    mint_url: str
    unit: str
    proofs: List[Proof]
    memo: Optional[str] = None

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)


class PricingMode(str, Enum):
    per_request = "per_request"
    per_token = "per_token"


class PricingRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = Field(..., description='Exact model name, or "*" for the catch-all')
    mode: PricingMode
    per_request: Optional[float] = None
    input_per_million: Optional[float] = None
    output_per_million: Optional[float] = None

    @model_validator(mode="after")
    def _per_token_needs_a_rate(self) -> "PricingRule":
        if self.mode == PricingMode.per_token and self.input_per_million is None and self.output_per_million is None:
            raise ValueError(f"per_token rule for {self.model} has no input or output rate")
        return self


class EstimateContext(BaseModel):
    input_tokens: int
    max_output_tokens: Optional[int] = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None


class AmountValidation(BaseModel):
    ok: bool
    required: int = Field(..., ge=1)
    provided: int = Field(..., ge=0)


class Receipt(BaseModel):
    id: str
    timestamp: str
    amount: int
    unit: str
    model: str
    token_hash: str


class RedeemResult(BaseModel):
    """Outcome of one exchange with a mint.

    On success `keep` holds the gate's share and `change` the client's remainder;
    `collected` is their sum (the presented amount less any mint fee).
    """

    ok: bool
    keep: List[Proof] = Field(default_factory=list)
    change: List[Proof] = Field(default_factory=list)
    error: Optional[RedeemFailure] = None
    message: Optional[str] = None

    @property
    def collected(self) -> int:
        return sum_proofs(self.keep) + sum_proofs(self.change)

    @classmethod
    def failure(cls, kind: RedeemFailure, message: str) -> "RedeemResult":
        return cls(ok=False, error=kind, message=message)
