# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Sequence

from .models import Proof, Receipt, Stamp, TokenVersion
from .tokens import encode_token

TOKEN_HASH_LEN = 16


def token_hash(proofs: Sequence[Proof]) -> str:
    """Truncated sha256 over the '|'-joined proof secrets. Reference only."""
    joined = "|".join(p.secret for p in proofs)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:TOKEN_HASH_LEN]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def issue_receipt(stamp: Stamp, model: str, amount: int) -> Receipt:
    return Receipt(
        id=str(uuid.uuid4()),
        timestamp=_now_iso(),
        amount=amount,
        unit=stamp.unit,
        model=model,
        token_hash=token_hash(stamp.proofs),
    )


def issue_refund(
    proofs: Sequence[Proof],
    mint_url: str,
    unit: str,
    version: TokenVersion = TokenVersion.v4,
) -> str:
    """Re-encode leftover proofs for the client, in the wire version it presented."""
    if not proofs:
        raise ValueError("refund requires at least one proof")
    return encode_token(mint_url, unit, proofs, version)
