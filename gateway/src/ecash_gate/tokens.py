# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Cashu token codec.

Decodes the X-Cashu header into a `Stamp` and re-encodes leftover proofs into a
token of the same version for refunds.

    V3: 'cashuA' + base64url(JSON {"token": [{"mint", "proofs"}], "unit", "memo"})
    V4: 'cashuB' + base64url(CBOR {"m", "u", "d", "t": [{"i", "p": [{"a", "s", "c"}]}]})
"""

from __future__ import annotations

import base64
import json
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cbor2
from pydantic import BaseModel, ValidationError

from .errors import DecodeError, EmptyProofs, MalformedToken, UnsupportedVersion
from .models import Proof, Stamp, TokenVersion

MAX_PROOFS = 256

_PREFIX = "cashu"
_URI_SCHEME = "cashu:"
_VERSION_TAGS = {"A": TokenVersion.v3, "B": TokenVersion.v4}
_HEX = re.compile(r"^[0-9a-fA-F]+$")

# Verbose CBOR structure capture on V4 decode failures
DEBUG_DECODE = False


def set_debug_decode(enabled: bool) -> None:
    global DEBUG_DECODE
    DEBUG_DECODE = enabled


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise MalformedToken(msg)


def _strip(raw: str) -> str:
    s = raw.strip()
    if s.lower().startswith(_URI_SCHEME):
        s = s[len(_URI_SCHEME):]
    return s


def detect_token_version(raw: Optional[str]) -> TokenVersion:
    if not raw:
        return TokenVersion.unknown
    s = _strip(raw)
    if not s.startswith(_PREFIX) or len(s) <= len(_PREFIX):
        return TokenVersion.unknown
    return _VERSION_TAGS.get(s[len(_PREFIX)], TokenVersion.unknown)


def _b64decode(data: str) -> bytes:
    # Wallets emit both url-safe and standard alphabets, usually unpadded
    s = data.strip().replace("+", "-").replace("/", "_")
    s += "=" * (-len(s) % 4)
    try:
        return base64.urlsafe_b64decode(s.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise MalformedToken(f"Invalid Cashu token: base64 decode failed ({e})")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _memo(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _proof_from_v3(p: Any) -> Proof:
    _require(isinstance(p, dict), "Invalid Cashu token: proof must be an object")
    try:
        amount = p["amount"]
        _require(isinstance(amount, int) and not isinstance(amount, bool), "Invalid Cashu token: proof amount must be an integer")
        secret = p["secret"]
        if not isinstance(secret, str):
            secret = json.dumps(secret, separators=(",", ":"))
        return Proof(
            id=str(p["id"]),
            amount=amount,
            secret=secret,
            C=str(p["C"]),
            dleq=p.get("dleq"),
            witness=p.get("witness"),
        )
    except KeyError as e:
        raise MalformedToken(f"Invalid Cashu token: proof missing field {e}")


def _decode_v3(body: str) -> Tuple[str, str, List[Proof], Optional[str]]:
    try:
        data = json.loads(_b64decode(body))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedToken(f"Invalid Cashu token: JSON decode failed ({e})")
    _require(isinstance(data, dict), "Invalid Cashu token: payload must be an object")
    entries = data.get("token")
    _require(isinstance(entries, list) and len(entries) > 0, "Invalid Cashu token: missing token entries")
    mints = {e.get("mint") for e in entries if isinstance(e, dict)}
    _require(len(mints) == 1, "Invalid Cashu token: proofs from more than one mint")
    mint = mints.pop()
    _require(isinstance(mint, str) and bool(mint), "Invalid Cashu token: missing mint URL")
    proofs: List[Proof] = []
    for entry in entries:
        raw_proofs = entry.get("proofs") or []
        _require(isinstance(raw_proofs, list), "Invalid Cashu token: proofs must be a list")
        proofs.extend(_proof_from_v3(p) for p in raw_proofs)
    return mint, str(data.get("unit") or "sat"), proofs, _memo(data.get("memo"))


def _dleq_hex(dleq: Any) -> Optional[Dict[str, str]]:
    if not isinstance(dleq, dict):
        return None
    _require(all(isinstance(v, bytes) for v in dleq.values()), "Invalid Cashu token: dleq values must be bytes")
    return {str(k): v.hex() for k, v in dleq.items()}


def _decode_v4(body: str) -> Tuple[str, str, List[Proof], Optional[str]]:
    try:
        data = cbor2.loads(_b64decode(body))
    except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
        raise MalformedToken(f"Invalid Cashu token: CBOR decode failed ({e})")
    _require(isinstance(data, dict), "Invalid Cashu token: payload must be a map")
    mint = data.get("m")
    _require(isinstance(mint, str) and bool(mint), "Invalid Cashu token: missing mint URL")
    groups = data.get("t") or []
    _require(isinstance(groups, list), "Invalid Cashu token: 't' must be a list")
    proofs: List[Proof] = []
    for group in groups:
        _require(isinstance(group, dict), "Invalid Cashu token: keyset group must be a map")
        keyset = group.get("i")
        _require(isinstance(keyset, bytes), "Invalid Cashu token: keyset id must be bytes")
        for p in group.get("p") or []:
            _require(isinstance(p, dict), "Invalid Cashu token: proof must be a map")
            amount, secret, sig = p.get("a"), p.get("s"), p.get("c")
            _require(isinstance(amount, int) and not isinstance(amount, bool), "Invalid Cashu token: proof amount must be an integer")
            _require(isinstance(secret, str), "Invalid Cashu token: proof secret must be a string")
            _require(isinstance(sig, bytes), "Invalid Cashu token: proof signature must be bytes")
            dleq = p.get("d")
            proofs.append(
                Proof(
                    id=keyset.hex(),
                    amount=amount,
                    secret=secret,
                    C=sig.hex(),
                    dleq=_dleq_hex(dleq),
                    witness=p.get("w"),
                )
            )
    return mint, str(data.get("u") or "sat"), proofs, _memo(data.get("d"))


def decode_stamp(raw: Optional[str]) -> Stamp:
    """Decode a serialized Cashu token (V3 or V4) into a Stamp.

    Raises MalformedToken, UnsupportedVersion or EmptyProofs. Pure: no I/O.
    """
    if not raw or not raw.strip():
        raise MalformedToken("Empty token")
    s = _strip(raw)
    _require(s.startswith(_PREFIX) and len(s) > len(_PREFIX) + 1, "Invalid Cashu token: unrecognized encoding")
    tag = s[len(_PREFIX)]
    version = _VERSION_TAGS.get(tag)
    if version is None:
        raise UnsupportedVersion(f"Unsupported Cashu token version '{tag}' (supported: A, B)")
    body = s[len(_PREFIX) + 1:]
    try:
        if version == TokenVersion.v3:
            mint, unit, proofs, memo = _decode_v3(body)
        else:
            mint, unit, proofs, memo = _decode_v4(body)
    except ValidationError as e:
        raise MalformedToken(f"Invalid Cashu token: bad proof field ({e.error_count()} errors)")
    if not proofs:
        raise EmptyProofs("Invalid Cashu token: no proofs")
    if len(proofs) > MAX_PROOFS:
        raise MalformedToken(f"Too many proofs: {len(proofs)} (max {MAX_PROOFS})")
    _require(all(p.amount > 0 for p in proofs), "Invalid Cashu token: proof amounts must be positive")
    return Stamp(raw=s, version=version, mint_url=mint, unit=unit, proofs=proofs, memo=memo)


class DecodeDiagnostics(BaseModel):
    token_version: TokenVersion = TokenVersion.unknown
    raw_prefix: str = ""
    decode_time_ms: float = 0.0
    proof_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    cbor_structure: Optional[str] = None


def describe_cbor_structure(raw: str) -> str:
    """Shape of a V4 payload (types only, no values) for debugging decode failures."""

    def shape(v: Any, depth: int = 0) -> Any:
        if depth > 4:
            return "..."
        if isinstance(v, dict):
            return {str(k): shape(x, depth + 1) for k, x in v.items()}
        if isinstance(v, list):
            return [shape(v[0], depth + 1), f"len={len(v)}"] if v else []
        return type(v).__name__

    s = _strip(raw)
    data = cbor2.loads(_b64decode(s[len(_PREFIX) + 1:]))
    return json.dumps(shape(data), separators=(",", ":"))


def decode_stamp_with_diagnostics(raw: Optional[str]) -> Tuple[Optional[Stamp], DecodeDiagnostics]:
    """Same success/failure semantics as `decode_stamp`, plus decode metadata."""
    start = time.perf_counter()
    diagnostics = DecodeDiagnostics(
        token_version=detect_token_version(raw),
        raw_prefix=_strip(raw)[:15] if raw else "",
    )
    try:
        stamp = decode_stamp(raw)
    except DecodeError as e:
        diagnostics.error = e.message
        diagnostics.error_code = e.code
        if diagnostics.token_version == TokenVersion.v4 and DEBUG_DECODE:
            try:
                diagnostics.cbor_structure = describe_cbor_structure(raw or "")
            except (MalformedToken, cbor2.CBORDecodeError, ValueError, TypeError):
                diagnostics.cbor_structure = "Failed to extract CBOR structure"
        diagnostics.decode_time_ms = (time.perf_counter() - start) * 1000
        return None, diagnostics
    diagnostics.proof_count = len(stamp.proofs)
    diagnostics.decode_time_ms = (time.perf_counter() - start) * 1000
    return stamp, diagnostics


_DECODE_ERRORS = {cls.code: cls for cls in (MalformedToken, UnsupportedVersion, EmptyProofs)}


def decode_error_from(diagnostics: DecodeDiagnostics) -> DecodeError:
    cls = _DECODE_ERRORS.get(diagnostics.error_code or "", MalformedToken)
    return cls(
        diagnostics.error or "Cashu token decode failed",
        details={"token_version": diagnostics.token_version.value},
    )


# -------------------------------
# Encoding
# -------------------------------


def _proof_to_v3(p: Proof) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": p.id, "amount": p.amount, "secret": p.secret, "C": p.C}
    if p.dleq:
        out["dleq"] = p.dleq
    if p.witness:
        out["witness"] = p.witness
    return out


def encode_token_v3(mint_url: str, unit: str, proofs: Sequence[Proof], memo: Optional[str] = None) -> str:
    payload: Dict[str, Any] = {"token": [{"mint": mint_url, "proofs": [_proof_to_v3(p) for p in proofs]}], "unit": unit}
    if memo:
        payload["memo"] = memo
    return "cashuA" + _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def encode_token_v4(mint_url: str, unit: str, proofs: Sequence[Proof], memo: Optional[str] = None) -> str:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for p in proofs:
        if not _HEX.match(p.id) or not _HEX.match(p.C):
            raise ValueError(f"V4 encoding requires hex keyset ids and signatures (got id={p.id!r})")
        entry: Dict[str, Any] = {"a": p.amount, "s": p.secret, "c": bytes.fromhex(p.C)}
        if p.dleq:
            entry["d"] = {k: bytes.fromhex(v) for k, v in p.dleq.items()}
        if p.witness:
            entry["w"] = p.witness
        groups.setdefault(p.id, []).append(entry)
    payload: Dict[str, Any] = {"m": mint_url, "u": unit}
    if memo:
        payload["d"] = memo
    payload["t"] = [{"i": bytes.fromhex(kid), "p": entries} for kid, entries in groups.items()]
    return "cashuB" + _b64encode(cbor2.dumps(payload))


def encode_token(
    mint_url: str,
    unit: str,
    proofs: Sequence[Proof],
    version: TokenVersion = TokenVersion.v4,
    memo: Optional[str] = None,
) -> str:
    if version == TokenVersion.v3:
        return encode_token_v3(mint_url, unit, proofs, memo)
    try:
        return encode_token_v4(mint_url, unit, proofs, memo)
    except ValueError:
        # Legacy base64 keyset ids cannot be carried by V4
        return encode_token_v3(mint_url, unit, proofs, memo)
