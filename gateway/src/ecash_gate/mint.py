# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Mint boundary: swap backends and the Redeemer.

The gate never re-implements the ecash protocol. A `MintBackend` performs one
swap round-trip; the `Redeemer` adds trust-list checks, a timeout, per-mint
circuit breaking and the classification of failures into `RedeemFailure` kinds.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import math
import re
import secrets
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import httpx

from .circuit_breaker import CircuitBreaker
from .errors import MintError, RedeemFailure
from .models import Proof, RedeemResult, sum_proofs

try:  # pragma: no cover - optional dependency path
    from cashu.core.base import Proof as CashuProof
    from cashu.wallet.wallet import Wallet

    HAVE_CASHU = True
except Exception:  # pragma: no cover - optional dependency path
    HAVE_CASHU = False

logger = logging.getLogger(__name__)

DEFAULT_REDEEM_TIMEOUT_S = 10.0

SwapOutcome = Tuple[List[Proof], List[Proof]]


def normalize_mint_url(url: str) -> str:
    return url.strip().rstrip("/")


class MintBackend(ABC):
    """One swap round-trip with a mint.

    `swap` returns `(send, keep)`: `send` sums to exactly `amount` and `keep` holds
    the remainder after the mint's input fee. With `amount=None` everything lands
    in `send`. Protocol rejections raise `MintError`; transport failures raise
    `httpx.HTTPError` or `OSError`.
    """

    @abstractmethod
    async def swap(self, mint_url: str, proofs: Sequence[Proof], amount: Optional[int], unit: str) -> SwapOutcome:
        ...

    async def fee_for(self, mint_url: str, proofs: Sequence[Proof]) -> int:
        return 0


def split_amount(amount: int) -> List[int]:
    """Power-of-two denominations summing to `amount`, smallest first."""
    out: List[int] = []
    bit = 1
    while amount:
        if amount & 1:
            out.append(bit)
        amount >>= 1
        bit <<= 1
    return out


class InMemoryMint(MintBackend):
    """Simulated mint with a single keyset and a spent-set.

    Signatures are an HMAC over the secret under a per-mint key, which is enough
    to reject forged proofs and proofs from another mint. Proofs are marked spent
    before the artificial latency elapses, so a timed-out swap still consumes them.
    """

    def __init__(self, url: str = "https://mint.local", input_fee_ppk: int = 0, delay_s: float = 0.0):
        self.url = normalize_mint_url(url)
        self.input_fee_ppk = input_fee_ppk
        self.delay_s = delay_s
        self.offline = False
        self.swap_calls = 0
        self._key = hashlib.sha256(b"ecash-gate-sim:" + self.url.encode("utf-8")).digest()
        self.keyset_id = "00" + hashlib.sha256(self.url.encode("utf-8")).hexdigest()[:14]
        self._spent: Set[str] = set()

    def _sign(self, secret: str) -> str:
        return "02" + hmac.new(self._key, secret.encode("utf-8"), hashlib.sha256).hexdigest()

    def _mint_proofs(self, amount: int) -> List[Proof]:
        proofs = []
        for denom in split_amount(amount):
            secret = secrets.token_hex(32)
            proofs.append(Proof(id=self.keyset_id, amount=denom, secret=secret, C=self._sign(secret)))
        return proofs

    def issue(self, amount: int) -> List[Proof]:
        """Mint fresh proofs worth `amount` (test and local-mode helper)."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        return self._mint_proofs(amount)

    def is_spent(self, proof: Proof) -> bool:
        return proof.secret in self._spent

    async def fee_for(self, mint_url: str, proofs: Sequence[Proof]) -> int:
        return math.ceil(len(proofs) * self.input_fee_ppk / 1000)

    async def swap(self, mint_url: str, proofs: Sequence[Proof], amount: Optional[int], unit: str) -> SwapOutcome:
        self.swap_calls += 1
        if self.offline:
            raise httpx.ConnectError(f"mint {self.url} is offline")
        if normalize_mint_url(mint_url) != self.url:
            raise httpx.ConnectError(f"no route to mint {mint_url}")
        seen: Set[str] = set()
        for p in proofs:
            if p.id != self.keyset_id:
                raise MintError(MintError.KEYSET_UNKNOWN, f"unknown keyset {p.id}")
            if not hmac.compare_digest(p.C, self._sign(p.secret)):
                raise MintError(MintError.PROOF_INVALID, "could not verify proofs")
            if p.secret in self._spent or p.secret in seen:
                raise MintError(MintError.TOKEN_ALREADY_SPENT, "Token already spent")
            seen.add(p.secret)
        total = sum_proofs(proofs) - await self.fee_for(mint_url, proofs)
        if amount is not None and (amount <= 0 or amount > total):
            raise MintError(MintError.TRANSACTION_UNBALANCED, f"cannot split {amount} from {total}")
        self._spent.update(seen)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if amount is None:
            return self._mint_proofs(total), []
        return self._mint_proofs(amount), self._mint_proofs(total - amount)


_CODE_RE = re.compile(r"code:?\s*(\d{4,5})", re.IGNORECASE)


def _to_mint_error(exc: Exception) -> Optional[MintError]:
    msg = str(exc)
    if "already spent" in msg.lower() or "11001" in msg:
        return MintError(MintError.TOKEN_ALREADY_SPENT, msg)
    m = _CODE_RE.search(msg)
    if m:
        return MintError(int(m.group(1)), msg)
    return None


class CashuWalletMint(MintBackend):
    """Production backend delegating the swap to the `cashu` wallet library.

    One loaded wallet is cached per mint URL so keysets are fetched once.
    """

    def __init__(self, db_path: str = "data/gate-wallet", unit: str = "usd", wallet_factory: Optional[Callable[[str, str], Awaitable[object]]] = None):
        self.db_path = db_path
        self.unit = unit
        self._wallets: Dict[str, object] = {}
        self._wallet_factory = wallet_factory

    async def _load_wallet(self, mint_url: str, unit: str):
        if self._wallet_factory is not None:
            return await self._wallet_factory(mint_url, unit)
        if not HAVE_CASHU:
            raise RuntimeError("cashu is not installed; install ecash-gate[mint] or enable GATE_LOCAL_MINT")
        wallet = await Wallet.with_db(url=mint_url, db=self.db_path, name="gate", unit=unit)
        await wallet.load_mint()
        return wallet

    async def wallet(self, mint_url: str, unit: Optional[str] = None):
        key = normalize_mint_url(mint_url)
        if key not in self._wallets:
            self._wallets[key] = await self._load_wallet(mint_url, unit or self.unit)
        return self._wallets[key]

    @staticmethod
    def _to_library(proofs: Iterable[Proof]):
        return [CashuProof(id=p.id, amount=p.amount, secret=p.secret, C=p.C) for p in proofs]

    @staticmethod
    def _from_library(proofs: Iterable[object]) -> List[Proof]:
        return [Proof(id=p.id, amount=p.amount, secret=p.secret, C=p.C) for p in proofs]

    async def fee_for(self, mint_url: str, proofs: Sequence[Proof]) -> int:
        wallet = await self.wallet(mint_url)
        return int(wallet.get_fees_for_proofs(self._to_library(proofs)))

    async def swap(self, mint_url: str, proofs: Sequence[Proof], amount: Optional[int], unit: str) -> SwapOutcome:
        wallet = await self.wallet(mint_url, unit)
        lib_proofs = self._to_library(proofs)
        if amount is None:
            amount = sum_proofs(proofs) - int(wallet.get_fees_for_proofs(lib_proofs))
        try:
            keep, send = await wallet.split(lib_proofs, amount)
        except (httpx.HTTPError, OSError):
            raise
        except Exception as e:
            mapped = _to_mint_error(e)
            if mapped is None:
                raise
            raise mapped from e
        return self._from_library(send), self._from_library(keep)


class Redeemer:
    """Exchanges presented proofs at their issuing mint.

    Never retries: a timeout may hide a completed spend, so the caller reports it
    and the client re-attempts with fresh proofs.
    """

    def __init__(
        self,
        trusted_mints: Iterable[str],
        backend: MintBackend,
        timeout_s: float = DEFAULT_REDEEM_TIMEOUT_S,
        breaker_factory: Optional[Callable[[str], CircuitBreaker]] = None,
    ):
        self.trusted_mints = {normalize_mint_url(m) for m in trusted_mints if m.strip()}
        self.backend = backend
        self.timeout_s = timeout_s
        self._breaker_factory = breaker_factory or (lambda name: CircuitBreaker(name=name))
        self._breakers: Dict[str, CircuitBreaker] = {}

    def is_trusted(self, mint_url: str) -> bool:
        return normalize_mint_url(mint_url) in self.trusted_mints

    def breaker(self, mint_url: str) -> CircuitBreaker:
        key = normalize_mint_url(mint_url)
        if key not in self._breakers:
            self._breakers[key] = self._breaker_factory(key)
        return self._breakers[key]

    async def redeem(
        self,
        proofs: Sequence[Proof],
        mint_url: str,
        *,
        price: Optional[int] = None,
        unit: str = "sat",
        timeout_s: Optional[float] = None,
    ) -> RedeemResult:
        """Swap `proofs`, splitting off `price` for the gate.

        On success `keep` sums to `price` and `change` holds the client's remainder;
        when the post-fee total does not exceed `price` everything is kept.
        """
        if not self.is_trusted(mint_url):
            return RedeemResult.failure(RedeemFailure.invalid_proof, f"Mint {mint_url} is not in the trusted list")
        if not proofs:
            return RedeemResult.failure(RedeemFailure.invalid_proof, "No proofs to redeem")

        async def exchange() -> SwapOutcome:
            net = sum_proofs(proofs) - await self.backend.fee_for(mint_url, proofs)
            if price is None or price >= net:
                send, keep = await self.backend.swap(mint_url, proofs, None, unit)
            else:
                send, keep = await self.backend.swap(mint_url, proofs, price, unit)
            if not send:
                raise httpx.RemoteProtocolError("Swap returned no proofs")
            return send, keep

        result = await self._guarded(mint_url, exchange, timeout_s)
        if result.ok:
            logger.info(f"[REDEEM] {mint_url} collected={result.collected} keep={sum_proofs(result.keep)} change={sum_proofs(result.change)}")
        return result

    async def split(
        self,
        proofs: Sequence[Proof],
        mint_url: str,
        amount: int,
        *,
        unit: str = "sat",
        timeout_s: Optional[float] = None,
    ) -> RedeemResult:
        """Swap proofs the gate already holds so that `change` sums to exactly `amount`."""

        async def exchange() -> SwapOutcome:
            net = sum_proofs(proofs) - await self.backend.fee_for(mint_url, proofs)
            send, keep = await self.backend.swap(mint_url, proofs, amount, unit)
            if sum_proofs(send) != amount or sum_proofs(keep) != net - amount:
                raise MintError(MintError.TRANSACTION_UNBALANCED, "split returned unexpected amounts")
            return keep, send

        return await self._guarded(mint_url, exchange, timeout_s)

    async def _guarded(
        self,
        mint_url: str,
        exchange: Callable[[], Awaitable[SwapOutcome]],
        timeout_s: Optional[float],
    ) -> RedeemResult:
        breaker = self.breaker(mint_url)
        if not breaker.allow():
            return RedeemResult.failure(RedeemFailure.mint_unreachable, "Mint temporarily unavailable (circuit open)")
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            keep, change = await asyncio.wait_for(exchange(), timeout=timeout)
        except asyncio.TimeoutError:
            breaker.record_failure()
            logger.warning(f"[REDEEM] {mint_url} swap timed out after {timeout}s")
            return RedeemResult.failure(RedeemFailure.timeout, f"Mint swap timed out after {timeout}s")
        except MintError as e:
            # the mint answered
            breaker.record_success()
            if e.code == MintError.TOKEN_ALREADY_SPENT:
                return RedeemResult.failure(RedeemFailure.token_spent, "Token already spent")
            logger.info(f"[REDEEM] {mint_url} rejected proofs: {e}")
            return RedeemResult.failure(RedeemFailure.invalid_proof, e.detail)
        except (httpx.HTTPError, OSError) as e:
            breaker.record_failure()
            logger.warning(f"[REDEEM] {mint_url} unreachable: {type(e).__name__}: {e}")
            return RedeemResult.failure(RedeemFailure.mint_unreachable, f"Mint unreachable: {type(e).__name__}")
        except Exception as e:
            # Unclassified backend failure: the proofs may or may not be spent
            breaker.record_failure()
            logger.exception(f"[REDEEM] {mint_url} swap failed unexpectedly")
            return RedeemResult.failure(RedeemFailure.mint_unreachable, f"Mint swap failed: {type(e).__name__}")
        breaker.record_success()
        return RedeemResult(ok=True, keep=keep, change=change)
