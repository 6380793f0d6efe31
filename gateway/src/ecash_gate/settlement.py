# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Settlement coordinator.

One `Settlement` per inbound request walks

    received -> decoded -> priced -> redeemed -> dispatched -> settled
                   \\          \\         \\                      \\
                    rejected   rejected  rejected              refunded

Redemption is irreversible, so every path past `redeemed` ends in either a
receipt or a refund, and each terminal transition is checked for conservation:
``collected == receipt.amount + refund_amount``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, Set

from pydantic import BaseModel

from .errors import (
    GateError,
    InvalidRequest,
    NoUpstream,
    RedemptionError,
    SettlementInvariantError,
    UnpricedModel,
    InsufficientFunds,
    UpstreamError,
)
from .ledger import ProofLedger
from .metrics import MetricsRecord, MetricsStore, now_ms
from .mint import Redeemer
from .models import (
    EstimateContext,
    PricingMode,
    PricingRule,
    Proof,
    Receipt,
    Stamp,
    TokenUsage,
    sum_proofs,
)
from .otel import start_span
from .openrouter_pricing import OpenRouterPricingCache, PricingFetchError
from .pricing import actual_cost, estimate_request, lookup, merge_pricing, price_header, validate_amount
from .receipts import issue_receipt, issue_refund
from .token_errors import TokenErrorLog, hash_ip
from .tokens import decode_error_from, decode_stamp_with_diagnostics
from .upstream import SseUsageTracker, UpstreamDispatcher, UpstreamEntry, UpstreamResponse, UpstreamStream

logger = logging.getLogger(__name__)

# nginx convention for a client that closed the connection
CLIENT_CLOSED_STATUS = 499

# Debug: last terminal settlement (no proofs, no tokens)
LAST_SETTLEMENT: Optional[Dict[str, Any]] = None


class SettlementState(str, Enum):
    received = "received"
    decoded = "decoded"
    priced = "priced"
    redeemed = "redeemed"
    dispatched = "dispatched"
    settled = "settled"
    rejected = "rejected"
    refunded = "refunded"


_TRANSITIONS = {
    SettlementState.received: {SettlementState.decoded, SettlementState.rejected},
    SettlementState.decoded: {SettlementState.priced, SettlementState.rejected},
    SettlementState.priced: {SettlementState.redeemed, SettlementState.rejected},
    SettlementState.redeemed: {SettlementState.dispatched, SettlementState.refunded},
    SettlementState.dispatched: {SettlementState.settled, SettlementState.refunded},
    SettlementState.settled: set(),
    SettlementState.rejected: set(),
    SettlementState.refunded: set(),
}


class SettlementOutcome(BaseModel):
    state: SettlementState
    collected: int
    receipt: Optional[Receipt] = None
    refund_amount: int = 0
    refund_token: Optional[str] = None
    reconcile_fee: int = 0
    # client went away; what it was owed sits in the ledger
    held_for_client: bool = False

    def headers(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.receipt is not None:
            out["X-Cashu-Receipt"] = self.receipt.model_dump_json()
        if self.refund_token:
            key = "X-Cashu-Change" if self.state == SettlementState.settled else "X-Cashu-Refund"
            out[key] = self.refund_token
        return out


def sse_event(event: str, data: str) -> bytes:
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


class SettlementCoordinator:
    """Shared collaborators; `begin` creates the per-request pipeline."""

    def __init__(
        self,
        redeemer: Redeemer,
        dispatcher: UpstreamDispatcher,
        pricing: Sequence[PricingRule],
        ledger: Optional[ProofLedger] = None,
        token_errors: Optional[TokenErrorLog] = None,
        unit: str = "usd",
        ip_hash_salt: str = "",
        metrics: Optional[MetricsStore] = None,
        pricing_source: Optional[OpenRouterPricingCache] = None,
    ):
        self.redeemer = redeemer
        self.dispatcher = dispatcher
        self.pricing = list(pricing)
        self.custom_pricing = list(pricing)
        self.pricing_source = pricing_source
        self.ledger = ledger or ProofLedger()
        self.token_errors = token_errors or TokenErrorLog()
        self.metrics = metrics or MetricsStore()
        self.unit = unit
        self.ip_hash_salt = ip_hash_salt
        self._background: Set["asyncio.Task[Any]"] = set()

    async def refresh_pricing(self) -> None:
        """Merge dynamic pricing under the configured rules; keep the last table on failure."""
        if self.pricing_source is None:
            return
        try:
            dynamic = await self.pricing_source.get()
        except PricingFetchError as e:
            logger.warning(f"[PRICING] dynamic pricing unavailable, using configured rules: {e}")
            return
        self.pricing = merge_pricing(dynamic, self.custom_pricing)

    def spawn(self, coro: Awaitable[Any], what: str) -> "asyncio.Task[Any]":
        """Run `coro` detached from the request; failures are logged, never dropped."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._background_done(t, what))
        return task

    def _background_done(self, task: "asyncio.Task[Any]", what: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.error(f"[SETTLE] background {what} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[SETTLE] background {what} failed: {type(exc).__name__}: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for outstanding background work (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def begin(
        self,
        raw_token: Optional[str],
        body: bytes,
        request_id: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Settlement":
        return Settlement(self, raw_token, body, request_id, client_ip=client_ip, user_agent=user_agent)


class Settlement:
    def __init__(
        self,
        coordinator: SettlementCoordinator,
        raw_token: Optional[str],
        body: bytes,
        request_id: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self._c = coordinator
        self.raw_token = raw_token
        self.body = body
        self.request_id = request_id
        self.client_ip = client_ip
        self.user_agent = user_agent
        self.state = SettlementState.received
        self.stamp: Optional[Stamp] = None
        self.payload: Dict[str, Any] = {}
        self.model: Optional[str] = None
        self.rule: Optional[PricingRule] = None
        self.estimate: Optional[EstimateContext] = None
        self.price = 0
        self.upstream: Optional[UpstreamEntry] = None
        self.keep: List[Proof] = []
        self.change: List[Proof] = []
        self.ledger_key: Optional[str] = None
        self.outcome: Optional[SettlementOutcome] = None
        self.failure: Optional[Exception] = None
        self._served = False
        self._dispatched_at: Optional[float] = None

    # -------------------------------
    # State machine
    # -------------------------------

    def _advance(self, to: SettlementState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise SettlementInvariantError(f"illegal transition {self.state.value} -> {to.value}")
        logger.debug(f"[{self.request_id}] [SETTLE] {self.state.value} -> {to.value}")
        self.state = to

    def _reject(self, err: GateError) -> GateError:
        self._advance(SettlementState.rejected)
        logger.info(f"[{self.request_id}] [SETTLE] rejected: {err.code}: {err.message}")
        self._record_metric(err.status_code, error_code=err.code)
        return err

    @property
    def collected(self) -> int:
        return sum_proofs(self.keep) + sum_proofs(self.change)

    @property
    def is_stream(self) -> bool:
        return self.payload.get("stream") is True

    # -------------------------------
    # Received -> Decoded -> Priced
    # -------------------------------

    def authorize(self) -> None:
        """Decode, price and route. Raises a GateError; nothing is collected on failure."""
        stamp, diagnostics = decode_stamp_with_diagnostics(self.raw_token)
        if stamp is None:
            ip_hash = hash_ip(self.client_ip, self._c.ip_hash_salt) if self.client_ip else None
            self._c.token_errors.record(diagnostics, self.raw_token or "", ip_hash=ip_hash, user_agent=self.user_agent)
            logger.warning(
                f"[{self.request_id}] [DECODE] failed version={diagnostics.token_version.value} "
                f"prefix={diagnostics.raw_prefix!r} error={diagnostics.error}"
            )
            raise self._reject(decode_error_from(diagnostics))
        self.stamp = stamp
        self._advance(SettlementState.decoded)

        try:
            payload = json.loads(self.body or b"{}")
        except ValueError:
            payload = None
        if not isinstance(payload, dict) or not isinstance(payload.get("model"), str) or not payload["model"]:
            raise self._reject(InvalidRequest("Missing model in request body"))
        self.payload = payload
        self.model = payload["model"]

        rule = lookup(self.model, self._c.pricing)
        if rule is None:
            raise self._reject(UnpricedModel(f"No pricing for model: {self.model}", details={"model": self.model}))
        self.rule = rule
        self.estimate = estimate_request(payload)
        try:
            validation = validate_amount(stamp, rule, self.estimate)
        except GateError as e:
            raise self._reject(e)
        if not validation.ok:
            err = InsufficientFunds(
                f"Token value {validation.provided} < required {validation.required} for model {self.model}",
                required=validation.required,
                provided=validation.provided,
                details={"unit": stamp.unit, "pricing_mode": rule.mode.value},
            )
            raise self._reject(err)
        self.price = validation.required
        self._advance(SettlementState.priced)

        upstream = self._c.dispatcher.resolve(self.model)
        if upstream is None:
            raise self._reject(NoUpstream(f"No upstream configured for model: {self.model}"))
        self.upstream = upstream
        logger.info(
            f"[{self.request_id}] [SETTLE] priced model={self.model} mode={rule.mode.value} "
            f"price={self.price} provided={stamp.amount} mint={stamp.mint_url}"
        )

    def price_headers(self) -> Dict[str, str]:
        if self.rule is None:
            return {}
        return price_header(self.rule, self.stamp.unit if self.stamp else self._c.unit)

    # -------------------------------
    # Priced -> Redeemed
    # -------------------------------

    async def _redeem_and_hold(self):
        stamp = self.stamp
        with start_span("mint.redeem") as span:
            span.set_attribute("mint.url", stamp.mint_url)
            span.set_attribute("payment.price", self.price)
            result = await self._c.redeemer.redeem(stamp.proofs, stamp.mint_url, price=self.price, unit=stamp.unit)
            span.set_attribute("mint.ok", result.ok)
        if result.ok:
            self.ledger_key = await self._c.ledger.store(stamp.mint_url, result.keep)
        return result

    def _adopt_orphaned_redemption(self, task: "asyncio.Future") -> None:
        # errors are logged by the coordinator
        if task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        if not result.ok:
            self._reject(RedemptionError(result.error, result.message or result.error.value))
            return
        self.keep = list(result.keep)
        self.change = list(result.change)
        self._advance(SettlementState.redeemed)
        self._hold_for_absent_client()

    async def redeem(self) -> None:
        """Redeem at the mint. Runs to completion even if the caller is cancelled."""
        if self.state != SettlementState.priced:
            raise SettlementInvariantError(f"redeem from {self.state.value}")
        task = self._c.spawn(self._redeem_and_hold(), f"redeem {self.request_id}")
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._adopt_orphaned_redemption)
            raise
        if not result.ok:
            raise self._reject(RedemptionError(result.error, result.message or result.error.value))
        self.keep = list(result.keep)
        self.change = list(result.change)
        self._advance(SettlementState.redeemed)

    # -------------------------------
    # Client gone before settlement
    # -------------------------------

    def _hold_for_absent_client(self) -> None:
        """Park whatever the departed client is owed in the ledger and close out.

        Called from cancellation and generator-close paths, so it never awaits:
        the ledger write runs as coordinator background work. If the upstream
        answered, the gate keeps its estimate (settled); otherwise the whole
        collected amount is held as an undelivered refund.
        """
        if self.outcome is not None or self.state not in (SettlementState.redeemed, SettlementState.dispatched):
            return
        stamp = self.stamp
        parked = list(self.change)
        if self.ledger_key is None:
            parked.extend(self.keep)
        if parked:
            self._c.spawn(self._c.ledger.store(stamp.mint_url, parked), f"hold for {self.request_id}")
        served = self._served and self.failure is None
        if served:
            outcome = SettlementOutcome(
                state=SettlementState.settled,
                collected=self.collected,
                receipt=issue_receipt(stamp, self.model, sum_proofs(self.keep)),
                refund_amount=sum_proofs(self.change),
                held_for_client=True,
            )
        else:
            outcome = SettlementOutcome(
                state=SettlementState.refunded,
                collected=self.collected,
                refund_amount=self.collected,
                held_for_client=True,
            )
        logger.warning(
            f"[{self.request_id}] [SETTLE] client left before settlement; "
            f"holding {outcome.refund_amount} owed to it in ledger"
        )
        self._finish(outcome, None)

    async def release_if_abandoned(self) -> None:
        """Response teardown hook: a response that never ran still closes out."""
        self._hold_for_absent_client()

    # -------------------------------
    # Redeemed -> Dispatched
    # -------------------------------

    async def dispatch(self) -> UpstreamResponse:
        self._advance(SettlementState.dispatched)
        self._dispatched_at = time.monotonic()
        try:
            with start_span("upstream.dispatch") as span:
                span.set_attribute("upstream.model", self.model or "")
                result = await self._c.dispatcher.dispatch(self.upstream, self.body, self.request_id)
        except asyncio.CancelledError:
            self._hold_for_absent_client()
            raise
        self._served = True
        return result

    async def open_stream(self) -> UpstreamStream:
        self._advance(SettlementState.dispatched)
        self._dispatched_at = time.monotonic()
        try:
            with start_span("upstream.dispatch") as span:
                span.set_attribute("upstream.model", self.model or "")
                span.set_attribute("upstream.stream", True)
                stream = await self._c.dispatcher.open_stream(self.upstream, self.body, self.request_id)
        except asyncio.CancelledError:
            self._hold_for_absent_client()
            raise
        self._served = True
        return stream

    # -------------------------------
    # Dispatched -> Settled | Refunded
    # -------------------------------

    def _actual_cost(self, usage: Optional[TokenUsage]) -> int:
        if self.rule.mode == PricingMode.per_token and usage is None:
            return self.price
        return actual_cost(self.rule, usage or TokenUsage())

    async def _reconcile(self, excess: int):
        stamp = self.stamp
        with start_span("mint.reconcile") as span:
            span.set_attribute("mint.url", stamp.mint_url)
            span.set_attribute("payment.excess", excess)
            split = await self._c.redeemer.split(self.keep, stamp.mint_url, excess, unit=stamp.unit)
            span.set_attribute("mint.ok", split.ok)
        if split.ok and self.ledger_key:
            await self._c.ledger.replace(self.ledger_key, split.keep)
        return split

    def _hold_orphaned_split(self, task: "asyncio.Future") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        split = task.result()
        if split.ok and split.change:
            self._c.spawn(self._c.ledger.store(self.stamp.mint_url, split.change), f"hold excess for {self.request_id}")

    async def settle(self, usage: Optional[TokenUsage] = None) -> SettlementOutcome:
        """Receipt for the actual cost; return the excess plus the client's change."""
        if self.state != SettlementState.dispatched:
            raise SettlementInvariantError(f"settle from {self.state.value}")
        stamp = self.stamp
        collected = self.collected
        kept = sum_proofs(self.keep)
        actual = self._actual_cost(usage)
        retained = min(actual, kept)
        excess = kept - retained
        refund_proofs = list(self.change)
        reconcile_fee = 0
        if excess > 0:
            task = self._c.spawn(self._reconcile(excess), f"reconcile {self.request_id}")
            try:
                split = await asyncio.shield(task)
            except asyncio.CancelledError:
                task.add_done_callback(self._hold_orphaned_split)
                self._hold_for_absent_client()
                raise
            if split.ok:
                reconcile_fee = kept - excess - sum_proofs(split.keep)
                refund_proofs.extend(split.change)
                self.keep = list(split.keep)
            else:
                logger.warning(
                    f"[{self.request_id}] [SETTLE] reconcile swap failed ({split.error.value}); "
                    f"retaining estimate {kept}"
                )
                retained = kept
        refund_amount = sum_proofs(refund_proofs)
        outcome = SettlementOutcome(
            state=SettlementState.settled,
            collected=collected,
            receipt=issue_receipt(stamp, self.model, retained),
            refund_amount=refund_amount,
            refund_token=issue_refund(refund_proofs, stamp.mint_url, stamp.unit, stamp.version) if refund_proofs else None,
            reconcile_fee=reconcile_fee,
        )
        return self._finish(outcome, usage)

    async def refund(self, error: Optional[Exception] = None) -> SettlementOutcome:
        """Return everything collected (gate share and change) to the client."""
        if self.state not in (SettlementState.redeemed, SettlementState.dispatched):
            raise SettlementInvariantError(f"refund from {self.state.value}")
        if error is not None:
            self.failure = error
        stamp = self.stamp
        proofs = self.keep + self.change
        if self.ledger_key:
            await self._c.ledger.delete_keys([self.ledger_key])
            self.ledger_key = None
        logger.info(f"[{self.request_id}] [SETTLE] refunding {sum_proofs(proofs)}: {error}")
        outcome = SettlementOutcome(
            state=SettlementState.refunded,
            collected=self.collected,
            refund_amount=sum_proofs(proofs),
            refund_token=issue_refund(proofs, stamp.mint_url, stamp.unit, stamp.version),
        )
        self.keep = []
        self.change = []
        return self._finish(outcome, None)

    def _finish(self, outcome: SettlementOutcome, usage: Optional[TokenUsage]) -> SettlementOutcome:
        receipt_amount = outcome.receipt.amount if outcome.receipt else 0
        if outcome.collected != receipt_amount + outcome.refund_amount:
            raise SettlementInvariantError(
                f"collected {outcome.collected} != receipt {receipt_amount} + refund {outcome.refund_amount}"
            )
        self._advance(outcome.state)
        self.outcome = outcome
        global LAST_SETTLEMENT
        LAST_SETTLEMENT = {
            "at": datetime.now(timezone.utc).isoformat(),
            "request_id": self.request_id,
            "state": outcome.state.value,
            "model": self.model,
            "mint": self.stamp.mint_url if self.stamp else None,
            "price": self.price,
            "collected": outcome.collected,
            "receipt_amount": receipt_amount,
            "refund_amount": outcome.refund_amount,
            "reconcile_fee": outcome.reconcile_fee,
            "held_for_client": outcome.held_for_client,
            "usage": usage.model_dump() if usage else None,
        }
        logger.info(
            f"[{self.request_id}] [SETTLE] {outcome.state.value} collected={outcome.collected} "
            f"receipt={receipt_amount} refund={outcome.refund_amount}"
        )
        if outcome.held_for_client:
            self._record_metric(CLIENT_CLOSED_STATUS, error_code="client_disconnected", refunded=True)
        elif outcome.state == SettlementState.refunded:
            self._record_metric(
                getattr(self.failure, "status_code", 502),
                error_code=getattr(self.failure, "code", "upstream_error"),
                refunded=True,
            )
        else:
            self._record_metric(200, change=outcome.refund_amount)
        return outcome

    def _record_metric(
        self,
        status: int,
        error_code: Optional[str] = None,
        refunded: bool = False,
        change: int = 0,
    ) -> None:
        started = self._dispatched_at
        self._c.metrics.write(
            MetricsRecord(
                ts=now_ms(),
                model=self.model or "unknown",
                status=status,
                ecash_in=self.stamp.amount if self.stamp else 0,
                price=self.price,
                change=change,
                refunded=refunded,
                upstream_ms=int((time.monotonic() - started) * 1000) if started is not None else 0,
                error_code=error_code,
                mint=self.stamp.mint_url if self.stamp else None,
                stream=self.is_stream,
            )
        )

    # -------------------------------
    # Streaming
    # -------------------------------

    async def stream_and_settle(self, upstream: UpstreamStream) -> AsyncIterator[bytes]:
        """Pass SSE bytes through untouched, then append the settlement events.

        However the consumer goes away (task cancelled, generator closed, a
        failed send), an unsettled request is closed out by holding the client's
        share in the ledger.
        """
        tracker = SseUsageTracker()
        try:
            try:
                async for chunk in upstream.aiter_raw():
                    tracker.feed(chunk)
                    yield chunk
            except UpstreamError as e:
                self.failure = e
            finally:
                await upstream.aclose()
            if self.failure is not None:
                outcome = await self.refund(self.failure)
                yield sse_event("cashu-refund", outcome.refund_token or "")
                return
            tracker.close()
            outcome = await self.settle(tracker.usage)
            yield sse_event("cashu-receipt", outcome.receipt.model_dump_json())
            if outcome.refund_token:
                yield sse_event("cashu-change", outcome.refund_token)
        finally:
            self._hold_for_absent_client()
