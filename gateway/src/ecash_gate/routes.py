# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import hmac
import json
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from cachetools import TTLCache
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from . import settlement as settlement_mod
from .errors import GateError, InsufficientFunds, PaymentRequired, RedemptionError, UpstreamError
from .ledger import ProofLedger
from .metrics import MetricsRecord, MetricsStore, now_ms, parse_date
from .mint import CashuWalletMint, InMemoryMint, MintBackend, Redeemer
from .models import PricingMode, PricingRule, TokenVersion
from .openrouter_pricing import DEFAULT_TTL_S, OpenRouterPricingCache
from .pricing import load_pricing, lookup, price_header
from .settlement import SettlementCoordinator
from .token_errors import TokenErrorLog
from .tokens import encode_token
from .upstream import UpstreamDispatcher, UpstreamEntry, upstreams_from_env

logger = logging.getLogger(__name__)

USD_TO_UNITS = 100_000


# -------------------------------
# Runtime config
# -------------------------------


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _csv(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


_PROCESS_SALT: Optional[str] = None


def _ip_hash_salt() -> str:
    configured = os.getenv("GATE_IP_HASH_SALT")
    if configured:
        return configured
    global _PROCESS_SALT
    if _PROCESS_SALT is None:
        _PROCESS_SALT = secrets.token_hex(16)
        logger.warning("GATE_IP_HASH_SALT not set; using a random per-process salt")
    return _PROCESS_SALT


class GateRuntimeConfig(BaseModel):
    trusted_mints: List[str] = Field(
        default_factory=lambda: _csv(os.getenv("TRUSTED_MINTS", "https://testnut.cashu.space"))
    )
    pricing: List[PricingRule] = Field(default_factory=lambda: load_pricing(os.getenv("PRICING_JSON")))
    upstreams: List[UpstreamEntry] = Field(default_factory=upstreams_from_env)
    unit: str = Field(default_factory=lambda: os.getenv("GATE_UNIT", "usd"))
    redeem_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("GATE_REDEEM_TIMEOUT_MS", "10000")) / 1000.0
    )
    upstream_timeout_s: float = Field(default_factory=lambda: float(os.getenv("GATE_UPSTREAM_TIMEOUT_S", "120")))
    admin_token: Optional[str] = Field(default_factory=lambda: os.getenv("GATE_ADMIN_TOKEN") or None)
    debug_enabled: bool = Field(default_factory=lambda: _env_flag("GATE_DEBUG_ENABLED"))
    # In-process simulated mint instead of the cashu wallet backend
    local_mint: bool = Field(default_factory=lambda: _env_flag("GATE_LOCAL_MINT"))
    wallet_db: str = Field(default_factory=lambda: os.getenv("GATE_WALLET_DB", "data/gate-wallet"))
    ip_hash_salt: str = Field(default_factory=_ip_hash_salt)
    # merge OpenRouter's published per-token rates under `pricing`
    openrouter_pricing: bool = Field(default_factory=lambda: _env_flag("GATE_OPENROUTER_PRICING"))
    openrouter_pricing_ttl_s: float = Field(
        default_factory=lambda: float(os.getenv("GATE_OPENROUTER_PRICING_TTL_S", str(DEFAULT_TTL_S)))
    )


def get_gate_cfg() -> GateRuntimeConfig:
    return GateRuntimeConfig()


def build_coordinator(
    cfg: GateRuntimeConfig,
    *,
    mint_backend: Optional[MintBackend] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SettlementCoordinator:
    trusted = list(cfg.trusted_mints)
    if mint_backend is None:
        if cfg.local_mint:
            mint_backend = InMemoryMint(url=trusted[0] if trusted else "https://mint.local")
            if not trusted:
                trusted.append(mint_backend.url)
            logger.info(f"[GATE] local mint mode ({mint_backend.url})")
        else:
            mint_backend = CashuWalletMint(db_path=cfg.wallet_db, unit=cfg.unit)
    redeemer = Redeemer(trusted, mint_backend, timeout_s=cfg.redeem_timeout_s)
    dispatcher = UpstreamDispatcher(cfg.upstreams, timeout_s=cfg.upstream_timeout_s, transport=transport)
    return SettlementCoordinator(
        redeemer,
        dispatcher,
        cfg.pricing,
        ledger=ProofLedger(),
        token_errors=TokenErrorLog(),
        unit=cfg.unit,
        ip_hash_salt=cfg.ip_hash_salt,
        metrics=MetricsStore(),
        pricing_source=OpenRouterPricingCache(ttl_s=cfg.openrouter_pricing_ttl_s) if cfg.openrouter_pricing else None,
    )


_COORDINATOR: Optional[SettlementCoordinator] = None


def get_coordinator(cfg: GateRuntimeConfig = Depends(get_gate_cfg)) -> SettlementCoordinator:
    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = build_coordinator(cfg)
    return _COORDINATOR


router = APIRouter(tags=["ecash-gate"])


def _error_response(e: GateError, req_id: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=e.status_code,
        content={"error": {"code": e.code, "message": e.message, **e.details}, "request_id": req_id},
        headers={"X-Request-ID": req_id, **(headers or {})},
    )


# -------------------------------
# Admin auth
# -------------------------------

ADMIN_MAX_FAILURES = 5
ADMIN_WINDOW_S = 60
ADMIN_LOCKOUT_S = 15 * 60


class AdminGuard:
    """Bearer-token check with per-client lockout after repeated failures."""

    def __init__(self) -> None:
        self.failures: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=ADMIN_WINDOW_S)
        self.lockouts: TTLCache[str, bool] = TTLCache(maxsize=10000, ttl=ADMIN_LOCKOUT_S)

    def check(self, client: str, authorization: Optional[str], admin_token: Optional[str]) -> None:
        if not admin_token:
            raise HTTPException(status_code=503, detail="Admin endpoint not available")
        if client in self.lockouts:
            raise HTTPException(status_code=429, detail="Too many failed attempts. Try again later.")
        expected = f"Bearer {admin_token}"
        if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
            count = self.failures.get(client, 0) + 1
            if count >= ADMIN_MAX_FAILURES:
                self.failures.pop(client, None)
                self.lockouts[client] = True
                logger.warning(f"[ADMIN] locking out {client} after {count} failed attempts")
                raise HTTPException(status_code=429, detail="Too many failed attempts. Try again later.")
            self.failures[client] = count
            raise HTTPException(status_code=401, detail="Unauthorized (admin only)")
        self.failures.pop(client, None)


ADMIN_GUARD = AdminGuard()


def _client_id(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    cfg: GateRuntimeConfig = Depends(get_gate_cfg),
) -> None:
    ADMIN_GUARD.check(_client_id(request), authorization, cfg.admin_token)


# -------------------------------
# Public endpoints
# -------------------------------


def _describe_rule(rule: PricingRule) -> Dict[str, Any]:
    if rule.mode == PricingMode.per_token:
        return {
            "mode": "per_token",
            "input_per_million": rule.input_per_million or 0,
            "output_per_million": rule.output_per_million or 0,
        }
    return {"mode": "per_request", "per_request": rule.per_request or 0}


@router.get("/")
async def service_index(coordinator: SettlementCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    from . import __version__

    return {
        "name": "ecash-gate",
        "version": __version__,
        "description": "Pay-per-request LLM gateway accepting Cashu ecash",
        "protocol": {
            "method": "POST",
            "endpoint": "/v1/chat/completions",
            "auth": "X-Cashu header with a valid Cashu token (cashuA... or cashuB...)",
            "body": "OpenAI-compatible chat completions format",
            "streaming": True,
        },
        "endpoints": {
            "GET /": "Service description",
            "GET /health": "Service health",
            "GET /v1/info": "Version information",
            "GET /v1/pricing": "Per-model pricing in units",
            "POST /v1/chat/completions": "Send a stamped chat request",
            "GET /v1/gate/balance": "Gate-held ecash balance (admin)",
            "GET /v1/gate/token-errors": "Recent token decode failures (admin)",
            "GET /v1/gate/metrics": "Per-request metrics for a date (admin)",
            "GET /v1/gate/metrics/summary": "Aggregated metrics for a date range (admin)",
            "GET /stats": "Today and last 7 days at a glance (admin)",
        },
        "mints": sorted(coordinator.redeemer.trusted_mints),
        "pricing_url": "/v1/pricing",
    }


@router.get("/health")
async def health(coordinator: SettlementCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "mints": sorted(coordinator.redeemer.trusted_mints),
        "models": [r.model for r in coordinator.pricing],
        "upstreams": [{"match": u.match, "base_url": u.base_url} for u in coordinator.dispatcher.entries],
    }


@router.get("/v1/info")
async def info(cfg: GateRuntimeConfig = Depends(get_gate_cfg)) -> Dict[str, Any]:
    from . import __version__

    return {
        "name": "ecash-gate",
        "version": __version__,
        "unit": cfg.unit,
        "token_versions": [TokenVersion.v3.value, TokenVersion.v4.value],
    }


@router.get("/v1/pricing")
async def pricing(
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    await coordinator.refresh_pricing()
    return {
        "unit": coordinator.unit,
        "mints": sorted(coordinator.redeemer.trusted_mints),
        "pricing_mode": "per_token",
        "exchange_rate": {"usd_to_units": USD_TO_UNITS, "description": "1 USD = 100,000 units"},
        "models": {r.model: _describe_rule(r) for r in coordinator.pricing},
    }


@router.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    x_cashu: Optional[str] = Header(None, alias="X-Cashu"),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    req_id = uuid.uuid4().hex
    body = await request.body()
    await coordinator.refresh_pricing()
    if not x_cashu:
        headers: Dict[str, str] = {}
        try:
            model = json.loads(body or b"{}").get("model")
        except (ValueError, AttributeError):
            model = None
        rule = lookup(model, coordinator.pricing) if isinstance(model, str) else None
        if rule is not None:
            headers = price_header(rule, coordinator.unit)
        err = PaymentRequired(
            "X-Cashu header required. See GET /v1/pricing for rates.",
            details={"pricing_url": "/v1/pricing"},
        )
        coordinator.metrics.write(
            MetricsRecord(ts=now_ms(), model=model if isinstance(model, str) else "unknown", status=err.status_code, error_code=err.code)
        )
        return _error_response(err, req_id, headers)

    settlement = coordinator.begin(
        x_cashu,
        body,
        req_id,
        client_ip=_client_id(request),
        user_agent=request.headers.get("User-Agent"),
    )
    try:
        settlement.authorize()
    except InsufficientFunds as e:
        return _error_response(e, req_id, settlement.price_headers())
    except GateError as e:
        return _error_response(e, req_id)

    try:
        await settlement.redeem()
    except RedemptionError as e:
        return _error_response(e, req_id)

    if settlement.is_stream:
        try:
            upstream = await settlement.open_stream()
        except UpstreamError as e:
            outcome = await settlement.refund(e)
            return _error_response(e, req_id, outcome.headers())
        teardown = BackgroundTasks()
        teardown.add_task(settlement.release_if_abandoned)
        return StreamingResponse(
            settlement.stream_and_settle(upstream),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Request-ID": req_id},
            background=teardown,
        )

    try:
        result = await settlement.dispatch()
    except UpstreamError as e:
        outcome = await settlement.refund(e)
        return _error_response(e, req_id, outcome.headers())
    outcome = await settlement.settle(result.usage)
    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.content_type,
        headers={"X-Request-ID": req_id, **outcome.headers()},
    )


# -------------------------------
# Admin / debug
# -------------------------------


@router.get("/v1/gate/balance", dependencies=[Depends(require_admin)])
async def gate_balance(coordinator: SettlementCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    entries = await coordinator.ledger.list_all()
    return {
        "balance": sum(e.amount for e in entries),
        "unit": coordinator.unit,
        "entries": len(entries),
        "by_mint": await coordinator.ledger.balance_by_mint(),
    }


@router.get("/v1/gate/token-errors", dependencies=[Depends(require_admin)])
async def token_errors(
    limit: int = 50,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    limit = max(1, min(limit, 100))
    errors = coordinator.token_errors.recent(limit)
    return {"count": len(errors), "errors": [e.model_dump() for e in errors]}


@router.get("/v1/gate/token-errors/summary", dependencies=[Depends(require_admin)])
async def token_errors_summary(coordinator: SettlementCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    return coordinator.token_errors.summary()


def _require_date(value: Optional[str], name: str) -> str:
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing '{name}' query param (YYYY-MM-DD)")
    try:
        parse_date(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format. Expected YYYY-MM-DD")
    return value


@router.get("/v1/gate/metrics", dependencies=[Depends(require_admin)])
async def gate_metrics(
    date: Optional[str] = None,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    day = _require_date(date, "date")
    return {"date": day, "records": [r.model_dump() for r in coordinator.metrics.by_date(day)]}


@router.get("/v1/gate/metrics/errors", dependencies=[Depends(require_admin)])
async def gate_metrics_errors(
    date: Optional[str] = None,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    day = _require_date(date, "date")
    return {"date": day, "errors": [r.model_dump() for r in coordinator.metrics.errors_by_date(day)]}


@router.get("/v1/gate/metrics/summary", dependencies=[Depends(require_admin)])
async def gate_metrics_summary(
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    start = _require_date(date_from, "from")
    end = _require_date(date_to, "to")
    try:
        summary = coordinator.metrics.summary(start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return summary.to_json()


@router.get("/stats", dependencies=[Depends(require_admin)])
async def stats(coordinator: SettlementCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    today = now.date().isoformat()
    week_ago = (now - timedelta(days=7)).date().isoformat()
    return {
        "generated_at": now.isoformat(),
        "today": coordinator.metrics.summary(today, today).to_json(),
        "last_7_days": coordinator.metrics.summary(week_ago, today).to_json(),
    }


@router.get("/v1/gate/debug")
async def gate_debug(
    cfg: GateRuntimeConfig = Depends(get_gate_cfg),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    if not cfg.debug_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    return {
        "mints": sorted(coordinator.redeemer.trusted_mints),
        "breakers": [coordinator.redeemer.breaker(m).get_state() for m in sorted(coordinator.redeemer.trusted_mints)],
        "last_settlement": settlement_mod.LAST_SETTLEMENT,
    }


class LocalIssueRequest(BaseModel):
    amount: int = Field(..., gt=0, le=1_000_000)
    version: TokenVersion = TokenVersion.v4


@router.post("/v1/gate/local/issue")
async def local_issue(
    body: LocalIssueRequest,
    cfg: GateRuntimeConfig = Depends(get_gate_cfg),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Mint a token from the in-process mint (local mode with debug only)."""
    backend = coordinator.redeemer.backend
    if not cfg.debug_enabled or not isinstance(backend, InMemoryMint):
        raise HTTPException(status_code=404, detail="Not Found")
    proofs = backend.issue(body.amount)
    return {"token": encode_token(backend.url, coordinator.unit, proofs, body.version), "amount": body.amount}
