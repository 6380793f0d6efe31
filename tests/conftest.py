# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import os
import sys
from typing import Callable, List

import httpx
import pytest


def _add_project_paths_to_syspath() -> None:
    here = os.path.abspath(os.path.dirname(__file__))
    root = os.path.dirname(here)
    for path in (here, os.path.join(root, "gateway", "src")):
        if path not in sys.path:
            sys.path.insert(0, path)


_add_project_paths_to_syspath()


# Import after adding to syspath
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ecash_gate import routes
from ecash_gate.ledger import ProofLedger
from ecash_gate.mint import InMemoryMint, Redeemer
from ecash_gate.models import PricingMode, PricingRule, TokenVersion
from ecash_gate.routes import GateRuntimeConfig, get_coordinator, get_gate_cfg, router
from ecash_gate.settlement import SettlementCoordinator
from ecash_gate.token_errors import TokenErrorLog
from ecash_gate.tokens import encode_token
from ecash_gate.upstream import UpstreamDispatcher, UpstreamEntry
import mock_upstream

MINT_URL = "https://mint.test"
ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def test_env(monkeypatch) -> None:
    """Set up test environment variables."""
    monkeypatch.setenv("TRUSTED_MINTS", MINT_URL)
    monkeypatch.setenv("GATE_UNIT", "usd")
    monkeypatch.setenv("GATE_ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("GATE_DEBUG_ENABLED", "1")
    monkeypatch.setenv("GATE_LOCAL_MINT", "1")
    monkeypatch.setenv("GATE_IP_HASH_SALT", "test-salt")
    monkeypatch.setenv("UPSTREAMS_JSON", '[{"match": "*", "base_url": "http://upstream.test", "api_key": "sk-test"}]')
    monkeypatch.delenv("PRICING_JSON", raising=False)


@pytest.fixture
def mint() -> InMemoryMint:
    return InMemoryMint(url=MINT_URL)


@pytest.fixture
def make_token(mint: InMemoryMint) -> Callable[..., str]:
    def _make(amount: int, version: TokenVersion = TokenVersion.v4, unit: str = "usd") -> str:
        return encode_token(mint.url, unit, mint.issue(amount), version)

    return _make


@pytest.fixture
def pricing_rules() -> List[PricingRule]:
    return [
        PricingRule(model="flat", mode=PricingMode.per_request, per_request=4),
        # one unit per token either way
        PricingRule(model="metered", mode=PricingMode.per_token, input_per_million=1_000_000, output_per_million=1_000_000),
        PricingRule(model="*", mode=PricingMode.per_request, per_request=10),
    ]


@pytest.fixture
def upstream_app() -> FastAPI:
    mock_upstream.reset()
    return mock_upstream.app


@pytest.fixture
def upstream_transport(upstream_app: FastAPI) -> httpx.AsyncBaseTransport:
    return httpx.ASGITransport(app=upstream_app)


@pytest.fixture
def redeemer(mint: InMemoryMint) -> Redeemer:
    return Redeemer([MINT_URL], mint, timeout_s=2.0)


@pytest.fixture
def coordinator(redeemer: Redeemer, pricing_rules, upstream_transport) -> SettlementCoordinator:
    dispatcher = UpstreamDispatcher(
        [UpstreamEntry(match="*", base_url="http://upstream.test", api_key="sk-test")],
        timeout_s=5.0,
        transport=upstream_transport,
    )
    return SettlementCoordinator(
        redeemer,
        dispatcher,
        pricing_rules,
        ledger=ProofLedger(),
        token_errors=TokenErrorLog(),
        unit="usd",
        ip_hash_salt="test-salt",
    )


@pytest.fixture
def gate_app(coordinator: SettlementCoordinator, test_env, monkeypatch) -> FastAPI:
    monkeypatch.setattr(routes, "ADMIN_GUARD", routes.AdminGuard())
    app = FastAPI(title="Test Ecash Gate")
    app.include_router(router)
    app.dependency_overrides[get_gate_cfg] = lambda: GateRuntimeConfig()
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    return app


@pytest.fixture
def client(gate_app: FastAPI) -> TestClient:
    return TestClient(gate_app)


@pytest.fixture
def chat_body() -> Callable[..., dict]:
    def _body(model: str = "flat", **extra) -> dict:
        body = {"model": model, "messages": [{"role": "user", "content": "Hello"}]}
        body.update(extra)
        return body

    return _body
