#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Standalone runner for the Ecash Gate.

Env:
  - GATE_PORT (default: 8000)
  - GATE_HOST (default: 0.0.0.0)
  - TRUSTED_MINTS (comma-separated mint URLs)
  - PRICING_JSON (JSON list of pricing rules; defaults built in)
  - UPSTREAMS_JSON, or OPENAI_API_KEY / OPENROUTER_API_KEY
  - GATE_LOCAL_MINT=1 to redeem against an in-process simulated mint
  - GATE_ADMIN_TOKEN to enable admin endpoints
"""

import logging
import os
import sys

# Add package source to Python path
repo_root = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(repo_root, "gateway", "src"))

# Load .env BEFORE importing ecash_gate so env vars are available during module init
from dotenv import load_dotenv  # type: ignore
load_dotenv()

from fastapi import FastAPI

from ecash_gate import GateRuntimeConfig, __version__, get_gate_cfg, router
from ecash_gate.otel import setup_otel_from_env


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("ecash_gate_runner")


def build_app() -> FastAPI:
    app = FastAPI(
        title="Ecash Gate",
        description="Cashu-paid gateway for OpenAI-compatible chat completions",
        version=__version__,
    )

    # Wire runtime config via dependency
    def cfg_factory() -> GateRuntimeConfig:
        return GateRuntimeConfig()  # reads env defaults

    app.dependency_overrides[get_gate_cfg] = cfg_factory  # type: ignore[arg-type]

    if setup_otel_from_env():
        logger.info("OpenTelemetry tracing enabled")

    app.include_router(router)

    logger.info("Ecash Gate app initialized")
    return app


app = build_app()


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("GATE_HOST", "0.0.0.0")
    port = int(os.getenv("GATE_PORT", "8000"))
    uvicorn.run("run_gate:app", host=host, port=port, log_level="info")
