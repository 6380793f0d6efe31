# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os

from opentelemetry import trace

TRACER_NAME = "ecash_gate.settlement"


def start_span(name: str):
    """Span around a suspension point (mint swap, upstream call). No-op without an SDK."""
    tracer = trace.get_tracer(TRACER_NAME)
    return tracer.start_as_current_span(name)


def setup_otel_from_env(use_console: bool = False) -> bool:
    """Configure OpenTelemetry tracing from environment variables.

    Env vars:
    - OTEL_EXPORTER_OTLP_ENDPOINT (tracing stays a no-op unless set)
    - OTEL_SERVICE_NAME (default ecash-gate)
    - OTEL_CONSOLE_EXPORTER=1 to add console export

    Returns True when an SDK provider was installed.
    """
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    console = use_console or os.getenv("OTEL_CONSOLE_EXPORTER", "0").lower() in {"1", "true", "yes"}
    if not endpoint and not console:
        return False
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import SERVICE_NAME, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )
    except Exception as e:  # pragma: no cover - import error path
        raise RuntimeError(
            "OpenTelemetry SDK/exporter not installed. Install extras: pip install ecash-gate[otel]"
        ) from e

    resource = Resource.create({SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", "ecash-gate")})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    return True
