"""
OpenTelemetry tracing: tracing.py
==================================
TracingConfig, configure_tracing(), get_tracer() and context-manager
helpers for the pipeline's instrumentation points.

Without configure_tracing() the OpenTelemetry API hands out its default
no-op tracer, so the helpers cost next to nothing.

Usage:
    from structgen.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace

logger = logging.getLogger("structgen.tracing")

# Module-level tracer (reset between tests)
_tracer: Optional[trace.Tracer] = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "structgen"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter (dev)
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Initialise the global TracerProvider. Safe to call multiple times."""
    global _tracer

    if not cfg.enabled:
        _tracer = trace.get_tracer("structgen")
        return

    try:
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
    except ImportError:
        logger.warning(
            "opentelemetry-sdk not installed; spans will not be exported. "
            "Run: pip install -e '.[tracing]'"
        )
        _tracer = trace.get_tracer("structgen")
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(cfg.sample_rate))

    if cfg.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
        )
        logger.info(f"OTEL tracing → {cfg.otlp_endpoint}")
    else:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console (dev mode)")

    trace.set_tracer_provider(provider)
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("structgen")
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_pipeline(stage: str, session_id: str) -> Iterator:
    """Span for one run_pipeline() invocation."""
    with get_tracer().start_as_current_span(f"pipeline:{stage}") as span:
        span.set_attribute("pipeline.stage", stage)
        span.set_attribute("pipeline.session_id", session_id)
        yield span


@contextmanager
def traced_generation(stage: str, attempt: int, temperature: float) -> Iterator:
    """Span for a single backend generation request."""
    with get_tracer().start_as_current_span("generation") as span:
        span.set_attribute("generation.stage", stage)
        span.set_attribute("generation.attempt", attempt)
        span.set_attribute("generation.temperature", temperature)
        yield span


@contextmanager
def traced_quality_gate(stage: str, check_count: int) -> Iterator:
    """Span for a QualityGateEngine.run() call."""
    with get_tracer().start_as_current_span("quality_gate") as span:
        span.set_attribute("quality.stage", stage)
        span.set_attribute("quality.check_count", check_count)
        yield span
