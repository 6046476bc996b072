from __future__ import annotations

import logging
import os
from contextlib import contextmanager, nullcontext
from typing import Dict, Iterator, Optional, Tuple

logger = logging.getLogger("astrovision.observability")

try:  # pragma: no cover - optional dependency
    from opentelemetry import trace  # type: ignore
    from opentelemetry.sdk.resources import Resource  # type: ignore
    from opentelemetry.sdk.trace import TracerProvider  # type: ignore
    from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore
    try:  # prefer HTTP exporter when available
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore
            OTLPSpanExporter,
        )
    except Exception:  # pragma: no cover - fallback to gRPC exporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # type: ignore
            OTLPSpanExporter,
        )
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # type: ignore
    from opentelemetry.instrumentation.requests import RequestsInstrumentor  # type: ignore

    _OTEL_AVAILABLE = True
except Exception:  # pragma: no cover - optional dependency missing
    trace = None  # type: ignore
    Resource = None  # type: ignore
    TracerProvider = None  # type: ignore
    BatchSpanProcessor = None  # type: ignore
    OTLPSpanExporter = None  # type: ignore
    FastAPIInstrumentor = None  # type: ignore
    RequestsInstrumentor = None  # type: ignore
    _OTEL_AVAILABLE = False

DEFAULT_TRACE_ID = "0" * 32
DEFAULT_SPAN_ID = "0" * 16

_state = {"middleware": False, "requests": False, "configured": False}


class TraceContextFilter(logging.Filter):
    """Inject trace/span ids into every log record for formatting."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - simple setter
        record.trace_id, record.span_id = current_trace_ids()
        return True


def ensure_logging_filter() -> None:
    """Attach the trace-id filter to the root logger and its handlers (idempotent)."""
    root = logging.getLogger()
    # Records from child loggers skip root's own filters, handler filters still apply
    for target in (root, *root.handlers):
        if not any(isinstance(f, TraceContextFilter) for f in target.filters):
            target.addFilter(TraceContextFilter())


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or os.environ.get("LOGLEVEL", "INFO"),
        format="%(asctime)s | %(levelname)s | %(name)s | trace=%(trace_id)s span=%(span_id)s | %(message)s",
    )
    ensure_logging_filter()


def current_trace_ids() -> Tuple[str, str]:
    """Return (trace_id, span_id) as hex strings; zeroed if no active span."""
    if not _OTEL_AVAILABLE or trace is None:  # pragma: no cover - dependency missing
        return DEFAULT_TRACE_ID, DEFAULT_SPAN_ID
    try:
        ctx = trace.get_current_span().get_span_context()
        if ctx is None or not ctx.is_valid:
            return DEFAULT_TRACE_ID, DEFAULT_SPAN_ID
        return f"{ctx.trace_id:032x}", f"{ctx.span_id:016x}"
    except Exception:  # pragma: no cover - malformed span context
        return DEFAULT_TRACE_ID, DEFAULT_SPAN_ID


def _parse_otlp_headers(raw: Optional[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _build_otlp_exporter():
    if not _OTEL_AVAILABLE or OTLPSpanExporter is None:
        return None

    endpoint = os.environ.get("ASTRO_OTLP_ENDPOINT") or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    endpoint = (endpoint or "http://localhost:4318").rstrip("/")
    if not endpoint.endswith("/v1/traces"):
        endpoint = f"{endpoint}/v1/traces"
    headers = _parse_otlp_headers(
        os.environ.get("ASTRO_OTLP_HEADERS") or os.environ.get("OTEL_EXPORTER_OTLP_HEADERS")
    )
    try:
        if headers:
            return OTLPSpanExporter(endpoint=endpoint, headers=headers)
        return OTLPSpanExporter(endpoint=endpoint)
    except Exception as exc:  # pragma: no cover - exporter misconfiguration
        logger.warning("OTLP exporter initialization failed: %s", exc)
        return None


async def _trace_headers_middleware(request, call_next):  # pragma: no cover - simple middleware
    response = await call_next(request)
    trace_id, span_id = current_trace_ids()
    response.headers.setdefault("x-trace-id", trace_id)
    response.headers.setdefault("x-span-id", span_id)
    response.headers.setdefault("traceparent", f"00-{trace_id}-{span_id}-01")
    return response


class _NoopTracer:
    """Fallback tracer when OpenTelemetry is unavailable."""

    def start_as_current_span(self, name: str, **kwargs):
        return nullcontext(None)


def get_tracer(name: str = "astrovision"):
    if not _OTEL_AVAILABLE or trace is None:
        return _NoopTracer()
    return trace.get_tracer(name)


@contextmanager
def stage_span(tracer, stage: str, **attributes) -> Iterator[None]:
    """Wrap one pipeline stage in a span named ``pipeline.<stage>``."""
    with tracer.start_as_current_span(f"pipeline.{stage}") as span:
        if span is not None:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(f"astrovision.{key}", value)
        yield


def configure_observability(app) -> None:
    """Configure tracing + logging if OpenTelemetry is present."""
    if _state["configured"]:
        return

    ensure_logging_filter()

    if _OTEL_AVAILABLE:
        if not isinstance(trace.get_tracer_provider(), TracerProvider):
            resource = Resource.create(
                {
                    "service.name": os.environ.get("OTEL_SERVICE_NAME") or "astrovision-api",
                    "service.namespace": "astrovision",
                    "service.version": os.environ.get("ASTRO_VERSION") or "unknown",
                }
            )
            provider = TracerProvider(resource=resource)
            exporter = _build_otlp_exporter()
            if exporter is not None:
                provider.add_span_processor(BatchSpanProcessor(exporter))
            trace.set_tracer_provider(provider)

        try:
            FastAPIInstrumentor().instrument_app(app, tracer_provider=trace.get_tracer_provider())
        except Exception as exc:  # pragma: no cover - instrumentation version skew
            logger.warning("FastAPI instrumentation failed: %s", exc)

        if not _state["requests"]:
            try:
                RequestsInstrumentor().instrument()
                _state["requests"] = True
            except Exception as exc:  # pragma: no cover - already instrumented elsewhere
                logger.debug("Requests instrumentation failed: %s", exc)
    else:  # pragma: no cover - optional dependency
        logger.info("OpenTelemetry packages not installed; tracing disabled.")

    if not _state["middleware"]:
        app.middleware("http")(_trace_headers_middleware)
        _state["middleware"] = True

    _state["configured"] = True
