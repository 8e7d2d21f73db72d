from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator

_logger = logging.getLogger(__name__)

# None until the first span is requested; False once tracing is known to be off.
_tracer: Any = None


def _parse_headers(raw: str | None) -> dict[str, str]:
    headers: dict[str, str] = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _build_tracer() -> Any:
    endpoint = os.environ.get("COS_OTLP_ENDPOINT")
    if not endpoint:
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        _logger.warning("COS_OTLP_ENDPOINT is set but the tracing extra is not installed; spans are disabled.")
        return False

    service_name = os.environ.get("COS_SERVICE_NAME", "contractos-ingest")
    exporter = OTLPSpanExporter(endpoint=endpoint, headers=_parse_headers(os.environ.get("COS_OTLP_HEADERS")))
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _logger.info("Exporting ingestion spans to %s as %s", endpoint, service_name)
    return trace.get_tracer("contractos_api.ingestion")


def _span_value(value: Any) -> Any:
    # OTLP attributes only carry scalars.
    if isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@contextmanager
def trace_span(name: str, attributes: Dict[str, Any] | None = None) -> Iterator[Any]:
    """
    Wrap one pipeline step (`ingest.claim`, `ingest.extract`, ...) in a span.

    Yields `None` when tracing is off so callers can guard `span.set_attribute` calls.
    Exceptions are recorded on the span and re-raised.
    """
    global _tracer
    if _tracer is None:
        _tracer = _build_tracer()
    if _tracer is False:
        yield None
        return

    clean = {f"cos.{k}": _span_value(v) for k, v in (attributes or {}).items() if v is not None}
    with _tracer.start_as_current_span(name, attributes=clean, record_exception=True, set_status_on_exception=True) as span:
        yield span
