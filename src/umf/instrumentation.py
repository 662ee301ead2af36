"""Optional OpenTelemetry instrumentation for umf.

Call ``umf.instrument()`` once at startup to trace stream
accumulation.  Requires ``opentelemetry-api`` to be installed; the
library works identically without it.
"""

from __future__ import annotations

import importlib.util
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from umf.streaming import AccumulatedResponse

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "umf") -> None:
    """Enable OpenTelemetry tracing for stream accumulation.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install umf[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        provider = TracerProvider()
        provider.add_span_processor(
            SimpleSpanProcessor(ConsoleSpanExporter())
        )
        trace.set_tracer_provider(provider)

        import umf
        umf.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install umf[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("umf instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    if _tracer is not None:
        logger.info("umf instrumentation disabled")
    _tracer = None


@asynccontextmanager
async def stream_span(model: str | None = None):
    """Wrap one ``accumulate_stream()`` drive in a span."""
    if _tracer is None:
        yield None
        return
    attributes = {"umf.operation.name": "accumulate_stream"}
    if model:
        attributes["gen_ai.request.model"] = model
    with _tracer.start_as_current_span(
        "accumulate_stream",
        attributes=attributes,
    ) as span:
        yield span


def record_response(
    span, response: AccumulatedResponse, chunk_count: int
) -> None:
    """Set chunk and result-size attributes on a span."""
    if span is None:
        return
    span.set_attribute("umf.stream.chunks", chunk_count)
    span.set_attribute("umf.response.text_length", len(response.text))
    span.set_attribute(
        "umf.response.tool_calls", len(response.tool_calls)
    )


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
