"""Optional OpenTelemetry instrumentation for servetest.

Call ``servetest.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the suite works
identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "servetest") -> None:
    """Enable OpenTelemetry tracing for evals and completions.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install llm-serve-test[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        provider = TracerProvider()
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter())
        )
        trace.set_tracer_provider(provider)

        import servetest
        servetest.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install llm-serve-test[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("servetest instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent operations will not emit spans.
    """
    global _tracer
    _tracer = None


@asynccontextmanager
async def eval_span(eval_name: str, mode: str):
    """Wrap one eval job in an ``eval`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"eval {eval_name}",
        attributes={
            "servetest.eval.name": eval_name,
            "servetest.eval.mode": mode,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(model: str, streaming: bool):
    """Wrap a chat completion request in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.request.model": model,
            "servetest.request.streaming": streaming,
        },
    ) as span:
        yield span


def record_usage(
    span, usage, response_model: str | None = None
):
    """Set token-usage and response-model attributes on a span."""
    if span is None or usage is None:
        return
    if (
        hasattr(usage, "prompt_tokens")
        and usage.prompt_tokens is not None
    ):
        span.set_attribute(
            "gen_ai.usage.input_tokens",
            usage.prompt_tokens,
        )
    if (
        hasattr(usage, "completion_tokens")
        and usage.completion_tokens is not None
    ):
        span.set_attribute(
            "gen_ai.usage.output_tokens",
            usage.completion_tokens,
        )
    if response_model:
        span.set_attribute(
            "gen_ai.response.model", response_model
        )


def record_result(span, passed: bool, message: str) -> None:
    """Record an eval outcome on its span."""
    if span is None:
        return
    span.set_attribute("servetest.eval.passed", passed)
    if message:
        span.set_attribute("servetest.eval.message", message)


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
