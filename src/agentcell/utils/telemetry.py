"""OpenTelemetry tracing helpers for agentcell.

Provides a thin wrapper around the OpenTelemetry API so the rest of the
codebase can call ``get_tracer()`` without caring whether the SDK is
installed.  When the SDK is *not* configured the API returns no-op
implementations with negligible overhead unless explicitly opted in.

Usage::

    from agentcell.utils.telemetry import ATTR_SANDBOX_ID, get_tracer

    _tracer = get_tracer(__name__)

    with _tracer.start_as_current_span("sandbox.exec") as span:
        span.set_attribute(ATTR_SANDBOX_ID, sandbox_id)

To activate real tracing, call :func:`configure_telemetry` once at startup
(requires the ``otel`` extra: ``pip install agentcell[otel]``).
"""

from __future__ import annotations

from typing import Any

from opentelemetry import trace

# ---------------------------------------------------------------------------
# Semantic attribute keys used by sandbox instrumentation
# ---------------------------------------------------------------------------

ATTR_SANDBOX_ID = "agentcell.sandbox.id"
ATTR_SANDBOX_STATUS = "agentcell.sandbox.status"
ATTR_PROVIDER = "agentcell.provider"
ATTR_AGENT_ID = "agentcell.agent.id"
ATTR_PROJECT_ID = "agentcell.project.id"
ATTR_COMMAND = "agentcell.exec.command"
ATTR_EXIT_CODE = "agentcell.exec.exit_code"
ATTR_TIMED_OUT = "agentcell.exec.timed_out"
ATTR_DURATION_MS = "agentcell.exec.duration_ms"
ATTR_ERROR_CODE = "agentcell.error.code"

_INSTRUMENTATION_NAME = "agentcell"


def exec_attributes(exit_code: int, timed_out: bool, duration_ms: int) -> dict[str, Any]:
    """Span attributes describing how a sandboxed command ended."""
    return {
        ATTR_EXIT_CODE: exit_code,
        ATTR_TIMED_OUT: timed_out,
        ATTR_DURATION_MS: duration_ms,
    }


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return a :class:`~opentelemetry.trace.Tracer` for *name*.

    If the OpenTelemetry SDK has not been configured the returned tracer
    is a no-op and all spans become no-ops.
    """
    return trace.get_tracer(name or _INSTRUMENTATION_NAME)


def configure_telemetry(
    *,
    service_name: str = "agentcell",
    export_to_console: bool = True,
    otlp_endpoint: str | None = None,
) -> None:
    """Configure OpenTelemetry tracing (requires ``agentcell[otel]``).

    Parameters
    ----------
    service_name:
        The ``service.name`` resource attribute.
    export_to_console:
        If ``True``, export spans as JSON to stdout.
    otlp_endpoint:
        If set, export spans via OTLP/gRPC to this endpoint.

    Raises
    ------
    ImportError
        If the ``opentelemetry-sdk`` package is not installed.
    """
    # Optional dependency; unresolved imports are expected without the extra.
    try:
        from opentelemetry.sdk.resources import Resource  # pyright: ignore[reportMissingImports,reportUnknownVariableType]
        from opentelemetry.sdk.trace import TracerProvider  # pyright: ignore[reportMissingImports,reportUnknownVariableType]
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor  # pyright: ignore[reportMissingImports,reportUnknownVariableType]
    except ImportError as exc:
        msg = (
            "opentelemetry-sdk is required for configure_telemetry(). "
            "Install it with: pip install agentcell[otel]"
        )
        raise ImportError(msg) from exc

    resource = Resource.create({"service.name": service_name})  # pyright: ignore[reportUnknownVariableType,reportUnknownMemberType]
    provider = TracerProvider(resource=resource)  # pyright: ignore[reportUnknownVariableType]

    if export_to_console:
        _add_console_exporter(provider, SimpleSpanProcessor)

    if otlp_endpoint:
        _add_otlp_exporter(provider, BatchSpanProcessor, otlp_endpoint)

    trace.set_tracer_provider(provider)  # pyright: ignore[reportUnknownArgumentType]


def _add_console_exporter(provider: Any, processor_cls: Any) -> None:
    """Attach the console exporter (JSON to stdout)."""
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter  # pyright: ignore[reportMissingImports,reportUnknownVariableType]

    provider.add_span_processor(processor_cls(ConsoleSpanExporter()))


def _add_otlp_exporter(provider: Any, processor_cls: Any, endpoint: str) -> None:
    """Attach the OTLP gRPC exporter."""
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter  # pyright: ignore[reportMissingImports,reportUnknownVariableType]
    except ImportError as exc:
        msg = (
            "opentelemetry-exporter-otlp is required for OTLP export. "
            "Install it with: pip install agentcell[otel]"
        )
        raise ImportError(msg) from exc

    provider.add_span_processor(processor_cls(OTLPSpanExporter(endpoint=endpoint)))
