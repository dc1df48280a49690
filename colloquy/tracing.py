"""Tracing hooks.

Spans are passed explicitly from caller to callee instead of being read from
an ambient "current span". Nothing in the orchestration logic depends on the
tracer being real: ``NullTracer`` is the default and records nothing.
"""

from abc import ABC, abstractmethod
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Status, StatusCode


def _attribute_value(value: Any) -> Any:
    """Coerce tag values into types span backends accept."""
    if value is None:
        return ""
    if isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class Span(ABC):
    """A unit of traced work."""

    @property
    @abstractmethod
    def trace_id(self) -> str | None:
        pass

    @abstractmethod
    def set_tag(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        pass

    @abstractmethod
    def record_error(self, error: BaseException) -> None:
        pass

    @abstractmethod
    def end(self) -> None:
        pass

    def set_tags(self, tags: dict[str, Any]) -> None:
        for key, value in tags.items():
            self.set_tag(key, value)

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.record_error(exc)
        self.end()


class Tracer(ABC):
    """Creates spans."""

    @abstractmethod
    def start_span(
        self,
        name: str,
        parent: Span | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Span:
        pass


class NullSpan(Span):
    """Span that discards everything."""

    @property
    def trace_id(self) -> str | None:
        return None

    def set_tag(self, key: str, value: Any) -> None:
        return None

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        return None

    def record_error(self, error: BaseException) -> None:
        return None

    def end(self) -> None:
        return None


class NullTracer(Tracer):
    """Tracer used when no tracing backend is configured."""

    def start_span(
        self,
        name: str,
        parent: Span | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Span:
        return NullSpan()


class OpenTelemetrySpan(Span):
    """Span backed by an OpenTelemetry span."""

    def __init__(self, span: trace.Span):
        self._span = span

    @property
    def otel_span(self) -> trace.Span:
        return self._span

    @property
    def trace_id(self) -> str | None:
        context = self._span.get_span_context()
        if not context.is_valid:
            return None
        return trace.format_trace_id(context.trace_id)

    def set_tag(self, key: str, value: Any) -> None:
        self._span.set_attribute(key, _attribute_value(value))

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        self._span.add_event(
            name,
            attributes={k: _attribute_value(v) for k, v in (attributes or {}).items()},
        )

    def record_error(self, error: BaseException) -> None:
        self._span.record_exception(error)
        self._span.set_status(Status(StatusCode.ERROR, str(error)))

    def end(self) -> None:
        self._span.end()


class OpenTelemetryTracer(Tracer):
    """Tracer adapter over ``opentelemetry.trace``.

    Export is configured by the host application through the global
    TracerProvider; this adapter only creates spans.
    """

    def __init__(self, name: str = "colloquy", tracer: trace.Tracer | None = None):
        self._tracer = tracer or trace.get_tracer(name)

    def start_span(
        self,
        name: str,
        parent: Span | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Span:
        # Root spans start from an empty context, never the ambient one
        context = Context()
        if isinstance(parent, OpenTelemetrySpan):
            context = trace.set_span_in_context(parent.otel_span, Context())
        otel_span = self._tracer.start_span(
            name,
            context=context,
            attributes={k: _attribute_value(v) for k, v in (tags or {}).items()},
        )
        return OpenTelemetrySpan(otel_span)
