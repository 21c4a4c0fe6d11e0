"""Trace ids bound to the structlog context per processed event or resumed execution."""

import uuid
from contextvars import ContextVar
from typing import Any

import structlog

_trace_id: ContextVar[str] = ContextVar("trace_id", default="")


def generate_trace_id() -> str:
    """Generate a new trace ID."""
    return uuid.uuid4().hex[:16]


def get_trace_id() -> str:
    """Get the current trace ID, or an empty string outside a trace."""
    return _trace_id.get()


class TraceContext:
    """Bind a trace id and extra log fields for the duration of a block.

    Usage:
        with TraceContext(event_id=event.event_id) as trace_id:
            ...
    """

    def __init__(self, trace_id: str | None = None, **fields: Any):
        self._trace_id = trace_id or generate_trace_id()
        self._fields = {k: v for k, v in fields.items() if v is not None}
        self._tokens: dict[str, Any] = {}
        self._var_token = None

    def __enter__(self) -> str:
        self._var_token = _trace_id.set(self._trace_id)
        self._tokens = structlog.contextvars.bind_contextvars(trace_id=self._trace_id, **self._fields)
        return self._trace_id

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
        if self._var_token is not None:
            _trace_id.reset(self._var_token)
