"""Trace ids for deliveries and sweeps, bound into the structlog context."""

import uuid
from typing import Any

import structlog


def generate_trace_id() -> str:
    return uuid.uuid4().hex[:16]


class TraceContext:
    """Scope in which every log line carries a trace id and extra fields.

    Events reuse their ``event_id`` so a delivery can be followed from the
    queue message to each channel record; sweeps get a fresh id and a
    ``sweep`` field.

    Usage:
        with TraceContext(event.event_id, event_type=event.event_type):
            ...
    """

    def __init__(self, trace_id: str | None = None, **fields: Any):
        self.trace_id = trace_id or generate_trace_id()
        self._fields = fields
        self._bound: dict[str, Any] = {}

    def __enter__(self) -> str:
        self._bound = dict(structlog.contextvars.bind_contextvars(trace_id=self.trace_id, **self._fields))
        return self.trace_id

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._bound)
