"""Shared constants for span attributes and event names."""

from .attributes import (
    SERVICE_NAME_MAP,
    SERVICE_TYPE_MAP,
    WORKFLOW_TYPE_GENERIC,
    WORKFLOW_TYPE_MAP,
    AutotraceSpanAttributes,
    EventNames,
    SpanTypes,
)

__all__ = [
    "AutotraceSpanAttributes",
    "EventNames",
    "SpanTypes",
    "WORKFLOW_TYPE_GENERIC",
    "WORKFLOW_TYPE_MAP",
    "SERVICE_TYPE_MAP",
    "SERVICE_NAME_MAP",
]
