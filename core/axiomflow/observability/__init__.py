"""
Observability: structured logging with execution context propagation.
"""

from axiomflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "HumanReadableFormatter",
    "StructuredFormatter",
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
