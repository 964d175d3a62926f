"""Minimal observability for logging and metrics.

Provides JSON logging and in-process metrics for the dunning workers
without external dependencies.
"""
import uuid
from typing import Optional

from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for worker/CLI context."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set or generate trace ID for the current thread and return it."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def set_tenant_id(tenant_id: Optional[str] = None) -> str:
    """Set tenant ID for the current thread (default 'unknown')."""
    tenant_id = tenant_id or "unknown"
    logging_module.set_tenant_id(tenant_id)
    return tenant_id


def init_observability(enable_metrics: bool = True, log_level: Optional[str] = None) -> None:
    """Initialize all observability components."""
    logging_module.init_logging(log_level)
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_trace_id",
    "set_trace_id",
    "set_tenant_id",
    "init_observability",
]
