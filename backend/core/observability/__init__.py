"""Minimal observability for logging, health checks and metrics.

Provides JSON logging, health/readiness endpoints, and in-process metrics
without external dependencies.
"""
import uuid

from . import logging as logging_module
from . import metrics


def generate_run_id() -> str:
    """Generate a new run ID for a scheduled job or CLI invocation."""
    return str(uuid.uuid4())


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_run_id",
    "init_observability",
]
