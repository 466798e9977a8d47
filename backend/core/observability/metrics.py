"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from threading import Lock
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
_lock = Lock()


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels.items()) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        # Simple buckets for basic histogram visualization
        if value < 0.1:
            metrics["buckets"]["<0.1"] += 1
        elif value < 1:
            metrics["buckets"]["0.1-1.0"] += 1
        elif value < 10:
            metrics["buckets"]["1.0-10.0"] += 1
        elif value < 100:
            metrics["buckets"]["10.0-100.0"] += 1
        elif value < 1000:
            metrics["buckets"]["100.0-1000.0"] += 1
        else:
            metrics["buckets"][">=1000.0"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}

            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )

            result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Status transition metrics
def increment_transitions(n: float = 1.0) -> None:
    increment_counter("installment_transitions_total", labels={"to": "overdue"}, value=n)


def increment_transition_conflicts() -> None:
    """Row already left 'pending' before our guarded write (benign)."""
    increment_counter("installment_transition_conflicts_total")


def increment_agency_failures(job_name: str) -> None:
    increment_counter("agency_failures_total", labels={"job": job_name})


# Notification dispatch metrics
def increment_notifications(outcome: str, channel: str) -> None:
    increment_counter("notifications_total", labels={"outcome": outcome, "channel": channel})


def increment_digests(outcome: str) -> None:
    increment_counter("college_digests_total", labels={"outcome": outcome})


def record_provider_duration(channel: str, ms: float) -> None:
    record_histogram("provider_call_duration_ms", ms, labels={"channel": channel})


# Job run metrics
def increment_job_runs(job_name: str, status: str) -> None:
    increment_counter("job_runs_total", labels={"job": job_name, "status": status})


def record_job_duration(job_name: str, ms: float) -> None:
    record_histogram("job_duration_ms", ms, labels={"job": job_name})
