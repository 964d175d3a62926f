"""In-process metrics counters and histograms."""

import threading
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
_lock = threading.Lock()


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


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


def get_counter(name: str, labels: dict[str, str] = None) -> float:
    """Return the current value of a counter (0 when never incremented)."""
    with _lock:
        data = _metrics.get(_key(name, labels))
        return data["count"] if data else 0


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Dunning engine metrics
def increment_pairs_due(n: float = 1.0) -> None:
    increment_counter("dunning_pairs_due_total", value=n)


def increment_dunning_sent() -> None:
    increment_counter("dunning_sent_total")


def increment_dunning_failed(reason: str) -> None:
    increment_counter("dunning_failed_total", labels={"reason": reason})


def increment_dunning_duplicates() -> None:
    increment_counter("dunning_duplicates_total")


def increment_quota_blocked() -> None:
    increment_counter("dunning_quota_blocked_total")


def increment_tenant_errors(reason: str) -> None:
    increment_counter("dunning_tenant_errors_total", labels={"reason": reason})


def record_send_duration(duration_ms: float) -> None:
    record_histogram("dunning_send_duration_ms", duration_ms)
