"""
In-memory metrics registry rendered in Prometheus text format.
"""
import time
from typing import Dict, Optional, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

# Simple in-memory metrics storage
_metrics = {
    "http_requests_total": {},  # {(method, path, status): count}
    "http_request_duration_seconds": {},  # {(method, path): [durations]}
    "events": {},  # {(name, labels): count}
    "startup_time": None,
}

_HELP = {
    "chat_messages_sent_total": "Messages durably appended by send operations",
    "chat_status_updates_total": "Delivery status transitions by outcome",
    "chat_notifications_total": "Push notification dispatches by outcome",
}


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request metric."""
    key = (method, path, str(status_code))
    _metrics["http_requests_total"][key] = _metrics["http_requests_total"].get(key, 0) + 1

    durations = _metrics["http_request_duration_seconds"].setdefault((method, path), [])
    durations.append(duration)

    # Keep only last 1000 durations to prevent memory issues
    if len(durations) > 1000:
        _metrics["http_request_duration_seconds"][(method, path)] = durations[-1000:]


def increment(name: str, labels: Optional[Dict[str, str]] = None) -> None:
    """Increment a domain event counter."""
    key = (name, tuple(sorted((labels or {}).items())))
    _metrics["events"][key] = _metrics["events"].get(key, 0) + 1


def get_count(name: str, labels: Optional[Dict[str, str]] = None) -> int:
    key = (name, tuple(sorted((labels or {}).items())))
    return _metrics["events"].get(key, 0)


def set_startup_time() -> None:
    """Record application startup time."""
    _metrics["startup_time"] = time.time()


def reset() -> None:
    _metrics["http_requests_total"].clear()
    _metrics["http_request_duration_seconds"].clear()
    _metrics["events"].clear()


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels) + "}"


def generate_prometheus_metrics(version: str = "1.0.0") -> str:
    """Generate Prometheus-format metrics output."""
    lines = []

    # Application info
    lines.append("# HELP app_info Application information")
    lines.append("# TYPE app_info gauge")
    lines.append(f'app_info{{version="{version}"}} 1')
    lines.append("")

    # Startup time
    if _metrics["startup_time"]:
        lines.append("# HELP app_start_time_seconds Unix timestamp when the app started")
        lines.append("# TYPE app_start_time_seconds gauge")
        lines.append(f'app_start_time_seconds {_metrics["startup_time"]:.3f}')
        lines.append("")

    # HTTP requests total
    lines.append("# HELP http_requests_total Total number of HTTP requests")
    lines.append("# TYPE http_requests_total counter")
    for (method, path, status), count in _metrics["http_requests_total"].items():
        lines.append(f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}')
    lines.append("")

    # HTTP request duration (simplified histogram summary)
    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds")
    lines.append("# TYPE http_request_duration_seconds summary")
    for (method, path), durations in _metrics["http_request_duration_seconds"].items():
        if durations:
            lines.append(f'http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {sum(durations):.6f}')
            lines.append(f'http_request_duration_seconds_count{{method="{method}",path="{path}"}} {len(durations)}')
    lines.append("")

    # Domain counters
    for name, help_text in _HELP.items():
        series = [(labels, count) for (n, labels), count in _metrics["events"].items() if n == name]
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} counter")
        for labels, count in series:
            lines.append(f"{name}{_format_labels(labels)} {count}")
        lines.append("")

    return "\n".join(lines)
