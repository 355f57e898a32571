"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Iterable, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_ai_usage_decisions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_publication_gate_total: Dict[str, int] = defaultdict(int)
_billing_events_total: Dict[Tuple[str, str], int] = defaultdict(int)
_upstream_errors_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def _labels(names: Iterable[str], values: Iterable[str]) -> str:
    pairs = [f'{name}="{_escape_label(value)}"' for name, value in zip(names, values)]
    return "{" + ",".join(pairs) + "}"


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, kind: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(kind)] += 1


def record_ai_usage_decision(*, allowed: bool, reason: str) -> None:
    with _lock:
        _ai_usage_decisions_total[("allowed" if allowed else "denied", _normalize_label(reason))] += 1


def record_publication_gate(*, outcome: str) -> None:
    with _lock:
        _publication_gate_total[_normalize_label(outcome)] += 1


def record_billing_event(*, event_type: str, status: str) -> None:
    with _lock:
        _billing_events_total[(_normalize_label(event_type), _normalize_label(status))] += 1


def record_upstream_error(*, dependency: str) -> None:
    with _lock:
        _upstream_errors_total[_normalize_label(dependency)] += 1


def _counter_block(
    name: str,
    help_text: str,
    label_names: Tuple[str, ...],
    values: Dict,
) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, value in sorted(values.items()):
        key_tuple = key if isinstance(key, tuple) else (key,)
        lines.append(f"{name}{_labels(label_names, key_tuple)} {value}")
    return lines


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        ai_usage_total = dict(_ai_usage_decisions_total)
        publication_total = dict(_publication_gate_total)
        billing_total = dict(_billing_events_total)
        upstream_total = dict(_upstream_errors_total)

    lines = [
        "# HELP openpolicy_build_info Build metadata.",
        "# TYPE openpolicy_build_info gauge",
        f"openpolicy_build_info{_labels(('app_name', 'version', 'env'), (app_name, app_version, env))} 1",
        "# HELP openpolicy_process_uptime_seconds Process uptime in seconds.",
        "# TYPE openpolicy_process_uptime_seconds gauge",
        f"openpolicy_process_uptime_seconds {uptime:.6f}",
    ]

    lines.extend(
        _counter_block(
            "openpolicy_http_requests_total",
            "Total HTTP requests.",
            ("method", "path", "status"),
            http_total,
        )
    )

    lines.extend(
        [
            "# HELP openpolicy_http_request_duration_seconds Request duration summary.",
            "# TYPE openpolicy_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            f"openpolicy_http_request_duration_seconds_sum{_labels(('method', 'path'), (method, path))} {value:.6f}"
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            f"openpolicy_http_request_duration_seconds_count{_labels(('method', 'path'), (method, path))} {value}"
        )

    lines.extend(
        _counter_block(
            "openpolicy_rate_limit_block_total",
            "Requests blocked by rate limiting.",
            ("kind",),
            rate_limit_total,
        )
    )
    lines.extend(
        _counter_block(
            "openpolicy_ai_usage_decisions_total",
            "AI quota decisions by outcome.",
            ("outcome", "reason"),
            ai_usage_total,
        )
    )
    lines.extend(
        _counter_block(
            "openpolicy_publication_gate_total",
            "Public document resolutions by outcome.",
            ("outcome",),
            publication_total,
        )
    )
    lines.extend(
        _counter_block(
            "openpolicy_billing_events_total",
            "Billing webhook events by type and processing status.",
            ("event_type", "status"),
            billing_total,
        )
    )
    lines.extend(
        _counter_block(
            "openpolicy_upstream_errors_total",
            "Failed calls to external collaborators.",
            ("dependency",),
            upstream_total,
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _ai_usage_decisions_total.clear()
        _publication_gate_total.clear()
        _billing_events_total.clear()
        _upstream_errors_total.clear()
    _started_at = time.time()
