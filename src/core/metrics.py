"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_jobs_total: Dict[Tuple[str, str], int] = defaultdict(int)
_job_skips_total: Dict[Tuple[str, str], int] = defaultdict(int)
_ai_replies_total: Dict[str, int] = defaultdict(int)
_delivery_failures_total: Dict[Tuple[str, str], int] = defaultdict(int)
_followups_sent_total: Dict[str, int] = defaultdict(int)
_broker_calls_total: Dict[str, int] = defaultdict(int)
_sink_write_failures_total: Dict[str, int] = defaultdict(int)
_active_channels = 0


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def _channel_kind(channel: str) -> str:
    return _normalize_label(channel.split(":", 1)[0])


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_job(*, queue: str, outcome: str) -> None:
    with _lock:
        _jobs_total[(_normalize_label(queue), _normalize_label(outcome))] += 1


def record_job_skipped(*, queue: str, reason: str) -> None:
    with _lock:
        _job_skips_total[(_normalize_label(queue), _normalize_label(reason))] += 1


def record_ai_reply(*, workspace_id: str) -> None:
    with _lock:
        _ai_replies_total[_normalize_label(workspace_id)] += 1


def record_delivery_failure(*, workspace_id: str, source: str) -> None:
    with _lock:
        _delivery_failures_total[(_normalize_label(workspace_id), _normalize_label(source))] += 1


def record_followup_sent(*, workspace_id: str) -> None:
    with _lock:
        _followups_sent_total[_normalize_label(workspace_id)] += 1


def record_broker_call(*, action: str) -> None:
    with _lock:
        _broker_calls_total[_normalize_label(action)] += 1


def record_sink_write_failure(*, channel: str) -> None:
    with _lock:
        _sink_write_failures_total[_channel_kind(channel)] += 1


def set_active_channels(count: int) -> None:
    global _active_channels
    with _lock:
        _active_channels = max(0, int(count))


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        jobs_total = dict(_jobs_total)
        job_skips_total = dict(_job_skips_total)
        ai_replies_total = dict(_ai_replies_total)
        delivery_failures_total = dict(_delivery_failures_total)
        followups_sent_total = dict(_followups_sent_total)
        broker_calls_total = dict(_broker_calls_total)
        sink_write_failures_total = dict(_sink_write_failures_total)
        active_channels = _active_channels

    lines = [
        "# HELP relaydesk_build_info Build metadata.",
        "# TYPE relaydesk_build_info gauge",
        (
            f'relaydesk_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP relaydesk_process_uptime_seconds Process uptime in seconds.",
        "# TYPE relaydesk_process_uptime_seconds gauge",
        f"relaydesk_process_uptime_seconds {uptime:.6f}",
        "# HELP relaydesk_http_requests_total Total HTTP requests.",
        "# TYPE relaydesk_http_requests_total counter",
    ]

    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'relaydesk_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP relaydesk_http_request_duration_seconds Request duration summary.",
            "# TYPE relaydesk_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'relaydesk_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'relaydesk_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP relaydesk_jobs_total Queue jobs by final outcome.",
            "# TYPE relaydesk_jobs_total counter",
        ]
    )
    for (queue, outcome), value in sorted(jobs_total.items()):
        lines.append(
            f'relaydesk_jobs_total{{queue="{_escape_label(queue)}",outcome="{_escape_label(outcome)}"}} {value}'
        )

    lines.extend(
        [
            "# HELP relaydesk_job_skips_total Jobs that exited early, by reason.",
            "# TYPE relaydesk_job_skips_total counter",
        ]
    )
    for (queue, reason), value in sorted(job_skips_total.items()):
        lines.append(
            f'relaydesk_job_skips_total{{queue="{_escape_label(queue)}",reason="{_escape_label(reason)}"}} {value}'
        )

    lines.extend(
        [
            "# HELP relaydesk_ai_replies_total AI replies persisted.",
            "# TYPE relaydesk_ai_replies_total counter",
        ]
    )
    for workspace_id, value in sorted(ai_replies_total.items()):
        lines.append(f'relaydesk_ai_replies_total{{workspace_id="{_escape_label(workspace_id)}"}} {value}')

    lines.extend(
        [
            "# HELP relaydesk_delivery_failures_total Outbound delivery failures.",
            "# TYPE relaydesk_delivery_failures_total counter",
        ]
    )
    for (workspace_id, source), value in sorted(delivery_failures_total.items()):
        lines.append(
            (
                f'relaydesk_delivery_failures_total{{workspace_id="{_escape_label(workspace_id)}",'
                f'source="{_escape_label(source)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP relaydesk_followups_sent_total Inactivity follow-ups delivered.",
            "# TYPE relaydesk_followups_sent_total counter",
        ]
    )
    for workspace_id, value in sorted(followups_sent_total.items()):
        lines.append(f'relaydesk_followups_sent_total{{workspace_id="{_escape_label(workspace_id)}"}} {value}')

    lines.extend(
        [
            "# HELP relaydesk_broker_calls_total Broker subscribe/unsubscribe calls.",
            "# TYPE relaydesk_broker_calls_total counter",
        ]
    )
    for action, value in sorted(broker_calls_total.items()):
        lines.append(f'relaydesk_broker_calls_total{{action="{_escape_label(action)}"}} {value}')

    lines.extend(
        [
            "# HELP relaydesk_sink_write_failures_total Failed writes to live connections.",
            "# TYPE relaydesk_sink_write_failures_total counter",
        ]
    )
    for kind, value in sorted(sink_write_failures_total.items()):
        lines.append(f'relaydesk_sink_write_failures_total{{channel_kind="{_escape_label(kind)}"}} {value}')

    lines.extend(
        [
            "# HELP relaydesk_realtime_active_channels Broker channels with live sinks.",
            "# TYPE relaydesk_realtime_active_channels gauge",
            f"relaydesk_realtime_active_channels {active_channels}",
        ]
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at, _active_channels
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _jobs_total.clear()
        _job_skips_total.clear()
        _ai_replies_total.clear()
        _delivery_failures_total.clear()
        _followups_sent_total.clear()
        _broker_calls_total.clear()
        _sink_write_failures_total.clear()
        _active_channels = 0
    _started_at = time.time()
