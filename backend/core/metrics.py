"""Prometheus-style metrics for the orchestration engine.

Provides:
- Task metrics (count by type/status, duration, active workers)
- Workflow metrics (count by type/status)
- Engine uptime

Metrics live in process memory and are rendered as Prometheus text
exposition by ``render_metrics()``; a transport layer can serve that
string from any scrape endpoint.
"""

import threading
import time
from collections import defaultdict
from typing import Optional

# ---------------------------------------------------------------------------
# In-process metric store
# ---------------------------------------------------------------------------

_lock = threading.Lock()

_counters: dict[str, float] = defaultdict(float)
_gauges: dict[str, float] = defaultdict(float)
_histograms: dict[str, list[float]] = defaultdict(list)
_start_time = time.time()

TASKS_TOTAL = "agentflow_tasks_total"
TASK_DURATION_MS = "agentflow_task_duration_ms"
TASKS_ACTIVE = "agentflow_tasks_active"
WORKFLOWS_TOTAL = "agentflow_workflows_total"

_MAX_OBSERVATIONS = 10_000


def _label_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


def inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _counters[key] += value


def gauge_inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        _gauges[key] += value


def gauge_dec(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    gauge_inc(name, -value, labels)


def observe(name: str, value: float, labels: Optional[dict] = None) -> None:
    key = _label_key(name, labels)
    with _lock:
        samples = _histograms[key]
        samples.append(value)
        if len(samples) > _MAX_OBSERVATIONS:
            _histograms[key] = samples[-_MAX_OBSERVATIONS // 2:]


# ---------------------------------------------------------------------------
# Engine-level helpers
# ---------------------------------------------------------------------------

def record_task_started(task_type: str) -> None:
    gauge_inc(TASKS_ACTIVE, labels={"type": task_type})


def record_task_finished(task_type: str, status: str, duration_ms: Optional[int] = None) -> None:
    """Account for a task leaving a worker, whatever the outcome."""
    gauge_dec(TASKS_ACTIVE, labels={"type": task_type})
    inc(TASKS_TOTAL, labels={"type": task_type, "status": status})
    if duration_ms is not None:
        observe(TASK_DURATION_MS, float(duration_ms), labels={"type": task_type})


def record_workflow(workflow_type: str, status: str) -> None:
    inc(WORKFLOWS_TOTAL, labels={"type": workflow_type, "status": status})


def snapshot() -> dict[str, dict]:
    """Copy of current values, keyed by labelled metric name."""
    with _lock:
        return {
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "histograms": {k: list(v) for k, v in _histograms.items()},
        }


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()


# ---------------------------------------------------------------------------
# Exposition format
# ---------------------------------------------------------------------------

def _render_family(lines: list[str], items: dict, metric_type: str) -> None:
    seen: set[str] = set()
    for key, val in sorted(items.items()):
        base_name = key.split("{")[0]
        if base_name not in seen:
            lines.append(f"# TYPE {base_name} {metric_type}")
            seen.add(base_name)
        if metric_type == "summary":
            if val:
                labels = key[len(base_name):]
                lines.append(f"{base_name}_count{labels} {len(val)}")
                lines.append(f"{base_name}_sum{labels} {sum(val):.4f}")
        else:
            lines.append(f"{key} {val}")
    lines.append("")


def render_metrics() -> str:
    """Render every metric in Prometheus text exposition format."""
    lines: list[str] = [
        "# HELP agentflow_uptime_seconds Time since engine start.",
        "# TYPE agentflow_uptime_seconds gauge",
        f"agentflow_uptime_seconds {time.time() - _start_time:.1f}",
        "",
    ]

    with _lock:
        if _counters:
            _render_family(lines, _counters, "counter")
        if _gauges:
            _render_family(lines, _gauges, "gauge")
        # Histograms are exported as sum and count only
        if _histograms:
            _render_family(lines, _histograms, "summary")

    return "\n".join(lines) + "\n"
