"""In-memory metrics for agent runs.

Collects per-tool latency/status, per-model-call retry counts and per-run
summaries so tests and operators can assert tool-call counts, success rate
and latency bounds without an external metrics backend.
"""

from __future__ import annotations

import math
import threading
from collections import OrderedDict, defaultdict
from typing import Any

# Per-run summaries kept; the oldest are evicted first.
MAX_RUNS = 1000


def _percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    ordered = sorted(values)
    pos = (len(ordered) - 1) * p
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return ordered[lo]
    frac = pos - lo
    return ordered[lo] * (1 - frac) + ordered[hi] * frac


class MetricsCollector:
    """Thread-safe in-memory metrics collector."""

    def __init__(self, max_runs: int = MAX_RUNS) -> None:
        self._max_runs = max_runs
        self._lock = threading.RLock()
        self._tool_latencies: dict[str, list[float]] = defaultdict(list)
        self._tool_status: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._model_calls: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._runs: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def _run(self, run_id: str, conversation_id: str = "") -> dict[str, Any]:
        run = self._runs.get(run_id)
        if run is not None:
            self._runs.move_to_end(run_id)
            return run
        run = self._runs[run_id] = {
            "run_id": run_id,
            "conversation_id": conversation_id,
            "tool_call_count": 0,
            "tool_error_count": 0,
            "tool_latency_ms": 0.0,
            "model_retries": 0,
        }
        while len(self._runs) > self._max_runs:
            self._runs.popitem(last=False)
        return run

    def record_tool_call(
        self,
        *,
        tool_name: str,
        status: str,
        latency_ms: float,
        run_id: str = "",
        conversation_id: str = "",
    ) -> None:
        with self._lock:
            self._tool_latencies[tool_name].append(float(latency_ms))
            self._tool_status[tool_name][status] += 1

            if run_id:
                run = self._run(run_id, conversation_id)
                run["tool_call_count"] += 1
                if status != "ok":
                    run["tool_error_count"] += 1
                run["tool_latency_ms"] += float(latency_ms)

    def record_model_call(
        self,
        *,
        model_name: str,
        status: str,
        retries: int = 0,
        run_id: str = "",
    ) -> None:
        with self._lock:
            stats = self._model_calls[model_name]
            stats[status] += 1
            stats["retries"] += retries
            if run_id and retries:
                self._run(run_id)["model_retries"] += retries

    def record_run(
        self,
        *,
        run_id: str,
        status: str,
        steps: int,
        latency_ms: float,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        conversation_id: str = "",
    ) -> None:
        with self._lock:
            run = self._run(run_id, conversation_id)
            run.update(
                status=status,
                steps=steps,
                latency_ms=round(float(latency_ms), 2),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

    def get_run_summary(self, run_id: str) -> dict:
        with self._lock:
            return dict(self._runs.get(run_id, {}))

    def snapshot(self) -> dict:
        with self._lock:
            tool_metrics = {}
            for tool, latencies in self._tool_latencies.items():
                status_map = self._tool_status.get(tool, {})
                total = sum(status_map.values())
                ok_count = status_map.get("ok", 0)
                tool_metrics[tool] = {
                    "count": total,
                    "success_rate": (ok_count / total) if total else 0.0,
                    "latency_p50_ms": round(_percentile(latencies, 0.5), 2),
                    "latency_p95_ms": round(_percentile(latencies, 0.95), 2),
                    "status_breakdown": dict(status_map),
                }

            return {
                "tools": tool_metrics,
                "models": {name: dict(stats) for name, stats in self._model_calls.items()},
                "runs": list(self._runs.values()),
            }

    def reset(self) -> None:
        with self._lock:
            self._tool_latencies.clear()
            self._tool_status.clear()
            self._model_calls.clear()
            self._runs.clear()


_metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics_collector
