"""EventID pipeline metrics.

In-process metrics collector tracking:
  - Ingest counters (events consumed, stored, duplicates, dead-lettered)
  - Errors by kind (transient_storage, malformed_envelope, ...)
  - Workflow runs by terminal status and action outcomes
  - Latency histograms for handler and action execution

There is deliberately no module-level instance: the service entry point
constructs one MetricsCollector and injects it into the ingestor, store and
workflow engine, so each test gets fresh state.

Snapshots are exported as plain dicts (``/metrics/json``) and in Prometheus
text exposition format (``/metrics``).

Thread-safety: counters/histograms use an asyncio.Lock so they are safe from
concurrent coroutines. Sync contexts can call the _sync_* helpers directly.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


# ---------------------------------------------------------------------------
# Metric names
# ---------------------------------------------------------------------------

EVENTS_CONSUMED = "regulatory_events_consumed_total"
EVENTS_STORED = "regulatory_events_stored_total"
EVENTS_DUPLICATE = "regulatory_events_duplicate_total"
EVENTS_DEAD_LETTERED = "events_dead_lettered_total"
EVENTS_RETRIED = "event_handler_retries_total"
CONSUMER_ERRORS = "event_consumer_errors_total"
WORKFLOWS = "workflows_total"
WORKFLOW_ACTIONS = "workflow_actions_total"
EVENTS_EMITTED = "workflow_events_emitted_total"

HANDLER_LATENCY = "handler_latency_ms"
ACTION_LATENCY = "action_latency_ms"

# Prometheus label name for each labeled counter.
_LABEL_NAMES: dict[str, str] = {
    CONSUMER_ERRORS: "error_type",
    WORKFLOWS: "status",
    WORKFLOW_ACTIONS: "outcome",
}

_HELP: dict[str, str] = {
    EVENTS_CONSUMED: "Total number of events consumed from the broker",
    EVENTS_STORED: "Total number of events stored in database",
    EVENTS_DUPLICATE: "Redelivered events already present in the audit log",
    EVENTS_DEAD_LETTERED: "Messages dead-lettered after exhausting retries",
    EVENTS_RETRIED: "Handler retries after a failure",
    CONSUMER_ERRORS: "Total number of consumer errors",
    WORKFLOWS: "Workflow runs by terminal status",
    WORKFLOW_ACTIONS: "Workflow actions by outcome",
    EVENTS_EMITTED: "Follow-up events published by workflows",
}


# ---------------------------------------------------------------------------
# Histogram implementation
# ---------------------------------------------------------------------------

# Upper bounds in milliseconds; the last bucket catches everything.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    5, 10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000,
    10_000, 30_000, 60_000, math.inf,
)


def _le(bound: float) -> str:
    return "+Inf" if math.isinf(bound) else f"{bound:g}"


@dataclass
class Histogram:
    """Latency histogram over fixed buckets, with running sum / min / max."""

    name: str
    bounds: tuple[float, ...] = _LATENCY_BUCKETS_MS
    counts: list[int] = field(init=False)
    total_ms: float = field(default=0.0, init=False)
    low_ms: float = field(default=math.inf, init=False)
    high_ms: float = field(default=0.0, init=False)

    def __post_init__(self) -> None:
        self.counts = [0] * len(self.bounds)

    def record(self, value_ms: float) -> None:
        self.counts[bisect.bisect_left(self.bounds, value_ms)] += 1
        self.total_ms += value_ms
        self.low_ms = min(self.low_ms, value_ms)
        self.high_ms = max(self.high_ms, value_ms)

    @property
    def count(self) -> int:
        return sum(self.counts)

    @property
    def mean_ms(self) -> float:
        n = self.count
        return self.total_ms / n if n else 0.0

    def cumulative(self) -> list[int]:
        return list(itertools.accumulate(self.counts))

    def percentile(self, p: float) -> float:
        """Interpolate linearly inside the bucket holding the p-th sample."""
        n = self.count
        if n == 0:
            return 0.0
        rank = math.ceil(p / 100 * n)
        below = 0
        lower = 0.0
        for bound, in_bucket in zip(self.bounds, self.counts):
            if below + in_bucket >= rank:
                upper = self.high_ms if math.isinf(bound) else bound
                return lower + (rank - below) / in_bucket * (upper - lower)
            below += in_bucket
            lower = bound
        return self.high_ms

    def to_dict(self) -> dict[str, Any]:
        n = self.count
        return {
            "count": n,
            "sum_ms": round(self.total_ms, 2),
            "min_ms": round(self.low_ms, 2) if n else 0,
            "max_ms": round(self.high_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
            "p99_ms": round(self.percentile(99), 2),
            "buckets": {_le(b): c for b, c in zip(self.bounds, self.counts)},
        }

    def reset(self) -> None:
        self.__post_init__()
        self.total_ms = 0.0
        self.low_ms = math.inf
        self.high_ms = 0.0


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class MetricsCollector:
    """Metrics registry for one running pipeline.

    Counters:
        regulatory_events_consumed_total          Every message decoded off the broker
        regulatory_events_stored_total            New rows written to the audit log
        regulatory_events_duplicate_total         Redeliveries absorbed by idempotent writes
        event_consumer_errors_total[error_type]   Failures by error kind
        events_dead_lettered_total                Messages given up on
        event_handler_retries_total               Handler retry attempts
        workflows_total[status]                   Terminal workflow runs
        workflow_actions_total[outcome]           Action outcomes
        workflow_events_emitted_total             Follow-up events published

    Histograms (milliseconds):
        handler_latency_ms                        Full handling of one message
        action_latency_ms                         One action including retries
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

        self._counters: dict[str, int] = defaultdict(int)
        self._labeled_counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

        self._histograms: dict[str, Histogram] = {
            HANDLER_LATENCY: Histogram(HANDLER_LATENCY),
            ACTION_LATENCY: Histogram(ACTION_LATENCY),
        }

        self._started_at: float = time.monotonic()

    # ------------------------------------------------------------------
    # Async increment / record (safe for concurrent coroutines)
    # ------------------------------------------------------------------

    async def inc(self, name: str, value: int = 1) -> None:
        """Increment a plain counter."""
        async with self._lock:
            self._counters[name] += value

    async def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        """Increment a labeled counter (e.g. event_consumer_errors_total[storage])."""
        async with self._lock:
            self._labeled_counters[name][label] += value

    async def record(self, histogram: str, value_ms: float) -> None:
        """Record a latency value in milliseconds."""
        async with self._lock:
            if histogram in self._histograms:
                self._histograms[histogram].record(value_ms)

    # ------------------------------------------------------------------
    # Sync variants
    # ------------------------------------------------------------------

    def _sync_inc(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def _sync_inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        self._labeled_counters[name][label] += value

    def _sync_record(self, histogram: str, value_ms: float) -> None:
        if histogram in self._histograms:
            self._histograms[histogram].record(value_ms)

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        """Async context manager that auto-records elapsed ms."""
        t0 = time.monotonic()
        try:
            yield
        finally:
            elapsed_ms = (time.monotonic() - t0) * 1000
            await self.record(histogram, elapsed_ms)

    # ------------------------------------------------------------------
    # Named semantic helpers used by the pipeline
    # ------------------------------------------------------------------

    async def event_consumed(self) -> None:
        await self.inc(EVENTS_CONSUMED)

    async def event_stored(self) -> None:
        await self.inc(EVENTS_STORED)

    async def event_duplicate(self) -> None:
        await self.inc(EVENTS_DUPLICATE)

    async def error(self, error_type: str) -> None:
        """Record a classified pipeline error (see eventid.errors)."""
        await self.inc_labeled(CONSUMER_ERRORS, error_type)

    async def handler_retried(self) -> None:
        await self.inc(EVENTS_RETRIED)

    async def dead_lettered(self) -> None:
        await self.inc(EVENTS_DEAD_LETTERED)

    async def workflow_finished(self, status: str) -> None:
        await self.inc_labeled(WORKFLOWS, status)

    async def action_finished(self, outcome: str, elapsed_ms: float) -> None:
        await self.inc_labeled(WORKFLOW_ACTIONS, outcome)
        await self.record(ACTION_LATENCY, elapsed_ms)

    async def event_emitted(self) -> None:
        await self.inc(EVENTS_EMITTED)

    # ------------------------------------------------------------------
    # Snapshot / export
    # ------------------------------------------------------------------

    async def snapshot(self) -> dict[str, Any]:
        """Return a complete metrics snapshot (safe, lock-protected copy)."""
        async with self._lock:
            return self._build_snapshot()

    def snapshot_sync(self) -> dict[str, Any]:
        return self._build_snapshot()

    def counter(self, name: str, label: str | None = None) -> int:
        """Current value of a counter; convenient in tests and health checks."""
        if label is None:
            return self._counters.get(name, 0)
        return self._labeled_counters.get(name, {}).get(label, 0)

    def _build_snapshot(self) -> dict[str, Any]:
        uptime_s = round(time.monotonic() - self._started_at, 1)
        return {
            "uptime_seconds": uptime_s,
            "counters": dict(self._counters),
            "labeled_counters": {k: dict(v) for k, v in self._labeled_counters.items()},
            "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
        }

    async def render_prometheus(self) -> str:
        """Render the current state in Prometheus text exposition format."""
        async with self._lock:
            lines: list[str] = []
            for name in sorted(set(self._counters) | set(_HELP) - set(_LABEL_NAMES)):
                lines.extend(_counter_header(name))
                lines.append(f"{name} {self._counters.get(name, 0)}")
            for name, label_name in _LABEL_NAMES.items():
                lines.extend(_counter_header(name))
                for label, value in sorted(self._labeled_counters.get(name, {}).items()):
                    lines.append(f'{name}{{{label_name}="{_escape(label)}"}} {value}')
            for name, hist in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for bound, running in zip(hist.bounds, hist.cumulative()):
                    lines.append(f'{name}_bucket{{le="{_le(bound)}"}} {running}')
                lines.append(f"{name}_sum {round(hist.total_ms, 3)}")
                lines.append(f"{name}_count {hist.count}")
            return "\n".join(lines) + "\n"

    def reset_all(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        for v in self._labeled_counters.values():
            v.clear()
        for h in self._histograms.values():
            h.reset()


def _counter_header(name: str) -> list[str]:
    header = [f"# TYPE {name} counter"]
    if name in _HELP:
        header.insert(0, f"# HELP {name} {_HELP[name]}")
    return header


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
