"""Pipeline metrics tests.

These tests run entirely in-process (no DB, no broker).
They verify:
  1. Counter increment semantics (plain + labeled)
  2. Latency histogram recording, bucket placement, and percentile estimates
  3. Semantic helper methods used by the ingestor and workflow engine
  4. Snapshot structure and Prometheus exposition
"""

from __future__ import annotations

import asyncio
import time

import pytest

from eventid.observability.metrics import (
    ACTION_LATENCY,
    CONSUMER_ERRORS,
    EVENTS_CONSUMED,
    EVENTS_DEAD_LETTERED,
    HANDLER_LATENCY,
    WORKFLOW_ACTIONS,
    WORKFLOWS,
    Histogram,
    MetricsCollector,
    _LATENCY_BUCKETS_MS,
)


@pytest.fixture()
def mc() -> MetricsCollector:
    return MetricsCollector()


# ---------------------------------------------------------------------------
# Histogram unit tests
# ---------------------------------------------------------------------------


class TestHistogram:
    def test_bucket_placement(self):
        h = Histogram("test")
        h.record(5)
        assert h.counts[0] == 1
        h.record(1000)
        assert h.counts[list(_LATENCY_BUCKETS_MS).index(1000)] == 1

    def test_above_max_bucket_goes_to_inf(self):
        h = Histogram("test")
        h.record(1_000_000)
        assert h.counts[_LATENCY_BUCKETS_MS.index(float("inf"))] == 1

    def test_mean_and_empty_percentile(self):
        h = Histogram("test")
        assert h.percentile(95) == 0.0
        h.record(100)
        h.record(200)
        assert abs(h.mean_ms - 150.0) < 0.01

    def test_p95_across_many_samples(self):
        h = Histogram("test")
        for i in range(1, 101):
            h.record(float(i))
        assert 80 <= h.percentile(95) <= 100

    def test_reset_zeroes_all(self):
        h = Histogram("test")
        h.record(100)
        h.reset()
        assert h.count == 0
        assert all(b == 0 for b in h.counts)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


class TestCounters:
    async def test_inc_plain_and_labeled(self, mc):
        await mc.inc("foo")
        await mc.inc("foo")
        await mc.inc_labeled("errors", "transient_storage")
        snap = await mc.snapshot()
        assert snap["counters"]["foo"] == 2
        assert snap["labeled_counters"]["errors"]["transient_storage"] == 1

    def test_counter_accessor_defaults_to_zero(self, mc):
        assert mc.counter("never_touched") == 0
        assert mc.counter(CONSUMER_ERRORS, "malformed_envelope") == 0

    async def test_reset_clears_counters(self, mc):
        await mc.inc("x")
        mc.reset_all()
        assert mc.counter("x") == 0

    async def test_concurrent_increments(self, mc):
        await asyncio.gather(*[mc.inc("concurrent") for _ in range(100)])
        assert mc.counter("concurrent") == 100


# ---------------------------------------------------------------------------
# Semantic helpers
# ---------------------------------------------------------------------------


class TestSemanticHelpers:
    async def test_ingest_helpers(self, mc):
        await mc.event_consumed()
        await mc.event_consumed()
        await mc.dead_lettered()
        await mc.error("malformed_envelope")
        assert mc.counter(EVENTS_CONSUMED) == 2
        assert mc.counter(EVENTS_DEAD_LETTERED) == 1
        assert mc.counter(CONSUMER_ERRORS, "malformed_envelope") == 1

    async def test_workflow_helpers(self, mc):
        await mc.workflow_finished("completed")
        await mc.action_finished("retried_succeeded", 120.0)
        snap = mc.snapshot_sync()
        assert snap["labeled_counters"][WORKFLOWS]["completed"] == 1
        assert snap["labeled_counters"][WORKFLOW_ACTIONS]["retried_succeeded"] == 1
        assert snap["histograms"][ACTION_LATENCY]["count"] == 1

    async def test_timer_records(self, mc):
        async with mc.timer(HANDLER_LATENCY):
            await asyncio.sleep(0.01)
        assert mc.snapshot_sync()["histograms"][HANDLER_LATENCY]["max_ms"] >= 10

    async def test_unknown_histogram_ignored(self, mc):
        await mc.record("nonexistent_histogram", 100)
        assert "nonexistent_histogram" not in mc.snapshot_sync()["histograms"]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    def test_snapshot_shape(self, mc):
        snap = mc.snapshot_sync()
        assert set(snap) == {"uptime_seconds", "counters", "labeled_counters", "histograms"}
        assert set(snap["histograms"]) == {HANDLER_LATENCY, ACTION_LATENCY}

    def test_uptime_increases(self, mc):
        first = mc.snapshot_sync()["uptime_seconds"]
        time.sleep(0.05)
        assert mc.snapshot_sync()["uptime_seconds"] >= first

    async def test_prometheus_text(self, mc):
        await mc.event_consumed()
        await mc.error("transient_storage")
        await mc.record(HANDLER_LATENCY, 42.0)
        text = await mc.render_prometheus()

        assert "# TYPE regulatory_events_consumed_total counter" in text
        assert "regulatory_events_consumed_total 1" in text
        assert "regulatory_events_stored_total 0" in text
        assert 'event_consumer_errors_total{error_type="transient_storage"} 1' in text
        assert "# TYPE handler_latency_ms histogram" in text
        assert 'handler_latency_ms_bucket{le="50"} 1' in text
        assert 'handler_latency_ms_bucket{le="+Inf"} 1' in text
        assert "handler_latency_ms_count 1" in text
        assert text.endswith("\n")

    async def test_prometheus_escapes_labels(self, mc):
        await mc.error('weird"kind')
        assert 'error_type="weird\\"kind"' in await mc.render_prometheus()
