"""HTTP surface: health and metrics endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from eventid.app import create_app
from eventid.observability.metrics import EVENTS_CONSUMED


@pytest.fixture
def client(metrics):
    app = create_app(metrics=metrics, start_pipeline=False)
    with TestClient(app) as client:
        yield client


class TestEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_prometheus_metrics(self, client, metrics):
        metrics._sync_inc(EVENTS_CONSUMED, 3)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "regulatory_events_consumed_total 3" in response.text

    def test_json_metrics(self, client, metrics):
        metrics._sync_inc_labeled("event_consumer_errors_total", "malformed_envelope")
        body = client.get("/metrics/json").json()
        assert body["labeled_counters"]["event_consumer_errors_total"] == {"malformed_envelope": 1}
        assert set(body["histograms"]) == {"handler_latency_ms", "action_latency_ms"}
