"""Tests for the HTTP surface of the rollout controller."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from apps.rollout.app import create_app
from apps.rollout.models.rollout_models import RollingState
from tests.helpers.builders import KEY


@pytest.fixture
def client(settings, controller):
    app = create_app(settings, controller=controller, start_driver=False)
    with TestClient(app) as test_client:
        yield test_client


class TestHealthAndMetrics:
    def test_healthz(self, client) -> None:
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "rollout-controller"}

    def test_metrics_exposes_controller_counters(self, client) -> None:
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "rollout_reconcile_total" in resp.text


class TestRollouts:
    def test_list(self, client, apply_rollout) -> None:
        assert client.get("/v1/rollouts").json() == []
        apply_rollout()
        assert client.get("/v1/rollouts").json() == [str(KEY)]

    def test_get_unknown_is_404(self, client) -> None:
        resp = client.get("/v1/rollouts/default/missing")
        assert resp.status_code == 404

    def test_get_status(self, client, apply_rollout) -> None:
        apply_rollout()
        resp = client.get(f"/v1/rollouts/{KEY.namespace}/{KEY.name}")
        assert resp.status_code == 200

        body = resp.json()
        assert body["namespace"] == KEY.namespace
        assert body["name"] == KEY.name
        assert body["target_revision"] == "app-v2"
        assert body["source_revision"] == "app-v1"
        assert body["status"]["rollingState"] == RollingState.INITIAL.value

    def test_reconcile_queues_key(self, client, apply_rollout) -> None:
        apply_rollout()
        first = client.post(f"/v1/rollouts/{KEY.namespace}/{KEY.name}/reconcile")
        second = client.post(f"/v1/rollouts/{KEY.namespace}/{KEY.name}/reconcile")

        assert first.status_code == 200
        assert first.json()["queued"] is True
        assert first.json()["key"] == str(KEY)
        assert second.json()["queued"] is False
        assert first.json()["result"] is None

    def test_reconcile_wait_runs_inline(self, client, apply_rollout, store) -> None:
        apply_rollout()
        resp = client.post(
            f"/v1/rollouts/{KEY.namespace}/{KEY.name}/reconcile", params={"wait": "true"}
        )
        assert resp.status_code == 200

        body = resp.json()
        assert body["queued"] is False
        assert "claim" in body["result"]["actions"]
        assert store.get(KEY).status.rolling_state == RollingState.ROLLING_IN_BATCHES

    def test_reconcile_wait_unknown_is_404(self, client) -> None:
        resp = client.post("/v1/rollouts/default/missing/reconcile", params={"wait": "true"})
        assert resp.status_code == 404
