from __future__ import annotations

from app.settlements.model import RecordStatus, SettlementKind
from services.metrics import MetricsRegistry
from tests.factories import ALLOCATION_INPUTS, minutes_ago


def test_render_prometheus_text():
    registry = MetricsRegistry()
    registry.increment_settlement_attempt("ALLOCATION", "success")
    registry.increment_settlement_attempt("ALLOCATION", "success")
    registry.increment_sweep_run("ok")

    text = registry.render_prometheus()

    assert "# TYPE settlement_attempts_total counter" in text
    assert 'settlement_attempts_total{kind="ALLOCATION",result="success"} 2' in text
    assert 'settlement_sweeps_total{outcome="ok"} 1' in text


def test_empty_registry_renders_nothing():
    assert MetricsRegistry().render_prometheus() == ""


def test_metrics_endpoint_reflects_sweep(client, seed):
    seed(SettlementKind.ALLOCATION, "TX-1", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS)
    seed(SettlementKind.DISBURSEMENT, "JOB-1", RecordStatus.IN_PROGRESS, last_attempt_at=minutes_ago(30))

    assert client.get("/v1/cron/settlement-sweep").status_code == 200

    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'settlement_attempts_total{kind="ALLOCATION",result="success"} 1' in r.text
    assert 'settlement_stale_resets_total{kind="DISBURSEMENT"} 1' in r.text
    assert 'http_requests_total{route="/v1/cron/settlement-sweep",status="200"} 1' in r.text
