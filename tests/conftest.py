# tests/conftest.py

import os

# before settings/main are imported: never validate as staging/prod, never hit a real DB
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = ""

from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from app.providers.mock import MockSettlementClient
from app.settlements.engine import build_engine
from app.settlements.model import ReconciliationRecord, RecordStatus, SettlementKind
from app.settlements.errors import SupervisorUnavailable
from app.settlements.store import InMemorySettlementStore
from main import create_app
from services.metrics import MetricsRegistry
from settings import settings
from tests.factories import FakeSupervisor


# ---------------------------
# Settings isolation
# ---------------------------

@pytest.fixture(autouse=True)
def _default_settings(monkeypatch):
    monkeypatch.setattr(settings, "SWEEP_SECRET", "", raising=False)
    monkeypatch.setattr(settings, "OPERATOR_API_KEY", "", raising=False)
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False, raising=False)
    monkeypatch.setattr(settings, "STALE_CLAIM_MINUTES", 20, raising=False)
    monkeypatch.setattr(settings, "SWEEP_DEFAULT_LIMIT", 20, raising=False)
    monkeypatch.delenv("RATE_LIMIT_ENABLED", raising=False)
    monkeypatch.delenv("RATE_LIMIT_OPERATOR_PER_MIN", raising=False)


# ---------------------------
# Engine fixtures
# ---------------------------

@pytest.fixture
def store() -> InMemorySettlementStore:
    return InMemorySettlementStore()


@pytest.fixture
def allocation_client() -> MockSettlementClient:
    return MockSettlementClient()


@pytest.fixture
def disbursement_client() -> MockSettlementClient:
    return MockSettlementClient()


@pytest.fixture
def clients(allocation_client, disbursement_client):
    return {
        SettlementKind.ALLOCATION: allocation_client,
        SettlementKind.DISBURSEMENT: disbursement_client,
    }


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def engine(store, clients, supervisor):
    return build_engine(
        store=store,
        clients=clients,
        supervisor=supervisor,
        metrics=MetricsRegistry(),
        stale_minutes=20,
        max_workers=1,
    )


@pytest.fixture
def client(engine) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(create_app(engine), raise_server_exceptions=False)


@pytest.fixture
def seed(store):
    """
    seed(kind, ref, status=..., inputs=..., payload=..., attempts=..., **fields) -> record
    """

    def _seed(
        kind: SettlementKind,
        ref: str,
        status: RecordStatus = RecordStatus.PENDING,
        *,
        inputs: Optional[dict[str, Any]] = None,
        payload: Optional[dict[str, Any]] = None,
        attempts: int = 0,
        max_attempts: int = 3,
        **fields: Any,
    ) -> ReconciliationRecord:
        record = ReconciliationRecord(
            id=ref,
            kind=kind,
            status=status,
            required_inputs=dict(inputs or {}),
            raw_payload=dict(payload or {}),
            attempt_count=attempts,
            max_attempts=max_attempts,
            **fields,
        )
        return store.put(record)

    return _seed


@pytest.fixture
def unavailable_supervisor() -> FakeSupervisor:
    return FakeSupervisor(error=SupervisorUnavailable("PM2 is not installed"))
