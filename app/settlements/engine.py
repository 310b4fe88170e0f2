# app/settlements/engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from app.providers.base import SettlementClient
from app.settlements.gateway import ManualRetryGateway
from app.settlements.invoker import SettlementInvoker
from app.settlements.reaper import StaleClaimReaper
from app.settlements.store import InMemorySettlementStore, SettlementStore
from app.settlements.sweep import ReconciliationSweep
from app.settlements.model import SettlementKind
from app.workers.supervisor import Pm2Supervisor, ProcessSupervisor
from services.metrics import MetricsRegistry
from settings import settings

logger = logging.getLogger("reconciler.engine")


@dataclass
class Engine:
    store: SettlementStore
    clients: dict[SettlementKind, SettlementClient]
    metrics: MetricsRegistry
    invoker: SettlementInvoker
    reaper: StaleClaimReaper
    sweep: ReconciliationSweep
    gateway: ManualRetryGateway

    def sweep_with(self, stale_minutes: int) -> ReconciliationSweep:
        """Same sweep, different stale threshold (per-request staleMinutes)."""
        if stale_minutes == self.reaper.stale_minutes:
            return self.sweep
        reaper = StaleClaimReaper(self.store, stale_minutes=stale_minutes, metrics=self.metrics)
        return ReconciliationSweep(
            self.store,
            self.invoker,
            reaper,
            max_workers=self.sweep.max_workers,
            metrics=self.metrics,
        )


def default_store() -> SettlementStore:
    if (settings.DATABASE_URL or "").strip():
        from app.settlements.repository import PostgresSettlementStore

        return PostgresSettlementStore(default_max_attempts=settings.SETTLEMENT_MAX_ATTEMPTS)
    logger.warning("DATABASE_URL not set; using in-memory settlement store")
    return InMemorySettlementStore(default_max_attempts=settings.SETTLEMENT_MAX_ATTEMPTS)


def build_engine(
    *,
    store: Optional[SettlementStore] = None,
    clients: Optional[Mapping[SettlementKind, SettlementClient]] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    metrics: Optional[MetricsRegistry] = None,
    stale_minutes: Optional[int] = None,
    max_workers: Optional[int] = None,
) -> Engine:
    store = store if store is not None else default_store()
    metrics = metrics if metrics is not None else MetricsRegistry()
    if clients is None:
        from app.providers.factory import build_clients

        clients = build_clients()
    if supervisor is None:
        supervisor = Pm2Supervisor(settings.WORKER_PROCESS_NAME, ecosystem_file=settings.WORKER_ECOSYSTEM_FILE)

    invoker = SettlementInvoker(store, clients, metrics=metrics)
    reaper = StaleClaimReaper(
        store,
        stale_minutes=stale_minutes or settings.STALE_CLAIM_MINUTES,
        metrics=metrics,
    )
    sweep = ReconciliationSweep(
        store,
        invoker,
        reaper,
        max_workers=max_workers or settings.SWEEP_MAX_WORKERS,
        metrics=metrics,
    )
    gateway = ManualRetryGateway(store, supervisor=supervisor, metrics=metrics)
    return Engine(
        store=store,
        clients=dict(clients),
        metrics=metrics,
        invoker=invoker,
        reaper=reaper,
        sweep=sweep,
        gateway=gateway,
    )
