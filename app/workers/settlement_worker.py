# app/workers/settlement_worker.py
from __future__ import annotations

import logging
import time
from typing import Optional

from app.settlements.engine import Engine, build_engine
from app.settlements.model import SettlementKind
from app.settlements.recovery import resolve
from settings import settings

logger = logging.getLogger("reconciler.worker")


def process_once(engine: Engine, *, batch_size: int = 20) -> int:
    """
    Drain one batch of PENDING records (oldest first). Stale claims are reset
    first so a crashed predecessor's records are not stuck forever.

    Returns how many records changed state. A PENDING record that cannot move
    (e.g. a disbursement still missing its recipient) is not counted, so an idle
    loop over such records still sleeps.
    """
    reset = engine.reaper.sweep_stale(limit=batch_size)
    pending = engine.store.find_pending(kinds=tuple(SettlementKind), limit=batch_size)
    logger.info("worker_batch found_pending=%s stale_reset=%s", len(pending), reset)

    progressed = 0
    for record in pending:
        try:
            outcome = engine.invoker.invoke(record, force=False)
            if outcome.status != "SKIPPED":
                progressed += 1
            elif outcome.missing:
                awaiting = resolve(record.kind, record.required_inputs, record.raw_payload).awaiting_status()
                if awaiting is not None and engine.store.mark_awaiting(record.kind, record.id, awaiting):
                    progressed += 1
            logger.info(
                "worker_record kind=%s ref=%s outcome=%s reason=%s",
                record.kind.value,
                record.id,
                outcome.status,
                outcome.reason,
            )
        except Exception:
            logger.exception("worker_record_error kind=%s ref=%s", record.kind.value, record.id)
    return progressed


def run_forever(
    engine: Optional[Engine] = None,
    *,
    poll_seconds: int = 5,
    batch_size: int = 20,
    max_loops: Optional[int] = None,
) -> None:
    engine = engine or build_engine()
    logger.info("settlement worker started poll_seconds=%s batch_size=%s", poll_seconds, batch_size)
    loops = 0
    while max_loops is None or loops < max_loops:
        loops += 1
        try:
            n = process_once(engine, batch_size=batch_size)
        except Exception:
            # store outage; pm2 restarts us if this keeps failing hard
            logger.exception("worker_batch_failed")
            n = 0
        if n == 0:
            time.sleep(poll_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_forever(poll_seconds=settings.WORKER_POLL_SECONDS, batch_size=settings.WORKER_BATCH_SIZE)
