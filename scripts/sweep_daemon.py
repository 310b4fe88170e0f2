# scripts/sweep_daemon.py
from __future__ import annotations

import logging
import os
import time

from app.settlements.engine import build_engine
from settings import settings


logger = logging.getLogger("reconciler.sweep_daemon")


def _interval_seconds() -> int:
    raw = os.getenv("SWEEP_INTERVAL_SECONDS", "300")
    try:
        value = int(raw)
    except ValueError:
        return 300
    return max(1, value)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    interval = _interval_seconds()
    engine = build_engine()
    logger.info("Sweep daemon starting; interval=%ss limit=%s", interval, settings.SWEEP_DEFAULT_LIMIT)

    while True:
        try:
            summary = engine.sweep.run(limit=settings.SWEEP_DEFAULT_LIMIT)
        except KeyboardInterrupt:
            logger.info("Sweep daemon exiting")
            raise
        except Exception:
            # one bad pass (store blip) must not kill the schedule
            logger.exception("Sweep pass failed")
        else:
            logger.info(
                "Sweep pass | processed=%s settled=%s awaiting_tx_hash=%s awaiting_amount=%s failed=%s stale_reset=%s",
                summary.processed,
                summary.allocated_or_settled,
                summary.awaiting_tx_hash,
                summary.awaiting_amount,
                summary.failed,
                summary.stale_reset,
            )
        time.sleep(interval)


if __name__ == "__main__":
    main()
