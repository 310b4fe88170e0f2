from __future__ import annotations

import argparse
import json
import logging

from app.settlements.engine import build_engine
from app.settlements.model import SettlementKind, parse_kind
from settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one settlement reconciliation sweep.")
    parser.add_argument("--limit", type=int, default=settings.SWEEP_DEFAULT_LIMIT)
    parser.add_argument("--stale-minutes", type=int, default=settings.STALE_CLAIM_MINUTES)
    parser.add_argument("--kind", choices=[k.value for k in SettlementKind], default=None)
    parser.add_argument("--reference", default=None, help="Only process this external reference")
    parser.add_argument("--debug", action="store_true", help="Print per-record traces")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    engine = build_engine(stale_minutes=args.stale_minutes)
    kind = parse_kind(args.kind)
    summary = engine.sweep.run(
        kinds=(kind,) if kind else tuple(SettlementKind),
        limit=max(1, args.limit),
        reference=args.reference,
        debug=args.debug,
    )
    body = summary.to_response(debug=args.debug)

    print(
        "counts:",
        f"processed={body['processed']}",
        f"allocatedOrSettled={body['allocatedOrSettled']}",
        f"awaitingTxHash={body['awaitingTxHash']}",
        f"awaitingAmount={body['awaitingAmount']}",
        f"awaitingOther={body['awaitingOther']}",
        f"failed={body['failed']}",
        f"skipped={body['skipped']}",
        f"staleReset={body['staleReset']}",
    )
    if args.debug:
        print(json.dumps(body["debug"], indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
