# app/providers/factory.py
from __future__ import annotations

import os
from typing import Dict

from app.providers.base import SettlementClient
from app.settlements.model import SettlementKind


def build_clients() -> Dict[SettlementKind, SettlementClient]:
    """
    Per-kind client registry. SETTLEMENT_MODE=mock swaps in the mock client (dev/smoke runs).
    """
    mode = (os.getenv("SETTLEMENT_MODE") or "").strip().lower()
    if mode == "mock":
        from app.providers.mock import MockSettlementClient

        return {kind: MockSettlementClient() for kind in SettlementKind}

    from app.providers.allocation import AllocationClient
    from app.providers.disbursement import DisbursementClient

    return {
        SettlementKind.ALLOCATION: AllocationClient(),
        SettlementKind.DISBURSEMENT: DisbursementClient(),
    }
