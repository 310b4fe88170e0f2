
# app/settlements/state_machine.py
from app.settlements.model import RecordStatus

S = RecordStatus


class InvalidTransition(Exception):
    pass


ALLOWED = {
    S.PENDING: {S.IN_PROGRESS, S.AWAITING_TX_HASH, S.AWAITING_AMOUNT},
    S.AWAITING_TX_HASH: {S.IN_PROGRESS, S.AWAITING_AMOUNT, S.PENDING},
    S.AWAITING_AMOUNT: {S.IN_PROGRESS, S.AWAITING_TX_HASH, S.PENDING},
    # FAILED->IN_PROGRESS only via forced claim, FAILED->PENDING via manual retry
    S.FAILED: {S.IN_PROGRESS, S.PENDING, S.AWAITING_TX_HASH, S.AWAITING_AMOUNT},
    S.IN_PROGRESS: {S.COMPLETED, S.FAILED},
    S.COMPLETED: set(),
}


def assert_transition(old: RecordStatus | str, new: RecordStatus | str) -> None:
    old_s = RecordStatus(old)
    new_s = RecordStatus(new)
    if new_s not in ALLOWED.get(old_s, set()):
        raise InvalidTransition(f"Illegal settlement transition: {old_s.value} -> {new_s.value}")


def can_transition(old: RecordStatus | str, new: RecordStatus | str) -> bool:
    try:
        assert_transition(old, new)
    except InvalidTransition:
        return False
    return True


def assert_completion_invariant(new_status: RecordStatus, result: dict | None) -> None:
    """
    Invariant: COMPLETED must carry a settlement result.
    """
    if new_status == RecordStatus.COMPLETED and not result:
        raise ValueError("Invariant violation: status=COMPLETED requires settlement_result")
