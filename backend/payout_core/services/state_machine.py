"""
Payout request state machine.

    pending -> processing -> completed | failed
    pending -> cancelled

completed, failed and cancelled are terminal.
"""

from typing import Union

from ..core.errors import InvalidTransitionError
from ..models.payout_request import PayoutStatus, TERMINAL_STATUSES

ALLOWED_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.pending: frozenset({PayoutStatus.processing, PayoutStatus.cancelled}),
    PayoutStatus.processing: frozenset({PayoutStatus.completed, PayoutStatus.failed}),
    PayoutStatus.completed: frozenset(),
    PayoutStatus.failed: frozenset(),
    PayoutStatus.cancelled: frozenset(),
}


def is_terminal(status: Union[PayoutStatus, str]) -> bool:
    return PayoutStatus(status) in TERMINAL_STATUSES


def can_transition(old: Union[PayoutStatus, str], new: Union[PayoutStatus, str]) -> bool:
    return PayoutStatus(new) in ALLOWED_TRANSITIONS[PayoutStatus(old)]


def assert_transition(old: Union[PayoutStatus, str], new: Union[PayoutStatus, str]) -> None:
    old, new = PayoutStatus(old), PayoutStatus(new)
    if new in ALLOWED_TRANSITIONS[old]:
        return
    if old in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Payout already resolved as {old.value}",
            current_status=old.value,
            details={"requested_status": new.value},
        )
    raise InvalidTransitionError(
        f"Illegal payout transition: {old.value} -> {new.value}",
        current_status=old.value,
        details={"requested_status": new.value},
    )
