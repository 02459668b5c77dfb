"""
Escrow State Machine
Aggregate escrow status derivation and transition validation for escrows
and their seller entries
"""

import logging
from enum import Enum
from typing import Dict, Iterable, Optional, Set

from models import EntryStatus, EscrowStatus
from utils.exception_handler import InvalidStateError

logger = logging.getLogger(__name__)


class EscrowTransition(Enum):
    """Operations that mutate an escrow"""

    RELEASE = "release"  # entry HELD -> RELEASED
    REFUND = "refund"  # entries HELD -> REFUNDED
    DISPUTE = "dispute"  # HELD/PARTIALLY_RELEASED -> DISPUTED
    RESOLVE_DISPUTE = "resolve_dispute"  # DISPUTED -> RELEASED/REFUNDED/PARTIALLY_RELEASED
    CANCEL = "cancel"  # HELD/DISPUTED -> CANCELLED


def derive_escrow_status(
    entry_statuses: Iterable[str], dispute_open: bool = False, cancelled: bool = False
) -> EscrowStatus:
    """
    Aggregate status as a pure function of the seller entry statuses.

    Precedence: cancellation, then an open dispute over any DISPUTED entry.
    Otherwise all HELD -> HELD, all RELEASED -> RELEASED, all REFUNDED -> REFUNDED,
    every entry settled with a mix -> RELEASED, anything still HELD next to a
    settled entry -> PARTIALLY_RELEASED.
    """
    if cancelled:
        return EscrowStatus.CANCELLED

    statuses = list(entry_statuses)
    if not statuses:
        return EscrowStatus.HELD

    if dispute_open and EntryStatus.DISPUTED.value in statuses:
        return EscrowStatus.DISPUTED

    # A DISPUTED entry without an open dispute still holds money
    normalized = [
        EntryStatus.HELD.value if status == EntryStatus.DISPUTED.value else status
        for status in statuses
    ]
    held = normalized.count(EntryStatus.HELD.value)
    released = normalized.count(EntryStatus.RELEASED.value)
    refunded = normalized.count(EntryStatus.REFUNDED.value)

    if held == len(normalized):
        return EscrowStatus.HELD
    if released == len(normalized):
        return EscrowStatus.RELEASED
    if refunded == len(normalized):
        return EscrowStatus.REFUNDED
    if held == 0:
        return EscrowStatus.RELEASED
    return EscrowStatus.PARTIALLY_RELEASED


class EscrowStateValidator:
    """Validates escrow and seller entry transitions"""

    # Aggregate statuses from which each operation may start
    ALLOWED_SOURCES: Dict[EscrowTransition, Set[str]] = {
        EscrowTransition.RELEASE: {
            EscrowStatus.HELD.value,
            EscrowStatus.PARTIALLY_RELEASED.value,
        },
        EscrowTransition.REFUND: {
            EscrowStatus.HELD.value,
            EscrowStatus.PARTIALLY_RELEASED.value,
        },
        EscrowTransition.DISPUTE: {
            EscrowStatus.HELD.value,
            EscrowStatus.PARTIALLY_RELEASED.value,
        },
        EscrowTransition.RESOLVE_DISPUTE: {
            EscrowStatus.DISPUTED.value,
        },
        EscrowTransition.CANCEL: {
            EscrowStatus.HELD.value,
            EscrowStatus.DISPUTED.value,
        },
    }

    # Seller entry transitions
    ENTRY_TRANSITIONS: Dict[str, Set[str]] = {
        EntryStatus.HELD.value: {
            EntryStatus.RELEASED.value,
            EntryStatus.REFUNDED.value,
            EntryStatus.DISPUTED.value,
        },
        EntryStatus.DISPUTED.value: {
            EntryStatus.RELEASED.value,
            EntryStatus.REFUNDED.value,
        },
        # Terminal states (no transitions allowed)
        EntryStatus.RELEASED.value: set(),
        EntryStatus.REFUNDED.value: set(),
    }

    TERMINAL_STATES: Set[str] = {
        EscrowStatus.RELEASED.value,
        EscrowStatus.REFUNDED.value,
        EscrowStatus.CANCELLED.value,
    }

    @classmethod
    def can_apply(cls, transition: EscrowTransition, current_status: Optional[str]) -> bool:
        return current_status in cls.ALLOWED_SOURCES.get(transition, set())

    @classmethod
    def require(cls, transition: EscrowTransition, current_status: Optional[str]) -> None:
        """Raise InvalidStateError unless `transition` may start from `current_status`"""
        if not cls.can_apply(transition, current_status):
            logger.warning(f"INVALID_TRANSITION: {transition.value} not allowed from {current_status}")
            raise InvalidStateError(
                f"Cannot {transition.value.replace('_', ' ')} escrow in status {current_status}",
                current_status=current_status,
            )

    @classmethod
    def is_valid_entry_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.ENTRY_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in cls.TERMINAL_STATES
