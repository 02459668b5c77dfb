"""
Dispute Resolution Service
Closes an open escrow dispute in favor of the buyer, the sellers, or with a
partial refund split across the disputed seller entries
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, List, NamedTuple, Optional

from models import (
    Actor, DisputeDecision, EntryStatus, EscrowAction, EscrowTransaction, PaymentStatus,
    RefundMethod, ReleaseReason,
)
from services.escrow_service import EscrowService, parse_amount, parse_enum
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import EscrowStateValidator, EscrowTransition
from utils.exception_handler import InvalidStateError, ValidationError
from utils.fee_calculator import FeeCalculator
from utils.helpers import format_amount

logger = logging.getLogger(__name__)


class ResolutionResult(NamedTuple):
    """Outcome of a dispute resolution"""

    escrow_id: int
    decision: str
    refunded_amount: Decimal
    released_amount: Decimal
    released_sellers: List[int]
    refunded_sellers: List[int]


class DisputeResolutionService:
    """Applies a dispute decision to a locked escrow"""

    @classmethod
    def resolve_dispute(
        cls,
        escrow: EscrowTransaction,
        decision: Any,
        actor: Actor,
        amount: Any = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResolutionResult:
        """
        Resolve the open dispute on `escrow`.

        The pool is every entry in DISPUTED status. partial_refund requires
        0 <= amount <= pool; 0 behaves exactly like seller_favor and the full
        pool exactly like buyer_favor. Any other amount refunds `amount` and
        releases the rest split across the disputed entries in proportion to
        their original shares, with commission recomputed on the reduced amounts.
        """
        decision = parse_enum(DisputeDecision, decision, "decision")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        if not escrow.has_open_dispute:
            raise InvalidStateError(
                f"Escrow {escrow.escrow_number} has no open dispute", current_status=escrow.status
            )
        EscrowStateValidator.require(EscrowTransition.RESOLVE_DISPUTE, escrow.status)

        pool_entries = escrow.entries_in(EntryStatus.DISPUTED)
        pool = MonetaryDecimal.add_precise(*[e.amount for e in pool_entries]) if pool_entries \
            else MonetaryDecimal.ZERO

        refund_amount = MonetaryDecimal.ZERO
        if decision == DisputeDecision.PARTIAL_REFUND:
            if amount is None:
                raise ValidationError("Amount is required for a partial refund", field="amount")
            refund_amount = parse_amount(amount)
            if refund_amount > pool:
                raise ValidationError(
                    f"Partial refund {refund_amount} exceeds disputed amount {pool}", field="amount"
                )
        elif decision == DisputeDecision.BUYER_FAVOR:
            refund_amount = pool

        if refund_amount == 0:
            released, refunded = cls._release_pool(escrow, pool_entries, actor, now)
        elif refund_amount == pool:
            released, refunded = cls._refund_pool(escrow, pool_entries, pool, actor, notes, now)
        else:
            released, refunded = cls._split_pool(escrow, pool_entries, refund_amount, actor, notes, now)

        dispute = escrow.dispute
        dispute.is_open = False
        dispute.decision = decision.value
        dispute.refund_amount = refund_amount
        dispute.resolution_notes = notes
        dispute.resolved_by_kind = actor.kind.value
        dispute.resolved_by_id = actor.id
        dispute.resolved_at = now

        released_amount = MonetaryDecimal.add_precise(*[e.amount for e in released]) if released \
            else MonetaryDecimal.ZERO

        EscrowService.append_activity(
            escrow,
            EscrowAction.DISPUTE_RESOLVED,
            actor,
            f"Dispute resolved: {decision.value} (refunded {format_amount(refund_amount, escrow.currency)}, "
            f"released {format_amount(released_amount, escrow.currency)})",
            {
                "decision": decision.value,
                "refund_amount": str(refund_amount),
                "released": {str(e.seller_id): str(e.amount) for e in released},
            },
            now=now,
        )
        escrow.recompute_status()
        if escrow.order is not None and refund_amount > 0:
            escrow.order.payment_status = (
                PaymentStatus.REFUNDED.value if not released else PaymentStatus.RELEASED.value
            )

        logger.info(
            f"DISPUTE_RESOLVED: {escrow.escrow_number} decision={decision.value} "
            f"refunded={refund_amount} released={released_amount} status={escrow.status}"
        )
        return ResolutionResult(
            escrow_id=escrow.id,
            decision=decision.value,
            refunded_amount=refund_amount,
            released_amount=released_amount,
            released_sellers=[e.seller_id for e in released],
            refunded_sellers=[e.seller_id for e in refunded],
        )

    @staticmethod
    def _release_pool(escrow, pool_entries, actor, now):
        for entry in pool_entries:
            EscrowService._settle_entry_released(entry, actor, ReleaseReason.DISPUTE_RESOLUTION, now)
        return list(pool_entries), []

    @staticmethod
    def _refund_pool(escrow, pool_entries, pool, actor, notes, now):
        for entry in pool_entries:
            EscrowService._settle_entry_refunded(entry, now)
        EscrowService._record_refund(
            escrow, pool, notes or "Dispute resolved in buyer's favor",
            RefundMethod.ORIGINAL_PAYMENT, actor, now,
        )
        return [], list(pool_entries)

    @staticmethod
    def _split_pool(escrow, pool_entries, refund_amount, actor, notes, now):
        split = FeeCalculator.split_partial_refund(
            refund_amount,
            [MonetaryDecimal.to_decimal(e.original_amount) for e in pool_entries],
            [MonetaryDecimal.to_decimal(e.commission_rate) for e in pool_entries],
        )

        released, refunded = [], []
        for entry, (retained, commission, net) in zip(pool_entries, split):
            entry.amount = retained
            entry.commission = commission
            entry.net_amount = net
            if retained > 0:
                EscrowService._settle_entry_released(entry, actor, ReleaseReason.DISPUTE_RESOLUTION, now)
                released.append(entry)
            else:
                EscrowService._settle_entry_refunded(entry, now)
                refunded.append(entry)

        EscrowService._record_refund(
            escrow, refund_amount, notes or "Partial refund from dispute resolution",
            RefundMethod.ORIGINAL_PAYMENT, actor, now,
        )
        return released, refunded
