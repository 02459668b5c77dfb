"""
Escrow Service
Mutations on a single escrow transaction: creation, release, refund,
dispute opening and administrative cancellation.

Every function here operates on an escrow that the caller has already
locked (see utils.atomic_transactions.locked_escrow_operation) and never
commits; transaction boundaries and audit emission belong to the caller.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Actor, EntryStatus, EscrowAction, EscrowActivity, EscrowDispute, EscrowDisputeEvidence,
    EscrowRefund, EscrowSellerEntry, EscrowStatus, EscrowTransaction, EvidenceType, DisputeReason,
    Order, PaymentStatus, RefundMethod, RefundStatus, ReleaseReason,
)
from utils.datetime_helpers import add_days, ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import EscrowStateValidator, EscrowTransition
from utils.exception_handler import InvalidStateError, NotFoundError, ValidationError
from utils.fee_calculator import OrderBreakdown, SettlementPolicy
from utils.helpers import format_amount, generate_escrow_number, generate_payment_reference

logger = logging.getLogger(__name__)

RELEASE_ACTIONS = {
    ReleaseReason.AUTO_RELEASE: EscrowAction.AUTO_RELEASED,
    ReleaseReason.ADMIN_RELEASE: EscrowAction.MANUALLY_RELEASED,
}


def parse_enum(enum_cls, value: Any, field: str):
    """Coerce a raw value into `enum_cls`, raising ValidationError on unknown values"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} {value!r}. Allowed: {allowed}", field=field)


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = MonetaryDecimal.to_decimal(value, field)
    except ValueError:
        raise ValidationError(f"{field} must be a number", field=field)
    if amount != MonetaryDecimal.quantize(amount):
        raise ValidationError(f"{field} cannot have more than 2 decimal places", field=field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return MonetaryDecimal.quantize(amount)


class EscrowService:
    """Single-escrow mutations; each appends exactly one activity entry"""

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    @staticmethod
    def append_activity(
        escrow: EscrowTransaction,
        action: EscrowAction,
        actor: Actor,
        detail: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EscrowActivity:
        activity = EscrowActivity(
            action=action.value,
            actor_kind=actor.kind.value,
            actor_id=actor.id,
            detail=detail,
            extra=metadata or {},
            timestamp=ensure_naive_datetime(now) or get_naive_utc_now(),
        )
        escrow.activities.append(activity)
        return activity

    @staticmethod
    def enforce_activity_retention(
        escrow: EscrowTransaction, max_entries: Optional[int]
    ) -> List[Dict[str, Any]]:
        """
        Trim the activity log to the newest `max_entries` rows.

        Returns the archived entries (oldest first) so the caller can hand
        them to the audit sink. `None` keeps everything.
        """
        if not max_entries or len(escrow.activities) <= max_entries:
            return []

        overflow = len(escrow.activities) - max_entries
        archived = escrow.activities[:overflow]
        archived_dicts = [activity.to_dict() for activity in archived]
        for activity in archived:
            escrow.activities.remove(activity)

        logger.info(
            f"ESCROW_ACTIVITY_RETENTION: archived {overflow} entries from {escrow.escrow_number}, "
            f"kept {max_entries}"
        )
        return archived_dicts

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @staticmethod
    def create_escrow(
        session: Session,
        order: Order,
        breakdown: OrderBreakdown,
        policy: SettlementPolicy,
        payment_method: Optional[str],
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """One escrow per order with one HELD entry per seller with a nonzero subtotal"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        escrow = EscrowTransaction(
            escrow_number=generate_escrow_number(),
            order=order,
            buyer_id=order.buyer_id,
            total_amount=breakdown.subtotal,
            currency=policy.currency,
            status=EscrowStatus.HELD.value,
            hold_period_days=policy.hold_period_days,
            auto_release_date=add_days(now, policy.hold_period_days),
            allow_auto_release=True,
            payment_method=payment_method,
            payment_reference=generate_payment_reference(),
            created_at=now,
            updated_at=now,
        )

        for position, seller in enumerate(breakdown.sellers):
            escrow.entries.append(EscrowSellerEntry(
                seller_id=seller.seller_id,
                position=position,
                original_amount=seller.subtotal,
                amount=seller.subtotal,
                commission_rate=breakdown.commission_rate,
                commission=seller.commission,
                net_amount=seller.net,
                status=EntryStatus.HELD.value,
            ))

        EscrowService.append_activity(
            escrow,
            EscrowAction.CREATED,
            actor,
            f"Escrow created for order {order.order_number}: "
            f"{format_amount(escrow.total_amount, escrow.currency)} held for {len(escrow.entries)} seller(s)",
            {"order_number": order.order_number, "sellers": [s.seller_id for s in breakdown.sellers]},
            now=now,
        )
        session.add(escrow)
        escrow.recompute_status()

        logger.info(
            f"ESCROW_CREATED: {escrow.escrow_number} order={order.order_number} "
            f"total={escrow.total_amount} sellers={len(escrow.entries)} release_at={escrow.auto_release_date}"
        )
        return escrow

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    @staticmethod
    def _settle_entry_released(
        entry: EscrowSellerEntry, actor: Actor, reason: ReleaseReason, now: datetime
    ) -> None:
        entry.status = EntryStatus.RELEASED.value
        entry.released_at = now
        entry.release_reason = reason.value
        entry.released_by_kind = actor.kind.value
        entry.released_by_id = actor.id

    @staticmethod
    def release_funds(
        escrow: EscrowTransaction,
        seller_id: int,
        actor: Actor,
        reason: Any = ReleaseReason.BUYER_CONFIRMATION,
        now: Optional[datetime] = None,
    ) -> EscrowSellerEntry:
        """Release one seller's HELD entry; a second call on the same entry fails"""
        reason = parse_enum(ReleaseReason, reason, "reason")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        entry = escrow.entry_for(seller_id)
        if entry is None:
            raise NotFoundError("escrow_entry", seller_id,
                                f"Seller {seller_id} has no entry in escrow {escrow.escrow_number}")

        if entry.status != EntryStatus.HELD.value:
            logger.warning(
                f"ESCROW_RELEASE_REJECTED: {escrow.escrow_number} seller={seller_id} "
                f"entry already {entry.status}"
            )
            raise InvalidStateError(
                f"Funds for seller {seller_id} already processed ({entry.status})",
                current_status=entry.status,
            )
        EscrowStateValidator.require(EscrowTransition.RELEASE, escrow.status)

        EscrowService._settle_entry_released(entry, actor, reason, now)
        EscrowService.append_activity(
            escrow,
            RELEASE_ACTIONS.get(reason, EscrowAction.RELEASED),
            actor,
            f"Released {format_amount(entry.net_amount, escrow.currency)} to seller {seller_id}",
            {"seller_id": seller_id, "reason": reason.value, "amount": str(entry.amount),
             "net_amount": str(entry.net_amount)},
            now=now,
        )
        escrow.recompute_status()

        logger.info(
            f"ESCROW_RELEASE: {escrow.escrow_number} seller={seller_id} net={entry.net_amount} "
            f"reason={reason.value} by={actor.kind.value}:{actor.id} status={escrow.status}"
        )
        return entry

    @staticmethod
    def release_all_held(
        escrow: EscrowTransaction,
        actor: Actor,
        reason: ReleaseReason,
        now: Optional[datetime] = None,
    ) -> List[EscrowSellerEntry]:
        """Release every HELD entry as one operation with one activity entry"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        EscrowStateValidator.require(EscrowTransition.RELEASE, escrow.status)

        held_entries = escrow.entries_in(EntryStatus.HELD)
        if not held_entries:
            raise InvalidStateError(
                f"Escrow {escrow.escrow_number} has no held funds", current_status=escrow.status
            )

        for entry in held_entries:
            EscrowService._settle_entry_released(entry, actor, reason, now)

        total_net = MonetaryDecimal.add_precise(*[e.net_amount for e in held_entries])
        EscrowService.append_activity(
            escrow,
            RELEASE_ACTIONS.get(reason, EscrowAction.RELEASED),
            actor,
            f"Released {format_amount(total_net, escrow.currency)} to {len(held_entries)} seller(s)",
            {"sellers": [e.seller_id for e in held_entries], "reason": reason.value},
            now=now,
        )
        escrow.recompute_status()
        logger.info(
            f"ESCROW_RELEASE_ALL: {escrow.escrow_number} sellers={len(held_entries)} "
            f"reason={reason.value} status={escrow.status}"
        )
        return held_entries

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    @staticmethod
    def _record_refund(
        escrow: EscrowTransaction,
        amount: Decimal,
        reason: str,
        method: RefundMethod,
        actor: Actor,
        now: datetime,
    ) -> Optional[EscrowRefund]:
        if amount <= 0:
            return None
        refund = EscrowRefund(
            amount=amount,
            reason=reason,
            method=method.value,
            status=RefundStatus.PENDING.value,
            processed_by_kind=actor.kind.value,
            processed_by_id=actor.id,
            created_at=now,
        )
        escrow.refunds.append(refund)
        return refund

    @staticmethod
    def _settle_entry_refunded(entry: EscrowSellerEntry, now: datetime) -> None:
        entry.status = EntryStatus.REFUNDED.value
        entry.refunded_at = now

    @staticmethod
    def refund_to_buyer(
        escrow: EscrowTransaction,
        amount: Any,
        reason: str,
        actor: Actor,
        method: Any = RefundMethod.ORIGINAL_PAYMENT,
        now: Optional[datetime] = None,
    ) -> EscrowRefund:
        """
        Refund every still-held entry to the buyer.

        Only the full remaining held amount is accepted; partial refunds of
        held funds go through a dispute with a partial_refund decision.
        """
        amount = parse_amount(amount)
        method = parse_enum(RefundMethod, method, "method")
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        if not reason or not str(reason).strip():
            raise ValidationError("Refund reason is required", field="reason")

        EscrowStateValidator.require(EscrowTransition.REFUND, escrow.status)

        held_entries = escrow.entries_in(EntryStatus.HELD)
        held_total = MonetaryDecimal.add_precise(*[e.amount for e in held_entries]) if held_entries \
            else MonetaryDecimal.ZERO

        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero", field="amount")
        if amount > held_total:
            raise ValidationError(
                f"Refund amount {amount} exceeds held amount {held_total}", field="amount"
            )
        if amount != held_total:
            raise ValidationError(
                f"Partial refund of held funds is not supported outside a dispute "
                f"(held {held_total}, requested {amount})",
                field="amount",
            )

        for entry in held_entries:
            EscrowService._settle_entry_refunded(entry, now)
        refund = EscrowService._record_refund(escrow, amount, reason, method, actor, now)

        EscrowService.append_activity(
            escrow,
            EscrowAction.REFUNDED,
            actor,
            f"Refund of {format_amount(amount, escrow.currency)} initiated",
            {"amount": str(amount), "method": method.value, "reason": reason},
            now=now,
        )
        escrow.recompute_status()
        if escrow.status == EscrowStatus.REFUNDED.value and escrow.order is not None:
            escrow.order.payment_status = PaymentStatus.REFUNDED.value

        logger.info(
            f"ESCROW_REFUND: {escrow.escrow_number} amount={amount} method={method.value} "
            f"by={actor.kind.value}:{actor.id} status={escrow.status}"
        )
        return refund

    # ------------------------------------------------------------------
    # Dispute opening
    # ------------------------------------------------------------------

    @staticmethod
    def create_dispute(
        escrow: EscrowTransaction,
        reason: Any,
        description: str,
        actor: Actor,
        evidence: Optional[Iterable[Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> EscrowDispute:
        reason = parse_enum(DisputeReason, reason, "reason")
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        if not description or not str(description).strip():
            raise ValidationError("Dispute description is required", field="description")

        EscrowStateValidator.require(EscrowTransition.DISPUTE, escrow.status)
        if escrow.dispute is not None:
            raise InvalidStateError(
                f"Escrow {escrow.escrow_number} already has a dispute", current_status=escrow.status
            )

        dispute = EscrowDispute(
            reason=reason.value,
            description=description.strip(),
            opened_by_kind=actor.kind.value,
            opened_by_id=actor.id,
            opened_at=now,
            is_open=True,
        )
        for item in evidence or []:
            evidence_type = parse_enum(EvidenceType, item.get("type", EvidenceType.TEXT.value), "evidence.type")
            dispute.evidence.append(EscrowDisputeEvidence(
                evidence_type=evidence_type.value,
                url=item.get("url"),
                description=item.get("description"),
                submitted_by_kind=actor.kind.value,
                submitted_by_id=actor.id,
                submitted_at=now,
            ))
        escrow.dispute = dispute

        disputed_entries = escrow.entries_in(EntryStatus.HELD)
        for entry in disputed_entries:
            entry.status = EntryStatus.DISPUTED.value

        EscrowService.append_activity(
            escrow,
            EscrowAction.DISPUTED,
            actor,
            f"Dispute created: {reason.value}",
            {"reason": reason.value, "sellers": [e.seller_id for e in disputed_entries],
             "evidence_count": len(dispute.evidence)},
            now=now,
        )
        escrow.recompute_status()

        logger.info(
            f"ESCROW_DISPUTE_OPENED: {escrow.escrow_number} reason={reason.value} "
            f"entries={len(disputed_entries)} by={actor.kind.value}:{actor.id}"
        )
        return dispute

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @staticmethod
    def cancel_escrow(
        escrow: EscrowTransaction,
        actor: Actor,
        reason: str,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """
        Administrative cancellation, legal only from HELD or DISPUTED.

        Held and disputed funds go back to the buyer through the refund
        ledger and any open dispute is closed without a decision.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        EscrowStateValidator.require(EscrowTransition.CANCEL, escrow.status)

        returned_entries = [
            e for e in escrow.entries
            if e.status in (EntryStatus.HELD.value, EntryStatus.DISPUTED.value)
        ]
        returned_total = MonetaryDecimal.add_precise(*[e.amount for e in returned_entries]) \
            if returned_entries else MonetaryDecimal.ZERO

        for entry in returned_entries:
            EscrowService._settle_entry_refunded(entry, now)
        EscrowService._record_refund(
            escrow, returned_total, f"Escrow cancelled: {reason}", RefundMethod.ORIGINAL_PAYMENT, actor, now
        )

        if escrow.has_open_dispute:
            escrow.dispute.is_open = False
            escrow.dispute.resolved_at = now
            escrow.dispute.resolved_by_kind = actor.kind.value
            escrow.dispute.resolved_by_id = actor.id
            escrow.dispute.resolution_notes = f"Closed by cancellation: {reason}"

        escrow.cancelled_at = now
        escrow.cancelled_by_kind = actor.kind.value
        escrow.cancelled_by_id = actor.id
        escrow.cancellation_reason = reason

        EscrowService.append_activity(
            escrow,
            EscrowAction.CANCELLED,
            actor,
            f"Escrow cancelled: {reason}",
            {"returned_amount": str(returned_total)},
            now=now,
        )
        escrow.recompute_status()
        if escrow.order is not None:
            escrow.order.payment_status = PaymentStatus.REFUNDED.value

        logger.info(
            f"ESCROW_CANCELLED: {escrow.escrow_number} returned={returned_total} "
            f"by={actor.kind.value}:{actor.id}"
        )
        return escrow

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def get_escrow(session: Session, escrow_id: int) -> EscrowTransaction:
        escrow = session.get(EscrowTransaction, escrow_id)
        if escrow is None:
            raise NotFoundError("escrow", escrow_id)
        return escrow

    @staticmethod
    def find_release_warning_candidates(
        session: Session, now: Optional[datetime] = None, lead_hours: int = 24
    ) -> List[EscrowTransaction]:
        """HELD escrows auto-releasing within `lead_hours` that have not been warned yet"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        stmt = (
            select(EscrowTransaction)
            .where(
                EscrowTransaction.status == EscrowStatus.HELD.value,
                EscrowTransaction.allow_auto_release.is_(True),
                EscrowTransaction.auto_release_date > now,
                EscrowTransaction.auto_release_date <= now + timedelta(hours=lead_hours),
                EscrowTransaction.auto_release_warning_sent_at.is_(None),
            )
            .order_by(EscrowTransaction.auto_release_date)
        )
        return list(session.execute(stmt).scalars())

    @staticmethod
    def mark_release_warning_sent(escrow: EscrowTransaction, now: Optional[datetime] = None) -> None:
        escrow.auto_release_warning_sent_at = ensure_naive_datetime(now) or get_naive_utc_now()

    @staticmethod
    def flag_auto_release_blocked(
        escrow: EscrowTransaction, actor: Actor, detail: str, now: Optional[datetime] = None
    ) -> bool:
        """Mark a past-due escrow that cannot be released yet; False if already flagged"""
        if escrow.auto_release_flagged_at is not None:
            return False
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        escrow.auto_release_flagged_at = now
        EscrowService.append_activity(
            escrow, EscrowAction.AUTO_RELEASE_FLAGGED, actor, detail,
            {"auto_release_date": escrow.auto_release_date.isoformat()}, now=now,
        )
        return True

    @staticmethod
    def set_auto_release(
        escrow: EscrowTransaction, allowed: bool, actor: Actor, now: Optional[datetime] = None
    ) -> None:
        """Enable or disable the auto-release sweep for one escrow"""
        if not isinstance(allowed, bool):
            raise ValidationError("allowed must be true or false", field="allowed")
        if EscrowStateValidator.is_terminal_state(escrow.status):
            raise InvalidStateError(
                f"Escrow {escrow.escrow_number} is {escrow.status}", current_status=escrow.status
            )
        if bool(escrow.allow_auto_release) == allowed:
            raise InvalidStateError(
                f"Auto-release already {'enabled' if allowed else 'disabled'} for {escrow.escrow_number}",
                current_status=escrow.status,
            )

        escrow.allow_auto_release = allowed
        EscrowService.append_activity(
            escrow,
            EscrowAction.AUTO_RELEASE_ENABLED if allowed else EscrowAction.AUTO_RELEASE_DISABLED,
            actor,
            f"Auto-release {'enabled' if allowed else 'disabled'}",
            now=now,
        )
        logger.info(
            f"ESCROW_AUTO_RELEASE_SWITCH: {escrow.escrow_number} allowed={allowed} "
            f"by={actor.kind.value}:{actor.id}"
        )

    @staticmethod
    def get_escrow_statistics(session: Session, buyer_id: Optional[int] = None) -> Dict[str, Any]:
        """Counts and totals by aggregate status plus released/refunded money"""
        by_status_stmt = select(
            EscrowTransaction.status,
            func.count(EscrowTransaction.id),
            func.coalesce(func.sum(EscrowTransaction.total_amount), 0),
        ).group_by(EscrowTransaction.status)
        released_stmt = (
            select(func.coalesce(func.sum(EscrowSellerEntry.amount), 0))
            .join(EscrowTransaction, EscrowSellerEntry.escrow_id == EscrowTransaction.id)
            .where(EscrowSellerEntry.status == EntryStatus.RELEASED.value)
        )
        refunded_stmt = (
            select(func.coalesce(func.sum(EscrowRefund.amount), 0))
            .join(EscrowTransaction, EscrowRefund.escrow_id == EscrowTransaction.id)
        )
        held_stmt = (
            select(func.coalesce(func.sum(EscrowSellerEntry.amount), 0))
            .join(EscrowTransaction, EscrowSellerEntry.escrow_id == EscrowTransaction.id)
            .where(EscrowSellerEntry.status.in_([EntryStatus.HELD.value, EntryStatus.DISPUTED.value]))
            .where(EscrowTransaction.cancelled_at.is_(None))
        )
        if buyer_id is not None:
            by_status_stmt = by_status_stmt.where(EscrowTransaction.buyer_id == buyer_id)
            released_stmt = released_stmt.where(EscrowTransaction.buyer_id == buyer_id)
            refunded_stmt = refunded_stmt.where(EscrowTransaction.buyer_id == buyer_id)
            held_stmt = held_stmt.where(EscrowTransaction.buyer_id == buyer_id)

        by_status = {}
        total_count = 0
        total_amount = Decimal("0.00")
        for status, count, amount in session.execute(by_status_stmt):
            amount = MonetaryDecimal.quantize(amount)
            by_status[status] = {"count": count, "amount": amount}
            total_count += count
            total_amount += amount

        return {
            "total_escrows": total_count,
            "total_amount": MonetaryDecimal.quantize(total_amount),
            "held_amount": MonetaryDecimal.quantize(session.execute(held_stmt).scalar()),
            "released_amount": MonetaryDecimal.quantize(session.execute(released_stmt).scalar()),
            "refunded_amount": MonetaryDecimal.quantize(session.execute(refunded_stmt).scalar()),
            "disputed_count": by_status.get(EscrowStatus.DISPUTED.value, {}).get("count", 0),
            "by_status": by_status,
        }
