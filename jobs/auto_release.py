"""
Auto-Release Sweep

Releases escrows whose hold period has elapsed, but only when the linked
order has been delivered. Safe to run repeatedly and from several workers:
every candidate is re-checked under its row lock in its own transaction.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from models import Actor, EscrowStatus, EscrowTransaction, ReleaseReason
from services.audit_logger import AuditEvent, audit_logger
from services.escrow_service import EscrowService
from utils.atomic_transactions import atomic_transaction, locked_escrow_operation
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exception_handler import SettlementError, translate_storage_errors
from utils.fee_calculator import SettlementPolicy

logger = logging.getLogger(__name__)


def find_auto_release_candidates(session, now: datetime) -> List[int]:
    stmt = (
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.status == EscrowStatus.HELD.value,
            EscrowTransaction.allow_auto_release.is_(True),
            EscrowTransaction.auto_release_date <= now,
        )
        .order_by(EscrowTransaction.auto_release_date, EscrowTransaction.id)
    )
    return list(session.execute(stmt).scalars())


def _retention_events(escrow: EscrowTransaction, actor: Actor, policy: SettlementPolicy) -> List[AuditEvent]:
    archived = EscrowService.enforce_activity_retention(escrow, policy.activity_log_max_entries)
    if not archived:
        return []
    return [AuditEvent.build(
        actor, "escrow_activity_archived", "escrow", escrow.escrow_number, None, {"archived": archived}
    )]


@translate_storage_errors
def _process_candidate(escrow_id: int, now: datetime, policy: SettlementPolicy) -> Dict[str, Any]:
    """Re-check and release one escrow inside its own locked transaction"""
    actor = Actor.system()
    events: List[AuditEvent] = []

    with atomic_transaction() as session:
        with locked_escrow_operation(escrow_id, session) as escrow:
            result = {"escrow_id": escrow.id, "escrow_number": escrow.escrow_number}

            # Conditions may have changed since the candidate query
            if escrow.status != EscrowStatus.HELD.value or escrow.auto_release_date > now:
                result.update(outcome="skipped", reason=f"status {escrow.status}")
                return result
            if not escrow.allow_auto_release:
                result.update(outcome="skipped", reason="auto-release disabled")
                return result

            order = escrow.order
            if order is None or not order.is_delivered:
                detail = (
                    f"Past due since {escrow.auto_release_date} but order "
                    f"{order.order_number if order else '?'} is {order.status if order else 'missing'}"
                )
                if EscrowService.flag_auto_release_blocked(escrow, actor, detail, now=now):
                    logger.warning(f"AUTO_RELEASE_BLOCKED: {escrow.escrow_number} {detail}")
                    events.extend(_retention_events(escrow, actor, policy))
                result.update(outcome="flagged", reason="order not delivered")
            else:
                before = escrow.to_snapshot()
                released = EscrowService.release_all_held(escrow, actor, ReleaseReason.AUTO_RELEASE, now=now)
                session.flush()
                events.append(AuditEvent.build(
                    actor, "escrow_auto_released", "escrow", escrow.escrow_number, before, escrow.to_snapshot()
                ))
                events.extend(_retention_events(escrow, actor, policy))
                result.update(
                    outcome="released",
                    released_sellers=[entry.seller_id for entry in released],
                    status=escrow.status,
                )

    for event in events:
        audit_logger.emit(event)
    return result


def run_auto_release(now: Optional[datetime] = None, policy: Optional[SettlementPolicy] = None) -> Dict[str, Any]:
    """
    Sweep past-due escrows.

    Returns {"released_count": int, "results": [...]} with one result per
    candidate. A failure on one escrow is recorded and the sweep continues.
    """
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    policy = policy or SettlementPolicy.from_config()

    with atomic_transaction() as session:
        candidate_ids = find_auto_release_candidates(session, now)

    logger.info(f"AUTO_RELEASE_START: {len(candidate_ids)} candidates at {now.isoformat()}")

    results = []
    for escrow_id in candidate_ids:
        try:
            results.append(_process_candidate(escrow_id, now, policy))
        except SettlementError as e:
            logger.error(f"AUTO_RELEASE_ERROR: escrow {escrow_id}: {e.error_type}: {e.message}")
            results.append({"escrow_id": escrow_id, "outcome": "error", "error": e.to_dict()})

    released_count = sum(1 for r in results if r.get("outcome") == "released")
    logger.info(
        f"AUTO_RELEASE_COMPLETE: released={released_count} "
        f"flagged={sum(1 for r in results if r.get('outcome') == 'flagged')} "
        f"errors={sum(1 for r in results if r.get('outcome') == 'error')}"
    )
    return {"released_count": released_count, "results": results}


def run_release_warnings(now: Optional[datetime] = None, lead_hours: Optional[int] = None) -> List[str]:
    """Mark escrows about to auto-release as warned; returns their escrow numbers"""
    from config import Config

    now = ensure_naive_datetime(now) or get_naive_utc_now()
    lead_hours = lead_hours or Config.AUTO_RELEASE_WARNING_HOURS
    events = []
    warned = []

    with atomic_transaction() as session:
        for escrow in EscrowService.find_release_warning_candidates(session, now, lead_hours):
            EscrowService.mark_release_warning_sent(escrow, now)
            warned.append(escrow.escrow_number)
            events.append(AuditEvent.build(
                Actor.system(), "auto_release_warning_sent", "escrow", escrow.escrow_number,
                None, {"auto_release_date": escrow.auto_release_date.isoformat()},
            ))

    for event in events:
        audit_logger.emit(event)
    if warned:
        logger.info(f"AUTO_RELEASE_WARNINGS: {len(warned)} escrows releasing within {lead_hours}h")
    return warned
