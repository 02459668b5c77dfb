"""
Escrow Consistency Monitor
Detects drift between orders, escrows and their seller entries. Money is
never repaired automatically; findings are logged and returned for review.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models import EntryStatus, EscrowTransaction, Order, OrderStatus
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_machine import derive_escrow_status
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

CRITICAL_ISSUES = {"order_without_escrow", "entry_sum_mismatch", "net_amount_mismatch"}


class EscrowConsistencyResult:
    """Result object for consistency monitoring operations"""

    def __init__(self):
        self.total_orders_checked = 0
        self.total_escrows_checked = 0
        self.inconsistencies_found = 0
        self.critical_issues = 0
        self.execution_time_ms = 0
        self.issues: List[Dict[str, Any]] = []
        self.errors: List[str] = []

    def add_inconsistency(self, resource_id: str, issue_type: str, details: Dict[str, Any]):
        """Record an inconsistency found"""
        self.inconsistencies_found += 1
        self.issues.append({
            "resource_id": resource_id,
            "issue_type": issue_type,
            "details": details,
            "detected_at": to_iso(get_naive_utc_now()),
        })
        if issue_type in CRITICAL_ISSUES:
            self.critical_issues += 1
        logger.warning(f"⚠️ CONSISTENCY_ISSUE: {issue_type} on {resource_id}: {details}")

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"CONSISTENCY_MONITOR_ERROR: {error}")

    def issue_types(self) -> List[str]:
        return [issue["issue_type"] for issue in self.issues]

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_orders_checked": self.total_orders_checked,
            "total_escrows_checked": self.total_escrows_checked,
            "inconsistencies_found": self.inconsistencies_found,
            "critical_issues": self.critical_issues,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
            "issues": list(self.issues),
        }


class EscrowConsistencyMonitor:
    """Read-only reconciliation of orders and escrows"""

    @classmethod
    def check_consistency(cls, max_records: int = 1000) -> EscrowConsistencyResult:
        start = time.monotonic()
        result = EscrowConsistencyResult()
        logger.info(f"🔍 CONSISTENCY_CHECK_START: max_records={max_records}")

        with atomic_transaction() as session:
            cls._check_orders(session, result, max_records)
            cls._check_escrows(session, result, max_records)

        result.execution_time_ms = int((time.monotonic() - start) * 1000)
        if result.inconsistencies_found:
            logger.warning(
                f"⚠️ CONSISTENCY_CHECK_COMPLETE: {result.inconsistencies_found} issues "
                f"({result.critical_issues} critical) in {result.execution_time_ms}ms"
            )
        else:
            logger.info(f"✅ CONSISTENCY_CHECK_SUCCESS: no issues in {result.execution_time_ms}ms")
        return result

    @staticmethod
    def _check_orders(session: Session, result: EscrowConsistencyResult, max_records: int) -> None:
        orders = session.execute(
            select(Order).options(selectinload(Order.escrow)).order_by(Order.id).limit(max_records)
        ).scalars().all()
        result.total_orders_checked = len(orders)

        for order in orders:
            expected_total = FeeCalculator.calculate_order_total(
                order.subtotal, order.tax_amount, order.shipping_cost, order.discount_amount
            )
            if MonetaryDecimal.quantize(order.total_amount) != expected_total:
                result.add_inconsistency(order.order_number, "order_total_drift", {
                    "stored": str(order.total_amount), "expected": str(expected_total),
                })
            if order.escrow is None and order.status != OrderStatus.CANCELLED.value:
                result.add_inconsistency(order.order_number, "order_without_escrow", {"status": order.status})
            if not order.status_history or order.status_history[-1].status != order.status:
                result.add_inconsistency(order.order_number, "status_history_mismatch", {
                    "status": order.status,
                    "last_history": order.status_history[-1].status if order.status_history else None,
                })

    @staticmethod
    def _check_escrows(session: Session, result: EscrowConsistencyResult, max_records: int) -> None:
        escrows = session.execute(
            select(EscrowTransaction)
            .options(selectinload(EscrowTransaction.entries), selectinload(EscrowTransaction.dispute))
            .order_by(EscrowTransaction.id)
            .limit(max_records)
        ).scalars().all()
        result.total_escrows_checked = len(escrows)

        for escrow in escrows:
            if escrow.order is None:
                result.add_inconsistency(escrow.escrow_number, "escrow_without_order", {"order_id": escrow.order_id})

            derived = derive_escrow_status(
                [e.status for e in escrow.entries],
                dispute_open=escrow.has_open_dispute,
                cancelled=escrow.cancelled_at is not None,
            )
            if escrow.status != derived.value:
                result.add_inconsistency(escrow.escrow_number, "status_drift", {
                    "stored": escrow.status, "derived": derived.value,
                })

            # Amounts only shrink through dispute splits; originals must still add up
            original_sum = sum((Decimal(str(e.original_amount)) for e in escrow.entries), Decimal("0.00"))
            if MonetaryDecimal.quantize(original_sum) != MonetaryDecimal.quantize(escrow.total_amount):
                result.add_inconsistency(escrow.escrow_number, "entry_sum_mismatch", {
                    "entries": str(original_sum), "total_amount": str(escrow.total_amount),
                })

            for entry in escrow.entries:
                expected_net = FeeCalculator.calculate_net(entry.amount, entry.commission)
                if MonetaryDecimal.quantize(entry.net_amount) != expected_net:
                    result.add_inconsistency(escrow.escrow_number, "net_amount_mismatch", {
                        "seller_id": entry.seller_id,
                        "net_amount": str(entry.net_amount),
                        "expected": str(expected_net),
                    })

            settled_money = escrow.released_amount + escrow.refunded_amount
            still_held = sum(
                (Decimal(str(e.amount)) for e in escrow.entries
                 if e.status in (EntryStatus.HELD.value, EntryStatus.DISPUTED.value)),
                Decimal("0.00"),
            )
            if MonetaryDecimal.quantize(settled_money + still_held) != MonetaryDecimal.quantize(escrow.total_amount):
                result.add_inconsistency(escrow.escrow_number, "money_not_accounted", {
                    "released": str(escrow.released_amount),
                    "refunded": str(escrow.refunded_amount),
                    "held": str(still_held),
                    "total_amount": str(escrow.total_amount),
                })


def run_consistency_check() -> Dict[str, Any]:
    """Scheduler entry point"""
    return EscrowConsistencyMonitor.check_consistency().get_summary()
