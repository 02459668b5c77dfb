"""
Settlement API
Entry points for the marketplace escrow settlement operations.

Each call runs in its own atomic transaction and returns an OperationResult
instead of raising. Exactly one audit event is emitted per successful call,
after the transaction has committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm.exc import StaleDataError

from models import Actor, ActorKind, EscrowTransaction, ReleaseReason
from services.audit_logger import AuditEvent, audit_logger
from services.dispute_resolution import DisputeResolutionService
from services.escrow_orchestrator import OrderCreationRequest, SettlementOrchestrator
from services.escrow_service import EscrowService
from services.order_service import OrderService
from utils.atomic_transactions import atomic_transaction, locked_escrow_operation
from utils.exception_handler import InvalidStateError, SettlementError, ValidationError, translate_storage_errors
from utils.fee_calculator import SettlementPolicy

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Typed outcome of a settlement operation"""

    success: bool
    data: Any = None
    error: Optional[SettlementError] = None
    audit_events: List[AuditEvent] = field(default_factory=list)

    @property
    def error_type(self) -> Optional[str]:
        return self.error.error_type if self.error is not None else None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        return self.error.to_dict() if self.error is not None else None

    @classmethod
    def failure(cls, error: SettlementError) -> "OperationResult":
        return cls(success=False, error=error)


def _actor(actor_kind: Any, actor_id: Optional[int]) -> Actor:
    try:
        return Actor.from_parts(actor_kind, actor_id)
    except ValueError:
        raise ValidationError(f"Unknown actor kind {actor_kind!r}", field="actor_kind")


def _execute(operation: str, work: Callable[[], OperationResult]) -> OperationResult:
    """Run `work`, convert settlement errors, then emit its audit events"""
    try:
        result = translate_storage_errors(work)()
    except SettlementError as e:
        logger.warning(f"{operation.upper()}_FAILED: {e.error_type}: {e.message}")
        return OperationResult.failure(e)

    # Transaction has committed at this point
    for event in result.audit_events:
        audit_logger.emit(event)
    return result


def _current_escrow_status(escrow_id: int, seller_id: Optional[int] = None) -> Optional[str]:
    """Committed status of a seller's entry, or of the escrow when no seller is given"""
    with atomic_transaction() as session:
        escrow = session.get(EscrowTransaction, escrow_id)
        if escrow is None:
            return None
        entry = escrow.entry_for(seller_id) if seller_id is not None else None
        return entry.status if entry is not None else escrow.status


def _escrow_events(
    escrow: EscrowTransaction,
    actor: Actor,
    action: str,
    before: Dict[str, Any],
    policy: SettlementPolicy,
) -> List[AuditEvent]:
    events = [AuditEvent.build(actor, action, "escrow", escrow.escrow_number, before, escrow.to_snapshot())]
    archived = EscrowService.enforce_activity_retention(escrow, policy.activity_log_max_entries)
    if archived:
        events.append(AuditEvent.build(
            Actor.system(), "escrow_activity_archived", "escrow", escrow.escrow_number,
            None, {"archived": archived},
        ))
    return events


class SettlementAPI:
    """Facade over the settlement services with typed results"""

    def __init__(self, policy: Optional[SettlementPolicy] = None):
        self.policy = policy or SettlementPolicy.from_config()
        self.orchestrator = SettlementOrchestrator(self.policy)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(
        self,
        buyer_id: int,
        items: Sequence[Mapping[str, Any]],
        shipping_address: Optional[Mapping[str, Any]],
        payment_method: Any,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            request = OrderCreationRequest.from_payload(buyer_id, items, shipping_address, payment_method, notes)
            with atomic_transaction() as session:
                order = self.orchestrator.create_order(session, request, now=now)
                snapshot = order.to_snapshot()
                order.escrow.to_snapshot()  # load entries before the session closes
            event = AuditEvent.build(Actor.user(buyer_id), "order_created", "order", order.order_number,
                                     None, {**snapshot, "escrow_number": order.escrow.escrow_number})
            return OperationResult(success=True, data=order, audit_events=[event])

        return _execute("create_order", work)

    def update_order_status(
        self, order_id: int, status: Any, actor_id: Optional[int], actor_kind: Any,
        note: Optional[str] = None, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            with atomic_transaction() as session:
                order = OrderService.get_order(session, order_id)
                before = order.to_snapshot()
                OrderService.update_order_status(session, order, status, actor, note, now=now)
                session.flush()
                after = order.to_snapshot()
            event = AuditEvent.build(actor, "order_status_updated", "order", order.order_number, before, after)
            return OperationResult(success=True, data=order, audit_events=[event])

        return _execute("update_order_status", work)

    def update_shipment_status(
        self, order_id: int, seller_id: int, status: Any, actor_id: Optional[int], actor_kind: Any,
        tracking_number: Optional[str] = None, carrier: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            with atomic_transaction() as session:
                order = OrderService.get_order(session, order_id)
                before = order.to_snapshot()
                OrderService.update_shipment_status(
                    session, order, seller_id, status, actor, tracking_number, carrier, now=now
                )
                session.flush()
                after = order.to_snapshot()
            event = AuditEvent.build(actor, "shipment_status_updated", "order", order.order_number, before, after)
            return OperationResult(success=True, data=order, audit_events=[event])

        return _execute("update_shipment_status", work)

    def cancel_order(
        self, order_id: int, actor_id: Optional[int], actor_kind: Any, reason: str,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            with atomic_transaction() as session:
                order = OrderService.get_order(session, order_id)
                before = order.to_snapshot()
                OrderService.cancel_order(session, order, actor, reason, now=now)
                session.flush()
                after = order.to_snapshot()
            event = AuditEvent.build(actor, "order_cancelled", "order", order.order_number, before, after)
            return OperationResult(success=True, data=order, audit_events=[event])

        return _execute("cancel_order", work)

    def get_seller_order_view(self, order_id: int, seller_id: int) -> OperationResult:
        def work() -> OperationResult:
            with atomic_transaction() as session:
                order = OrderService.get_order(session, order_id)
                view = OrderService.get_seller_order_view(order, seller_id)
            return OperationResult(success=True, data=view)

        return _execute("get_seller_order_view", work)

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def _mutate_escrow(
        self, operation: str, escrow_id: int, actor: Actor, mutate: Callable[[EscrowTransaction], Any],
        seller_id: Optional[int] = None,
    ) -> OperationResult:
        try:
            with atomic_transaction() as session:
                with locked_escrow_operation(escrow_id, session) as escrow:
                    before = escrow.to_snapshot()
                    mutate(escrow)
                    session.flush()
                    events = _escrow_events(escrow, actor, operation, before, self.policy)
                    session.flush()
        except StaleDataError as e:
            # Another writer committed first; report what it left behind
            current = _current_escrow_status(escrow_id, seller_id)
            logger.warning(f"CONCURRENT_UPDATE: {operation} on escrow {escrow_id} lost the race, now {current}")
            raise InvalidStateError(
                f"Escrow {escrow_id} was modified concurrently and is now {current}",
                current_status=current,
            ) from e
        return OperationResult(success=True, data=escrow, audit_events=events)

    def release_escrow_entry(
        self, escrow_id: int, seller_id: int, actor_id: Optional[int], actor_kind: Any,
        reason: Any = None, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            release_reason = reason or (
                ReleaseReason.ADMIN_RELEASE if actor.kind == ActorKind.ADMIN else ReleaseReason.BUYER_CONFIRMATION
            )
            return self._mutate_escrow(
                "escrow_released", escrow_id, actor,
                lambda escrow: EscrowService.release_funds(escrow, seller_id, actor, release_reason, now=now),
                seller_id=seller_id,
            )

        return _execute("release_escrow_entry", work)

    def refund_escrow(
        self, escrow_id: int, amount: Any, reason: str, actor_id: Optional[int], actor_kind: Any,
        method: Any = "original_payment", now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            return self._mutate_escrow(
                "escrow_refunded", escrow_id, actor,
                lambda escrow: EscrowService.refund_to_buyer(escrow, amount, reason, actor, method, now=now),
            )

        return _execute("refund_escrow", work)

    def dispute_escrow(
        self, escrow_id: int, reason: Any, description: str, actor_id: Optional[int], actor_kind: Any,
        evidence: Optional[Sequence[Mapping[str, Any]]] = None, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            return self._mutate_escrow(
                "escrow_disputed", escrow_id, actor,
                lambda escrow: EscrowService.create_dispute(escrow, reason, description, actor, evidence, now=now),
            )

        return _execute("dispute_escrow", work)

    def resolve_dispute(
        self, escrow_id: int, decision: Any, amount: Any, actor_id: Optional[int],
        notes: Optional[str] = None, actor_kind: Any = ActorKind.ADMIN, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            return self._mutate_escrow(
                "dispute_resolved", escrow_id, actor,
                lambda escrow: DisputeResolutionService.resolve_dispute(
                    escrow, decision, actor, amount=amount, notes=notes, now=now
                ),
            )

        return _execute("resolve_dispute", work)

    def cancel_escrow(
        self, escrow_id: int, actor_id: Optional[int], reason: str,
        actor_kind: Any = ActorKind.ADMIN, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            if actor.kind not in (ActorKind.ADMIN, ActorKind.SYSTEM):
                raise ValidationError("Only administrators can cancel an escrow", field="actor_kind")
            return self._mutate_escrow(
                "escrow_cancelled", escrow_id, actor,
                lambda escrow: EscrowService.cancel_escrow(escrow, actor, reason, now=now),
            )

        return _execute("cancel_escrow", work)

    def set_auto_release(
        self, escrow_id: int, allowed: bool, actor_id: Optional[int],
        actor_kind: Any = ActorKind.ADMIN, now: Optional[datetime] = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            actor = _actor(actor_kind, actor_id)
            if actor.kind not in (ActorKind.ADMIN, ActorKind.SYSTEM):
                raise ValidationError("Only administrators can change auto-release", field="actor_kind")
            return self._mutate_escrow(
                "escrow_auto_release_updated", escrow_id, actor,
                lambda escrow: EscrowService.set_auto_release(escrow, allowed, actor, now=now),
            )

        return _execute("set_auto_release", work)

    def get_escrow_statistics(self, buyer_id: Optional[int] = None) -> OperationResult:
        def work() -> OperationResult:
            with atomic_transaction() as session:
                stats = EscrowService.get_escrow_statistics(session, buyer_id)
            return OperationResult(success=True, data=stats)

        return _execute("get_escrow_statistics", work)

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    def run_auto_release(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """{released_count, results[]}; per-escrow audit events are emitted by the sweep"""
        from jobs.auto_release import run_auto_release
        return run_auto_release(now=now, policy=self.policy)

    def run_consistency_check(self) -> Dict[str, Any]:
        from jobs.escrow_consistency_monitor import run_consistency_check
        return run_consistency_check()


# Module-level default facade
settlement_api = SettlementAPI()
