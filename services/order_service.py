"""
Order lifecycle service
Role-based status transitions, per-seller shipment progress, cancellation
with stock restoration, and the privacy-preserving seller view.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from config import Config
from models import (
    Actor, ActorKind, EntryStatus, Order, OrderItemStatus, OrderStatus, PaymentStatus,
    ReleaseReason, ShipmentStatus,
)
from services.escrow_service import EscrowService, parse_enum
from services.inventory_service import InventoryService
from utils.atomic_transactions import locked_escrow_operation
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now, to_iso
from utils.exception_handler import InvalidStateError, NotFoundError, ValidationError
from utils.helpers import mask_shipping_address

logger = logging.getLogger(__name__)

_P = OrderStatus

# Allowed order-level transitions per role
ORDER_TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
    "buyer": {
        _P.PENDING.value: {_P.CANCELLED.value},
        _P.CONFIRMED.value: {_P.CANCELLED.value},
        _P.SHIPPED.value: {_P.DELIVERED.value},
        _P.DELIVERED.value: {_P.COMPLETED.value},
    },
    "seller": {
        _P.PENDING.value: {_P.CONFIRMED.value, _P.CANCELLED.value},
        _P.CONFIRMED.value: {_P.PROCESSING.value, _P.CANCELLED.value},
        _P.PROCESSING.value: {_P.SHIPPED.value, _P.CANCELLED.value},
        _P.SHIPPED.value: {_P.DELIVERED.value},
    },
    "admin": {
        _P.PENDING.value: {_P.CONFIRMED.value, _P.PROCESSING.value, _P.CANCELLED.value},
        _P.CONFIRMED.value: {_P.PROCESSING.value, _P.SHIPPED.value, _P.CANCELLED.value},
        _P.PROCESSING.value: {_P.SHIPPED.value, _P.CANCELLED.value},
        _P.SHIPPED.value: {_P.DELIVERED.value},
        _P.DELIVERED.value: {_P.COMPLETED.value},
    },
}

CANCELLABLE_STATUSES = {_P.PENDING.value, _P.CONFIRMED.value, _P.PROCESSING.value}

# Fulfillment progression shared by orders and shipments
SHIPMENT_PROGRESS = [
    ShipmentStatus.PENDING.value,
    ShipmentStatus.CONFIRMED.value,
    ShipmentStatus.PROCESSING.value,
    ShipmentStatus.SHIPPED.value,
    ShipmentStatus.DELIVERED.value,
]

ITEM_STATUS_FOR_SHIPMENT = {
    ShipmentStatus.CONFIRMED.value: OrderItemStatus.CONFIRMED.value,
    ShipmentStatus.PROCESSING.value: OrderItemStatus.PROCESSING.value,
    ShipmentStatus.SHIPPED.value: OrderItemStatus.SHIPPED.value,
    ShipmentStatus.DELIVERED.value: OrderItemStatus.DELIVERED.value,
}


def role_for(actor: Actor) -> str:
    if actor.kind == ActorKind.USER:
        return "buyer"
    if actor.kind == ActorKind.SELLER:
        return "seller"
    return "admin"


class OrderService:
    """Order transitions; callers own the transaction and audit emission"""

    @staticmethod
    def get_order(session: Session, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    @staticmethod
    def _check_participant(order: Order, actor: Actor) -> None:
        role = role_for(actor)
        if role == "buyer" and actor.id != order.buyer_id:
            raise ValidationError("Only the buyer of this order can change it", field="actor_id")
        if role == "seller" and actor.id not in order.seller_ids:
            raise ValidationError("Seller has no items in this order", field="actor_id")

    @staticmethod
    def allowed_transitions(order: Order, actor: Actor) -> Set[str]:
        """Sellers move from their own shipment status, everyone else from the order status"""
        role = role_for(actor)
        current = order.status
        if role == "seller" and order.status not in (OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value):
            shipment = order.shipment_for(actor.id)
            current = shipment.status if shipment is not None else order.status
        return ORDER_TRANSITIONS[role].get(current, set())

    @classmethod
    def update_order_status(
        cls,
        session: Session,
        order: Order,
        new_status: Any,
        actor: Actor,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Move the whole order to `new_status` if the actor's role allows it.

        Sellers act on their own shipment; the order advances once every
        shipment has caught up. Cancellation is delegated to cancel_order.
        """
        new_status = parse_enum(OrderStatus, new_status, "status")
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        cls._check_participant(order, actor)

        if new_status.value not in cls.allowed_transitions(order, actor):
            logger.warning(
                f"ORDER_TRANSITION_REJECTED: {order.order_number} {order.status} -> {new_status.value} "
                f"by {role_for(actor)}"
            )
            raise InvalidStateError(
                f"Cannot change order from {order.status} to {new_status.value}",
                current_status=order.status,
            )

        if new_status == OrderStatus.CANCELLED:
            return cls.cancel_order(session, order, actor, note or "Cancelled", now=now)

        if role_for(actor) == "seller":
            return cls.update_shipment_status(session, order, actor.id, new_status.value, actor, now=now)

        if new_status == OrderStatus.COMPLETED:
            cls._complete(session, order, actor, note, now)
            return order

        for shipment in order.shipments:
            if shipment.status != ShipmentStatus.CANCELLED.value:
                cls._advance_shipment(order, shipment, new_status.value, now)
        cls._apply_order_status(order, new_status, actor, note, now)
        return order

    @classmethod
    def update_shipment_status(
        cls,
        session: Session,
        order: Order,
        seller_id: int,
        new_status: Any,
        actor: Actor,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Advance one seller's shipment; the order follows its slowest shipment"""
        new_status = parse_enum(ShipmentStatus, new_status, "status")
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        cls._check_participant(order, actor)
        if role_for(actor) == "seller" and actor.id != seller_id:
            raise ValidationError("Sellers can only update their own shipment", field="seller_id")
        if role_for(actor) == "buyer" and new_status != ShipmentStatus.DELIVERED:
            raise ValidationError("Buyers can only confirm delivery", field="status")

        shipment = order.shipment_for(seller_id)
        if shipment is None:
            raise NotFoundError("shipment", seller_id, f"Seller {seller_id} has no shipment in this order")
        if role_for(actor) == "buyer" and shipment.status != ShipmentStatus.SHIPPED.value:
            raise InvalidStateError(
                f"Shipment for seller {seller_id} has not been shipped", current_status=shipment.status
            )
        if new_status == ShipmentStatus.CANCELLED:
            raise ValidationError("Cancel the order instead of a single shipment", field="status")
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value,
                            OrderStatus.REFUNDED.value):
            raise InvalidStateError(
                f"Order {order.order_number} is {order.status}", current_status=order.status
            )

        current = SHIPMENT_PROGRESS.index(shipment.status) if shipment.status in SHIPMENT_PROGRESS else -1
        target = SHIPMENT_PROGRESS.index(new_status.value)
        if target <= current:
            raise InvalidStateError(
                f"Shipment for seller {seller_id} is already {shipment.status}",
                current_status=shipment.status,
            )

        if tracking_number:
            shipment.tracking_number = tracking_number
        if carrier:
            shipment.carrier = carrier
        cls._advance_shipment(order, shipment, new_status.value, now)

        active = [s for s in order.shipments if s.status != ShipmentStatus.CANCELLED.value]
        slowest = min(SHIPMENT_PROGRESS.index(s.status) for s in active)
        order_progress = SHIPMENT_PROGRESS.index(order.status) if order.status in SHIPMENT_PROGRESS else -1
        if slowest > order_progress:
            cls._apply_order_status(
                order, OrderStatus(SHIPMENT_PROGRESS[slowest]), actor,
                f"All shipments {SHIPMENT_PROGRESS[slowest]}", now,
            )

        logger.info(
            f"SHIPMENT_UPDATE: {order.order_number} seller={seller_id} -> {new_status.value} "
            f"order_status={order.status}"
        )
        return order

    @staticmethod
    def _advance_shipment(order: Order, shipment, status: str, now: datetime) -> None:
        shipment.status = status
        if status == ShipmentStatus.SHIPPED.value and shipment.shipped_at is None:
            shipment.shipped_at = now
        if status == ShipmentStatus.DELIVERED.value:
            shipment.delivered_at = shipment.delivered_at or now
        item_status = ITEM_STATUS_FOR_SHIPMENT.get(status)
        for item in order.items_for_seller(shipment.seller_id):
            if item_status:
                item.status = item_status
            if status == ShipmentStatus.DELIVERED.value and item.delivered_at is None:
                item.delivered_at = now

    @staticmethod
    def _apply_order_status(order: Order, status: OrderStatus, actor: Actor, note: Optional[str], now) -> None:
        previous = order.status
        order.set_status(status, actor, note, at=now)
        if status == OrderStatus.DELIVERED:
            order.delivered_at = order.delivered_at or now
        logger.info(f"ORDER_STATUS: {order.order_number} {previous} -> {status.value}")

    @classmethod
    def _complete(cls, session: Session, order: Order, actor: Actor, note: Optional[str], now) -> None:
        """Buyer confirmation: release every still-held seller entry"""
        escrow = order.escrow
        if escrow is not None:
            with locked_escrow_operation(escrow.id, session) as locked:
                if locked.entries_in(EntryStatus.HELD):
                    EscrowService.release_all_held(locked, actor, ReleaseReason.BUYER_CONFIRMATION, now=now)
            order.payment_status = PaymentStatus.RELEASED.value
        order.completed_at = now
        cls._apply_order_status(order, OrderStatus.COMPLETED, actor, note or "Order completed", now)

    @classmethod
    def cancel_order(
        cls,
        session: Session,
        order: Order,
        actor: Actor,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Order:
        """Cancel before shipping: restore stock and cancel the escrow together"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        cls._check_participant(order, actor)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Order cannot be cancelled in {order.status} status", current_status=order.status
            )

        for item in order.items:
            InventoryService.restore_stock(session, item.product_id, item.quantity)
            item.status = OrderItemStatus.CANCELLED.value
        for shipment in order.shipments:
            shipment.status = ShipmentStatus.CANCELLED.value

        escrow = order.escrow
        if escrow is not None:
            with locked_escrow_operation(escrow.id, session) as locked:
                EscrowService.cancel_escrow(locked, actor, f"Order cancelled: {reason}", now=now)

        order.cancelled_at = now
        order.cancellation_reason = reason
        order.payment_status = PaymentStatus.REFUNDED.value
        cls._apply_order_status(order, OrderStatus.CANCELLED, actor, reason, now)
        return order

    @staticmethod
    def get_seller_order_view(order: Order, seller_id: int, share_contact: Optional[bool] = None) -> Dict[str, Any]:
        """Order as one seller sees it: buyer token instead of identity, own items only"""
        shipment = order.shipment_for(seller_id)
        if shipment is None:
            raise NotFoundError("order", order.id, f"Order {order.order_number} has no items for seller {seller_id}")
        if share_contact is None:
            share_contact = Config.SHARE_BUYER_CONTACT_WITH_SELLERS

        items: List[Dict[str, Any]] = [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "total_price": str(item.total_price),
                "commission": str(item.commission_amount),
                "status": item.status,
            }
            for item in order.items_for_seller(seller_id)
        ]
        view = {
            "order_number": order.order_number,
            "buyer_ref": order.buyer_ref,
            "status": order.status,
            "shipment_status": shipment.status,
            "tracking_number": shipment.tracking_number,
            "subtotal": str(shipment.subtotal),
            "commission": str(shipment.commission),
            "items": items,
            "shipping_address": mask_shipping_address(order.shipping_address, share_contact),
            "created_at": to_iso(order.created_at),
        }
        if share_contact:
            view["buyer_id"] = order.buyer_id
        return view
