"""
Marketplace Escrow Settlement - Database Schema
===============================================

Schema for multi-vendor order settlement:
- Products with stock that is reserved at order time
- Orders with immutable line-item snapshots and per-seller shipment tracking
- One escrow transaction per order holding a slice of funds per seller
- Disputes, refunds and an append-only activity log per escrow

Money columns are Numeric(12, 2); all DateTime columns hold naive UTC values.
Derived values (order total, escrow aggregate status) are recomputed in the
session `before_flush` hook registered at the bottom of this module.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, event,
)
from sqlalchemy.orm import DeclarativeBase, Session, relationship

from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime, to_iso


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class ActorKind(Enum):
    """Who performed an action"""
    ADMIN = "admin"
    USER = "user"
    SELLER = "seller"
    SYSTEM = "system"


class ProductStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ShipmentStatus(Enum):
    """Per-seller fulfillment sub-status within an order"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderItemStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentMethod(Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class PaymentStatus(Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowStatus(Enum):
    """Aggregate escrow status, derived from seller entry statuses"""
    HELD = "held"
    PARTIALLY_RELEASED = "partially_released"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class EntryStatus(Enum):
    """Status of a single seller's slice of escrowed funds"""
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class DisputeReason(Enum):
    NON_DELIVERY = "non_delivery"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described"
    DAMAGED_ITEM = "damaged_item"
    UNAUTHORIZED_TRANSACTION = "unauthorized_transaction"
    OTHER = "other"


class DisputeDecision(Enum):
    BUYER_FAVOR = "buyer_favor"
    SELLER_FAVOR = "seller_favor"
    PARTIAL_REFUND = "partial_refund"


class ReleaseReason(Enum):
    BUYER_CONFIRMATION = "buyer_confirmation"
    AUTO_RELEASE = "auto_release"
    ADMIN_RELEASE = "admin_release"
    DISPUTE_RESOLUTION = "dispute_resolution"


class RefundMethod(Enum):
    ORIGINAL_PAYMENT = "original_payment"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    STORE_CREDIT = "store_credit"


class RefundStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EscrowAction(Enum):
    """Activity log action names"""
    CREATED = "created"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    CANCELLED = "cancelled"
    AUTO_RELEASED = "auto_released"
    MANUALLY_RELEASED = "manually_released"
    AUTO_RELEASE_FLAGGED = "auto_release_flagged"
    AUTO_RELEASE_ENABLED = "auto_release_enabled"
    AUTO_RELEASE_DISABLED = "auto_release_disabled"


class EvidenceType(Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    TEXT = "text"


@dataclass(frozen=True)
class Actor:
    """Tagged 'performed by' value: (kind, id). System actors carry no id."""

    kind: ActorKind
    id: Optional[int] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorKind.SYSTEM, None)

    @classmethod
    def admin(cls, admin_id: int) -> "Actor":
        return cls(ActorKind.ADMIN, admin_id)

    @classmethod
    def user(cls, user_id: int) -> "Actor":
        return cls(ActorKind.USER, user_id)

    @classmethod
    def seller(cls, seller_id: int) -> "Actor":
        return cls(ActorKind.SELLER, seller_id)

    @classmethod
    def from_parts(cls, kind: Any, actor_id: Optional[int]) -> "Actor":
        actor_kind = kind if isinstance(kind, ActorKind) else ActorKind(str(kind).lower())
        return cls(actor_kind, None if actor_kind == ActorKind.SYSTEM else actor_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "id": self.id}


def _money(value) -> Optional[str]:
    return None if value is None else str(Decimal(str(value)).quantize(Decimal("0.01")))


# ============================================================================
# CATALOG
# ============================================================================

class Product(Base):
    """Sellable product; only stock is touched by settlement"""
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ProductStatus.ACTIVE.value)
    image_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE.value


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """Buyer order spanning one or more sellers"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(40), unique=True, nullable=False, index=True)
    buyer_id = Column(Integer, nullable=False, index=True)
    buyer_ref = Column(String(20), unique=True, nullable=False)  # Shown to sellers instead of buyer_id

    # Totals; total_amount is always recomputed from the components
    subtotal = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="ZMW")

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = Column(String(30), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.HELD.value)

    shipping_address = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id",
                         cascade="all, delete-orphan")
    shipments = relationship("OrderSellerShipment", back_populates="order",
                             order_by="OrderSellerShipment.id", cascade="all, delete-orphan")
    status_history = relationship("OrderStatusHistory", back_populates="order",
                                  order_by="OrderStatusHistory.id", cascade="all, delete-orphan")
    escrow = relationship("EscrowTransaction", back_populates="order", uselist=False)

    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
    )

    def recalculate_total(self) -> Decimal:
        """total = subtotal + tax + shipping - discount, quantized"""
        from utils.fee_calculator import FeeCalculator
        self.total_amount = FeeCalculator.calculate_order_total(
            self.subtotal or 0, self.tax_amount or 0, self.shipping_cost or 0, self.discount_amount or 0
        )
        return self.total_amount

    def set_status(self, status: OrderStatus, actor: Actor, note: Optional[str] = None, at=None) -> None:
        """Change status and append the matching history row"""
        timestamp = ensure_naive_datetime(at) or get_naive_utc_now()
        self.status = status.value
        self.updated_at = timestamp
        self.status_history.append(OrderStatusHistory(
            status=status.value,
            note=note,
            actor_kind=actor.kind.value,
            actor_id=actor.id,
            created_at=timestamp,
        ))

    def shipment_for(self, seller_id: int) -> Optional["OrderSellerShipment"]:
        for shipment in self.shipments:
            if shipment.seller_id == seller_id:
                return shipment
        return None

    def items_for_seller(self, seller_id: int) -> List["OrderItem"]:
        return [item for item in self.items if item.seller_id == seller_id]

    @property
    def seller_ids(self) -> List[int]:
        return [shipment.seller_id for shipment in self.shipments]

    @property
    def is_delivered(self) -> bool:
        """Delivery eligibility used by auto-release"""
        return self.status in (OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value)

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "order_number": self.order_number,
            "buyer_ref": self.buyer_ref,
            "status": self.status,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "shipping_cost": _money(self.shipping_cost),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "item_count": len(self.items),
            "sellers": [
                {"seller_id": s.seller_id, "status": s.status, "subtotal": _money(s.subtotal)}
                for s in self.shipments
            ],
        }


class OrderStatusHistory(Base):
    """Append-only order status trail"""
    __tablename__ = 'order_status_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    note = Column(Text, nullable=True)
    actor_kind = Column(String(10), nullable=False)
    actor_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    order = relationship("Order", back_populates="status_history")


class OrderSellerShipment(Base):
    """Per-seller slice of an order: subtotal, commission and delivery progress"""
    __tablename__ = 'order_seller_shipments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=ShipmentStatus.PENDING.value)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="shipments")

    __table_args__ = (
        UniqueConstraint('order_id', 'seller_id', name='uq_shipment_order_seller'),
    )


class OrderItem(Base):
    """Line item with an immutable snapshot of the product at purchase time"""
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)

    # Product snapshot
    product_name = Column(String(255), nullable=False)
    product_image = Column(String(500), nullable=True)
    product_price = Column(Numeric(12, 2), nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    # Pricing breakdown
    base_price = Column(Numeric(12, 2), nullable=False)
    variant_adjustment = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    customization_cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=OrderItemStatus.PENDING.value)
    delivered_at = Column(DateTime, nullable=True)
    return_period_days = Column(Integer, nullable=False, default=30)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
    )

    @property
    def seller_earnings(self) -> Decimal:
        return Decimal(str(self.total_price)) - Decimal(str(self.commission_amount))

    def can_return(self, now=None) -> bool:
        """Delivered and still inside the return window"""
        if self.delivered_at is None or self.status != OrderItemStatus.DELIVERED.value:
            return False
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        return self.delivered_at + timedelta(days=self.return_period_days or 0) >= now


# ============================================================================
# ESCROW
# ============================================================================

class EscrowTransaction(Base):
    """Funds held for one order, split into one entry per seller"""
    __tablename__ = 'escrow_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_number = Column(String(40), unique=True, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey('orders.id'), unique=True, nullable=False)
    buyer_id = Column(Integer, nullable=False, index=True)

    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ZMW")

    # Derived from entry statuses on every flush; never set directly
    status = Column(String(20), nullable=False, default=EscrowStatus.HELD.value, index=True)

    hold_period_days = Column(Integer, nullable=False, default=7)
    auto_release_date = Column(DateTime, nullable=False, index=True)
    allow_auto_release = Column(Boolean, nullable=False, default=True)
    auto_release_flagged_at = Column(DateTime, nullable=True)  # Past due but order not delivered
    auto_release_warning_sent_at = Column(DateTime, nullable=True)

    # Payment details
    payment_method = Column(String(30), nullable=True)
    payment_reference = Column(String(40), unique=True, nullable=True)

    # Fees
    escrow_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    processing_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    dispute_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    refund_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Administrative cancellation (terminal)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by_kind = Column(String(10), nullable=True)
    cancelled_by_id = Column(Integer, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    order = relationship("Order", back_populates="escrow")
    entries = relationship("EscrowSellerEntry", back_populates="escrow",
                           order_by="EscrowSellerEntry.position", cascade="all, delete-orphan")
    dispute = relationship("EscrowDispute", back_populates="escrow", uselist=False,
                           cascade="all, delete-orphan")
    refunds = relationship("EscrowRefund", back_populates="escrow", order_by="EscrowRefund.id",
                           cascade="all, delete-orphan")
    activities = relationship("EscrowActivity", back_populates="escrow", order_by="EscrowActivity.id",
                              cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_escrow_status_release_date', 'status', 'auto_release_date'),
        CheckConstraint('total_amount >= 0', name='ck_escrow_total_non_negative'),
    )

    def entry_for(self, seller_id: int) -> Optional["EscrowSellerEntry"]:
        for entry in self.entries:
            if entry.seller_id == seller_id:
                return entry
        return None

    def entries_in(self, status: EntryStatus) -> List["EscrowSellerEntry"]:
        return [entry for entry in self.entries if entry.status == status.value]

    @property
    def has_open_dispute(self) -> bool:
        return self.dispute is not None and bool(self.dispute.is_open)

    @property
    def held_amount(self) -> Decimal:
        return sum(
            (Decimal(str(e.amount)) for e in self.entries
             if e.status in (EntryStatus.HELD.value, EntryStatus.DISPUTED.value)),
            Decimal("0.00"),
        )

    @property
    def refunded_amount(self) -> Decimal:
        return sum((Decimal(str(r.amount)) for r in self.refunds), Decimal("0.00"))

    @property
    def released_amount(self) -> Decimal:
        return sum(
            (Decimal(str(e.amount)) for e in self.entries if e.status == EntryStatus.RELEASED.value),
            Decimal("0.00"),
        )

    @property
    def total_fees(self) -> Decimal:
        return sum(
            (Decimal(str(fee or 0)) for fee in
             (self.escrow_fee, self.processing_fee, self.dispute_fee, self.refund_fee)),
            Decimal("0.00"),
        )

    def recompute_status(self) -> str:
        """Write the derived aggregate status onto the stored column"""
        from utils.escrow_state_machine import derive_escrow_status
        derived = derive_escrow_status(
            [entry.status for entry in self.entries],
            dispute_open=self.has_open_dispute,
            cancelled=self.cancelled_at is not None,
        )
        self.status = derived.value
        return self.status

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "escrow_number": self.escrow_number,
            "status": self.status,
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "auto_release_date": to_iso(self.auto_release_date),
            "allow_auto_release": bool(self.allow_auto_release),
            "entries": [entry.to_snapshot() for entry in self.entries],
            "dispute": self.dispute.to_snapshot() if self.dispute is not None else None,
            "refunded_amount": _money(self.refunded_amount),
        }


class EscrowSellerEntry(Base):
    """One seller's slice of an escrow; the set of entries is fixed at creation"""
    __tablename__ = 'escrow_seller_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    original_amount = Column(Numeric(12, 2), nullable=False)  # Share at creation, basis for dispute splits
    amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=EntryStatus.HELD.value)
    released_at = Column(DateTime, nullable=True)
    release_reason = Column(String(30), nullable=True)
    released_by_kind = Column(String(10), nullable=True)
    released_by_id = Column(Integer, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="entries")

    __table_args__ = (
        UniqueConstraint('escrow_id', 'seller_id', name='uq_escrow_entry_seller'),
        CheckConstraint('amount >= 0', name='ck_escrow_entry_amount_non_negative'),
    )

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "seller_id": self.seller_id,
            "status": self.status,
            "amount": _money(self.amount),
            "commission": _money(self.commission),
            "net_amount": _money(self.net_amount),
            "release_reason": self.release_reason,
        }


class EscrowDispute(Base):
    """At most one dispute per escrow"""
    __tablename__ = 'escrow_disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), unique=True, nullable=False)
    reason = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    opened_by_kind = Column(String(10), nullable=False)
    opened_by_id = Column(Integer, nullable=True)
    opened_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    is_open = Column(Boolean, nullable=False, default=True)

    decision = Column(String(20), nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by_kind = Column(String(10), nullable=True)
    resolved_by_id = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="dispute")
    evidence = relationship("EscrowDisputeEvidence", back_populates="dispute",
                            order_by="EscrowDisputeEvidence.id", cascade="all, delete-orphan")

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "is_open": bool(self.is_open),
            "decision": self.decision,
            "refund_amount": _money(self.refund_amount),
            "resolved_at": to_iso(self.resolved_at),
        }


class EscrowDisputeEvidence(Base):
    __tablename__ = 'escrow_dispute_evidence'

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey('escrow_disputes.id'), nullable=False, index=True)
    evidence_type = Column(String(20), nullable=False)
    url = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    submitted_by_kind = Column(String(10), nullable=False)
    submitted_by_id = Column(Integer, nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    dispute = relationship("EscrowDispute", back_populates="evidence")


class EscrowRefund(Base):
    """Append-only refund ledger"""
    __tablename__ = 'escrow_refunds'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    method = Column(String(30), nullable=False, default=RefundMethod.ORIGINAL_PAYMENT.value)
    status = Column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    processed_by_kind = Column(String(10), nullable=False)
    processed_by_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    processed_at = Column(DateTime, nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="refunds")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_refund_amount_positive'),
    )


class EscrowActivity(Base):
    """Append-only activity log entry"""
    __tablename__ = 'escrow_activities'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    action = Column(String(30), nullable=False)
    actor_kind = Column(String(10), nullable=False)
    actor_id = Column(Integer, nullable=True)
    detail = Column(Text, nullable=True)
    extra = Column('metadata', JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=get_naive_utc_now)

    escrow = relationship("EscrowTransaction", back_populates="activities")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor": {"kind": self.actor_kind, "id": self.actor_id},
            "detail": self.detail,
            "metadata": self.extra,
            "timestamp": to_iso(self.timestamp),
        }


# ============================================================================
# DERIVED VALUES
# ============================================================================

@event.listens_for(Session, "before_flush")
def _recompute_derived_values(session: Session, flush_context, instances) -> None:
    """
    Keep stored derived columns in sync with their sources.

    - Order.total_amount from subtotal/tax/shipping/discount
    - EscrowTransaction.status from its entry statuses, with updated_at bumped
      so the version counter moves on every escrow mutation
    """
    touched_escrows = set()
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Order):
            obj.recalculate_total()
        elif isinstance(obj, EscrowTransaction):
            touched_escrows.add(obj)
        elif isinstance(obj, (EscrowSellerEntry, EscrowDispute, EscrowRefund, EscrowActivity)):
            if obj.escrow is not None:
                touched_escrows.add(obj.escrow)

    now = get_naive_utc_now()
    for escrow in touched_escrows:
        escrow.recompute_status()
        if escrow not in session.new:
            escrow.updated_at = now
