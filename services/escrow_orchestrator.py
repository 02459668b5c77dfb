"""
Order Settlement Orchestrator
Single entry point that reserves stock, snapshots line items, creates the
order and opens its escrow as one atomic unit of work.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from models import (
    Actor, Order, OrderItem, OrderItemStatus, OrderSellerShipment, OrderStatus, PaymentMethod,
    PaymentStatus, ShipmentStatus,
)
from services.escrow_service import EscrowService, parse_enum
from services.inventory_service import InventoryService
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exception_handler import ValidationError
from utils.fee_calculator import FeeCalculator, OrderBreakdown, PricedItemInput, SettlementPolicy
from utils.helpers import generate_buyer_reference, generate_order_number

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("city", "country")


@dataclass
class OrderItemRequest:
    """One requested line: product and quantity"""
    product_id: int
    quantity: int


@dataclass
class OrderCreationRequest:
    """Request model for order creation"""
    buyer_id: int
    items: List[OrderItemRequest]
    shipping_address: Dict[str, Any]
    payment_method: str
    notes: Optional[str] = None
    discount: Any = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        buyer_id: Any,
        items: Sequence[Mapping[str, Any]],
        shipping_address: Optional[Mapping[str, Any]],
        payment_method: Any,
        notes: Optional[str] = None,
    ) -> "OrderCreationRequest":
        """Validate raw input and build a request; raises ValidationError"""
        if buyer_id is None:
            raise ValidationError("Buyer is required", field="buyer_id")
        if not items:
            raise ValidationError("Order must contain at least one item", field="items")
        if isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Sequence):
            raise ValidationError("Items must be a list of {product_id, quantity}", field="items")

        parsed_items = []
        for index, raw in enumerate(items):
            if not isinstance(raw, Mapping):
                raise ValidationError(f"Item {index + 1} must be an object", field="items")
            product_id = raw.get("product_id", raw.get("product"))
            quantity = raw.get("quantity")
            if product_id is None:
                raise ValidationError(f"Item {index + 1} is missing a product", field="items")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError(
                    f"Item {index + 1} quantity must be a positive integer", field="items"
                )
            try:
                product_id = int(product_id)
            except (TypeError, ValueError):
                raise ValidationError(f"Item {index + 1} has an invalid product id", field="items")
            parsed_items.append(OrderItemRequest(product_id=product_id, quantity=quantity))

        if not shipping_address:
            raise ValidationError("Shipping address is required", field="shipping_address")
        if not isinstance(shipping_address, Mapping):
            raise ValidationError("Shipping address must be an object", field="shipping_address")
        missing = [f for f in REQUIRED_ADDRESS_FIELDS if not shipping_address.get(f)]
        if missing:
            raise ValidationError(
                f"Shipping address is missing: {', '.join(missing)}", field="shipping_address"
            )

        method = parse_enum(PaymentMethod, payment_method, "payment_method")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("Notes must be text", field="notes")
        if notes is not None and len(notes) > 1000:
            raise ValidationError("Notes cannot exceed 1000 characters", field="notes")

        return cls(
            buyer_id=buyer_id,
            items=parsed_items,
            shipping_address=dict(shipping_address),
            payment_method=method.value,
            notes=notes,
        )


class SettlementOrchestrator:
    """
    Creates orders with stock reservation and escrow in one transaction.

    The caller owns the transaction: any exception raised here must be
    followed by a rollback, which also undoes every stock reservation.
    """

    def __init__(self, policy: Optional[SettlementPolicy] = None):
        self.policy = policy or SettlementPolicy.from_config()

    def create_order(
        self,
        session: Session,
        request: OrderCreationRequest,
        now: Optional[datetime] = None,
    ) -> Order:
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        actor = Actor.user(request.buyer_id)

        # Reserve stock item by item; rollback undoes every reservation
        products = []
        priced_inputs = []
        for item in request.items:
            product = InventoryService.load_purchasable_product(session, item.product_id, item.quantity)
            InventoryService.reserve_stock(session, product, item.quantity)
            products.append(product)
            priced_inputs.append(PricedItemInput(
                unit_price=product.price,
                quantity=item.quantity,
                seller_id=product.seller_id,
                product_id=product.id,
            ))

        # Totals are needed before the order row exists
        try:
            breakdown = FeeCalculator.price_order(priced_inputs, self.policy, discount=request.discount)
        except ValueError as e:
            raise ValidationError(str(e), field="items") from e

        order = self._build_order(request, breakdown, now)

        # Line items with commission precomputed
        for product, line in zip(products, breakdown.items):
            order.items.append(OrderItem(
                product_id=product.id,
                seller_id=product.seller_id,
                product_name=product.name,
                product_image=product.image_url,
                product_price=product.price,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total,
                base_price=line.unit_price,
                commission_rate=line.commission_rate,
                commission_amount=line.commission,
                status=OrderItemStatus.PENDING.value,
                return_period_days=self.policy.return_period_days,
                created_at=now,
            ))

        for seller in breakdown.sellers:
            order.shipments.append(OrderSellerShipment(
                seller_id=seller.seller_id,
                subtotal=seller.subtotal,
                commission=seller.commission,
                status=ShipmentStatus.PENDING.value,
            ))

        session.add(order)

        # Escrow with one entry per seller
        EscrowService.create_escrow(
            session, order, breakdown, self.policy, request.payment_method, actor, now=now
        )
        session.flush()

        logger.info(
            f"ORDER_CREATE: {order.order_number} buyer={request.buyer_id} items={len(order.items)} "
            f"sellers={len(order.shipments)} total={order.total_amount} escrow={order.escrow.escrow_number}"
        )
        return order

    def _build_order(self, request: OrderCreationRequest, breakdown: OrderBreakdown, now: datetime) -> Order:
        order = Order(
            order_number=generate_order_number(),
            buyer_id=request.buyer_id,
            buyer_ref=generate_buyer_reference(),
            subtotal=breakdown.subtotal,
            tax_amount=breakdown.tax,
            shipping_cost=breakdown.shipping,
            discount_amount=breakdown.discount,
            currency=self.policy.currency,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.HELD.value,
            shipping_address=request.shipping_address,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        order.recalculate_total()
        order.set_status(OrderStatus.PENDING, Actor.user(request.buyer_id), "Order placed", at=now)
        return order
