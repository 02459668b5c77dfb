"""Order pricing and commission calculations for marketplace escrow settlement"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from config import Config
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementPolicy:
    """Snapshot of the money settings used to price a single order"""

    commission_rate: Decimal = Decimal("5.0")
    tax_rate: Decimal = Decimal("8.0")
    free_shipping_threshold: Optional[Decimal] = Decimal("100.00")
    flat_shipping_fee: Decimal = Decimal("10.00")
    hold_period_days: int = 7
    return_period_days: int = 30
    currency: str = "ZMW"
    activity_log_max_entries: Optional[int] = None

    @classmethod
    def from_config(cls) -> "SettlementPolicy":
        return cls(
            commission_rate=Config.COMMISSION_RATE_PERCENT,
            tax_rate=Config.TAX_RATE_PERCENT,
            free_shipping_threshold=Config.FREE_SHIPPING_THRESHOLD,
            flat_shipping_fee=Config.FLAT_SHIPPING_FEE,
            hold_period_days=Config.ESCROW_HOLD_PERIOD_DAYS,
            return_period_days=Config.RETURN_PERIOD_DAYS,
            currency=Config.DEFAULT_CURRENCY,
            activity_log_max_entries=Config.ESCROW_ACTIVITY_LOG_MAX_ENTRIES,
        )


@dataclass(frozen=True)
class PricedItemInput:
    """A line to be priced: unit price, quantity and owning seller"""

    unit_price: Decimal
    quantity: int
    seller_id: int
    product_id: Optional[int] = None


@dataclass(frozen=True)
class ItemBreakdown:
    product_id: Optional[int]
    seller_id: int
    unit_price: Decimal
    quantity: int
    total: Decimal
    commission_rate: Decimal
    commission: Decimal
    net: Decimal


@dataclass
class SellerBreakdown:
    seller_id: int
    subtotal: Decimal = Decimal("0.00")
    commission: Decimal = Decimal("0.00")
    net: Decimal = Decimal("0.00")
    item_count: int = 0


@dataclass
class OrderBreakdown:
    items: List[ItemBreakdown]
    sellers: List[SellerBreakdown]
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    commission_rate: Decimal
    tax_rate: Decimal

    def seller(self, seller_id: int) -> SellerBreakdown:
        for entry in self.sellers:
            if entry.seller_id == seller_id:
                return entry
        raise KeyError(seller_id)

    def to_dict(self) -> Dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "shipping": str(self.shipping),
            "tax": str(self.tax),
            "discount": str(self.discount),
            "total": str(self.total),
        }


class FeeCalculator:
    """Handles all pricing and commission calculations with decimal precision"""

    @classmethod
    def calculate_item_total(cls, unit_price, quantity: int) -> Decimal:
        if quantity is None or int(quantity) < 1:
            raise ValueError(f"Quantity must be at least 1, got {quantity}")
        unit = MonetaryDecimal.validate_non_negative(unit_price, "unit_price")
        return MonetaryDecimal.quantize(unit * int(quantity))

    @classmethod
    def calculate_commission(cls, amount, rate_percent) -> Decimal:
        """commission = round(amount * rate / 100)"""
        return MonetaryDecimal.percentage_of(amount, rate_percent)

    @classmethod
    def calculate_net(cls, amount, commission) -> Decimal:
        return MonetaryDecimal.subtract_precise(amount, commission)

    @classmethod
    def calculate_shipping(cls, subtotal, policy: SettlementPolicy) -> Decimal:
        """Free strictly above the threshold, flat fee otherwise; no threshold means never free"""
        subtotal = MonetaryDecimal.to_decimal(subtotal)
        if policy.free_shipping_threshold is not None and subtotal > policy.free_shipping_threshold:
            return MonetaryDecimal.ZERO
        return MonetaryDecimal.quantize(policy.flat_shipping_fee)

    @classmethod
    def calculate_tax(cls, subtotal, policy: SettlementPolicy) -> Decimal:
        return MonetaryDecimal.percentage_of(subtotal, policy.tax_rate)

    @classmethod
    def calculate_order_total(cls, subtotal, tax, shipping, discount=Decimal("0")) -> Decimal:
        """total = subtotal + tax + shipping - discount"""
        return MonetaryDecimal.quantize(
            MonetaryDecimal.to_decimal(subtotal)
            + MonetaryDecimal.to_decimal(tax)
            + MonetaryDecimal.to_decimal(shipping)
            - MonetaryDecimal.to_decimal(discount)
        )

    @classmethod
    def price_item(cls, item: PricedItemInput, policy: SettlementPolicy) -> ItemBreakdown:
        total = cls.calculate_item_total(item.unit_price, item.quantity)
        commission = cls.calculate_commission(total, policy.commission_rate)
        return ItemBreakdown(
            product_id=item.product_id,
            seller_id=item.seller_id,
            unit_price=MonetaryDecimal.quantize(item.unit_price),
            quantity=int(item.quantity),
            total=total,
            commission_rate=MonetaryDecimal.to_decimal(policy.commission_rate),
            commission=commission,
            net=cls.calculate_net(total, commission),
        )

    @classmethod
    def price_order(
        cls,
        items: Sequence[PricedItemInput],
        policy: Optional[SettlementPolicy] = None,
        discount=Decimal("0"),
    ) -> OrderBreakdown:
        """
        Price a full order.

        Per-seller commission is the sum of that seller's item commissions,
        so seller totals always reconcile with the line items. Sellers keep
        the order in which they first appear in `items`.
        """
        policy = policy or SettlementPolicy.from_config()
        if not items:
            raise ValueError("Order must contain at least one item")

        priced = [cls.price_item(item, policy) for item in items]

        sellers: "OrderedDict[int, SellerBreakdown]" = OrderedDict()
        for line in priced:
            seller = sellers.setdefault(line.seller_id, SellerBreakdown(seller_id=line.seller_id))
            seller.subtotal = MonetaryDecimal.add_precise(seller.subtotal, line.total)
            seller.commission = MonetaryDecimal.add_precise(seller.commission, line.commission)
            seller.item_count += 1
        for seller in sellers.values():
            seller.net = cls.calculate_net(seller.subtotal, seller.commission)

        subtotal = MonetaryDecimal.add_precise(*[line.total for line in priced])
        shipping = cls.calculate_shipping(subtotal, policy)
        tax = cls.calculate_tax(subtotal, policy)
        discount = MonetaryDecimal.quantize(discount)
        total = cls.calculate_order_total(subtotal, tax, shipping, discount)

        logger.debug(
            f"ORDER_PRICING: items={len(priced)} sellers={len(sellers)} "
            f"subtotal={subtotal} shipping={shipping} tax={tax} total={total}"
        )

        return OrderBreakdown(
            items=priced,
            sellers=[s for s in sellers.values() if s.subtotal > 0],
            subtotal=subtotal,
            shipping=shipping,
            tax=tax,
            discount=discount,
            total=total,
            commission_rate=MonetaryDecimal.to_decimal(policy.commission_rate),
            tax_rate=MonetaryDecimal.to_decimal(policy.tax_rate),
        )

    @classmethod
    def split_partial_refund(cls, refund_amount, shares: Sequence[Decimal], commission_rates: Sequence[Decimal]):
        """
        Split the retained part of a disputed pool across seller shares.

        Returns a list of (retained_amount, commission, net) tuples in the
        order of `shares`. Retained amounts sum exactly to pool - refund.
        """
        pool = MonetaryDecimal.add_precise(*shares) if shares else MonetaryDecimal.ZERO
        refund = MonetaryDecimal.quantize(refund_amount)
        retained_total = MonetaryDecimal.subtract_precise(pool, refund)
        retained = MonetaryDecimal.allocate_proportionally(retained_total, shares)

        result = []
        for amount, rate in zip(retained, commission_rates):
            commission = cls.calculate_commission(amount, rate)
            result.append((amount, commission, cls.calculate_net(amount, commission)))
        return result
