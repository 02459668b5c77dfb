"""
Pricing and commission calculations
"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.fee_calculator import FeeCalculator, PricedItemInput, SettlementPolicy


class TestOrderPricing:
    """Totals, shipping and tax for multi-seller orders"""

    @pytest.fixture
    def no_free_shipping(self):
        return SettlementPolicy(free_shipping_threshold=None)

    def test_two_seller_order_without_free_shipping(self, no_free_shipping):
        breakdown = FeeCalculator.price_order(
            [
                PricedItemInput(Decimal("100.00"), 1, seller_id=1),
                PricedItemInput(Decimal("50.00"), 1, seller_id=2),
            ],
            no_free_shipping,
        )

        assert breakdown.subtotal == Decimal("150.00")
        assert breakdown.tax == Decimal("12.00")
        assert breakdown.shipping == Decimal("10.00")
        assert breakdown.total == Decimal("172.00")

        seller_a = breakdown.seller(1)
        assert (seller_a.subtotal, seller_a.commission, seller_a.net) == (
            Decimal("100.00"), Decimal("5.00"), Decimal("95.00")
        )
        seller_b = breakdown.seller(2)
        assert (seller_b.subtotal, seller_b.commission, seller_b.net) == (
            Decimal("50.00"), Decimal("2.50"), Decimal("47.50")
        )

    def test_shipping_is_free_strictly_above_threshold(self):
        policy = SettlementPolicy(free_shipping_threshold=Decimal("100.00"))

        assert FeeCalculator.calculate_shipping(Decimal("100.00"), policy) == Decimal("10.00")
        assert FeeCalculator.calculate_shipping(Decimal("100.01"), policy) == Decimal("0.00")

    def test_total_reconciles_with_components(self, no_free_shipping):
        breakdown = FeeCalculator.price_order(
            [PricedItemInput(Decimal("19.99"), 3, seller_id=5)],
            no_free_shipping,
            discount=Decimal("5.00"),
        )

        assert breakdown.subtotal == Decimal("59.97")
        assert breakdown.tax == Decimal("4.80")  # 4.7976 rounds half up
        assert breakdown.total == breakdown.subtotal + breakdown.tax + breakdown.shipping - breakdown.discount

    def test_sellers_keep_first_appearance_order(self, no_free_shipping):
        breakdown = FeeCalculator.price_order(
            [
                PricedItemInput(Decimal("10.00"), 1, seller_id=9),
                PricedItemInput(Decimal("20.00"), 1, seller_id=3),
                PricedItemInput(Decimal("5.00"), 2, seller_id=9),
            ],
            no_free_shipping,
        )

        assert [s.seller_id for s in breakdown.sellers] == [9, 3]
        assert breakdown.seller(9).subtotal == Decimal("20.00")
        assert breakdown.seller(9).item_count == 2

    def test_seller_commission_is_sum_of_item_commissions(self, no_free_shipping):
        # 0.30 * 5% = 0.015 -> 0.02 per item, whereas 0.60 * 5% = 0.03
        breakdown = FeeCalculator.price_order(
            [
                PricedItemInput(Decimal("0.30"), 1, seller_id=4),
                PricedItemInput(Decimal("0.30"), 1, seller_id=4),
            ],
            no_free_shipping,
        )

        assert breakdown.seller(4).commission == Decimal("0.04")
        assert breakdown.seller(4).net == Decimal("0.56")

    def test_zero_priced_seller_gets_no_escrow_share(self, no_free_shipping):
        breakdown = FeeCalculator.price_order(
            [
                PricedItemInput(Decimal("40.00"), 1, seller_id=1),
                PricedItemInput(Decimal("0.00"), 1, seller_id=2),
            ],
            no_free_shipping,
        )

        assert [s.seller_id for s in breakdown.sellers] == [1]

    def test_empty_order_is_rejected(self, no_free_shipping):
        with pytest.raises(ValueError):
            FeeCalculator.price_order([], no_free_shipping)

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError):
            FeeCalculator.calculate_item_total(Decimal("10.00"), 0)


class TestCommission:
    """Commission rounding and partial refund splits"""

    def test_commission_rounds_half_up(self):
        assert FeeCalculator.calculate_commission(Decimal("0.10"), Decimal("5")) == Decimal("0.01")
        assert FeeCalculator.calculate_commission(Decimal("0.09"), Decimal("5")) == Decimal("0.00")

    def test_partial_refund_split_keeps_proportions(self):
        split = FeeCalculator.split_partial_refund(
            Decimal("60.00"),
            [Decimal("100.00"), Decimal("50.00")],
            [Decimal("5"), Decimal("5")],
        )

        assert split == [
            (Decimal("60.00"), Decimal("3.00"), Decimal("57.00")),
            (Decimal("30.00"), Decimal("1.50"), Decimal("28.50")),
        ]

    def test_split_remainder_goes_to_largest_share(self):
        shares = MonetaryDecimal.allocate_proportionally(
            Decimal("0.10"), [Decimal("1.00"), Decimal("1.00"), Decimal("1.00")]
        )

        assert shares == [Decimal("0.04"), Decimal("0.03"), Decimal("0.03")]
        assert sum(shares) == Decimal("0.10")

    def test_split_remainder_prefers_larger_weight_over_position(self):
        shares = MonetaryDecimal.allocate_proportionally(
            Decimal("1.00"), [Decimal("1.00"), Decimal("2.00")]
        )

        # 33 and 66 cents, the leftover cent goes to the larger share
        assert shares == [Decimal("0.33"), Decimal("0.67")]

    def test_non_finite_amounts_are_rejected(self):
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal("NaN")
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal("not money")
