"""
Order creation: pricing, stock reservation and escrow opening as one unit
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

import database
from conftest import BUYER_ID, ORDER_TIME, SELLER_A, SELLER_B, SHIPPING_ADDRESS, create_product, reload
from models import (
    EscrowStatus, EscrowTransaction, Order, OrderStatus, PaymentStatus, Product, ProductStatus,
)
from services.escrow_orchestrator import OrderCreationRequest, SettlementOrchestrator
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import ValidationError


def _count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar()


class TestCreateOrder:
    """Successful order creation"""

    def test_two_seller_order_opens_held_escrow(self, two_seller_order, db_session):
        order = reload(db_session, Order, two_seller_order.id)

        assert order.subtotal == Decimal("150.00")
        assert order.tax_amount == Decimal("12.00")
        assert order.shipping_cost == Decimal("10.00")
        assert order.total_amount == Decimal("172.00")
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == PaymentStatus.HELD.value
        assert [h.status for h in order.status_history] == [OrderStatus.PENDING.value]

        escrow = order.escrow
        assert escrow.status == EscrowStatus.HELD.value
        assert escrow.total_amount == Decimal("150.00")
        assert [(e.seller_id, e.amount, e.commission, e.net_amount) for e in escrow.entries] == [
            (SELLER_A, Decimal("100.00"), Decimal("5.00"), Decimal("95.00")),
            (SELLER_B, Decimal("50.00"), Decimal("2.50"), Decimal("47.50")),
        ]
        assert escrow.auto_release_date == ORDER_TIME.replace(day=9)
        assert [a.action for a in escrow.activities] == ["created"]
        assert escrow.payment_method == "mobile_money"
        assert escrow.payment_reference.startswith("TXN-")
        assert escrow.total_fees == Decimal("0.00")

    def test_stock_is_reserved(self, two_seller_order, products, db_session):
        assert reload(db_session, Product, products["a"].id).stock == 4
        assert reload(db_session, Product, products["b"].id).stock == 4

    def test_line_items_snapshot_product(self, two_seller_order, products, db_session):
        order = reload(db_session, Order, two_seller_order.id)
        item = order.items_for_seller(SELLER_A)[0]

        assert item.product_name == "Copper kettle"
        assert item.unit_price == Decimal("100.00")
        assert item.commission_amount == Decimal("5.00")
        assert item.seller_earnings == Decimal("95.00")
        assert [s.seller_id for s in order.shipments] == [SELLER_A, SELLER_B]

    def test_exactly_one_audit_event(self, two_seller_order, audit_sink):
        assert audit_sink.actions() == ["order_created"]
        event = audit_sink.events[0]
        assert event.actor_kind == "user"
        assert event.actor_id == BUYER_ID
        assert event.before_snapshot is None
        assert event.after_snapshot["total_amount"] == "172.00"

    def test_free_shipping_with_default_threshold(self, products):
        from services.settlement_api import SettlementAPI
        from utils.fee_calculator import SettlementPolicy

        result = SettlementAPI(SettlementPolicy()).create_order(
            BUYER_ID,
            [{"product_id": products["a"].id, "quantity": 1}, {"product_id": products["b"].id, "quantity": 1}],
            SHIPPING_ADDRESS,
            "card",
        )

        assert result.success
        assert result.data.shipping_cost == Decimal("0.00")
        assert result.data.total_amount == Decimal("162.00")


class TestCreateOrderFailures:
    """Failed creation leaves no trace"""

    def test_insufficient_stock_rolls_back_earlier_reservations(self, api, products, db_session, audit_sink):
        result = api.create_order(
            BUYER_ID,
            [
                {"product_id": products["a"].id, "quantity": 2},
                {"product_id": products["scarce"].id, "quantity": 3},
            ],
            SHIPPING_ADDRESS,
            "card",
        )

        assert not result.success
        assert result.error_type == "validation_error"
        assert reload(db_session, Product, products["a"].id).stock == 5
        assert reload(db_session, Product, products["scarce"].id).stock == 1
        assert _count(db_session, Order) == 0
        assert _count(db_session, EscrowTransaction) == 0
        assert audit_sink.events == []

    def test_unknown_product_is_not_found(self, api, products):
        result = api.create_order(BUYER_ID, [{"product_id": 9999, "quantity": 1}], SHIPPING_ADDRESS, "card")

        assert result.error_type == "not_found"

    def test_inactive_product_is_rejected(self, api):
        product = create_product(SELLER_B, "12.00", status=ProductStatus.INACTIVE.value)

        result = api.create_order(BUYER_ID, [{"product_id": product.id, "quantity": 1}], SHIPPING_ADDRESS, "card")

        assert result.error_type == "validation_error"

    @pytest.mark.parametrize("items, address, method, field", [
        ([], SHIPPING_ADDRESS, "card", "items"),
        ([{"product_id": 1, "quantity": 0}], SHIPPING_ADDRESS, "card", "items"),
        ([{"product_id": 1, "quantity": 1}], {"city": "Lusaka"}, "card", "shipping_address"),
        ([{"product_id": 1, "quantity": 1}], SHIPPING_ADDRESS, "bitcoin", "payment_method"),
        ([{"product_id": "abc", "quantity": 1}], SHIPPING_ADDRESS, "card", "items"),
        (["oops"], SHIPPING_ADDRESS, "card", "items"),
        ("not-a-list", SHIPPING_ADDRESS, "card", "items"),
        ([{"product_id": 1, "quantity": 1}], "12 Cairo Road, Lusaka", "card", "shipping_address"),
    ])
    def test_invalid_payload(self, api, products, items, address, method, field):
        result = api.create_order(BUYER_ID, items, address, method)

        assert result.error_type == "validation_error"
        assert result.error.field == field


class TestStockContention:
    """Two buyers competing for the last unit"""

    def test_stale_reader_loses_the_last_unit(self, api, policy, products, db_session):
        scarce_id = products["scarce"].id
        request = OrderCreationRequest.from_payload(
            8, [{"product_id": scarce_id, "quantity": 1}], SHIPPING_ADDRESS, "card"
        )

        # Second buyer has already seen stock = 1
        stale_session = database.SessionLocal()
        try:
            assert stale_session.get(Product, scarce_id).stock == 1

            first = api.create_order(
                BUYER_ID, [{"product_id": scarce_id, "quantity": 1}], SHIPPING_ADDRESS, "card"
            )
            assert first.success

            with pytest.raises(ValidationError):
                with atomic_transaction(stale_session) as session:
                    SettlementOrchestrator(policy).create_order(session, request)
        finally:
            stale_session.close()

        assert reload(db_session, Product, scarce_id).stock == 0
        assert _count(db_session, Order) == 1
