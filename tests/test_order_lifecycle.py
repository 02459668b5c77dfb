"""
Order lifecycle: role-based transitions, per-seller shipments, completion,
cancellation and the seller's view of an order
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import ADMIN_ID, BUYER_ID, ORDER_TIME, SELLER_A, SELLER_B, reload
from models import (
    EntryStatus, EscrowStatus, EscrowTransaction, Order, OrderItemStatus, OrderStatus, PaymentStatus,
    Product, ShipmentStatus,
)
from services.order_service import OrderService


def ship_all(api, order_id, delivered=False):
    for seller_id in (SELLER_A, SELLER_B):
        for status in ("confirmed", "processing", "shipped"):
            result = api.update_shipment_status(order_id, seller_id, status, seller_id, "seller")
            assert result.success, result.error_message
        if delivered:
            result = api.update_shipment_status(order_id, seller_id, "delivered", BUYER_ID, "user")
            assert result.success, result.error_message


class TestRoleTransitions:

    def test_buyer_cannot_confirm_order(self, api, order_id, db_session):
        result = api.update_order_status(order_id, "confirmed", BUYER_ID, "user")

        assert result.error_type == "invalid_state"
        assert reload(db_session, Order, order_id).status == OrderStatus.PENDING.value

    def test_admin_walks_order_to_delivered(self, api, order_id, db_session, audit_sink):
        for status in ("confirmed", "shipped", "delivered"):
            assert api.update_order_status(order_id, status, ADMIN_ID, "admin").success

        order = reload(db_session, Order, order_id)
        assert order.status == OrderStatus.DELIVERED.value
        assert order.delivered_at is not None
        assert {s.status for s in order.shipments} == {ShipmentStatus.DELIVERED.value}
        assert {i.status for i in order.items} == {OrderItemStatus.DELIVERED.value}
        assert [h.status for h in order.status_history] == ["pending", "confirmed", "shipped", "delivered"]
        assert audit_sink.actions().count("order_status_updated") == 3

    def test_seller_only_advances_own_shipment(self, api, order_id, db_session):
        assert api.update_order_status(order_id, "confirmed", SELLER_A, "seller").success

        order = reload(db_session, Order, order_id)
        assert order.shipment_for(SELLER_A).status == ShipmentStatus.CONFIRMED.value
        assert order.shipment_for(SELLER_B).status == ShipmentStatus.PENDING.value
        assert order.status == OrderStatus.PENDING.value

        assert api.update_order_status(order_id, "confirmed", SELLER_B, "seller").success
        assert reload(db_session, Order, order_id).status == OrderStatus.CONFIRMED.value

    def test_outsider_seller_is_rejected(self, api, order_id):
        result = api.update_order_status(order_id, "confirmed", 999, "seller")

        assert result.error_type == "validation_error"

    def test_other_buyer_is_rejected(self, api, order_id):
        result = api.update_order_status(order_id, "cancelled", BUYER_ID + 1, "user")

        assert result.error_type == "validation_error"

    def test_unknown_order(self, api, order_id):
        assert api.update_order_status(order_id + 50, "confirmed", ADMIN_ID, "admin").error_type == "not_found"

    def test_unknown_actor_kind(self, api, order_id):
        result = api.update_order_status(order_id, "confirmed", 3, "robot")

        assert result.error.field == "actor_kind"


class TestShipments:

    def test_order_follows_slowest_shipment(self, api, order_id, db_session):
        for status in ("confirmed", "processing", "shipped"):
            api.update_shipment_status(order_id, SELLER_A, status, SELLER_A, "seller",
                                       tracking_number="ZP123" if status == "shipped" else None)
        api.update_shipment_status(order_id, SELLER_B, "confirmed", SELLER_B, "seller")

        order = reload(db_session, Order, order_id)
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.shipment_for(SELLER_A).tracking_number == "ZP123"
        assert order.shipment_for(SELLER_A).shipped_at is not None

    def test_buyer_confirms_delivery_per_shipment(self, api, order_id, db_session):
        ship_all(api, order_id)
        assert reload(db_session, Order, order_id).status == OrderStatus.SHIPPED.value

        api.update_shipment_status(order_id, SELLER_A, "delivered", BUYER_ID, "user")
        assert reload(db_session, Order, order_id).status == OrderStatus.SHIPPED.value

        api.update_shipment_status(order_id, SELLER_B, "delivered", BUYER_ID, "user")
        assert reload(db_session, Order, order_id).status == OrderStatus.DELIVERED.value

    def test_buyer_cannot_confirm_unshipped_delivery(self, api, order_id):
        result = api.update_shipment_status(order_id, SELLER_A, "delivered", BUYER_ID, "user")

        assert result.error_type == "invalid_state"

    def test_seller_cannot_touch_other_shipment(self, api, order_id):
        result = api.update_shipment_status(order_id, SELLER_B, "confirmed", SELLER_A, "seller")

        assert result.error.field == "seller_id"

    def test_shipment_cannot_move_backwards(self, api, order_id):
        api.update_shipment_status(order_id, SELLER_A, "processing", SELLER_A, "seller")

        result = api.update_shipment_status(order_id, SELLER_A, "confirmed", SELLER_A, "seller")

        assert result.error_type == "invalid_state"


class TestCompletion:

    def test_buyer_completion_releases_held_funds(self, api, order_id, escrow_id, db_session):
        ship_all(api, order_id, delivered=True)

        result = api.update_order_status(order_id, "completed", BUYER_ID, "user")

        assert result.success
        order = reload(db_session, Order, order_id)
        assert order.status == OrderStatus.COMPLETED.value
        assert order.payment_status == PaymentStatus.RELEASED.value
        escrow = db_session.get(EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert {e.release_reason for e in escrow.entries} == {"buyer_confirmation"}

    def test_completion_keeps_earlier_releases(self, api, order_id, escrow_id, db_session):
        api.release_escrow_entry(escrow_id, SELLER_A, ADMIN_ID, "admin")
        ship_all(api, order_id, delivered=True)

        assert api.update_order_status(order_id, "completed", BUYER_ID, "user").success

        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.entry_for(SELLER_A).release_reason == "admin_release"
        assert escrow.entry_for(SELLER_B).release_reason == "buyer_confirmation"

    def test_return_window(self, api, order_id, db_session):
        ship_all(api, order_id, delivered=True)

        item = reload(db_session, Order, order_id).items[0]
        assert item.can_return(item.delivered_at + timedelta(days=30))
        assert not item.can_return(item.delivered_at + timedelta(days=31))


class TestCancellation:

    def test_cancel_restores_stock_and_cancels_escrow(self, api, order_id, escrow_id, products, db_session):
        result = api.cancel_order(order_id, BUYER_ID, "user", "Found it cheaper")

        assert result.success
        order = reload(db_session, Order, order_id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.payment_status == PaymentStatus.REFUNDED.value
        assert order.cancellation_reason == "Found it cheaper"
        assert {i.status for i in order.items} == {OrderItemStatus.CANCELLED.value}
        assert db_session.get(Product, products["a"].id).stock == 5
        assert db_session.get(Product, products["b"].id).stock == 5

        escrow = db_session.get(EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.CANCELLED.value
        assert escrow.refunded_amount == Decimal("150.00")
        assert {e.status for e in escrow.entries} == {EntryStatus.REFUNDED.value}

    def test_cancel_through_status_update(self, api, order_id, db_session):
        assert api.update_order_status(order_id, "cancelled", BUYER_ID, "user", note="Changed mind").success

        assert reload(db_session, Order, order_id).status == OrderStatus.CANCELLED.value

    def test_cannot_cancel_after_shipping(self, api, order_id, products, db_session):
        ship_all(api, order_id)

        result = api.cancel_order(order_id, ADMIN_ID, "admin", "Too late")

        assert result.error_type == "invalid_state"
        assert reload(db_session, Product, products["a"].id).stock == 4

    def test_cannot_cancel_when_escrow_partially_released(self, api, order_id, escrow_id, products, db_session):
        api.release_escrow_entry(escrow_id, SELLER_A, ADMIN_ID, "admin")

        result = api.cancel_order(order_id, ADMIN_ID, "admin", "Buyer request")

        assert result.error_type == "invalid_state"
        assert reload(db_session, Order, order_id).status == OrderStatus.PENDING.value
        assert db_session.get(Product, products["a"].id).stock == 4


class TestSellerView:

    def test_seller_sees_only_own_items_and_masked_buyer(self, api, order_id, two_seller_order):
        view = api.get_seller_order_view(order_id, SELLER_B).data

        assert view["buyer_ref"] == two_seller_order.buyer_ref
        assert "buyer_id" not in view
        assert [i["product_name"] for i in view["items"]] == ["Chitenge fabric"]
        assert view["subtotal"] == "50.00"
        assert view["commission"] == "2.50"
        assert view["shipping_address"] == {
            "city": "Lusaka", "state": "Lusaka Province", "country": "ZM", "instructions": "Leave at reception",
        }

    def test_contact_sharing_exposes_full_address(self, two_seller_order):
        view = OrderService.get_seller_order_view(two_seller_order, SELLER_A, share_contact=True)

        assert view["buyer_id"] == BUYER_ID
        assert view["shipping_address"]["phone"] == "+260971234567"

    def test_seller_without_items_is_not_found(self, api, order_id):
        assert api.get_seller_order_view(order_id, 999).error_type == "not_found"

    def test_view_dates_are_iso(self, api, order_id):
        view = api.get_seller_order_view(order_id, SELLER_A).data

        assert view["created_at"] == ORDER_TIME.isoformat() + "Z"
