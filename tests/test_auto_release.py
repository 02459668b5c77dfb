"""
Auto-release sweep and release warnings
"""

from datetime import timedelta

from conftest import ADMIN_ID, BUYER_ID, ORDER_TIME, SELLER_A, SELLER_B, reload
from jobs.auto_release import run_auto_release, run_release_warnings
from models import EscrowStatus, EscrowTransaction


def deliver(api, order_id):
    for status in ("confirmed", "shipped", "delivered"):
        result = api.update_order_status(order_id, status, ADMIN_ID, "admin")
        assert result.success, result.error_message


PAST_DUE = ORDER_TIME + timedelta(days=8)


class TestAutoRelease:

    def test_undelivered_escrow_is_flagged_not_released(self, api, escrow_id, db_session, audit_sink):
        summary = api.run_auto_release(now=PAST_DUE)

        assert summary["released_count"] == 0
        assert [r["outcome"] for r in summary["results"]] == ["flagged"]
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.HELD.value
        assert escrow.auto_release_flagged_at == PAST_DUE
        assert "escrow_auto_released" not in audit_sink.actions()

    def test_delivered_escrow_is_released(self, api, order_id, escrow_id, db_session, audit_sink):
        deliver(api, order_id)

        summary = api.run_auto_release(now=PAST_DUE)

        assert summary["released_count"] == 1
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert {e.release_reason for e in escrow.entries} == {"auto_release"}
        assert {e.released_by_kind for e in escrow.entries} == {"system"}
        assert escrow.activities[-1].action == "auto_released"
        assert audit_sink.actions().count("escrow_auto_released") == 1

    def test_not_released_before_hold_period(self, api, order_id, escrow_id, db_session):
        deliver(api, order_id)

        summary = run_auto_release(now=ORDER_TIME + timedelta(days=6))

        assert summary == {"released_count": 0, "results": []}
        assert reload(db_session, EscrowTransaction, escrow_id).status == EscrowStatus.HELD.value

    def test_sweep_is_rerunnable(self, api, order_id, escrow_id, db_session):
        deliver(api, order_id)

        first = api.run_auto_release(now=PAST_DUE)
        second = api.run_auto_release(now=PAST_DUE + timedelta(hours=1))

        assert first["released_count"] == 1
        assert second == {"released_count": 0, "results": []}
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert [a.action for a in escrow.activities].count("auto_released") == 1

    def test_partially_released_escrow_is_left_alone(self, api, order_id, escrow_id, db_session):
        api.release_escrow_entry(escrow_id, SELLER_A, BUYER_ID, "user")
        deliver(api, order_id)

        summary = api.run_auto_release(now=PAST_DUE)

        assert summary == {"released_count": 0, "results": []}
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.PARTIALLY_RELEASED.value
        assert escrow.entry_for(SELLER_B).status == "held"

    def test_disputed_escrow_is_never_auto_released(self, api, order_id, escrow_id, db_session):
        deliver(api, order_id)
        api.dispute_escrow(escrow_id, "damaged_item", "Cracked", BUYER_ID, "user")

        summary = api.run_auto_release(now=PAST_DUE)

        assert summary["released_count"] == 0
        assert reload(db_session, EscrowTransaction, escrow_id).status == EscrowStatus.DISPUTED.value

    def test_flag_timestamp_is_kept_across_runs(self, api, escrow_id, db_session):
        api.run_auto_release(now=PAST_DUE)
        api.run_auto_release(now=PAST_DUE + timedelta(days=1))

        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.auto_release_flagged_at == PAST_DUE
        assert [a.action for a in escrow.activities] == ["created", "auto_release_flagged"]
        assert escrow.activities[-1].actor_kind == "system"


class TestAutoReleaseSwitch:
    """Per-escrow opt-out of the auto-release sweep"""

    def test_disabled_escrow_is_not_swept(self, api, order_id, escrow_id, db_session, audit_sink):
        deliver(api, order_id)

        result = api.set_auto_release(escrow_id, False, ADMIN_ID)
        summary = api.run_auto_release(now=PAST_DUE)

        assert result.success
        assert summary == {"released_count": 0, "results": []}
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.status == EscrowStatus.HELD.value
        assert escrow.allow_auto_release is False
        assert escrow.activities[-1].action == "auto_release_disabled"
        assert "escrow_auto_release_updated" in audit_sink.actions()

    def test_disabled_escrow_gets_no_warning(self, api, escrow_id):
        api.set_auto_release(escrow_id, False, ADMIN_ID)

        assert run_release_warnings(now=ORDER_TIME + timedelta(days=6, hours=12), lead_hours=24) == []

    def test_reenabled_escrow_is_released(self, api, order_id, escrow_id, db_session):
        deliver(api, order_id)
        api.set_auto_release(escrow_id, False, ADMIN_ID)

        assert api.set_auto_release(escrow_id, True, ADMIN_ID).success
        assert api.run_auto_release(now=PAST_DUE)["released_count"] == 1
        assert reload(db_session, EscrowTransaction, escrow_id).status == EscrowStatus.RELEASED.value

    def test_buyer_cannot_change_switch(self, api, escrow_id):
        result = api.set_auto_release(escrow_id, False, BUYER_ID, "user")

        assert result.error_type == "validation_error"

    def test_switch_rejected_on_settled_escrow(self, api, escrow_id):
        api.release_escrow_entry(escrow_id, SELLER_A, ADMIN_ID, "admin")
        api.release_escrow_entry(escrow_id, SELLER_B, ADMIN_ID, "admin")

        result = api.set_auto_release(escrow_id, False, ADMIN_ID)

        assert result.error_type == "invalid_state"
        assert result.error.current_status == EscrowStatus.RELEASED.value


class TestReleaseWarnings:

    def test_warning_sent_once_inside_lead_window(self, escrow_id, two_seller_order, db_session, audit_sink):
        almost_due = ORDER_TIME + timedelta(days=6, hours=12)

        assert run_release_warnings(now=almost_due, lead_hours=24) == [two_seller_order.escrow.escrow_number]
        assert run_release_warnings(now=almost_due + timedelta(hours=1), lead_hours=24) == []

        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.auto_release_warning_sent_at == almost_due
        assert audit_sink.actions().count("auto_release_warning_sent") == 1

    def test_no_warning_outside_lead_window(self, escrow_id):
        assert run_release_warnings(now=ORDER_TIME + timedelta(days=1), lead_hours=24) == []
