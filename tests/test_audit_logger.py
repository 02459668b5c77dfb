"""
Audit emission: one event per successful operation, never on failure, and
sink failures never undo a committed operation
"""

import json
import logging

from conftest import ADMIN_ID, SELLER_A, reload
from models import Actor, EntryStatus, EscrowTransaction
from services.audit_logger import AuditEvent, AuditLogger, LoggingAuditSink, audit_logger


class FailingSink:
    def emit(self, event):
        raise ConnectionError("audit store unreachable")


class TestAuditEmission:

    def test_escrow_event_carries_before_and_after(self, api, escrow_id, audit_sink):
        audit_sink.clear()

        api.release_escrow_entry(escrow_id, SELLER_A, ADMIN_ID, "admin")

        assert len(audit_sink.events) == 1
        event = audit_sink.events[0]
        assert (event.actor_kind, event.actor_id) == ("admin", ADMIN_ID)
        assert event.resource_type == "escrow"
        assert event.before_snapshot["status"] == "held"
        assert event.after_snapshot["status"] == "partially_released"
        assert event.after_snapshot["entries"][0]["release_reason"] == "admin_release"

    def test_failed_operation_emits_nothing(self, api, escrow_id, audit_sink):
        audit_sink.clear()

        api.refund_escrow(escrow_id, "1.00", "Partial", ADMIN_ID, "admin")
        api.cancel_escrow(escrow_id + 1, ADMIN_ID, "Missing")

        assert audit_sink.events == []

    def test_sink_failure_does_not_undo_operation(self, api, escrow_id, db_session):
        audit_logger.set_sink(FailingSink())

        result = api.release_escrow_entry(escrow_id, SELLER_A, ADMIN_ID, "admin")

        assert result.success
        escrow = reload(db_session, EscrowTransaction, escrow_id)
        assert escrow.entry_for(SELLER_A).status == EntryStatus.RELEASED.value

    def test_emit_reports_sink_failure(self):
        logger = AuditLogger(FailingSink())

        assert logger.record(Actor.system(), "noop", "escrow", "ESC-1") is False


class TestLoggingAuditSink:

    def test_writes_json_line(self, caplog):
        sink = LoggingAuditSink()
        event = AuditEvent.build(Actor.admin(3), "escrow_cancelled", "escrow", "ESC-42",
                                 {"status": "held"}, {"status": "cancelled"})

        with caplog.at_level(logging.INFO, logger="audit"):
            sink.emit(event)

        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["action"] == "escrow_cancelled"
        assert payload["actor_kind"] == "admin"
        assert payload["resource_id"] == "ESC-42"
        assert payload["after_snapshot"] == {"status": "cancelled"}
        assert payload["timestamp"].endswith("Z")
