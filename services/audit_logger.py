"""
Audit Logging for settlement operations

The settlement core only emits events; storage is the sink's concern. The
default sink writes one JSON line per event to the 'audit' logger.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from config import Config
from models import Actor
from utils.datetime_helpers import get_naive_utc_now, to_iso

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """One audit record per successful operation"""

    actor_kind: str
    actor_id: Optional[int]
    action: str
    resource_type: str
    resource_id: str
    before_snapshot: Optional[Dict[str, Any]] = None
    after_snapshot: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=get_naive_utc_now)

    @classmethod
    def build(
        cls,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> "AuditEvent":
        return cls(
            actor_kind=actor.kind.value,
            actor_id=actor.id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            before_snapshot=before,
            after_snapshot=after,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_iso(self.timestamp)
        return data


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink:
    """Writes audit events as JSON lines through the 'audit' logger"""

    def __init__(self, log_file: Optional[str] = None):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)
        if log_file and not any(
            isinstance(h, logging.FileHandler) and h.baseFilename.endswith(log_file)
            for h in self.audit_logger.handlers
        ):
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    def emit(self, event: AuditEvent) -> None:
        self.audit_logger.info(json.dumps(event.to_dict(), default=str, sort_keys=True))


class RecordingAuditSink:
    """In-memory sink, handy for tests and dry runs"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]

    def clear(self) -> None:
        self.events.clear()


class AuditLogger:
    """Service facade used by the settlement services to emit audit events"""

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink: AuditSink = sink or LoggingAuditSink(Config.AUDIT_LOG_FILE)

    def set_sink(self, sink: AuditSink) -> None:
        self.sink = sink

    def emit(self, event: AuditEvent) -> bool:
        """
        Hand the event to the sink. Failures are logged and reported through
        the return value; they never propagate into the financial operation.
        """
        try:
            self.sink.emit(event)
            logger.debug(f"AUDIT_EMIT: {event.action} on {event.resource_type} {event.resource_id}")
            return True
        except Exception as e:
            logger.error(
                f"❌ AUDIT_EMIT_FAILED: {event.action} on {event.resource_type} "
                f"{event.resource_id}: {type(e).__name__}: {e}"
            )
            return False

    def record(
        self,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.emit(AuditEvent.build(actor, action, resource_type, resource_id, before, after))


# Global audit logger instance
audit_logger = AuditLogger()
