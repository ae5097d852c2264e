"""
Audit event emission.

The engine reports who did what to whom; where events end up is the
sink's business.  The default sink writes one structured record per
event to the `audit` logger so any log shipper can pick it up.

A failing sink is logged and swallowed: auditing must not turn a
completed role change or impersonation into an error for the caller.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from household_access.models.base import utcnow

logger = logging.getLogger("audit")


# ── Actions ──────────────────────────────────────────────────────────
ASSIGN_ROLE = "ASSIGN_ROLE"
REVOKE_ROLE = "REVOKE_ROLE"
CREATE_ROLE = "CREATE_ROLE"
UPDATE_ROLE = "UPDATE_ROLE"
DELETE_ROLE = "DELETE_ROLE"
START_IMPERSONATION = "START_IMPERSONATION"
END_IMPERSONATION = "END_IMPERSONATION"


@dataclass(frozen=True)
class AuditEvent:
    actor_id: uuid.UUID | None
    action: str
    entity_type: str
    entity_id: uuid.UUID | None = None
    target_id: uuid.UUID | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def as_record(self) -> dict[str, Any]:
        record = asdict(self)
        for key in ("actor_id", "entity_id", "target_id"):
            if record[key] is not None:
                record[key] = str(record[key])
        record["timestamp"] = self.timestamp.isoformat()
        return record


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Default sink: structured records on the `audit` logger."""

    def emit(self, event: AuditEvent) -> None:
        logger.info(
            "%s %s:%s by %s",
            event.action,
            event.entity_type,
            event.entity_id,
            event.actor_id,
            extra={"audit": event.as_record()},
        )


def emit(sink: AuditSink, event: AuditEvent) -> None:
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Audit sink failed for %s", event.action)
