import json
import logging
from dataclasses import dataclass
from typing import Any

from eximpilot.models import AuditLogEntry, utcnow
from eximpilot.store.base import Repository

logger = logging.getLogger("eximpilot.audit")


@dataclass(frozen=True)
class ActorContext:
    """Who performed an action and from where."""

    user_id: str | None = None
    ip_address: str | None = None

    def __str__(self) -> str:
        return f"{self.user_id or '-'}@{self.ip_address or '-'}"


# Actor for scheduled and maintenance actions
SYSTEM_ACTOR = ActorContext(user_id="system", ip_address=None)


class AuditRecorder:
    """
    Appends entries to the audit trail.

    Every call writes at most one row and always mirrors the action to the
    ``eximpilot.audit`` logger, so the trail survives a store outage in the
    system log. A failing store never makes the audited operation fail.
    """

    def __init__(self, repository: Repository):
        self.repository = repository

    def record(
        self,
        action: str,
        message_id: str | None,
        actor: ActorContext,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """
        Record one audited action.

        Args:
            action: Action name, e.g. ``queue_deliver``
            message_id: Message the action applied to, if any
            actor: Who performed the action
            details: Extra JSON-serializable context; other values are
                stored as their string form

        Returns:
            AuditLogEntry | None: The stored row, or None if storing failed
        """
        details = details or {}
        mirror = "AUDIT: action=%s user=%s ip=%s message_id=%s result=%s"
        args = (
            action,
            actor.user_id or "-",
            actor.ip_address or "-",
            message_id or "-",
            details.get("result", "-"),
        )
        try:
            # Round-trip so the row holds exactly what the JSON column will
            entry = AuditLogEntry(
                timestamp=utcnow(),
                action=action,
                message_id=message_id,
                user_id=actor.user_id,
                ip_address=actor.ip_address,
                details=json.loads(json.dumps(details, default=str)),
            )
            stored = self.repository.insert_audit(entry)
        except Exception as e:
            logger.error(mirror + " (not stored: %s)", *args, e)
            return None
        logger.info(mirror, *args)
        return stored

    def record_queue_operation(
        self,
        operation: str,
        message_id: str,
        actor: ActorContext,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Record a deliver/freeze/thaw/delete attempt and its result."""
        payload = dict(details or {})
        payload["operation"] = operation
        payload["result"] = "success" if success else "failure"
        return self.record(f"queue_{operation}", message_id, actor, payload)

    def record_system_action(
        self, action: str, details: dict[str, Any] | None = None
    ) -> AuditLogEntry | None:
        """Record a scheduled or maintenance action."""
        return self.record(action, None, SYSTEM_ACTOR, details)
