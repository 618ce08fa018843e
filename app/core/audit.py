"""Audit log for administrative and ledger actions."""

from typing import Any

from app.models.audit_log import AuditLog


async def log_event(
    actor_uid: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    await AuditLog(
        actor_uid=actor_uid,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    ).insert()
