from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    actor_uid: str | None = None  # None for system events
    event_type: str  # points_added, points_deducted, transaction_reversed, user_deleted, ...
    entity_type: str  # user, points_transaction, order, product
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("actor_uid", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]
