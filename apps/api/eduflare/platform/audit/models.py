from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from eduflare.cases.errors import InvalidState
from eduflare.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(Base):
    __tablename__ = "audit_entry"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    previous_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_entry_entity", "entity_type", "entity_id", "occurred_at"),
        Index("ix_audit_entry_actor", "actor_id", "occurred_at"),
    )


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target: AuditEntry) -> None:  # type: ignore[no-untyped-def]
    raise InvalidState("audit entries are append-only", details={"audit_entry_id": str(target.id)})


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target: AuditEntry) -> None:  # type: ignore[no-untyped-def]
    raise InvalidState("audit entries are append-only", details={"audit_entry_id": str(target.id)})
