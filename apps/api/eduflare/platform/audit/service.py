from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from eduflare.context import get_correlation_id
from eduflare.metrics import observe_audit_append
from eduflare.platform.audit.models import AuditEntry
from eduflare.platform.audit.schemas import AuditEntryCreate, AuditEntryRead, AuditQuery
from eduflare.platform.security.context import Actor


logger = logging.getLogger("eduflare.audit")


def to_audit_value(value: dict[str, Any] | None) -> dict[str, Any] | None:
    """Coerce uuids, decimals and datetimes into JSON-storable primitives."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


@dataclass(slots=True)
class AuditLog:
    """Append-only store of state-changing actions.

    ``append`` only adds the row to the caller's session. The caller's unit of
    work decides whether it is committed together with the change it describes.
    """

    def append(self, session: Session, entry: AuditEntryCreate) -> uuid.UUID:
        row = AuditEntry(
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            previous_value=to_audit_value(entry.previous_value),
            new_value=to_audit_value(entry.new_value),
            is_override=entry.is_override,
            override_reason=entry.override_reason,
            correlation_id=entry.correlation_id or get_correlation_id(),
        )
        session.add(row)
        session.flush()

        observe_audit_append(entry.entity_type, entry.is_override)
        logger.info(
            "audit.appended",
            extra={
                "operation": entry.action,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "actor_role": entry.actor_role,
                "is_override": entry.is_override,
            },
        )
        return row.id

    def record(
        self,
        session: Session,
        actor: Actor,
        *,
        action: str,
        entity_type: str,
        entity_id: uuid.UUID | str,
        previous_value: dict[str, Any] | None,
        new_value: dict[str, Any] | None,
        is_override: bool = False,
        override_reason: str | None = None,
    ) -> uuid.UUID:
        return self.append(
            session,
            AuditEntryCreate(
                actor_id=actor.user_id,
                actor_role=actor.role,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_value=previous_value,
                new_value=new_value,
                is_override=is_override,
                override_reason=override_reason,
                correlation_id=actor.correlation_id,
            ),
        )

    def query(self, session: Session, filters: AuditQuery) -> list[AuditEntryRead]:
        stmt: Select[tuple[AuditEntry]] = select(AuditEntry)
        if filters.entity_type is not None:
            stmt = stmt.where(AuditEntry.entity_type == filters.entity_type)
        if filters.entity_id is not None:
            stmt = stmt.where(AuditEntry.entity_id == filters.entity_id)
        if filters.actor_id is not None:
            stmt = stmt.where(AuditEntry.actor_id == filters.actor_id)
        if filters.action is not None:
            stmt = stmt.where(AuditEntry.action == filters.action)
        if filters.is_override is not None:
            stmt = stmt.where(AuditEntry.is_override.is_(filters.is_override))
        if filters.correlation_id is not None:
            stmt = stmt.where(AuditEntry.correlation_id == filters.correlation_id)
        if filters.occurred_from is not None:
            stmt = stmt.where(AuditEntry.occurred_at >= filters.occurred_from)
        if filters.occurred_to is not None:
            stmt = stmt.where(AuditEntry.occurred_at <= filters.occurred_to)

        stmt = stmt.order_by(AuditEntry.occurred_at.asc(), AuditEntry.id.asc()).offset(filters.offset).limit(filters.limit)
        return [AuditEntryRead.model_validate(row) for row in session.scalars(stmt).all()]


audit_log = AuditLog()
