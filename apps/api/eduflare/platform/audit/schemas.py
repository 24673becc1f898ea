from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryCreate(BaseModel):
    actor_id: str = Field(min_length=1)
    actor_role: str = Field(min_length=1)
    action: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    previous_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    is_override: bool = False
    override_reason: str | None = None
    correlation_id: str | None = None


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: str
    actor_role: str
    action: str
    entity_type: str
    entity_id: str
    previous_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    is_override: bool
    override_reason: str | None
    correlation_id: str | None
    occurred_at: datetime


class AuditQuery(BaseModel):
    entity_type: str | None = None
    entity_id: str | None = None
    actor_id: str | None = None
    action: str | None = None
    is_override: bool | None = None
    correlation_id: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=500)
