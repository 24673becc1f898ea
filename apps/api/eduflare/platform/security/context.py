from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


Role = Literal["staff", "admin", "student"]


@dataclass(slots=True)
class Actor:
    """Identity and role of whoever is driving a lifecycle operation."""

    user_id: str
    role: Role
    correlation_id: str | None = None
