from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from eduflare.cases.errors import Forbidden, InvalidTransition
from eduflare.metrics import observe_transition_denied


EntityKind = Literal["lead", "application", "contract", "student"]

STAFF_AND_ADMIN = frozenset({"staff", "admin"})
STAFF_ONLY = frozenset({"staff"})
ADMIN_ONLY = frozenset({"admin"})
ANY_ROLE = frozenset({"staff", "admin", "student"})


@dataclass(frozen=True, slots=True)
class TransitionRule:
    roles: frozenset[str] = STAFF_AND_ADMIN
    override: bool = False
    side_effects: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    entity_kind: str
    current: str
    requested: str
    is_override: bool = False
    side_effects: tuple[str, ...] = field(default_factory=tuple)


LEAD_TRANSITIONS: dict[str, dict[str, TransitionRule]] = {
    "new": {
        "hot": TransitionRule(),
        "cold": TransitionRule(),
        "converted": TransitionRule(side_effects=("open_opening_book_invoice",)),
        "lost": TransitionRule(),
    },
    "hot": {
        "cold": TransitionRule(),
        "converted": TransitionRule(side_effects=("open_opening_book_invoice",)),
        "lost": TransitionRule(),
    },
    "cold": {
        "hot": TransitionRule(),
        "converted": TransitionRule(side_effects=("open_opening_book_invoice",)),
        "lost": TransitionRule(),
    },
    "converted": {},
    "lost": {},
}

APPLICATION_TRANSITIONS: dict[str, dict[str, TransitionRule]] = {
    "draft": {
        "pending_admin": TransitionRule(roles=STAFF_ONLY, side_effects=("lock_profile",)),
    },
    "pending_admin": {
        "approved": TransitionRule(roles=ADMIN_ONLY),
        "rejected": TransitionRule(roles=ADMIN_ONLY, side_effects=("release_profile_lock",)),
    },
    "approved": {
        "submitted_to_uni": TransitionRule(roles=ADMIN_ONLY, side_effects=("lock_profile", "lock_documents")),
    },
    "submitted_to_uni": {
        "returned_by_school": TransitionRule(side_effects=("unlock_returned_fields",)),
        "accepted": TransitionRule(),
        "declined": TransitionRule(),
    },
    "returned_by_school": {
        "pending_admin": TransitionRule(roles=STAFF_ONLY, side_effects=("lock_profile",)),
    },
    "rejected": {},
    "accepted": {},
    "declined": {},
}

CONTRACT_TRANSITIONS: dict[str, dict[str, TransitionRule]] = {
    "draft": {
        "pending": TransitionRule(),
    },
    "pending": {
        "pending_signature": TransitionRule(),
        "signed": TransitionRule(side_effects=("accrue_commission",)),
    },
    "pending_signature": {
        "signed": TransitionRule(side_effects=("accrue_commission",)),
        "expired": TransitionRule(),
    },
    "signed": {
        "cancelled": TransitionRule(roles=ADMIN_ONLY, override=True, side_effects=("clawback_commission",)),
    },
    "expired": {},
    "cancelled": {},
}

STUDENT_TRANSITIONS: dict[str, dict[str, TransitionRule]] = {
    "pending_contract": {
        "contract_signed": TransitionRule(),
        "active_profile": TransitionRule(),
        "cancelled": TransitionRule(roles=ADMIN_ONLY),
    },
    "contract_signed": {
        "active_profile": TransitionRule(),
        "cancelled": TransitionRule(roles=ADMIN_ONLY),
    },
    "active_profile": {
        "submitted_to_admin": TransitionRule(side_effects=("lock_profile",)),
        "cancelled": TransitionRule(roles=ADMIN_ONLY),
    },
    "submitted_to_admin": {
        "returned_by_admin": TransitionRule(roles=ADMIN_ONLY, side_effects=("release_profile_lock",)),
        "submitted_to_uni": TransitionRule(roles=ADMIN_ONLY, side_effects=("lock_profile", "lock_documents")),
    },
    "returned_by_admin": {
        "submitted_to_admin": TransitionRule(side_effects=("lock_profile",)),
        "cancelled": TransitionRule(roles=ADMIN_ONLY),
    },
    "submitted_to_uni": {
        "returned_by_school": TransitionRule(side_effects=("unlock_returned_fields",)),
        "offer_received": TransitionRule(),
    },
    "returned_by_school": {
        "submitted_to_uni": TransitionRule(roles=ADMIN_ONLY, side_effects=("lock_profile", "lock_documents")),
    },
    "offer_received": {
        "offer_released": TransitionRule(roles=ADMIN_ONLY, side_effects=("release_offer_documents",)),
    },
    "offer_released": {
        "completed": TransitionRule(),
    },
    "completed": {},
    "cancelled": {},
}

TRANSITION_TABLES: dict[str, dict[str, dict[str, TransitionRule]]] = {
    "lead": LEAD_TRANSITIONS,
    "application": APPLICATION_TRANSITIONS,
    "contract": CONTRACT_TRANSITIONS,
    "student": STUDENT_TRANSITIONS,
}

STUDENT_STEPS: dict[str, int | None] = {
    "pending_contract": 1,
    "contract_signed": 2,
    "active_profile": 3,
    "returned_by_admin": 3,
    "submitted_to_admin": 4,
    "submitted_to_uni": 4,
    "returned_by_school": 4,
    "offer_received": 4,
    "offer_released": 5,
    "completed": 5,
    "cancelled": None,
}

# Role gates for operations that are not themselves status edges.
OPERATION_ROLES: dict[str, frozenset[str]] = {
    "lead.create": STAFF_AND_ADMIN,
    "lead.update": STAFF_AND_ADMIN,
    "lead.assign": ADMIN_ONLY,
    "lead.convert": STAFF_AND_ADMIN,
    "student.read": ANY_ROLE,
    "student.update_profile": ANY_ROLE,
    "student.change_status": ADMIN_ONLY,
    "student.lock_and_submit": STAFF_AND_ADMIN,
    "document.add": ANY_ROLE,
    "document.verify": STAFF_AND_ADMIN,
    "application.create": STAFF_AND_ADMIN,
    "contract.create": STAFF_AND_ADMIN,
    "invoice.issue": STAFF_AND_ADMIN,
    "invoice.settle": STAFF_AND_ADMIN,
    "invoice.mark_overdue": ADMIN_ONLY,
    "payment.record": STAFF_AND_ADMIN,
    "refund.record": ADMIN_ONLY,
    "commission.set_rate": ADMIN_ONLY,
    "unlock.request": STAFF_AND_ADMIN,
    "unlock.resolve": ADMIN_ONLY,
    "university.manage": ADMIN_ONLY,
    "report.idle": STAFF_AND_ADMIN,
    "audit.read": STAFF_AND_ADMIN,
    "ledger.read": STAFF_AND_ADMIN,
}


def step_for_student_status(status: str) -> int | None:
    return STUDENT_STEPS.get(status)


def is_terminal(entity_kind: str, status: str) -> bool:
    table = TRANSITION_TABLES[entity_kind]
    return status in table and not table[status]


class StatusTransitionValidator:
    """Single source of truth for status edges and role gates.

    ``can_transition`` answers yes/no. ``check_transition`` raises
    ``InvalidTransition`` when the edge does not exist and ``Forbidden`` when
    it exists but the acting role may not take it, and otherwise returns the
    side effects the caller must apply with the status change.
    """

    def __init__(
        self,
        tables: dict[str, dict[str, dict[str, TransitionRule]]] | None = None,
        operation_roles: dict[str, frozenset[str]] | None = None,
    ) -> None:
        self._tables = tables if tables is not None else TRANSITION_TABLES
        self._operation_roles = operation_roles if operation_roles is not None else OPERATION_ROLES

    def _rule(self, entity_kind: str, current: str, requested: str) -> TransitionRule | None:
        table = self._tables.get(entity_kind)
        if table is None:
            raise ValueError(f"unknown entity kind: {entity_kind}")
        return table.get(current, {}).get(requested)

    def allowed_targets(self, entity_kind: str, current: str, role: str) -> list[str]:
        edges = self._tables.get(entity_kind, {}).get(current, {})
        return sorted(target for target, rule in edges.items() if role in rule.roles)

    def can_transition(self, entity_kind: str, current: str, requested: str, role: str) -> bool:
        rule = self._rule(entity_kind, current, requested)
        return rule is not None and role in rule.roles

    def check_transition(self, entity_kind: str, current: str, requested: str, role: str) -> TransitionDecision:
        rule = self._rule(entity_kind, current, requested)
        if rule is None:
            observe_transition_denied(entity_kind, "invalid_transition")
            raise InvalidTransition(entity_kind, current, requested)
        if role not in rule.roles:
            observe_transition_denied(entity_kind, "forbidden")
            raise Forbidden(
                f"role '{role}' may not move {entity_kind} from '{current}' to '{requested}'",
                role=role,
            )
        return TransitionDecision(
            entity_kind=entity_kind,
            current=current,
            requested=requested,
            is_override=rule.override,
            side_effects=rule.side_effects,
        )

    def require_role(self, operation: str, role: str) -> None:
        allowed = self._operation_roles.get(operation)
        if allowed is None:
            raise ValueError(f"unknown operation: {operation}")
        if role not in allowed:
            raise Forbidden(f"role '{role}' may not perform {operation}", role=role)

    def require_owner(
        self,
        operation: str,
        owner_id: str | None,
        user_id: str,
        role: str,
        *,
        subject_id: str | None = None,
    ) -> None:
        """Staff act only on records assigned to them or still unassigned.

        Students act only on their own case: ``subject_id`` is the student id
        the record belongs to, and records without one are closed to them.
        """
        self.require_role(operation, role)
        if role == "staff" and owner_id is not None and owner_id != user_id:
            raise Forbidden(f"{operation} is limited to the assigned staff member", role=role)
        if role == "student" and (subject_id is None or subject_id != user_id):
            raise Forbidden(f"{operation} is limited to the student's own case", role=role)


status_transition_validator = StatusTransitionValidator()
