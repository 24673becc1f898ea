from __future__ import annotations

import pytest

from eduflare.cases.errors import Forbidden, InvalidTransition
from eduflare.cases.transitions import (
    STUDENT_STEPS,
    TRANSITION_TABLES,
    StatusTransitionValidator,
    is_terminal,
    step_for_student_status,
)


validator = StatusTransitionValidator()


@pytest.mark.parametrize(
    ("kind", "current", "requested", "role"),
    [
        ("lead", "new", "hot", "staff"),
        ("lead", "cold", "converted", "staff"),
        ("application", "draft", "pending_admin", "staff"),
        ("application", "pending_admin", "approved", "admin"),
        ("application", "submitted_to_uni", "returned_by_school", "staff"),
        ("contract", "pending_signature", "signed", "staff"),
        ("contract", "signed", "cancelled", "admin"),
        ("student", "active_profile", "submitted_to_admin", "staff"),
        ("student", "offer_received", "offer_released", "admin"),
    ],
)
def test_listed_edges_are_allowed(kind: str, current: str, requested: str, role: str) -> None:
    assert validator.can_transition(kind, current, requested, role)
    decision = validator.check_transition(kind, current, requested, role)
    assert decision.current == current
    assert decision.requested == requested


EXPECTED_EDGES: dict[str, dict[str, set[str]]] = {
    "lead": {
        "new": {"hot", "cold", "converted", "lost"},
        "hot": {"cold", "converted", "lost"},
        "cold": {"hot", "converted", "lost"},
        "converted": set(),
        "lost": set(),
    },
    "application": {
        "draft": {"pending_admin"},
        "pending_admin": {"approved", "rejected"},
        "approved": {"submitted_to_uni"},
        "submitted_to_uni": {"returned_by_school", "accepted", "declined"},
        "returned_by_school": {"pending_admin"},
        "rejected": set(),
        "accepted": set(),
        "declined": set(),
    },
    "contract": {
        "draft": {"pending"},
        "pending": {"pending_signature", "signed"},
        "pending_signature": {"signed", "expired"},
        "signed": {"cancelled"},
        "expired": set(),
        "cancelled": set(),
    },
    "student": {
        "pending_contract": {"contract_signed", "active_profile", "cancelled"},
        "contract_signed": {"active_profile", "cancelled"},
        "active_profile": {"submitted_to_admin", "cancelled"},
        "submitted_to_admin": {"returned_by_admin", "submitted_to_uni"},
        "returned_by_admin": {"submitted_to_admin", "cancelled"},
        "submitted_to_uni": {"returned_by_school", "offer_received"},
        "returned_by_school": {"submitted_to_uni"},
        "offer_received": {"offer_released"},
        "offer_released": {"completed"},
        "completed": set(),
        "cancelled": set(),
    },
}


def test_tables_list_exactly_the_expected_statuses() -> None:
    assert set(TRANSITION_TABLES) == set(EXPECTED_EDGES)
    for kind, expected in EXPECTED_EDGES.items():
        assert set(TRANSITION_TABLES[kind]) == set(expected)


@pytest.mark.parametrize("kind", sorted(EXPECTED_EDGES))
def test_every_status_pair_matches_the_expected_edges(kind: str) -> None:
    statuses = sorted(EXPECTED_EDGES[kind])
    for current in statuses:
        for requested in statuses:
            listed = requested in EXPECTED_EDGES[kind][current]
            permitted = [role for role in ("staff", "admin", "student") if validator.can_transition(kind, current, requested, role)]
            if listed:
                assert permitted, f"{kind}: {current} -> {requested} should be reachable"
                continue
            assert permitted == [], f"{kind}: {current} -> {requested} should be refused"
            with pytest.raises(InvalidTransition) as exc_info:
                validator.check_transition(kind, current, requested, "admin")
            assert exc_info.value.details == {"entity_kind": kind, "current": current, "requested": requested}



def test_lead_cannot_leave_terminal_states() -> None:
    for requested in ("new", "hot", "cold", "lost"):
        with pytest.raises(InvalidTransition):
            validator.check_transition("lead", "converted", requested, "admin")
    with pytest.raises(InvalidTransition):
        validator.check_transition("lead", "lost", "converted", "admin")
    assert is_terminal("lead", "converted")
    assert is_terminal("lead", "lost")
    assert not is_terminal("lead", "hot")


@pytest.mark.parametrize(
    ("kind", "current", "requested"),
    [
        ("application", "pending_admin", "approved"),
        ("application", "pending_admin", "rejected"),
        ("application", "approved", "submitted_to_uni"),
        ("contract", "signed", "cancelled"),
        ("student", "offer_received", "offer_released"),
        ("student", "active_profile", "cancelled"),
    ],
)
def test_admin_only_edges_reject_staff(kind: str, current: str, requested: str) -> None:
    assert not validator.can_transition(kind, current, requested, "staff")
    with pytest.raises(Forbidden) as exc_info:
        validator.check_transition(kind, current, requested, "staff")
    assert exc_info.value.code == "forbidden"
    assert exc_info.value.role == "staff"


def test_staff_only_submission_rejects_admin() -> None:
    with pytest.raises(Forbidden):
        validator.check_transition("application", "draft", "pending_admin", "admin")


def test_contract_cancel_is_an_override_with_clawback() -> None:
    decision = validator.check_transition("contract", "signed", "cancelled", "admin")
    assert decision.is_override is True
    assert decision.side_effects == ("clawback_commission",)


def test_side_effects_follow_the_edge() -> None:
    assert validator.check_transition("contract", "pending_signature", "signed", "staff").side_effects == ("accrue_commission",)
    assert validator.check_transition("application", "pending_admin", "rejected", "admin").side_effects == (
        "release_profile_lock",
    )
    assert validator.check_transition("application", "approved", "submitted_to_uni", "admin").side_effects == (
        "lock_profile",
        "lock_documents",
    )
    assert validator.check_transition("student", "offer_received", "offer_released", "admin").side_effects == (
        "release_offer_documents",
    )
    assert validator.check_transition("lead", "hot", "converted", "staff").side_effects == ("open_opening_book_invoice",)


def test_allowed_targets_respect_role() -> None:
    assert validator.allowed_targets("application", "pending_admin", "staff") == []
    assert validator.allowed_targets("application", "pending_admin", "admin") == ["approved", "rejected"]
    assert validator.allowed_targets("lead", "new", "staff") == ["cold", "converted", "hot", "lost"]


def test_student_step_mapping() -> None:
    assert step_for_student_status("pending_contract") == 1
    assert step_for_student_status("contract_signed") == 2
    assert step_for_student_status("returned_by_admin") == 3
    assert step_for_student_status("submitted_to_uni") == 4
    assert step_for_student_status("offer_released") == 5
    assert step_for_student_status("cancelled") is None
    assert set(STUDENT_STEPS) == set(TRANSITION_TABLES["student"])


def test_operation_roles() -> None:
    validator.require_role("refund.record", "admin")
    with pytest.raises(Forbidden):
        validator.require_role("refund.record", "staff")
    with pytest.raises(Forbidden):
        validator.require_owner("lead.update", "staff-2", "staff-1", "staff")
    validator.require_owner("lead.update", "staff-2", "admin-1", "admin")
    validator.require_owner("lead.update", None, "staff-1", "staff")
    with pytest.raises(ValueError):
        validator.require_role("no.such.operation", "admin")


def test_students_act_only_on_their_own_case() -> None:
    validator.require_owner("student.update_profile", "staff-1", "student-7", "student", subject_id="student-7")
    with pytest.raises(Forbidden) as exc_info:
        validator.require_owner("student.update_profile", "staff-1", "student-7", "student", subject_id="student-8")
    assert exc_info.value.role == "student"
    with pytest.raises(Forbidden):
        validator.require_owner("student.read", "staff-1", "student-7", "student")
    validator.require_owner("student.update_profile", "staff-1", "staff-1", "staff", subject_id="student-7")
