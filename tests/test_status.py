"""
Workflow tables: core status projection, reason codes and the capability table.
"""
import pytest

from workshop.status import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AppointmentStatus as S,
    CoreStatus,
    ReasonCode,
    Role,
    capability_for,
    get_core_status,
    get_reason_code,
    is_edge,
    role_permits,
)


@pytest.mark.parametrize(
    "status, core",
    [
        (S.PENDING, CoreStatus.SCHEDULED),
        (S.CONFIRMED, CoreStatus.SCHEDULED),
        (S.CUSTOMER_ARRIVED, CoreStatus.CHECKED_IN),
        (S.RECEPTION_CREATED, CoreStatus.CHECKED_IN),
        (S.RECEPTION_APPROVED, CoreStatus.IN_SERVICE),
        (S.IN_PROGRESS, CoreStatus.IN_SERVICE),
        (S.PARTS_INSUFFICIENT, CoreStatus.ON_HOLD),
        (S.WAITING_FOR_PARTS, CoreStatus.ON_HOLD),
        (S.PARTS_REQUESTED, CoreStatus.ON_HOLD),
        (S.CANCEL_REQUESTED, CoreStatus.ON_HOLD),
        (S.CANCEL_APPROVED, CoreStatus.ON_HOLD),
        (S.COMPLETED, CoreStatus.READY_FOR_PICKUP),
        (S.INVOICED, CoreStatus.READY_FOR_PICKUP),
        (S.CANCELLED, CoreStatus.CLOSED),
        (S.CANCEL_REFUNDED, CoreStatus.CLOSED),
        (S.NO_SHOW, CoreStatus.CLOSED),
        (S.RESCHEDULED, CoreStatus.CLOSED),
    ],
)
def test_core_status_projection(status, core):
    assert get_core_status(status) == core


def test_every_status_has_a_core_status():
    for status in S:
        assert get_core_status(status) in CoreStatus


def test_reason_code_only_for_hold_and_closed():
    for status in S:
        if get_core_status(status) not in (CoreStatus.ON_HOLD, CoreStatus.CLOSED):
            assert get_reason_code(status) is None

    assert get_reason_code(S.PARTS_INSUFFICIENT) == ReasonCode.INSUFFICIENT_PARTS
    assert get_reason_code(S.CANCEL_REQUESTED) == ReasonCode.CUSTOMER_DECISION
    assert get_reason_code(S.CANCELLED) == ReasonCode.CANCELLED
    assert get_reason_code(S.NO_SHOW) == ReasonCode.NO_SHOW
    assert get_reason_code(S.RESCHEDULED) == ReasonCode.RESCHEDULED


def test_mapping_accepts_plain_strings():
    assert get_core_status("in_progress") == CoreStatus.IN_SERVICE
    assert get_reason_code("waiting_for_parts") == ReasonCode.INSUFFICIENT_PARTS


def test_terminal_statuses_have_no_successors():
    for status in TERMINAL_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == ()


def test_cancellation_statuses_are_not_generic_edges():
    assert not is_edge(S.PENDING, S.CANCEL_REQUESTED)
    assert not is_edge(S.CANCEL_REQUESTED, S.CANCEL_APPROVED)
    assert not is_edge(S.CANCEL_APPROVED, S.CANCELLED)


def test_customer_may_only_cancel_own_appointment():
    assert role_permits(Role.CUSTOMER, S.CANCELLED, 1, 1, None)
    assert not role_permits(Role.CUSTOMER, S.CANCELLED, 2, 1, None)
    assert not role_permits(Role.CUSTOMER, S.CONFIRMED, 1, 1, None)


def test_technician_ownership_rules():
    # Assigned technician only
    assert role_permits(Role.TECHNICIAN, S.IN_PROGRESS, 10, 1, 10)
    assert not role_permits(Role.TECHNICIAN, S.IN_PROGRESS, 11, 1, 10)
    assert not role_permits(Role.TECHNICIAN, S.RECEPTION_CREATED, 10, 1, None)
    # Any technician
    assert role_permits(Role.TECHNICIAN, S.COMPLETED, 11, 1, 10)
    assert role_permits(Role.TECHNICIAN, S.PARTS_INSUFFICIENT, 11, 1, 10)
    assert capability_for(Role.TECHNICIAN, S.CANCELLED) is None


def test_staff_cannot_create_receptions():
    assert capability_for(Role.STAFF, S.RECEPTION_CREATED) is None
    assert role_permits(Role.ADMIN, S.INVOICED, 30, 1, 10)


def test_system_role_covers_every_edge():
    for targets in ALLOWED_TRANSITIONS.values():
        for target in targets:
            assert capability_for(Role.SYSTEM, target) is not None
