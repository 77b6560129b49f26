"""
Appointment workflow tables.

Everything here is pure data plus pure functions: the detailed status enumeration,
its projection onto the six core statuses, the reason codes, the adjacency list of
allowed transitions and the (role, target status) capability table.
"""
from enum import Enum
from typing import Optional


class AppointmentStatus(str, Enum):
    """Detailed workflow status of an appointment."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CUSTOMER_ARRIVED = "customer_arrived"
    RECEPTION_CREATED = "reception_created"
    RECEPTION_APPROVED = "reception_approved"
    PARTS_INSUFFICIENT = "parts_insufficient"
    WAITING_FOR_PARTS = "waiting_for_parts"
    PARTS_REQUESTED = "parts_requested"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_APPROVED = "cancel_approved"
    CANCEL_REFUNDED = "cancel_refunded"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class CoreStatus(str, Enum):
    """Coarse projection used for reporting."""
    SCHEDULED = "Scheduled"
    CHECKED_IN = "CheckedIn"
    IN_SERVICE = "InService"
    ON_HOLD = "OnHold"
    READY_FOR_PICKUP = "ReadyForPickup"
    CLOSED = "Closed"


class ReasonCode(str, Enum):
    INSUFFICIENT_PARTS = "insufficient_parts"
    CUSTOMER_DECISION = "customer_decision"
    TECHNICIAN_UNAVAILABLE = "technician_unavailable"
    EQUIPMENT_ISSUE = "equipment_issue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class Role(str, Enum):
    CUSTOMER = "customer"
    TECHNICIAN = "technician"
    STAFF = "staff"
    ADMIN = "admin"
    # Schedulers and other in-process callers (no-show detection, reminders)
    SYSTEM = "system"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_WEIGHT = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}

S = AppointmentStatus

CORE_STATUS_MAP = {
    S.PENDING: CoreStatus.SCHEDULED,
    S.CONFIRMED: CoreStatus.SCHEDULED,
    S.CUSTOMER_ARRIVED: CoreStatus.CHECKED_IN,
    S.RECEPTION_CREATED: CoreStatus.CHECKED_IN,
    S.RECEPTION_APPROVED: CoreStatus.IN_SERVICE,
    S.IN_PROGRESS: CoreStatus.IN_SERVICE,
    S.PARTS_INSUFFICIENT: CoreStatus.ON_HOLD,
    S.WAITING_FOR_PARTS: CoreStatus.ON_HOLD,
    S.PARTS_REQUESTED: CoreStatus.ON_HOLD,
    S.CANCEL_REQUESTED: CoreStatus.ON_HOLD,
    S.CANCEL_APPROVED: CoreStatus.ON_HOLD,
    S.COMPLETED: CoreStatus.READY_FOR_PICKUP,
    S.INVOICED: CoreStatus.READY_FOR_PICKUP,
    S.CANCELLED: CoreStatus.CLOSED,
    S.CANCEL_REFUNDED: CoreStatus.CLOSED,
    S.NO_SHOW: CoreStatus.CLOSED,
    S.RESCHEDULED: CoreStatus.CLOSED,
}

REASON_CODE_MAP = {
    S.PARTS_INSUFFICIENT: ReasonCode.INSUFFICIENT_PARTS,
    S.WAITING_FOR_PARTS: ReasonCode.INSUFFICIENT_PARTS,
    S.PARTS_REQUESTED: ReasonCode.INSUFFICIENT_PARTS,
    S.CANCEL_REQUESTED: ReasonCode.CUSTOMER_DECISION,
    S.CANCEL_APPROVED: ReasonCode.CUSTOMER_DECISION,
    S.CANCELLED: ReasonCode.CANCELLED,
    S.CANCEL_REFUNDED: ReasonCode.CANCELLED,
    S.NO_SHOW: ReasonCode.NO_SHOW,
    S.RESCHEDULED: ReasonCode.RESCHEDULED,
}

ALLOWED_TRANSITIONS = {
    S.PENDING: (S.CONFIRMED, S.CANCELLED, S.NO_SHOW),
    S.CONFIRMED: (S.CUSTOMER_ARRIVED, S.CANCELLED, S.RESCHEDULED, S.NO_SHOW),
    S.CUSTOMER_ARRIVED: (S.RECEPTION_CREATED, S.CANCELLED),
    S.RECEPTION_CREATED: (S.RECEPTION_APPROVED, S.PARTS_INSUFFICIENT, S.CANCELLED),
    S.RECEPTION_APPROVED: (S.IN_PROGRESS, S.CANCELLED, S.INVOICED),
    S.PARTS_INSUFFICIENT: (S.WAITING_FOR_PARTS, S.IN_PROGRESS, S.RESCHEDULED, S.CANCELLED),
    S.WAITING_FOR_PARTS: (
        S.RECEPTION_APPROVED,
        S.IN_PROGRESS,
        S.PARTS_INSUFFICIENT,
        S.CANCELLED,
        S.RESCHEDULED,
    ),
    S.RESCHEDULED: (S.CONFIRMED,),
    S.IN_PROGRESS: (S.PARTS_REQUESTED, S.PARTS_INSUFFICIENT, S.COMPLETED, S.CANCELLED),
    S.PARTS_REQUESTED: (S.IN_PROGRESS, S.PARTS_INSUFFICIENT, S.WAITING_FOR_PARTS, S.CANCELLED),
    S.COMPLETED: (S.INVOICED,),
    S.INVOICED: (),
    S.CANCELLED: (),
    S.NO_SHOW: (),
    S.CANCEL_REFUNDED: (),
    # Only reachable through the cancellation flow, see CANCELLATION_FLOW
    S.CANCEL_REQUESTED: (),
    S.CANCEL_APPROVED: (),
}

TERMINAL_STATUSES = frozenset({S.INVOICED, S.CANCELLED, S.NO_SHOW, S.CANCEL_REFUNDED})

# Edges owned by the cancellation sub-flow: (from, to) -> operation name
CANCELLATION_FLOW = {
    (S.PENDING, S.CANCEL_REQUESTED): "request_cancellation",
    (S.CONFIRMED, S.CANCEL_REQUESTED): "request_cancellation",
    (S.CANCEL_REQUESTED, S.CANCEL_APPROVED): "approve_cancellation",
    (S.CANCEL_APPROVED, S.CANCELLED): "process_refund",
}

CUSTOMER_CHANGEABLE_STATUSES = (S.PENDING, S.CONFIRMED)


class Ownership(str, Enum):
    """Who, within a role, may use a capability."""
    ANY = "any"
    OWN_APPOINTMENT = "own_appointment"
    ASSIGNED_TECHNICIAN = "assigned_technician"


_STAFF_TARGETS = (
    S.CONFIRMED,
    S.CUSTOMER_ARRIVED,
    S.RECEPTION_APPROVED,
    S.IN_PROGRESS,
    S.PARTS_INSUFFICIENT,
    S.WAITING_FOR_PARTS,
    S.PARTS_REQUESTED,
    S.COMPLETED,
    S.CANCELLED,
    S.RESCHEDULED,
    S.NO_SHOW,
    S.INVOICED,
)


def _build_capabilities() -> dict:
    table = {(Role.CUSTOMER, S.CANCELLED): Ownership.OWN_APPOINTMENT}

    for target in (S.RECEPTION_CREATED, S.IN_PROGRESS, S.PARTS_REQUESTED):
        table[(Role.TECHNICIAN, target)] = Ownership.ASSIGNED_TECHNICIAN
    for target in (S.PARTS_INSUFFICIENT, S.COMPLETED):
        table[(Role.TECHNICIAN, target)] = Ownership.ANY

    for role in (Role.STAFF, Role.ADMIN):
        for target in _STAFF_TARGETS:
            table[(role, target)] = Ownership.ANY

    every_target = {t for targets in ALLOWED_TRANSITIONS.values() for t in targets}
    for target in every_target:
        table[(Role.SYSTEM, target)] = Ownership.ANY
    return table


CAPABILITIES = _build_capabilities()


def get_core_status(status: AppointmentStatus) -> CoreStatus:
    return CORE_STATUS_MAP[AppointmentStatus(status)]


def get_reason_code(status: AppointmentStatus) -> Optional[ReasonCode]:
    """Reason code for OnHold and Closed outcomes, None for every other status."""
    status = AppointmentStatus(status)
    if get_core_status(status) not in (CoreStatus.ON_HOLD, CoreStatus.CLOSED):
        return None
    return REASON_CODE_MAP.get(status)


def is_edge(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return AppointmentStatus(target) in ALLOWED_TRANSITIONS.get(AppointmentStatus(current), ())


def capability_for(role: Role, target: AppointmentStatus) -> Optional[Ownership]:
    return CAPABILITIES.get((Role(role), AppointmentStatus(target)))


def role_permits(
    role: Role,
    target: AppointmentStatus,
    actor_id: Optional[int],
    customer_id: Optional[int],
    assigned_technician_id: Optional[int],
) -> bool:
    """Checks the capability table and its ownership rule for one actor."""
    ownership = capability_for(role, target)
    if ownership is None:
        return False
    if ownership == Ownership.OWN_APPOINTMENT:
        return actor_id is not None and actor_id == customer_id
    if ownership == Ownership.ASSIGNED_TECHNICIAN:
        return actor_id is not None and actor_id == assigned_technician_id
    return True
