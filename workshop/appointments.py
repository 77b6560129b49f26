"""
Appointment lifecycle service.

All status changes go through `_record_transition`, which appends the history entry
(holding the status *before* the change), sets the new status and applies the
status-specific side effects. `core_status` and `reason_code` are never touched
here: the mapper events in `workshop.models` derive them on flush.
"""
import logging
import re
from datetime import datetime
from typing import Optional

from sqlmodel import Session, func, select

from workshop import config
from workshop.errors import (
    ForbiddenError,
    NotFoundError,
    PreconditionNotMetError,
    TransitionNotAllowedError,
    ValidationError,
)
from workshop.locks import appointment_locks, sequence_locks
from workshop.models import Appointment, BookingType, as_utc, utcnow
from workshop.status import (
    CUSTOMER_CHANGEABLE_STATUSES,
    TERMINAL_STATUSES,
    AppointmentStatus,
    Priority,
    Role,
    is_edge,
    role_permits,
)

logger = logging.getLogger(__name__)

S = AppointmentStatus

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

STAFF_ROLES = (Role.STAFF, Role.ADMIN)

# Statuses from which the rescheduling flow may start; the last two only for staff
RESCHEDULE_SOURCES = (S.PENDING, S.CONFIRMED, S.PARTS_INSUFFICIENT, S.WAITING_FOR_PARTS)

# Conflict resolution may not push these appointments anywhere
FORCE_BLOCKED = TERMINAL_STATUSES | {S.CANCEL_REQUESTED, S.CANCEL_APPROVED, S.RESCHEDULED}


def _as_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role}")


def _as_status(status) -> AppointmentStatus:
    try:
        return AppointmentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown appointment status: {status}")


def _hours_until(appointment: Appointment, now: datetime) -> float:
    return (as_utc(appointment.scheduled_date) - as_utc(now)).total_seconds() / 3600


# --- Loading ---

def get_appointment(session: Session, appointment_id: int) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def load_for_update(session: Session, appointment_id: int) -> Appointment:
    """Re-reads the row (bypassing the identity map) and locks it where supported."""
    statement = (
        select(Appointment)
        .where(Appointment.id == appointment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    appointment = session.exec(statement).first()
    if not appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


# --- Booking ---

def generate_appointment_number(session: Session, now: Optional[datetime] = None) -> str:
    """Per-day sequence. Callers hold the "appointment" sequence lock until they commit."""
    now = as_utc(now) if now else utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    count = session.exec(
        select(func.count()).select_from(Appointment).where(Appointment.created_at >= day_start)
    ).one()
    return f"APT{now:%y%m%d}{count + 1:03d}"


def book_appointment(
    session: Session,
    customer_id: int,
    vehicle_id: int,
    scheduled_date: datetime,
    scheduled_time: str,
    priority: Priority = Priority.NORMAL,
    booking_type: BookingType = BookingType.DEPOSIT_BOOKING,
    deposit_amount: Optional[float] = None,
    deposit_paid: bool = False,
    total_amount: float = 0.0,
    assigned_technician_id: Optional[int] = None,
    customer_notes: Optional[str] = None,
) -> Appointment:
    """Creates an appointment in `pending`."""
    if not TIME_PATTERN.match(scheduled_time or ""):
        raise ValidationError("scheduled_time must use the HH:MM format")
    if total_amount < 0:
        raise ValidationError("total_amount cannot be negative")

    if deposit_amount is None:
        deposit_amount = config.DEFAULT_DEPOSIT_AMOUNT if booking_type == BookingType.DEPOSIT_BOOKING else 0.0

    with sequence_locks.hold("appointment"):
        try:
            appointment = Appointment(
                appointment_number=generate_appointment_number(session),
                customer_id=customer_id,
                vehicle_id=vehicle_id,
                scheduled_date=as_utc(scheduled_date),
                scheduled_time=scheduled_time,
                priority=priority,
                booking_type=booking_type,
                deposit_amount=deposit_amount,
                deposit_paid=deposit_paid,
                total_amount=total_amount,
                assigned_technician_id=assigned_technician_id,
                customer_notes=customer_notes,
            )
            session.add(appointment)
            session.commit()
        except Exception:
            session.rollback()
            raise
    session.refresh(appointment)
    logger.info("Booked appointment %s for customer %s", appointment.appointment_number, customer_id)
    return appointment


# --- Transition validation ---

def _check_preconditions(appointment: Appointment, new_status: AppointmentStatus):
    current = appointment.status

    if new_status == S.CUSTOMER_ARRIVED and current != S.CONFIRMED:
        raise PreconditionNotMetError("Appointment must be confirmed before the customer arrives")

    if new_status == S.RECEPTION_CREATED and not appointment.assigned_technician_id:
        raise PreconditionNotMetError("A technician must be assigned before creating the reception")

    if new_status == S.RECEPTION_APPROVED:
        if current == S.RECEPTION_CREATED and not appointment.service_reception_id:
            raise PreconditionNotMetError("No service reception has been recorded for this appointment")
        if current not in (S.RECEPTION_CREATED, S.WAITING_FOR_PARTS):
            raise PreconditionNotMetError(f"Cannot approve reception from {current.value}")

    if new_status == S.COMPLETED:
        if current != S.IN_PROGRESS:
            raise PreconditionNotMetError("Only appointments in progress can be completed")
        has_notes = bool(appointment.service_notes)
        has_checklist = any(item.get("is_completed") for item in appointment.checklist_items or [])
        if not has_notes and not has_checklist:
            logger.warning(
                "Appointment %s completed without service notes or checklist items",
                appointment.appointment_number,
            )

    if new_status == S.INVOICED and current not in (S.COMPLETED, S.RECEPTION_APPROVED):
        raise PreconditionNotMetError("Only completed or pre-paid appointments can be invoiced")


def check_transition(appointment: Appointment, new_status, actor_id: Optional[int], role) -> AppointmentStatus:
    """
    Raises TransitionNotAllowedError or PreconditionNotMetError when the transition
    may not happen. Never mutates the appointment.
    """
    new_status = _as_status(new_status)
    role = _as_role(role)
    current = appointment.status

    if not is_edge(current, new_status):
        raise TransitionNotAllowedError(
            f"Cannot transition from {current.value} to {new_status.value}",
            {"current_status": current.value, "requested_status": new_status.value},
        )

    if not role_permits(
        role,
        new_status,
        actor_id,
        appointment.customer_id,
        appointment.assigned_technician_id,
    ):
        raise TransitionNotAllowedError(
            f"Role {role.value} may not move this appointment to {new_status.value}",
            {"current_status": current.value, "requested_status": new_status.value, "role": role.value},
        )

    _check_preconditions(appointment, new_status)
    return new_status


def can_transition(appointment: Appointment, new_status, actor_id: Optional[int], role) -> bool:
    try:
        check_transition(appointment, new_status, actor_id, role)
    except (TransitionNotAllowedError, PreconditionNotMetError):
        return False
    return True


# --- Mutation ---

def _apply_side_effects(appointment: Appointment, previous: AppointmentStatus, now: datetime):
    status = appointment.status
    if status == S.CUSTOMER_ARRIVED and not appointment.arrived_at:
        appointment.arrived_at = now
    elif status == S.COMPLETED:
        appointment.actual_completion = now
    elif status in (S.CANCELLED, S.NO_SHOW):
        appointment.estimated_completion = None
    elif status == S.CONFIRMED and previous == S.RESCHEDULED:
        info = appointment.rescheduling_info or {}
        if info.get("new_scheduled_date"):
            appointment.scheduled_date = as_utc(datetime.fromisoformat(info["new_scheduled_date"]))
        if info.get("new_scheduled_time"):
            appointment.scheduled_time = info["new_scheduled_time"]


def _record_transition(
    appointment: Appointment,
    new_status: AppointmentStatus,
    actor_id: Optional[int],
    reason: str = "",
    notes: str = "",
):
    now = utcnow()
    previous = appointment.status
    entry = {
        "previous_status": previous.value,
        "changed_by": actor_id,
        "changed_at": now.isoformat(),
        "reason": reason or "",
        "notes": notes or "",
    }
    # Reassign so the JSON column is flagged dirty
    appointment.workflow_history = [*(appointment.workflow_history or []), entry]
    appointment.status = new_status
    _apply_side_effects(appointment, previous, now)
    logger.info(
        "Appointment %s: %s -> %s (by %s)",
        appointment.appointment_number,
        previous.value,
        new_status.value,
        actor_id,
    )


def apply_status_change(
    session: Session,
    appointment: Appointment,
    new_status,
    actor_id: Optional[int],
    role,
    reason: str = "",
    notes: str = "",
) -> Appointment:
    """Validated transition inside the caller's transaction. Does not commit."""
    new_status = check_transition(appointment, new_status, actor_id, role)
    _record_transition(appointment, new_status, actor_id, reason, notes)
    session.add(appointment)
    return appointment


def force_status(
    session: Session,
    appointment: Appointment,
    new_status: AppointmentStatus,
    actor_id: Optional[int],
    reason: str = "",
    notes: str = "",
) -> bool:
    """
    Moves the appointment without consulting the adjacency list. Reserved for part
    conflict resolution. Returns False, leaving the appointment untouched, when it is
    closed or inside the cancellation/rescheduling flows.
    """
    if appointment.status in FORCE_BLOCKED:
        logger.info(
            "Not forcing appointment %s from %s to %s",
            appointment.appointment_number,
            appointment.status.value,
            new_status.value,
        )
        return False
    if appointment.status == new_status:
        return False
    _record_transition(appointment, new_status, actor_id, reason, notes)
    session.add(appointment)
    return True


def _commit(session: Session, appointment: Appointment) -> Appointment:
    session.commit()
    session.refresh(appointment)
    return appointment


def update_status(
    session: Session,
    appointment_id: int,
    new_status,
    actor_id: Optional[int],
    role,
    reason: str = "",
    notes: str = "",
) -> Appointment:
    """
    Guarded status transition. Serialized per appointment: a second caller sees the
    status written by the first and is validated against it.
    """
    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)
            apply_status_change(session, appointment, new_status, actor_id, role, reason, notes)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


def add_service_note(session: Session, appointment_id: int, actor_id: int, role, note: str) -> Appointment:
    role = _as_role(role)
    if role not in (Role.TECHNICIAN, Role.STAFF, Role.ADMIN):
        raise ForbiddenError("Only technicians and staff can add service notes")
    if not note or not note.strip():
        raise ValidationError("Note text is required")

    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)
            entry = {"note": note.strip(), "added_by": actor_id, "added_at": utcnow().isoformat()}
            appointment.service_notes = [*(appointment.service_notes or []), entry]
            session.add(appointment)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


# --- Cancellation ---

def _refund_base_amount(appointment: Appointment) -> float:
    if appointment.booking_type == BookingType.DEPOSIT_BOOKING and appointment.deposit_paid:
        return appointment.deposit_amount
    return appointment.total_amount


def _refund_terms(appointment: Appointment, now: datetime) -> dict:
    hours_left = _hours_until(appointment, now)
    if hours_left >= config.FULL_REFUND_WINDOW_HOURS:
        refund_percentage = 100
        refund_message = "100% refund"
    else:
        refund_percentage = config.LATE_CANCEL_REFUND_PERCENTAGE
        refund_message = (
            f"{refund_percentage}% refund (less than {config.FULL_REFUND_WINDOW_HOURS} hours)"
        )
    base_amount = _refund_base_amount(appointment)
    return {
        "hours_left": round(hours_left, 1),
        "refund_percentage": refund_percentage,
        "refund_message": refund_message,
        "base_amount": base_amount,
        "estimated_refund_amount": round(base_amount * refund_percentage / 100),
    }


def can_be_cancelled_by_customer(
    appointment: Appointment, customer_id: int, now: Optional[datetime] = None
) -> dict:
    if appointment.customer_id != customer_id:
        return {"can_cancel": False, "reason": "Not your appointment"}

    if appointment.status in (S.CANCEL_REQUESTED, S.CANCEL_APPROVED):
        return {"can_cancel": False, "reason": "Cancel request already submitted"}

    if appointment.status not in CUSTOMER_CHANGEABLE_STATUSES:
        return {
            "can_cancel": False,
            "reason": f"Cannot cancel appointment with status: {appointment.status.value}",
        }

    return {"can_cancel": True, **_refund_terms(appointment, now or utcnow())}


def request_cancellation(
    session: Session,
    appointment_id: int,
    actor_id: int,
    role,
    reason: str,
    refund_method: Optional[str] = None,
    customer_bank_info: Optional[dict] = None,
) -> Appointment:
    """Customer asks to cancel; the refund terms are frozen into `cancel_request`."""
    if _as_role(role) != Role.CUSTOMER:
        raise ForbiddenError("Only the customer can request a cancellation")
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")
    if refund_method is not None and refund_method not in ("cash", "bank_transfer"):
        raise ValidationError("refund_method must be cash or bank_transfer")

    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)
            check = can_be_cancelled_by_customer(appointment, actor_id)
            if not check["can_cancel"]:
                if check["reason"] == "Not your appointment":
                    raise ForbiddenError(check["reason"])
                raise PreconditionNotMetError(check["reason"])

            appointment.cancel_request = {
                "requested_at": utcnow().isoformat(),
                "requested_by": actor_id,
                "reason": reason.strip(),
                "refund_percentage": check["refund_percentage"],
                "base_amount": check["base_amount"],
                "refund_amount": check["estimated_refund_amount"],
                "refund_method": refund_method,
                "customer_bank_info": customer_bank_info,
            }
            _record_transition(
                appointment,
                S.CANCEL_REQUESTED,
                actor_id,
                f"Cancel requested - {check['refund_percentage']}% refund",
                reason.strip(),
            )
            session.add(appointment)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


def approve_cancellation(session: Session, appointment_id: int, actor_id: int, role, notes: str = "") -> Appointment:
    if _as_role(role) not in STAFF_ROLES:
        raise ForbiddenError("Only staff and admin can approve cancellations")

    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)
            if appointment.status != S.CANCEL_REQUESTED:
                raise PreconditionNotMetError(
                    f"No pending cancel request (status is {appointment.status.value})"
                )
            appointment.cancel_request = {
                **(appointment.cancel_request or {}),
                "approved_at": utcnow().isoformat(),
                "approved_by": actor_id,
                "approved_notes": notes,
            }
            _record_transition(appointment, S.CANCEL_APPROVED, actor_id, "Cancel request approved", notes)
            session.add(appointment)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


def process_refund(
    session: Session,
    appointment_id: int,
    actor_id: int,
    role,
    refund_transaction_id: str,
    notes: str = "",
    refund_proof_image: str = "",
) -> Appointment:
    """Records the refund and closes the appointment as cancelled."""
    if _as_role(role) not in STAFF_ROLES:
        raise ForbiddenError("Only staff and admin can process refunds")
    if not refund_transaction_id:
        raise ValidationError("A refund transaction reference is required")

    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)
            if appointment.status != S.CANCEL_APPROVED:
                raise PreconditionNotMetError(
                    f"Cancellation has not been approved (status is {appointment.status.value})"
                )
            appointment.cancel_request = {
                **(appointment.cancel_request or {}),
                "refund_processed_at": utcnow().isoformat(),
                "refund_processed_by": actor_id,
                "refund_transaction_id": refund_transaction_id,
                "refund_notes": notes or "",
                "refund_proof_image": refund_proof_image or "",
            }
            history_notes = f"Refund transaction: {refund_transaction_id}"
            if notes:
                history_notes += f" - {notes}"
            _record_transition(
                appointment,
                S.CANCELLED,
                actor_id,
                "Refund processed successfully - appointment cancelled",
                history_notes,
            )
            session.add(appointment)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


# --- Rescheduling ---

def _reschedule_count(appointment: Appointment) -> int:
    return (appointment.rescheduling_info or {}).get("reschedule_count", 0)


def can_be_rescheduled_by_customer(
    appointment: Appointment, customer_id: int, now: Optional[datetime] = None
) -> dict:
    if appointment.customer_id != customer_id:
        return {"can_reschedule": False, "reason": "Not your appointment"}

    if appointment.status not in CUSTOMER_CHANGEABLE_STATUSES:
        return {
            "can_reschedule": False,
            "reason": f"Cannot reschedule appointment with status: {appointment.status.value}",
        }

    hours_left = _hours_until(appointment, now or utcnow())
    if hours_left < config.RESCHEDULE_WINDOW_HOURS:
        return {
            "can_reschedule": False,
            "reason": (
                f"Cannot reschedule within {config.RESCHEDULE_WINDOW_HOURS} hours of appointment. "
                "Please contact the service center."
            ),
            "hours_left": round(hours_left, 1),
        }

    count = _reschedule_count(appointment)
    if count >= config.MAX_RESCHEDULES:
        return {
            "can_reschedule": False,
            "reason": (
                f"Maximum reschedule limit reached ({config.MAX_RESCHEDULES} times). "
                "Please contact the service center."
            ),
            "reschedule_count": count,
        }

    return {
        "can_reschedule": True,
        "hours_left": round(hours_left, 1),
        "reschedule_count": count,
        "remaining_reschedules": config.MAX_RESCHEDULES - count,
    }


def reschedule(
    session: Session,
    appointment_id: int,
    actor_id: int,
    role,
    new_date: datetime,
    reason: str,
    new_time: Optional[str] = None,
    customer_agreed: bool = False,
    estimated_parts_arrival: Optional[datetime] = None,
) -> Appointment:
    """
    Moves the appointment to a new date. With `customer_agreed` the date is applied
    and the appointment is (re)confirmed; otherwise it waits in `rescheduled` until
    staff confirm it.
    """
    role = _as_role(role)
    if not new_date or not reason:
        raise ValidationError("New date and reason are required")
    if new_time is not None and not TIME_PATTERN.match(new_time):
        raise ValidationError("new_time must use the HH:MM format")
    new_date = as_utc(new_date)
    estimated_parts_arrival = as_utc(estimated_parts_arrival)
    now = utcnow()
    if new_date <= now:
        raise ValidationError("New appointment date must be in the future")

    with appointment_locks.hold(appointment_id):
        try:
            appointment = load_for_update(session, appointment_id)

            if role == Role.CUSTOMER:
                check = can_be_rescheduled_by_customer(appointment, actor_id, now)
                if not check["can_reschedule"]:
                    if check["reason"] == "Not your appointment":
                        raise ForbiddenError(check["reason"])
                    raise PreconditionNotMetError(check["reason"], check)
            elif role in STAFF_ROLES:
                if appointment.status not in RESCHEDULE_SOURCES:
                    raise PreconditionNotMetError(
                        f"Cannot reschedule appointment with status: {appointment.status.value}"
                    )
                if _reschedule_count(appointment) >= config.MAX_RESCHEDULES:
                    raise PreconditionNotMetError(
                        f"Maximum reschedule limit reached ({config.MAX_RESCHEDULES} times)",
                        {"reschedule_count": _reschedule_count(appointment)},
                    )
            else:
                raise ForbiddenError("Not authorized to reschedule this appointment")

            previous_info = appointment.rescheduling_info or {}
            appointment.rescheduling_info = {
                "reason": reason,
                "original_date": previous_info.get("original_date") or appointment.scheduled_date.isoformat(),
                "previous_date": appointment.scheduled_date.isoformat(),
                "new_scheduled_date": new_date.isoformat(),
                "new_scheduled_time": new_time,
                "rescheduled_by": actor_id,
                "rescheduled_at": now.isoformat(),
                "customer_agreed": customer_agreed,
                "estimated_parts_arrival": (
                    estimated_parts_arrival.isoformat() if estimated_parts_arrival else None
                ),
                "reschedule_count": _reschedule_count(appointment) + 1,
            }

            history_reason = f"Rescheduled by {role.value}: {reason}"
            if customer_agreed:
                appointment.scheduled_date = new_date
                if new_time:
                    appointment.scheduled_time = new_time
                if appointment.status != S.CONFIRMED:
                    _record_transition(appointment, S.CONFIRMED, actor_id, history_reason)
            else:
                _record_transition(appointment, S.RESCHEDULED, actor_id, history_reason)

            session.add(appointment)
            return _commit(session, appointment)
        except Exception:
            session.rollback()
            raise


def get_customer_actions(appointment: Appointment, customer_id: int, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    cancel_check = can_be_cancelled_by_customer(appointment, customer_id, now)
    reschedule_check = can_be_rescheduled_by_customer(appointment, customer_id, now)
    return {
        "can_cancel": cancel_check["can_cancel"],
        "can_reschedule": reschedule_check["can_reschedule"],
        "cancel_reason": cancel_check.get("reason"),
        "reschedule_reason": reschedule_check.get("reason"),
        "hours_left": cancel_check.get("hours_left", reschedule_check.get("hours_left")),
        "reschedule_count": reschedule_check.get("reschedule_count", _reschedule_count(appointment)),
        "remaining_reschedules": reschedule_check.get("remaining_reschedules", 0),
    }
