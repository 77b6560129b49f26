from fastapi import APIRouter, Depends
from sqlmodel import Session

from workshop import appointments, receptions
from workshop.database import get_session
from workshop.deps import Actor, get_actor
from workshop.errors import ForbiddenError
from workshop.schemas import (
    AppointmentCreate,
    CancelRequestBody,
    NotesBody,
    PartRequestCreate,
    ReceptionCreate,
    RefundBody,
    RescheduleBody,
    ServiceNoteBody,
    StatusUpdate,
)
from workshop.status import Role

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def _visible_appointment(session: Session, appointment_id: int, actor: Actor):
    appointment = appointments.get_appointment(session, appointment_id)
    if actor.role == Role.CUSTOMER and appointment.customer_id != actor.id:
        raise ForbiddenError("Not your appointment")
    return appointment


@router.post("", status_code=201)
def create_appointment(
    body: AppointmentCreate,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    # Customers book for themselves, staff on anyone's behalf
    if actor.role == Role.CUSTOMER and body.customer_id != actor.id:
        raise ForbiddenError("Customers can only book their own appointments")
    if actor.role == Role.TECHNICIAN:
        raise ForbiddenError("Technicians cannot book appointments")

    appointment = appointments.book_appointment(session, **body.model_dump())
    return {"success": True, "data": appointment}


@router.get("/{appointment_id}")
def read_appointment(appointment_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_actor)):
    return {"success": True, "data": _visible_appointment(session, appointment_id, actor)}


@router.post("/{appointment_id}/status")
def change_status(
    appointment_id: int,
    body: StatusUpdate,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.update_status(
        session, appointment_id, body.status, actor.id, actor.role, body.reason, body.notes
    )
    return {"success": True, "data": appointment}


@router.post("/{appointment_id}/notes")
def add_note(
    appointment_id: int,
    body: ServiceNoteBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.add_service_note(session, appointment_id, actor.id, actor.role, body.note)
    return {"success": True, "data": appointment}


# --- Cancellation ---
@router.get("/{appointment_id}/cancel-check")
def cancel_check(appointment_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_actor)):
    appointment = _visible_appointment(session, appointment_id, actor)
    return {"success": True, "data": appointments.can_be_cancelled_by_customer(appointment, actor.id)}


@router.post("/{appointment_id}/cancel-request")
def request_cancellation(
    appointment_id: int,
    body: CancelRequestBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.request_cancellation(
        session,
        appointment_id,
        actor.id,
        actor.role,
        body.reason,
        body.refund_method,
        body.customer_bank_info,
    )
    return {"success": True, "data": appointment}


@router.post("/{appointment_id}/approve-cancellation")
def approve_cancellation(
    appointment_id: int,
    body: NotesBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.approve_cancellation(session, appointment_id, actor.id, actor.role, body.notes)
    return {"success": True, "data": appointment}


@router.post("/{appointment_id}/process-refund")
def process_refund(
    appointment_id: int,
    body: RefundBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.process_refund(
        session,
        appointment_id,
        actor.id,
        actor.role,
        body.refund_transaction_id,
        body.notes,
        body.refund_proof_image,
    )
    return {"success": True, "data": appointment}


# --- Rescheduling ---
@router.post("/{appointment_id}/reschedule")
def reschedule(
    appointment_id: int,
    body: RescheduleBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    appointment = appointments.reschedule(
        session,
        appointment_id,
        actor.id,
        actor.role,
        new_date=body.new_date,
        reason=body.reason,
        new_time=body.new_time,
        customer_agreed=body.customer_agreed,
        estimated_parts_arrival=body.estimated_parts_arrival,
    )
    return {"success": True, "data": appointment}


@router.get("/{appointment_id}/customer-actions")
def customer_actions(appointment_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_actor)):
    appointment = _visible_appointment(session, appointment_id, actor)
    return {"success": True, "data": appointments.get_customer_actions(appointment, actor.id)}


# --- Part demand ---
@router.post("/{appointment_id}/reception", status_code=201)
def create_reception(
    appointment_id: int,
    body: ReceptionCreate,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    result = receptions.create_service_reception(
        session,
        appointment_id,
        actor.id,
        actor.role,
        [line.model_dump() for line in body.parts],
        body.vehicle_condition_notes,
    )
    return {"success": True, "data": result}


@router.post("/{appointment_id}/part-requests", status_code=201)
def create_part_request(
    appointment_id: int,
    body: PartRequestCreate,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    result = receptions.create_part_request(
        session,
        appointment_id,
        actor.id,
        actor.role,
        [line.model_dump() for line in body.parts],
        body.request_type,
    )
    return {"success": True, "data": result}
