"""
Intake records that carry part demand: service receptions written when the vehicle
is received, and part requests raised during service. Creating either one moves the
appointment forward and then runs conflict detection for every requested part.
"""
import logging
from typing import List, Optional

from sqlmodel import Session, func, select

from workshop import appointments, conflicts, ledger
from workshop.errors import PreconditionNotMetError, ValidationError
from workshop.locks import appointment_locks, sequence_locks
from workshop.models import (
    PartRequest,
    PartRequestLine,
    PartRequestType,
    ReceptionPartLine,
    ServiceReception,
    utcnow,
)
from workshop.status import AppointmentStatus

logger = logging.getLogger(__name__)


def _next_number(session: Session, model, prefix: str, timestamp_column) -> str:
    """Per-day sequence. The caller holds the matching sequence lock through its commit."""
    now = utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    count = session.exec(select(func.count()).select_from(model).where(timestamp_column >= day_start)).one()
    return f"{prefix}{now:%y%m%d}{count + 1:03d}"


def _validate_lines(session: Session, parts: List[dict]):
    if not parts:
        raise ValidationError("At least one part is required")
    for item in parts:
        if item.get("quantity", 0) <= 0:
            raise ValidationError("Part quantities must be positive", {"part_id": item.get("part_id")})
        ledger.get_part(session, item["part_id"])


def _detect(session: Session, part_ids, *records) -> list:
    """Runs detection per part, then reloads everything the caller will return."""
    found = []
    for part_id in sorted(set(part_ids)):
        conflict = conflicts.detect_part_conflicts(session, part_id)
        if conflict:
            found.append(conflict)
    for record in [*records, *found]:
        session.refresh(record)
    return found


def create_service_reception(
    session: Session,
    appointment_id: int,
    actor_id: int,
    role,
    parts: List[dict],
    vehicle_condition_notes: Optional[str] = None,
) -> dict:
    """
    Records the vehicle intake and the parts it needs; the appointment moves
    customer_arrived -> reception_created.
    """
    _validate_lines(session, parts)

    with appointment_locks.hold(appointment_id), sequence_locks.hold("reception"):
        try:
            appointment = appointments.load_for_update(session, appointment_id)
            if appointment.service_reception_id:
                raise PreconditionNotMetError("A service reception already exists for this appointment")
            appointments.check_transition(appointment, AppointmentStatus.RECEPTION_CREATED, actor_id, role)

            reception = ServiceReception(
                reception_number=_next_number(session, ServiceReception, "REC", ServiceReception.received_at),
                appointment_id=appointment.id,
                customer_id=appointment.customer_id,
                received_by=actor_id,
                vehicle_condition_notes=vehicle_condition_notes,
            )
            session.add(reception)
            session.flush()

            for item in parts:
                session.add(ReceptionPartLine(
                    reception_id=reception.id,
                    part_id=item["part_id"],
                    quantity=item["quantity"],
                    reason=item.get("reason") or "",
                ))

            appointment.service_reception_id = reception.id
            appointments.apply_status_change(
                session,
                appointment,
                AppointmentStatus.RECEPTION_CREATED,
                actor_id,
                role,
                "Service reception created",
                reception.reception_number,
            )
            session.commit()
            session.refresh(reception)
            session.refresh(appointment)
        except Exception:
            session.rollback()
            raise

    logger.info("Reception %s created for appointment %s", reception.reception_number, appointment.appointment_number)
    found = _detect(session, [item["part_id"] for item in parts], reception, appointment)
    return {"reception": reception, "appointment": appointment, "conflicts": found}


def create_part_request(
    session: Session,
    appointment_id: int,
    actor_id: int,
    role,
    parts: List[dict],
    request_type: PartRequestType = PartRequestType.ADDITIONAL_DURING_SERVICE,
) -> dict:
    """Additional parts needed during service; the appointment moves in_progress -> parts_requested."""
    _validate_lines(session, parts)

    with appointment_locks.hold(appointment_id), sequence_locks.hold("part_request"):
        try:
            appointment = appointments.load_for_update(session, appointment_id)
            appointments.check_transition(appointment, AppointmentStatus.PARTS_REQUESTED, actor_id, role)

            part_request = PartRequest(
                request_number=_next_number(session, PartRequest, "PR", PartRequest.requested_at),
                request_type=request_type,
                appointment_id=appointment.id,
                service_reception_id=appointment.service_reception_id,
                requested_by=actor_id,
            )
            session.add(part_request)
            session.flush()

            for item in parts:
                session.add(PartRequestLine(
                    part_request_id=part_request.id,
                    part_id=item["part_id"],
                    quantity=item["quantity"],
                    reason=item.get("reason") or "",
                ))

            appointments.apply_status_change(
                session,
                appointment,
                AppointmentStatus.PARTS_REQUESTED,
                actor_id,
                role,
                "Additional parts requested",
                part_request.request_number,
            )
            session.commit()
            session.refresh(part_request)
            session.refresh(appointment)
        except Exception:
            session.rollback()
            raise

    logger.info("Part request %s raised for appointment %s", part_request.request_number, appointment.appointment_number)
    found = _detect(session, [item["part_id"] for item in parts], part_request, appointment)
    return {"part_request": part_request, "appointment": appointment, "conflicts": found}
