"""
Uniform view over the two records that can demand a part: a line on a service
reception and a line on a standalone part request.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from workshop.errors import NotFoundError, ValidationError
from workshop.models import (
    Appointment,
    DemandSource,
    DemandStatus,
    PartRequest,
    PartRequestLine,
    ReceptionPartLine,
    ReviewStatus,
    ServiceReception,
    utcnow,
)
from workshop.status import TERMINAL_STATUSES, Priority


@dataclass
class DemandRequest:
    source: DemandSource
    request_id: int
    part_id: int
    appointment_id: int
    appointment_number: str
    requested_quantity: int
    priority: Priority
    scheduled_date: datetime
    scheduled_time: str
    requested_at: datetime
    customer_id: int
    technician_id: Optional[int]
    is_approved: bool = False

    @property
    def key(self) -> str:
        return make_key(self.source, self.request_id)

    def to_member(self, can_be_fulfilled: bool) -> dict:
        """Entry stored in PartConflict.conflicting_requests."""
        return {
            "key": self.key,
            "source": self.source.value,
            "request_id": self.request_id,
            "appointment_id": self.appointment_id,
            "appointment_number": self.appointment_number,
            "customer_id": self.customer_id,
            "technician_id": self.technician_id,
            "requested_quantity": self.requested_quantity,
            "priority": self.priority.value,
            "scheduled_date": self.scheduled_date.isoformat(),
            "scheduled_time": self.scheduled_time,
            "requested_at": self.requested_at.isoformat(),
            "status": DemandStatus.PENDING.value,
            "can_be_fulfilled": can_be_fulfilled,
            "auto_approved": False,
            "resolution_notes": "",
        }


def make_key(source, request_id: int) -> str:
    return f"{DemandSource(source).value}:{request_id}"


def parse_key(key: str):
    """'PartRequest:12' -> (DemandSource.PART_REQUEST, 12)"""
    try:
        source, request_id = key.split(":", 1)
        return DemandSource(source), int(request_id)
    except ValueError:
        raise ValidationError(f"Invalid demand request id: {key}")


def _from_reception_line(line: ReceptionPartLine, reception: ServiceReception, appointment: Appointment):
    return DemandRequest(
        source=DemandSource.SERVICE_RECEPTION,
        request_id=line.id,
        part_id=line.part_id,
        appointment_id=appointment.id,
        appointment_number=appointment.appointment_number,
        requested_quantity=line.quantity,
        priority=appointment.priority,
        scheduled_date=appointment.scheduled_date,
        scheduled_time=appointment.scheduled_time,
        requested_at=line.requested_at,
        customer_id=appointment.customer_id,
        technician_id=reception.received_by,
        is_approved=line.is_approved,
    )


def _from_request_line(line: PartRequestLine, request: PartRequest, appointment: Appointment):
    return DemandRequest(
        source=DemandSource.PART_REQUEST,
        request_id=line.id,
        part_id=line.part_id,
        appointment_id=appointment.id,
        appointment_number=appointment.appointment_number,
        requested_quantity=line.quantity,
        priority=appointment.priority,
        scheduled_date=appointment.scheduled_date,
        scheduled_time=appointment.scheduled_time,
        requested_at=request.requested_at,
        customer_id=appointment.customer_id,
        technician_id=request.requested_by,
        is_approved=line.is_approved,
    )


def collect_open_demand(session: Session, part_id: int) -> List[DemandRequest]:
    """
    Every unapproved, unrejected demand for the part, reception lines first.
    Lines of rejected receptions, of reviewed part requests and of closed
    appointments do not compete for stock.
    """
    closed = list(TERMINAL_STATUSES)

    reception_rows = session.exec(
        select(ReceptionPartLine, ServiceReception, Appointment)
        .where(ReceptionPartLine.reception_id == ServiceReception.id)
        .where(ServiceReception.appointment_id == Appointment.id)
        .where(ReceptionPartLine.part_id == part_id)
        .where(ReceptionPartLine.is_approved == False)  # noqa: E712
        .where(ReceptionPartLine.is_rejected == False)  # noqa: E712
        .where(ServiceReception.staff_review_status != ReviewStatus.REJECTED)
        .where(Appointment.status.notin_(closed))
        .order_by(ReceptionPartLine.id)
    ).all()

    request_rows = session.exec(
        select(PartRequestLine, PartRequest, Appointment)
        .where(PartRequestLine.part_request_id == PartRequest.id)
        .where(PartRequest.appointment_id == Appointment.id)
        .where(PartRequestLine.part_id == part_id)
        .where(PartRequestLine.is_approved == False)  # noqa: E712
        .where(PartRequestLine.is_rejected == False)  # noqa: E712
        .where(PartRequest.status == ReviewStatus.PENDING)
        .where(Appointment.status.notin_(closed))
        .order_by(PartRequestLine.id)
    ).all()

    demand = [_from_reception_line(*row) for row in reception_rows]
    demand += [_from_request_line(*row) for row in request_rows]
    return demand


def get_line(session: Session, source, request_id: int):
    """The concrete line backing a demand request."""
    model = ReceptionPartLine if DemandSource(source) == DemandSource.SERVICE_RECEPTION else PartRequestLine
    line = session.get(model, request_id)
    if not line:
        raise NotFoundError(f"{DemandSource(source).value} line {request_id} not found")
    return line


def get_parent(session: Session, source, line):
    if DemandSource(source) == DemandSource.SERVICE_RECEPTION:
        return session.get(ServiceReception, line.reception_id)
    return session.get(PartRequest, line.part_request_id)


def sibling_lines(session: Session, source, line) -> list:
    if DemandSource(source) == DemandSource.SERVICE_RECEPTION:
        statement = select(ReceptionPartLine).where(ReceptionPartLine.reception_id == line.reception_id)
    else:
        statement = select(PartRequestLine).where(PartRequestLine.part_request_id == line.part_request_id)
    return list(session.exec(statement).all())


def mark_approved(session: Session, source, request_id: int, actor_id: int, notes: str = "") -> bool:
    """
    Flips the approval flag. Returns True when every line of the parent record is now
    approved, in which case the parent itself is marked approved.
    """
    line = get_line(session, source, request_id)
    line.is_approved = True
    session.add(line)

    if not all(sibling.is_approved for sibling in sibling_lines(session, source, line)):
        return False

    parent = get_parent(session, source, line)
    if DemandSource(source) == DemandSource.SERVICE_RECEPTION:
        parent.staff_review_status = ReviewStatus.APPROVED
    parent.status = ReviewStatus.APPROVED
    parent.reviewed_by = actor_id
    parent.reviewed_at = utcnow()
    parent.review_notes = notes or parent.review_notes
    session.add(parent)
    return True


def mark_rejected(session: Session, source, request_id: int, actor_id: int, reason: str):
    """Rejects the line and its parent record; the parent's other lines stop competing."""
    line = get_line(session, source, request_id)
    line.is_rejected = True
    session.add(line)

    parent = get_parent(session, source, line)
    if DemandSource(source) == DemandSource.SERVICE_RECEPTION:
        parent.staff_review_status = ReviewStatus.REJECTED
    parent.status = ReviewStatus.REJECTED
    parent.reviewed_by = actor_id
    parent.reviewed_at = utcnow()
    parent.review_notes = reason
    session.add(parent)
