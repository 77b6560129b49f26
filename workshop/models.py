from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, event
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from workshop.status import (
    AppointmentStatus,
    CoreStatus,
    Priority,
    ReasonCode,
    get_core_status,
    get_reason_code,
)


# --- Time ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive values are taken to be UTC already; aware ones are converted."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always binds and loads aware UTC datetimes.
    SQLite keeps no offset, so loaded values get it back here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


# --- Enums ---
class BookingType(str, Enum):
    DEPOSIT_BOOKING = "deposit_booking"
    FULL_SERVICE = "full_service"


class DemandSource(str, Enum):
    """Record type that carries a demand for a part."""
    SERVICE_RECEPTION = "ServiceReception"
    PART_REQUEST = "PartRequest"


class DemandStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DEFERRED = "deferred"
    REJECTED = "rejected"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    AUTO_RESOLVED = "auto_resolved"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PartRequestType(str, Enum):
    INITIAL_SERVICE = "initial_service"
    ADDITIONAL_DURING_SERVICE = "additional_during_service"


# --- Tables ---

class Part(SQLModel, table=True):
    """
    A stocked part.
    `current_stock` is what conflict detection and resolution allocate from;
    `reserved_stock` is tracked for the rest of the shop but ignored there.
    """
    __table_args__ = (CheckConstraint("current_stock >= 0", name="ck_part_current_stock"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    part_number: str = Field(index=True, unique=True)
    name: str
    category: str = Field(default="general")
    cost_price: float = Field(default=0.0)
    sell_price: float = Field(default=0.0)
    current_stock: int = Field(default=0, description="Units available for allocation")
    reserved_stock: int = Field(default=0)
    used_stock: int = Field(default=0, description="Units consumed by approved requests")
    min_stock_level: int = Field(default=5)
    location: Optional[str] = None
    last_restocked: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Appointment(SQLModel, table=True):
    """
    A booking and its whole service workflow.
    `core_status` and `reason_code` are derived from `status` on every flush;
    `workflow_history` is append-only.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    appointment_number: str = Field(index=True, unique=True)
    customer_id: int = Field(index=True)
    vehicle_id: int
    assigned_technician_id: Optional[int] = Field(default=None, index=True)
    service_reception_id: Optional[int] = None
    invoice_id: Optional[int] = None

    status: AppointmentStatus = Field(default=AppointmentStatus.PENDING, index=True)
    core_status: CoreStatus = Field(default=CoreStatus.SCHEDULED)
    reason_code: Optional[ReasonCode] = None
    priority: Priority = Field(default=Priority.NORMAL)

    scheduled_date: datetime = Field(sa_type=UTCDateTime)
    scheduled_time: str = Field(description="HH:MM")
    booking_type: BookingType = Field(default=BookingType.DEPOSIT_BOOKING)
    deposit_amount: float = Field(default=0.0)
    deposit_paid: bool = Field(default=False)
    total_amount: float = Field(default=0.0)

    estimated_completion: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    actual_completion: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    arrived_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    customer_notes: Optional[str] = None

    service_notes: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    checklist_items: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    workflow_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    cancel_request: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    rescheduling_info: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    staff_rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    rejected_by: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ServiceReception(SQLModel, table=True):
    """Intake record written by the technician when the vehicle is received."""
    id: Optional[int] = Field(default=None, primary_key=True)
    reception_number: str = Field(index=True, unique=True)
    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    customer_id: int
    received_by: Optional[int] = Field(default=None, description="Technician id")
    received_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    vehicle_condition_notes: Optional[str] = None
    status: ReviewStatus = Field(default=ReviewStatus.PENDING)
    staff_review_status: ReviewStatus = Field(default=ReviewStatus.PENDING)
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    review_notes: Optional[str] = None


class ReceptionPartLine(SQLModel, table=True):
    """A part requested on a service reception."""
    id: Optional[int] = Field(default=None, primary_key=True)
    reception_id: int = Field(foreign_key="servicereception.id", index=True)
    part_id: int = Field(foreign_key="part.id", index=True)
    quantity: int = Field(gt=0)
    reason: str = Field(default="")
    is_approved: bool = Field(default=False)
    is_rejected: bool = Field(default=False)
    requested_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class PartRequest(SQLModel, table=True):
    """Standalone request for parts, usually raised during service."""
    id: Optional[int] = Field(default=None, primary_key=True)
    request_number: str = Field(index=True, unique=True)
    request_type: PartRequestType = Field(default=PartRequestType.ADDITIONAL_DURING_SERVICE)
    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    service_reception_id: Optional[int] = Field(default=None, foreign_key="servicereception.id")
    requested_by: int
    requested_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    status: ReviewStatus = Field(default=ReviewStatus.PENDING, index=True)
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    review_notes: Optional[str] = None


class PartRequestLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    part_request_id: int = Field(foreign_key="partrequest.id", index=True)
    part_id: int = Field(foreign_key="part.id", index=True)
    quantity: int = Field(gt=0)
    reason: str = Field(default="")
    is_approved: bool = Field(default=False)
    is_rejected: bool = Field(default=False)


class PartConflict(SQLModel, table=True):
    """
    Demand competing for one part's insufficient stock.
    Stock figures are a snapshot taken at detection time; `conflicting_requests`
    owns one entry per competing demand request, each with its own status.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    conflict_number: str = Field(index=True, unique=True)
    part_id: int = Field(foreign_key="part.id", index=True)
    part_name: str
    part_number: str
    available_stock: int = Field(ge=0)
    total_requested: int = Field(ge=0)
    shortfall: int = Field(ge=0)
    status: ConflictStatus = Field(default=ConflictStatus.PENDING, index=True)
    conflicting_requests: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    resolution_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


# --- Derived fields ---

@event.listens_for(Appointment, "before_insert")
@event.listens_for(Appointment, "before_update")
def _derive_appointment_status(mapper, connection, target):
    target.core_status = get_core_status(target.status)
    target.reason_code = get_reason_code(target.status)
    target.updated_at = utcnow()


@event.listens_for(PartConflict, "before_update")
def _touch_conflict(mapper, connection, target):
    target.updated_at = utcnow()
