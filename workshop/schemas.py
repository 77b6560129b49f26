from datetime import datetime
from typing import List, Optional

from sqlmodel import Field, SQLModel

from workshop.models import BookingType, PartRequestType
from workshop.status import AppointmentStatus, Priority


# --- Parts ---
class PartCreate(SQLModel):
    part_number: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: str = "general"
    cost_price: float = Field(default=0.0, ge=0)
    sell_price: float = Field(default=0.0, ge=0)
    current_stock: int = Field(default=0, ge=0)
    min_stock_level: int = Field(default=5, ge=0)
    location: Optional[str] = None


class RestockBody(SQLModel):
    quantity: int = Field(gt=0)


# --- Appointments ---
class AppointmentCreate(SQLModel):
    customer_id: int
    vehicle_id: int
    scheduled_date: datetime
    scheduled_time: str
    priority: Priority = Priority.NORMAL
    booking_type: BookingType = BookingType.DEPOSIT_BOOKING
    deposit_amount: Optional[float] = Field(default=None, ge=0)
    deposit_paid: bool = False
    total_amount: float = Field(default=0.0, ge=0)
    assigned_technician_id: Optional[int] = None
    customer_notes: Optional[str] = None


class StatusUpdate(SQLModel):
    status: AppointmentStatus
    reason: str = ""
    notes: str = ""


class CancelRequestBody(SQLModel):
    reason: str
    refund_method: Optional[str] = None
    customer_bank_info: Optional[dict] = None


class NotesBody(SQLModel):
    notes: str = ""


class RefundBody(SQLModel):
    refund_transaction_id: str
    notes: str = ""
    refund_proof_image: str = ""


class RescheduleBody(SQLModel):
    new_date: datetime
    reason: str
    new_time: Optional[str] = None
    customer_agreed: bool = False
    estimated_parts_arrival: Optional[datetime] = None


class ServiceNoteBody(SQLModel):
    note: str


# --- Part demand ---
class PartLine(SQLModel):
    part_id: int
    quantity: int = Field(gt=0)
    reason: str = ""


class ReceptionCreate(SQLModel):
    parts: List[PartLine]
    vehicle_condition_notes: Optional[str] = None


class PartRequestCreate(SQLModel):
    parts: List[PartLine]
    request_type: PartRequestType = PartRequestType.ADDITIONAL_DURING_SERVICE


# --- Conflicts ---
class DetectBody(SQLModel):
    part_id: Optional[int] = None


class ResolveBody(SQLModel):
    approved_request_ids: List[str] = Field(default_factory=list)
    rejected_request_ids: List[str] = Field(default_factory=list)
    notes: str = ""


class ApproveRequestBody(SQLModel):
    request_id: str
    notes: str = ""


class RejectRequestBody(SQLModel):
    request_id: str
    reason: str
