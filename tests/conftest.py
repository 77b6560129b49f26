"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite file database per test (file-backed so worker threads share it)
- A session bound to it, plus factories for parts, appointments and part demand
- A FastAPI TestClient whose sessions point at the same database
"""
import itertools
import os
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest

# Keep the app's default engine away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

from fastapi.testclient import TestClient
from sqlmodel import Session

from workshop.database import build_engine, create_db_and_tables, get_session
from workshop.main import app
from workshop.models import (
    Appointment,
    Part,
    PartRequest,
    PartRequestLine,
    ReceptionPartLine,
    ServiceReception,
)
from workshop.status import AppointmentStatus, Priority

CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2
TECH_ID = 10
OTHER_TECH_ID = 11
STAFF_ID = 20
ADMIN_ID = 30

_sequence = itertools.count(1)


def headers(user_id: int, role: str) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'workshop.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine) -> Generator[TestClient, None, None]:
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_part(db):
    def _make(current_stock: int = 5, name: str = "Brake pad", **kwargs) -> Part:
        part = Part(
            part_number=kwargs.pop("part_number", f"PN-{next(_sequence):04d}"),
            name=name,
            current_stock=current_stock,
            **kwargs,
        )
        db.add(part)
        db.commit()
        db.refresh(part)
        return part

    return _make


@pytest.fixture
def make_appointment(db):
    def _make(
        status: AppointmentStatus = AppointmentStatus.PENDING,
        hours_ahead: float = 72,
        priority: Priority = Priority.NORMAL,
        customer_id: int = CUSTOMER_ID,
        assigned_technician_id=TECH_ID,
        **kwargs,
    ) -> Appointment:
        scheduled = datetime.now(timezone.utc) + timedelta(hours=hours_ahead)
        appointment = Appointment(
            appointment_number=f"APT-T{next(_sequence):04d}",
            customer_id=customer_id,
            vehicle_id=100,
            assigned_technician_id=assigned_technician_id,
            status=status,
            priority=priority,
            scheduled_date=scheduled,
            scheduled_time=scheduled.strftime("%H:%M"),
            **kwargs,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make


@pytest.fixture
def make_reception(db):
    """Service reception with one line per (part, quantity); returns the lines."""
    def _make(appointment: Appointment, lines) -> list:
        reception = ServiceReception(
            reception_number=f"REC-T{next(_sequence):04d}",
            appointment_id=appointment.id,
            customer_id=appointment.customer_id,
            received_by=appointment.assigned_technician_id,
        )
        db.add(reception)
        db.flush()
        created = []
        for part, quantity in lines:
            line = ReceptionPartLine(reception_id=reception.id, part_id=part.id, quantity=quantity)
            db.add(line)
            created.append(line)
        appointment.service_reception_id = reception.id
        db.add(appointment)
        db.commit()
        for line in created:
            db.refresh(line)
        return created

    return _make


@pytest.fixture
def make_part_request(db):
    def _make(appointment: Appointment, lines) -> list:
        request = PartRequest(
            request_number=f"PR-T{next(_sequence):04d}",
            appointment_id=appointment.id,
            requested_by=appointment.assigned_technician_id or TECH_ID,
        )
        db.add(request)
        db.flush()
        created = []
        for part, quantity in lines:
            line = PartRequestLine(part_request_id=request.id, part_id=part.id, quantity=quantity)
            db.add(line)
            created.append(line)
        db.commit()
        for line in created:
            db.refresh(line)
        return created

    return _make


@pytest.fixture
def contested_part(make_part, make_appointment, make_reception):
    """
    Stock 5 wanted by R1 (3 units, urgent, tomorrow) and R2 (4 units, normal,
    the day after). Both appointments sit in reception_created.
    """
    part = make_part(current_stock=5)
    first = make_appointment(
        status=AppointmentStatus.RECEPTION_CREATED, priority=Priority.URGENT, hours_ahead=24
    )
    second = make_appointment(
        status=AppointmentStatus.RECEPTION_CREATED, priority=Priority.NORMAL, hours_ahead=48
    )
    (r1,) = make_reception(first, [(part, 3)])
    (r2,) = make_reception(second, [(part, 4)])
    return {
        "part": part,
        "first": first,
        "second": second,
        "r1": f"ServiceReception:{r1.id}",
        "r2": f"ServiceReception:{r2.id}",
    }
