"""
Part conflict detection and resolution.

A PartConflict groups every open demand competing for one part whose stock cannot
cover it. Each stock-affecting operation runs under the part's lock and commits the
stock counters, the approval flags, the member statuses and any appointment
transition together, or rolls all of them back.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, func, select

from workshop import appointments, demand, ledger
from workshop.errors import (
    ForbiddenError,
    NotFoundError,
    PreconditionNotMetError,
    ValidationError,
)
from workshop.locks import appointment_locks, part_locks, sequence_locks
from workshop.models import (
    Appointment,
    ConflictStatus,
    DemandSource,
    DemandStatus,
    Part,
    PartConflict,
    ReceptionPartLine,
    ServiceReception,
    as_utc,
    utcnow,
)
from workshop.status import PRIORITY_WEIGHT, TERMINAL_STATUSES, AppointmentStatus, Priority, Role

logger = logging.getLogger(__name__)

STAFF_ROLES = (Role.STAFF, Role.ADMIN)

PENDING = DemandStatus.PENDING.value


def _require_staff(role):
    if role not in STAFF_ROLES:
        raise ForbiddenError("Only staff and admin can resolve part conflicts")


def _open_conflict(session: Session, part_id: int) -> Optional[PartConflict]:
    statement = (
        select(PartConflict)
        .where(PartConflict.part_id == part_id)
        .where(PartConflict.status == ConflictStatus.PENDING)
        .execution_options(populate_existing=True)
    )
    return session.exec(statement).first()


def _load_for_update(session: Session, conflict_id: int) -> PartConflict:
    statement = (
        select(PartConflict)
        .where(PartConflict.id == conflict_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    conflict = session.exec(statement).first()
    if not conflict:
        raise NotFoundError(f"Conflict {conflict_id} not found")
    return conflict


def generate_conflict_number(session: Session, now: Optional[datetime] = None) -> str:
    now = as_utc(now) if now else utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    count = session.exec(
        select(func.count()).select_from(PartConflict).where(PartConflict.created_at >= day_start)
    ).one()
    return f"CF-{now:%Y%m%d}-{count + 1:04d}"


def get_conflict(session: Session, conflict_id: int) -> PartConflict:
    conflict = session.get(PartConflict, conflict_id)
    if not conflict:
        raise NotFoundError(f"Conflict {conflict_id} not found")
    return conflict


def list_conflicts(
    session: Session,
    status: Optional[ConflictStatus] = None,
    part_id: Optional[int] = None,
) -> List[PartConflict]:
    statement = select(PartConflict)
    if status:
        statement = statement.where(PartConflict.status == status)
    if part_id:
        statement = statement.where(PartConflict.part_id == part_id)
    return session.exec(statement.order_by(PartConflict.created_at.desc(), PartConflict.id.desc())).all()


def conflict_stats(session: Session) -> dict:
    conflicts = session.exec(select(PartConflict)).all()
    open_conflicts = [c for c in conflicts if c.status == ConflictStatus.PENDING]
    return {
        "total": len(conflicts),
        "pending": len(open_conflicts),
        "resolved": sum(1 for c in conflicts if c.status == ConflictStatus.RESOLVED),
        "auto_resolved": sum(1 for c in conflicts if c.status == ConflictStatus.AUTO_RESOLVED),
        "pending_requests": sum(
            1 for c in open_conflicts for m in c.conflicting_requests if m["status"] == PENDING
        ),
        "total_shortfall": sum(c.shortfall for c in open_conflicts),
    }


def _find_member(members: List[dict], key: str) -> dict:
    for member in members:
        if member["key"] == key:
            return member
    raise NotFoundError(f"Request {key} not found in conflict")


def _close_if_decided(conflict: PartConflict, actor_id: Optional[int], notes: str, status=ConflictStatus.RESOLVED):
    if all(member["status"] != PENDING for member in conflict.conflicting_requests):
        conflict.status = status
        conflict.resolved_by = actor_id
        conflict.resolved_at = utcnow()
        conflict.resolution_notes = notes or ""


# --- Detection ---

def _merge_members(existing: List[dict], current: List[demand.DemandRequest], available: int) -> List[dict]:
    """
    Pending entries are refreshed from the live demand, decided entries keep their
    status, new demand is appended. Entries are never duplicated.
    """
    merged = [dict(member) for member in existing]
    by_key = {member["key"]: member for member in merged}
    for request in current:
        fresh = request.to_member(can_be_fulfilled=request.requested_quantity <= available)
        member = by_key.get(request.key)
        if member is None:
            merged.append(fresh)
            by_key[request.key] = fresh
        elif member["status"] == PENDING:
            member.update({k: v for k, v in fresh.items() if k not in ("status", "resolution_notes", "auto_approved")})
    return merged


def _drop_withdrawn(members: List[dict], current: List[demand.DemandRequest]) -> int:
    """Pending entries that are no longer open demand are deferred. Returns how many."""
    live = {request.key for request in current}
    dropped = 0
    for member in members:
        if member["status"] == PENDING and member["key"] not in live:
            member["status"] = DemandStatus.DEFERRED.value
            member["resolution_notes"] = "No longer open demand"
            dropped += 1
    return dropped


def _retire_closed(session: Session, members: List[dict]) -> List[dict]:
    """
    Pending entries whose appointment has since closed stop competing for stock:
    they are deferred and returned.
    """
    waiting = {m["appointment_id"] for m in members if m["status"] == PENDING}
    if not waiting:
        return []
    closed = dict(session.exec(
        select(Appointment.id, Appointment.status)
        .where(Appointment.id.in_(sorted(waiting)))
        .where(Appointment.status.in_(list(TERMINAL_STATUSES)))
    ).all())
    retired = []
    for member in members:
        if member["status"] == PENDING and member["appointment_id"] in closed:
            member["status"] = DemandStatus.DEFERRED.value
            member["resolution_notes"] = f"Appointment is {AppointmentStatus(closed[member['appointment_id']]).value}"
            retired.append(member)
    return retired


def _withdraw_from_open_conflict(
    session: Session, part_id: int, requests: List[demand.DemandRequest], available: int
) -> Optional[PartConflict]:
    """
    Demand fits the stock again; an open conflict still drops whatever was withdrawn.
    Returns the conflict when it changed. Does not commit.
    """
    conflict = _open_conflict(session, part_id)
    if conflict is None:
        return None
    members = [dict(member) for member in conflict.conflicting_requests]
    if not _drop_withdrawn(members, requests):
        return None
    conflict.conflicting_requests = members
    conflict.available_stock = available
    conflict.total_requested = sum(r.requested_quantity for r in requests)
    conflict.shortfall = max(0, conflict.total_requested - available)
    _close_if_decided(conflict, None, "Remaining demand withdrawn")
    session.add(conflict)
    return conflict


def detect_part_conflicts(session: Session, part_id: int) -> Optional[PartConflict]:
    """
    Creates or refreshes the open conflict for a part when its open demand exceeds
    `current_stock`. Returns None when the demand fits.
    """
    with part_locks.hold(part_id), sequence_locks.hold("conflict"):
        try:
            part = ledger.load_for_update(session, part_id)
            requests = demand.collect_open_demand(session, part_id)
            total_requested = sum(r.requested_quantity for r in requests)
            available = part.current_stock

            if not requests or total_requested <= available:
                withdrawn = _withdraw_from_open_conflict(session, part_id, requests, available)
                if withdrawn is None:
                    session.rollback()
                else:
                    session.commit()
                    logger.info("Conflict %s: withdrawn demand dropped", withdrawn.conflict_number)
                return None

            conflict = _open_conflict(session, part_id)
            if conflict is None:
                conflict = PartConflict(
                    conflict_number=generate_conflict_number(session),
                    part_id=part.id,
                    part_name=part.name,
                    part_number=part.part_number,
                    available_stock=available,
                    total_requested=total_requested,
                    shortfall=0,
                )
                logger.info("New conflict %s for part %s", conflict.conflict_number, part.part_number)

            members = _merge_members(conflict.conflicting_requests or [], requests, available)
            _drop_withdrawn(members, requests)
            conflict.conflicting_requests = members
            conflict.available_stock = available
            conflict.total_requested = total_requested
            conflict.shortfall = max(0, total_requested - available)
            session.add(conflict)
            session.commit()
            session.refresh(conflict)
            logger.info(
                "Conflict %s: %s requested, %s available",
                conflict.conflict_number,
                total_requested,
                available,
            )
            return conflict
        except Exception:
            session.rollback()
            raise


def detect_all_conflicts(session: Session) -> List[PartConflict]:
    part_ids = session.exec(select(Part.id).where(Part.current_stock > 0).order_by(Part.id)).all()
    found = []
    for part_id in part_ids:
        conflict = detect_part_conflicts(session, part_id)
        if conflict:
            found.append(conflict)
    # Every detection commits, which expires the conflicts found before it
    for conflict in found:
        session.refresh(conflict)
    logger.info("Conflict scan finished: %s of %s parts in conflict", len(found), len(part_ids))
    return found


# --- Suggestion ---

def prioritize(members: List[dict]) -> List[dict]:
    """Fairness order: priority weight descending, then earliest scheduled slot."""
    return sorted(
        members,
        key=lambda m: (
            -PRIORITY_WEIGHT[Priority(m["priority"])],
            m["scheduled_date"][:10],
            m["scheduled_time"],
            m["requested_at"],
        ),
    )


def suggest_allocation(members: List[dict], available: int) -> List[dict]:
    remaining = available
    suggestions = []
    for member in prioritize(members):
        quantity = member["requested_quantity"]
        if quantity <= remaining:
            remaining -= quantity
            action = "approve"
            reasoning = (
                f"Priority {member['priority']}, scheduled {member['scheduled_date'][:10]} "
                f"{member['scheduled_time']}: {quantity} fits, {remaining} left"
            )
        else:
            action = "defer"
            reasoning = f"Needs {quantity} but only {remaining} left after higher-ranked requests"
        suggestions.append({
            "request_id": member["key"],
            "appointment_number": member["appointment_number"],
            "requested_quantity": quantity,
            "priority": member["priority"],
            "scheduled_date": member["scheduled_date"],
            "scheduled_time": member["scheduled_time"],
            "suggested_action": action,
            "reasoning": reasoning,
        })
    return suggestions


def get_suggested_resolution(session: Session, conflict_id: int) -> dict:
    """Advisory only; nothing is written."""
    conflict = get_conflict(session, conflict_id)
    pending = [m for m in conflict.conflicting_requests if m["status"] == PENDING]
    suggestions = suggest_allocation(pending, conflict.available_stock)
    approved_quantity = sum(s["requested_quantity"] for s in suggestions if s["suggested_action"] == "approve")
    return {
        "conflict_id": conflict.id,
        "conflict_number": conflict.conflict_number,
        "available_stock": conflict.available_stock,
        "total_requested": conflict.total_requested,
        "suggestions": suggestions,
        "suggested_approved_quantity": approved_quantity,
        "remaining_stock": conflict.available_stock - approved_quantity,
    }


# --- Resolution ---

def _advance_appointment(session: Session, appointment_id: int, actor_id: int, role, notes: str):
    """Moves the appointment to reception_approved when its state allows it."""
    with appointment_locks.hold(appointment_id):
        appointment = appointments.load_for_update(session, appointment_id)
        if appointments.can_transition(appointment, AppointmentStatus.RECEPTION_APPROVED, actor_id, role):
            appointments.apply_status_change(
                session,
                appointment,
                AppointmentStatus.RECEPTION_APPROVED,
                actor_id,
                role,
                "All parts approved via conflict resolution",
                notes,
            )
        return appointment


def _approve_member(session: Session, part: Part, member: dict, actor_id: int, notes: str) -> bool:
    ledger.consume(part, member["requested_quantity"])
    session.add(part)
    member["status"] = DemandStatus.APPROVED.value
    member["resolution_notes"] = notes
    return demand.mark_approved(session, member["source"], member["request_id"], actor_id, notes)


def resolve_conflict(
    session: Session,
    conflict_id: int,
    actor_id: int,
    role,
    approved_request_ids: List[str],
    rejected_request_ids: List[str],
    notes: str = "",
) -> dict:
    """
    Bulk decision over the whole conflict, in stored member order. An approval that
    no longer fits the stock left by earlier approvals in the same call is deferred
    instead of failing the call; members in neither list are deferred.
    """
    _require_staff(role)
    approve = set(approved_request_ids or [])
    reject = set(rejected_request_ids or [])
    if approve & reject:
        raise ValidationError("A request cannot be both approved and rejected", {"ids": sorted(approve & reject)})

    part_id = get_conflict(session, conflict_id).part_id
    with part_locks.hold(part_id):
        try:
            conflict = _load_for_update(session, conflict_id)
            if conflict.status != ConflictStatus.PENDING:
                raise PreconditionNotMetError(f"Conflict is already {conflict.status.value}")

            members = [dict(member) for member in conflict.conflicting_requests]
            unknown = (approve | reject) - {m["key"] for m in members}
            if unknown:
                raise ValidationError("Unknown request ids", {"ids": sorted(unknown)})

            part = ledger.load_for_update(session, part_id)
            counts = {"approved": 0, "deferred": len(_retire_closed(session, members)), "rejected": 0}
            approved_quantity = 0

            for member in members:
                if member["status"] != PENDING:
                    continue
                key = member["key"]
                if key in approve:
                    if ledger.fits(part, member["requested_quantity"]):
                        _approve_member(session, part, member, actor_id, notes or "Approved via conflict resolution")
                        approved_quantity += member["requested_quantity"]
                        counts["approved"] += 1
                    else:
                        member["status"] = DemandStatus.DEFERRED.value
                        member["resolution_notes"] = (
                            f"Deferred: needs {member['requested_quantity']}, "
                            f"only {part.current_stock} left"
                        )
                        counts["deferred"] += 1
                elif key in reject:
                    demand.mark_rejected(
                        session, member["source"], member["request_id"], actor_id, notes or "Rejected via conflict resolution"
                    )
                    member["status"] = DemandStatus.REJECTED.value
                    member["resolution_notes"] = notes or "Rejected via conflict resolution"
                    counts["rejected"] += 1
                else:
                    member["status"] = DemandStatus.DEFERRED.value
                    member["resolution_notes"] = "Not selected in this resolution"
                    counts["deferred"] += 1

            conflict.conflicting_requests = members
            _close_if_decided(conflict, actor_id, notes)
            session.add(conflict)
            session.commit()
            session.refresh(conflict)
            session.refresh(part)
        except Exception:
            session.rollback()
            raise

    logger.info(
        "Conflict %s resolved by %s: %s approved, %s deferred, %s rejected",
        conflict.conflict_number,
        actor_id,
        counts["approved"],
        counts["deferred"],
        counts["rejected"],
    )
    return {
        "conflict": conflict,
        **counts,
        "total_approved_quantity": approved_quantity,
        "final_stock": part.current_stock,
    }


def approve_conflict_request(
    session: Session,
    conflict_id: int,
    request_id: str,
    actor_id: int,
    role,
    notes: str = "",
) -> dict:
    """
    Approves one member against the part's live stock. Raises ConflictError when the
    stock no longer covers it.
    """
    _require_staff(role)
    part_id = get_conflict(session, conflict_id).part_id
    with part_locks.hold(part_id):
        try:
            conflict = _load_for_update(session, conflict_id)
            if conflict.status != ConflictStatus.PENDING:
                raise PreconditionNotMetError(f"Conflict is already {conflict.status.value}")
            members = [dict(member) for member in conflict.conflicting_requests]
            member = _find_member(members, request_id)
            if member["status"] != PENDING:
                raise PreconditionNotMetError(f"Request is already {member['status']}")
            if _retire_closed(session, [member]):
                raise PreconditionNotMetError(
                    f"Request {request_id} no longer competes: {member['resolution_notes']}"
                )

            part = ledger.load_for_update(session, part_id)
            notes = notes or "Approved via conflict resolution"
            parent_approved = _approve_member(session, part, member, actor_id, notes)

            appointment_status = None
            if parent_approved:
                appointment = _advance_appointment(session, member["appointment_id"], actor_id, role, notes)
                appointment_status = appointment.status

            conflict.conflicting_requests = members
            _close_if_decided(conflict, actor_id, notes)
            session.add(conflict)
            session.commit()
            session.refresh(conflict)
            session.refresh(part)
        except Exception:
            session.rollback()
            raise

    logger.info("Conflict %s: %s approved by %s", conflict.conflict_number, request_id, actor_id)
    return {
        "conflict": conflict,
        "request_id": request_id,
        "conflict_status": conflict.status,
        "new_available_stock": part.current_stock,
        "appointment_status": appointment_status,
    }


def reject_conflict_request(
    session: Session,
    conflict_id: int,
    request_id: str,
    actor_id: int,
    role,
    reason: str,
) -> dict:
    """Rejects one member and puts its appointment on hold as parts_insufficient."""
    _require_staff(role)
    if not reason or not reason.strip():
        raise ValidationError("Reason for rejection is required")
    reason = reason.strip()

    part_id = get_conflict(session, conflict_id).part_id
    with part_locks.hold(part_id):
        try:
            conflict = _load_for_update(session, conflict_id)
            if conflict.status != ConflictStatus.PENDING:
                raise PreconditionNotMetError(f"Conflict is already {conflict.status.value}")
            members = [dict(member) for member in conflict.conflicting_requests]
            member = _find_member(members, request_id)
            if member["status"] != PENDING:
                raise PreconditionNotMetError(f"Request is already {member['status']}")

            demand.mark_rejected(session, member["source"], member["request_id"], actor_id, reason)
            member["status"] = DemandStatus.REJECTED.value
            member["resolution_notes"] = reason

            with appointment_locks.hold(member["appointment_id"]):
                appointment = appointments.load_for_update(session, member["appointment_id"])
                appointments.force_status(
                    session,
                    appointment,
                    AppointmentStatus.PARTS_INSUFFICIENT,
                    actor_id,
                    "Parts rejected via conflict resolution",
                    reason,
                )
                appointment.staff_rejection_reason = reason
                appointment.rejected_at = utcnow()
                appointment.rejected_by = actor_id
                session.add(appointment)

            conflict.conflicting_requests = members
            _close_if_decided(conflict, actor_id, reason)
            session.add(conflict)
            session.commit()
            session.refresh(conflict)
            session.refresh(appointment)
        except Exception:
            session.rollback()
            raise

    logger.info("Conflict %s: %s rejected by %s", conflict.conflict_number, request_id, actor_id)
    return {
        "conflict": conflict,
        "request_id": request_id,
        "conflict_status": conflict.status,
        "appointment_status": appointment.status,
    }


# --- Restock ---

def auto_resolve_conflicts(session: Session, part: Part, actor_id: Optional[int]) -> List[PartConflict]:
    """
    Allocates live stock to the open conflict's pending members in fairness order.
    Members that still do not fit stay pending. Must run under the part lock; the
    caller commits.
    """
    touched = []
    for conflict in session.exec(
        select(PartConflict)
        .where(PartConflict.part_id == part.id)
        .where(PartConflict.status == ConflictStatus.PENDING)
        .execution_options(populate_existing=True)
    ).all():
        members = [dict(member) for member in conflict.conflicting_requests]
        by_key = {m["key"]: m for m in members}
        _retire_closed(session, members)
        for candidate in prioritize([m for m in members if m["status"] == PENDING]):
            member = by_key[candidate["key"]]
            if not ledger.fits(part, member["requested_quantity"]):
                continue
            parent_approved = _approve_member(session, part, member, actor_id, "Approved automatically after restock")
            member["auto_approved"] = True
            if parent_approved:
                _advance_appointment(session, member["appointment_id"], actor_id, Role.SYSTEM, "Parts restocked")
        conflict.conflicting_requests = members
        _close_if_decided(conflict, actor_id, "Resolved automatically after restock", ConflictStatus.AUTO_RESOLVED)
        session.add(conflict)
        touched.append(conflict)
    return touched


def restock_part(session: Session, part_id: int, quantity: int, actor_id: int, role) -> dict:
    """Adds stock and hands it to waiting conflict members, in one transaction."""
    _require_staff(role)
    with part_locks.hold(part_id):
        try:
            part = ledger.load_for_update(session, part_id)
            ledger.restock(part, quantity)
            session.add(part)
            touched = auto_resolve_conflicts(session, part, actor_id)
            session.commit()
            session.refresh(part)
            for conflict in touched:
                session.refresh(conflict)
        except Exception:
            session.rollback()
            raise
    return {"part": part, "conflicts": touched}


def check_reception_conflicts(session: Session, reception_id: int) -> dict:
    """Open conflicts any line of the service reception takes part in."""
    reception = session.get(ServiceReception, reception_id)
    if not reception:
        raise NotFoundError(f"Service reception {reception_id} not found")

    lines = session.exec(select(ReceptionPartLine).where(ReceptionPartLine.reception_id == reception_id)).all()
    keys = {demand.make_key(DemandSource.SERVICE_RECEPTION, line.id) for line in lines}
    part_ids = {line.part_id for line in lines}

    found = []
    for part_id in sorted(part_ids):
        conflict = _open_conflict(session, part_id)
        if not conflict:
            continue
        for member in conflict.conflicting_requests:
            if member["key"] in keys:
                found.append({
                    "conflict_id": conflict.id,
                    "conflict_number": conflict.conflict_number,
                    "part_id": conflict.part_id,
                    "part_name": conflict.part_name,
                    "shortfall": conflict.shortfall,
                    "request_id": member["key"],
                    "request_status": member["status"],
                })
    return {"reception_id": reception_id, "has_conflicts": bool(found), "conflicts": found}
