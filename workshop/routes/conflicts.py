from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from workshop import conflicts
from workshop.database import get_session
from workshop.deps import Actor, get_actor, get_staff_actor
from workshop.errors import ForbiddenError
from workshop.models import ConflictStatus
from workshop.schemas import ApproveRequestBody, DetectBody, RejectRequestBody, ResolveBody
from workshop.status import Role

router = APIRouter(prefix="/conflicts", tags=["Part conflicts"])


@router.post("/detect")
def detect(body: DetectBody, session: Session = Depends(get_session), actor: Actor = Depends(get_staff_actor)):
    if body.part_id is not None:
        conflict = conflicts.detect_part_conflicts(session, body.part_id)
        found = [conflict] if conflict else []
    else:
        found = conflicts.detect_all_conflicts(session)
    return {"success": True, "count": len(found), "data": found}


@router.get("")
def list_conflicts(
    status: Optional[ConflictStatus] = None,
    part_id: Optional[int] = None,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_staff_actor),
):
    found = conflicts.list_conflicts(session, status, part_id)
    return {"success": True, "count": len(found), "data": found}


@router.get("/stats")
def stats(session: Session = Depends(get_session), actor: Actor = Depends(get_staff_actor)):
    return {"success": True, "data": conflicts.conflict_stats(session)}


@router.get("/check-reception/{reception_id}")
def check_reception(reception_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_actor)):
    if actor.role not in (Role.TECHNICIAN, Role.STAFF, Role.ADMIN):
        raise ForbiddenError("Only technicians and staff can check reception conflicts")
    return {"success": True, "data": conflicts.check_reception_conflicts(session, reception_id)}


@router.get("/{conflict_id}")
def read_conflict(conflict_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_staff_actor)):
    return {"success": True, "data": conflicts.get_conflict(session, conflict_id)}


@router.get("/{conflict_id}/suggestion")
def suggestion(conflict_id: int, session: Session = Depends(get_session), actor: Actor = Depends(get_staff_actor)):
    return {"success": True, "data": conflicts.get_suggested_resolution(session, conflict_id)}


@router.post("/{conflict_id}/resolve")
def resolve(
    conflict_id: int,
    body: ResolveBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    result = conflicts.resolve_conflict(
        session,
        conflict_id,
        actor.id,
        actor.role,
        body.approved_request_ids,
        body.rejected_request_ids,
        body.notes,
    )
    return {"success": True, "data": result}


@router.post("/{conflict_id}/approve-request")
def approve_request(
    conflict_id: int,
    body: ApproveRequestBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    result = conflicts.approve_conflict_request(session, conflict_id, body.request_id, actor.id, actor.role, body.notes)
    return {"success": True, "data": result}


@router.post("/{conflict_id}/reject-request")
def reject_request(
    conflict_id: int,
    body: RejectRequestBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    result = conflicts.reject_conflict_request(session, conflict_id, body.request_id, actor.id, actor.role, body.reason)
    return {"success": True, "data": result}
