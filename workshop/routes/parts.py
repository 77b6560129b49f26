from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from workshop import conflicts, ledger
from workshop.database import get_session
from workshop.deps import Actor, get_actor, get_staff_actor
from workshop.models import Part
from workshop.schemas import PartCreate, RestockBody

router = APIRouter(prefix="/parts", tags=["Parts"])


@router.get("")
def read_parts(
    category: Optional[str] = None,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    parts = ledger.list_parts(session, category)
    return {"success": True, "count": len(parts), "data": parts}


@router.post("", status_code=201)
def add_part(body: PartCreate, session: Session = Depends(get_session), actor: Actor = Depends(get_staff_actor)):
    part = ledger.create_part(session, Part.model_validate(body))
    return {"success": True, "data": part}


@router.post("/{part_id}/restock")
def restock(
    part_id: int,
    body: RestockBody,
    session: Session = Depends(get_session),
    actor: Actor = Depends(get_actor),
):
    # New stock goes to waiting conflict members first
    result = conflicts.restock_part(session, part_id, body.quantity, actor.id, actor.role)
    return {"success": True, "data": result}
