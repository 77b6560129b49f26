"""
Part stock counters.

`current_stock` only ever moves through `consume` and `restock`; nothing here
commits, the caller owns the transaction.
"""
import logging
from typing import Optional

from sqlmodel import Session, select

from workshop.errors import ConflictError, NotFoundError, ValidationError
from workshop.models import Part, utcnow

logger = logging.getLogger(__name__)


def get_part(session: Session, part_id: int) -> Part:
    part = session.get(Part, part_id)
    if not part:
        raise NotFoundError(f"Part {part_id} not found")
    return part


def load_for_update(session: Session, part_id: int) -> Part:
    """Live stock: re-reads the row, bypassing whatever the session already holds."""
    statement = (
        select(Part)
        .where(Part.id == part_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    part = session.exec(statement).first()
    if not part:
        raise NotFoundError(f"Part {part_id} not found")
    return part


def fits(part: Part, quantity: int, already_allocated: int = 0) -> bool:
    return quantity <= part.current_stock - already_allocated


def consume(part: Part, quantity: int):
    """Takes `quantity` units out of stock for an approved demand request."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    if quantity > part.current_stock:
        raise ConflictError(
            f"Insufficient stock for {part.name}: {part.current_stock} available, {quantity} requested",
            {"part_id": part.id, "available": part.current_stock, "requested": quantity},
        )
    part.current_stock -= quantity
    part.used_stock += quantity
    logger.debug("Part %s: consumed %s, %s left", part.part_number, quantity, part.current_stock)


def restock(part: Part, quantity: int):
    if quantity <= 0:
        raise ValidationError("Restock quantity must be positive")
    part.current_stock += quantity
    part.last_restocked = utcnow()
    logger.info("Part %s restocked by %s (now %s)", part.part_number, quantity, part.current_stock)


def create_part(session: Session, part: Part) -> Part:
    if part.current_stock < 0:
        raise ValidationError("current_stock cannot be negative")
    existing = session.exec(select(Part).where(Part.part_number == part.part_number)).first()
    if existing:
        raise ValidationError(f"Part number {part.part_number} already exists")
    session.add(part)
    session.commit()
    session.refresh(part)
    return part


def list_parts(session: Session, category: Optional[str] = None):
    statement = select(Part)
    if category:
        statement = statement.where(Part.category == category)
    return session.exec(statement.order_by(Part.name)).all()
