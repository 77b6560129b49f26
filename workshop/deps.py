"""
Request-scoped dependencies.

Authentication happens upstream; by the time a request reaches the app the caller's
identity is carried in the X-User-Id / X-User-Role headers.
"""
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header

from workshop.errors import ForbiddenError, ValidationError
from workshop.status import Role


@dataclass
class Actor:
    id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.STAFF, Role.ADMIN)


def get_actor(
    x_user_id: Annotated[Optional[int], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    if x_user_id is None or not x_user_role:
        raise ForbiddenError("Missing caller identity")
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        raise ValidationError(f"Unknown role: {x_user_role}")
    # In-process schedulers only
    if role == Role.SYSTEM:
        raise ForbiddenError("The system role cannot be claimed over HTTP")
    return Actor(id=x_user_id, role=role)


def get_staff_actor(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_staff:
        raise ForbiddenError("Only staff and admin can access this resource")
    return actor
