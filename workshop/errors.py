"""Typed failures raised by the appointment and part-conflict services."""

from typing import Optional


class WorkshopError(Exception):
    """Base exception for workshop service errors."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WorkshopError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 400


class ForbiddenError(WorkshopError):
    """Actor role may not perform the operation."""

    code = "forbidden"
    status_code = 403


class NotFoundError(WorkshopError):
    """Referenced entity does not exist."""

    code = "not_found"
    status_code = 404


class TransitionNotAllowedError(WorkshopError):
    """No such edge in the workflow, or the actor's role forbids it."""

    code = "transition_not_allowed"
    status_code = 409


class PreconditionNotMetError(WorkshopError):
    """The edge exists but a business rule rejects it."""

    code = "precondition_not_met"
    status_code = 400


class ConflictError(WorkshopError):
    """Stock no longer covers the request, or the record changed concurrently."""

    code = "conflict"
    status_code = 409


class InternalError(WorkshopError):
    """Unexpected failure."""

    pass
