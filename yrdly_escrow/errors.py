"""Escrow error taxonomy.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders ``{"detail": ...}`` with the matching status code.
"""

from fastapi import HTTPException


class EscrowError(HTTPException):
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationError(EscrowError):
    """Malformed or missing input. Not retried."""
    status_code = 422


class NotFoundError(EscrowError):
    status_code = 404


class InvalidTransitionError(EscrowError):
    """Status change not permitted by the transition table."""
    status_code = 409


class ConflictError(EscrowError):
    """The record changed under us. Re-read and retry the whole operation."""
    status_code = 409


class GatewayError(EscrowError):
    """Payment processor reported failure or could not be reached."""
    status_code = 502


class PersistenceError(EscrowError):
    status_code = 500


class PaymentMismatchError(GatewayError):
    """Gateway confirmed a charge that does not settle the transaction."""


class ForbiddenError(EscrowError):
    """Caller is not a party to the transaction."""
    status_code = 403
