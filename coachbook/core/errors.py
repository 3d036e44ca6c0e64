"""Business error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class BookingError(Exception):
    kind = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(BookingError):
    kind = "validation"


class ConflictError(BookingError):
    kind = "conflict"


class AuthorizationError(BookingError):
    kind = "authorization"


class NotFoundError(BookingError):
    kind = "not_found"


class ExternalServiceError(BookingError):
    """The payment processor failed or its outcome is unknown."""

    kind = "external_dependency"

    def __init__(self, message: str, *, retryable: bool = True, **context: Any) -> None:
        super().__init__(message, **context)
        self.retryable = retryable


__all__ = [
    "BookingError",
    "ValidationError",
    "ConflictError",
    "AuthorizationError",
    "NotFoundError",
    "ExternalServiceError",
]
