from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    ORDER_VIOLATION = "order_violation"
    INVALID_ARGUMENT = "invalid_argument"
    RENDER_FAILURE = "render_failure"
    DELIVERY_FAILURE = "delivery_failure"


class SigningError(ValueError):
    """Base class for lifecycle failures. Carries the error kind reported to callers."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(SigningError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransition(SigningError):
    kind = ErrorKind.INVALID_TRANSITION


class OrderViolation(SigningError):
    kind = ErrorKind.ORDER_VIOLATION


class InvalidArgument(SigningError):
    kind = ErrorKind.INVALID_ARGUMENT


class StepUpRequired(InvalidTransition):
    """Signing is blocked until the step-up (TOTP) check succeeds."""


class RenderFailure(SigningError):
    kind = ErrorKind.RENDER_FAILURE


class DeliveryFailure(SigningError):
    kind = ErrorKind.DELIVERY_FAILURE
