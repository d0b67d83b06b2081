from __future__ import annotations

from typing import Any


class RentalError(Exception):
    """Base for every business error the core reports to its caller.

    ``kind`` is the taxonomy bucket, ``code`` a stable machine reason and
    ``details`` the ids and context a caller needs to act on it.
    """

    kind = "RentalError"
    status_code = 400
    default_code = "rental_error"

    def __init__(self, message: str, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InputValidationError(RentalError):
    kind = "ValidationError"
    status_code = 400
    default_code = "invalid_input"


class NotFoundError(RentalError):
    kind = "NotFound"
    status_code = 404
    default_code = "not_found"


class ForbiddenError(RentalError):
    kind = "Forbidden"
    status_code = 403
    default_code = "not_a_party"


class ConflictError(RentalError):
    kind = "ConflictError"
    status_code = 409
    default_code = "dates_unavailable"


class InvalidTransition(RentalError):
    kind = "InvalidTransition"
    status_code = 409
    default_code = "invalid_transition"

    def __init__(self, current_status: str, action: str, message: str | None = None, **details: Any) -> None:
        super().__init__(
            message or f"Cannot {action} a booking in status {current_status}.",
            currentStatus=current_status,
            action=action,
            **details,
        )
        self.current_status = current_status
        self.action = action


class PolicyViolation(RentalError):
    kind = "PolicyViolation"
    status_code = 409
    default_code = "policy_violation"


class UpstreamFailure(RentalError):
    kind = "UpstreamFailure"
    status_code = 502
    default_code = "upstream_failure"
