from typing import Any

from fastapi import HTTPException


class AppError(HTTPException):
    """Base of every error the monetary core raises on purpose.

    ``message`` is a short stable string safe to show to clients,
    ``errors`` carries optional structured details.
    """

    status_code_default = 500
    message_default = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        errors: Any = None,
        status_code: int | None = None,
    ):
        self.message = message or self.message_default
        self.errors = errors
        super().__init__(
            status_code=status_code or self.status_code_default, detail=self.message
        )


class ValidationFailure(AppError):
    status_code_default = 400
    message_default = "Validation failed"


class Unauthenticated(AppError):
    status_code_default = 401
    message_default = "Authentication required"


class Forbidden(AppError):
    status_code_default = 403
    message_default = "Permission denied"


class NotFound(AppError):
    status_code_default = 404
    message_default = "Resource not found"


class Conflict(AppError):
    status_code_default = 409
    message_default = "Conflict"


class DuplicatePurchase(Conflict):
    message_default = "Course already purchased"


class InvalidTransition(Conflict):
    message_default = "Invalid state transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from {current} to {target}",
            errors={"entity": entity, "from": current, "to": target},
        )


class Unprocessable(AppError):
    status_code_default = 422
    message_default = "Unprocessable request"


class InsufficientFunds(Unprocessable):
    message_default = "Insufficient funds"


class SignatureInvalid(Unprocessable):
    message_default = "Signature verification failed"


class InvalidReferral(Unprocessable):
    message_default = "Invalid referral code"


class RateLimited(AppError):
    status_code_default = 429
    message_default = "Too many requests"


class Upstream(AppError):
    status_code_default = 502
    message_default = "Upstream service failed"


class UpstreamTimeout(Upstream):
    status_code_default = 504
    message_default = "Upstream service timed out"


class Internal(AppError):
    status_code_default = 500
    message_default = "Internal error"
