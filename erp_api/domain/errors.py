from __future__ import annotations


class ErpError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationFailure(ErpError):
    status_code = 401
    default_message = "Unauthorized"


class AuthorizationFailure(ErpError):
    status_code = 403
    default_message = "Forbidden"


class ValidationFailure(ErpError):
    status_code = 400
    default_message = "Validation failed"


class BadRequestError(ErpError):
    status_code = 400
    default_message = "Bad request"


class NotFoundError(ErpError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ErpError):
    status_code = 409
    default_message = "Conflict"


class RateLimitExceeded(ErpError):
    status_code = 429
    default_message = "Too many requests"
