from fastapi import Request, status
from fastapi.responses import JSONResponse


class DispatchError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.detail = detail or {}


class ValidationFailed(DispatchError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_FAILED"


class Forbidden(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class EligibilityDenied(DispatchError):
    """Technician is not currently allowed to act; detail names the failed precondition."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_ELIGIBLE"


class NotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(DispatchError):
    """Expected, non-fatal outcome (lost race, stale action, duplicate)."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class UpstreamError(DispatchError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "UPSTREAM_ERROR"


BOOKING_ALREADY_TAKEN = "BOOKING_ALREADY_TAKEN"
ALREADY_PROCESSED = "ALREADY_PROCESSED"
BROADCAST_EXPIRED = "BROADCAST_EXPIRED"
PAYMENT_ALREADY_EXISTS = "PAYMENT_ALREADY_EXISTS"
ACTIVE_WITHDRAWAL_EXISTS = "ACTIVE_WITHDRAWAL_EXISTS"
INVALID_TRANSITION = "INVALID_TRANSITION"


async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "code": exc.code,
            "message": exc.message,
            "result": exc.detail,
        },
    )
