import traceback
import uuid
import datetime


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    default_detail = "internal server error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidArgument(AppError):
    status_code = 400
    default_detail = "invalid argument"


class NotFound(AppError):
    status_code = 404
    default_detail = "not found"


class RateLimited(AppError):
    status_code = 429
    default_detail = "too many requests, please try again later"

    def __init__(self, detail: str | None = None, retry_after: int = 0):
        super().__init__(detail)
        self.retry_after = retry_after


class StoreError(AppError):
    """Failure talking to the backing store."""


class StoreUnavailable(StoreError):
    default_detail = "store unavailable"


class IncrementApplied(StoreUnavailable):
    """The atomic increment was written but its new value could not be read back."""


class Conflict(StoreError):
    """A row with the same key was written concurrently."""

    status_code = 409
    default_detail = "conflict"


class ConfigError(Exception):
    """Missing or malformed startup configuration."""


def format_exception_response(exc: Exception, message: str | None = None) -> tuple[int, dict, dict]:
    """Create structured response and log record for an exception.

    Returns (status_code, body_dict, log_record). Server errors get a
    generic client message; the real one only goes into the log record.
    """
    ts = datetime.datetime.now(datetime.timezone.utc).isoformat()

    if hasattr(exc, "status_code"):
        status_code = getattr(exc, "status_code")
        internal = str(getattr(exc, "detail", exc))
    else:
        status_code = 500
        internal = str(exc) or exc.__class__.__name__

    if status_code >= 500:
        status_code = 500
        error_code = "STORE_UNAVAILABLE" if isinstance(exc, StoreError) else "INTERNAL_ERROR"
        client_message = message or "internal server error"
    else:
        error_code = f"HTTP_{status_code}"
        client_message = message or internal

    try:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    except Exception:
        stack = "<no traceback available>"

    rid = uuid.uuid4().hex

    logrec = {
        "request_id": rid,
        "time": ts,
        "status": "error",
        "error_code": error_code,
        "message": internal,
        "stack": stack,
    }

    body = {"error_code": error_code, "message": client_message, "request_id": rid, "timestamp": ts}
    return status_code, body, logrec
