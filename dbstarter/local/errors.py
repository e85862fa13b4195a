"""
Error types shared by the starter.

Remote failures are expressed as `StatusError` instances tagged with an HTTP
status code. Callers classify them with the `is_*` helpers, which follow the
`__cause__` chain so wrapped errors are still recognised.
"""
import json
from typing import Any, Optional, Tuple


class StarterError(Exception):
    """Base class for all errors raised by the starter."""


class ConfigurationError(StarterError):
    """Raised when the configuration is invalid. Never retried."""


class FatalServiceError(StarterError):
    """Raised when the service cannot continue, e.g. its own peer is missing."""


class StatusError(StarterError):
    """An error with a given HTTP status code."""

    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return self.message
        return f"Status {self.status_code}"

    def __repr__(self) -> str:
        return f"StatusError(status_code={self.status_code}, message={self.message!r})"


#* --- Well known status errors ---
NOT_FOUND = 404
BAD_REQUEST = 400
PRECONDITION_FAILED = 412
INTERNAL_SERVER_ERROR = 500
SERVICE_UNAVAILABLE = 503


def new_not_found_error(msg: str = "not found") -> StatusError:
    return StatusError(NOT_FOUND, msg)


def new_bad_request_error(msg: str = "bad request") -> StatusError:
    """Indicates invalid arguments."""
    return StatusError(BAD_REQUEST, msg)


def new_precondition_failed_error(msg: str = "precondition failed") -> StatusError:
    """Indicates that the state of the system is such that the request cannot be executed."""
    return StatusError(PRECONDITION_FAILED, msg)


def new_service_unavailable_error(msg: str = "service unavailable") -> StatusError:
    """Indicates that right now the service is not available, please retry later."""
    return StatusError(SERVICE_UNAVAILABLE, msg)


def new_internal_server_error(msg: str = "internal server error") -> StatusError:
    """Indicates an unspecified error inside the server, perhaps a bug."""
    return StatusError(INTERNAL_SERVER_ERROR, msg)


def cause(err: Optional[BaseException]) -> Optional[BaseException]:
    """
    Returns the first StatusError in the cause chain of the given error,
    or the innermost cause when the chain holds none.
    """
    seen = set()
    while err is not None and not isinstance(err, StatusError) \
            and err.__cause__ is not None and id(err) not in seen:
        seen.add(id(err))
        err = err.__cause__
    return err


def is_status_error(err: Optional[BaseException]) -> Tuple[int, bool]:
    """
    Returns the status code and True if the given error is caused by a StatusError.

    :param err: The error to inspect.
    :return: A tuple of (status code, is status error).
    """
    root = cause(err)
    if isinstance(root, StatusError):
        return root.status_code, True
    return 0, False


def is_status_error_with_code(err: Optional[BaseException], code: int) -> bool:
    status_code, ok = is_status_error(err)
    return ok and status_code == code


def is_not_found(err: Optional[BaseException]) -> bool:
    return is_status_error_with_code(err, NOT_FOUND)


def is_service_unavailable(err: Optional[BaseException]) -> bool:
    return is_status_error_with_code(err, SERVICE_UNAVAILABLE)


def is_bad_request(err: Optional[BaseException]) -> bool:
    return is_status_error_with_code(err, BAD_REQUEST)


def is_precondition_failed(err: Optional[BaseException]) -> bool:
    return is_status_error_with_code(err, PRECONDITION_FAILED)


def is_internal_server(err: Optional[BaseException]) -> bool:
    return is_status_error_with_code(err, INTERNAL_SERVER_ERROR)


def error_body(message: str) -> bytes:
    """Encodes an error message the way `parse_response_error` expects it."""
    return json.dumps({"Error": message}).encode("utf-8")


def parse_response_error(response: Any, body: Optional[bytes] = None) -> StatusError:
    """
    Builds a StatusError from the given HTTP response.

    It tries to parse the body (if not given, it is read from the response)
    for an `{"Error": "<message>"}` document and falls back to a status-only
    error when that is not possible.

    :param response: A `requests.Response` (or anything with `status_code` and `content`).
    :param body: The raw response body, if already read.
    :return: The StatusError describing the response.
    """
    if body is None:
        body = getattr(response, "content", b"") or b""
    if body:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("Error"), str):
            return StatusError(response.status_code, payload["Error"])
    return StatusError(response.status_code)
