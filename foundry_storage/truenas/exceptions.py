"""Custom exceptions for the TrueNAS appliance client and setup pipeline."""

import json
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class StructuredError:
    """Error body that decoded into the TrueNAS error schema."""

    message: str
    error: str = ""
    traceback: str = ""
    errcode: Optional[int] = None


@dataclass(frozen=True)
class RawError:
    """Error body that could not be decoded, or decoded without a message."""

    status: int
    body: str


ErrorDetail = Union[StructuredError, RawError]


def decode_error_body(status_code: int, body: bytes) -> ErrorDetail:
    """Decode an HTTP error body returned by TrueNAS.

    The body is treated as structured only when it parses as a JSON object
    carrying a non-empty ``message`` or ``error`` field. Anything else is kept
    raw together with the status code.

    Args:
        status_code: HTTP status code of the response
        body: Raw response body

    Returns:
        StructuredError or RawError
    """
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body)
    try:
        data = json.loads(text)
    except ValueError:
        return RawError(status=status_code, body=text)

    if not isinstance(data, dict):
        return RawError(status=status_code, body=text)

    message = data.get("message") or ""
    error = data.get("error") or ""
    if not isinstance(message, str) or not isinstance(error, str):
        return RawError(status=status_code, body=text)
    if not message and not error:
        return RawError(status=status_code, body=text)

    errcode = data.get("errcode")
    return StructuredError(
        message=message or error,
        error=error,
        traceback=data.get("traceback") or "",
        errcode=errcode if isinstance(errcode, int) else None,
    )


class TrueNASException(Exception):
    """Base exception for TrueNAS errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class TrueNASConnectionError(TrueNASException):
    """Failed to connect to the TrueNAS API."""

    pass


class TrueNASTimeout(TrueNASConnectionError):
    """API request timed out."""

    pass


class TrueNASAPIError(TrueNASException):
    """API returned an error response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[ErrorDetail] = None,
        response_data: Optional[dict] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.response_data = response_data

    @classmethod
    def from_response(cls, status_code: int, body: bytes) -> "TrueNASAPIError":
        detail = decode_error_body(status_code, body)
        if isinstance(detail, StructuredError):
            message = detail.message
            response_data = {
                "message": detail.message,
                "error": detail.error,
                "traceback": detail.traceback,
                "errcode": detail.errcode,
            }
        else:
            message = f"API request failed with status {detail.status}: {detail.body}"
            response_data = None
        return cls(message, status_code=status_code, detail=detail, response_data=response_data)

    @property
    def is_not_found(self) -> bool:
        if self.status_code == 404:
            return True
        lowered = self.message.lower()
        return "not found" in lowered or "does not exist" in lowered


class TrueNASNotFoundError(TrueNASException):
    """A resource looked up by name does not exist."""

    pass


class TrueNASValidationError(TrueNASException, ValueError):
    """Invalid input rejected before any request was sent."""

    pass


class TrueNASResponseError(TrueNASException):
    """A successful response could not be decoded."""

    pass


class TrueNASSetupError(TrueNASException):
    """A required resource could not be found or created during setup."""

    pass


class RequirementNotMet(TrueNASException):
    """A requirement checked in validate-only mode is not satisfied."""

    def __init__(self, requirement: str, message: str):
        super().__init__(message)
        self.requirement = requirement


def is_not_found(exc: BaseException) -> bool:
    """Return True if ``exc`` means the looked-up resource does not exist."""
    if isinstance(exc, TrueNASNotFoundError):
        return True
    if isinstance(exc, TrueNASAPIError):
        return exc.is_not_found
    return False
