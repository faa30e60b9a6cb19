"""Error taxonomy shared by the webhook pipeline and the checkout/portal flows.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with.
"""

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_INPUT = "ERR_POLAR_INVALID_INPUT"
    UNAUTHORIZED = "ERR_POLAR_UNAUTHORIZED"
    MISSING_CONFIG = "ERR_POLAR_MISSING_CONFIG"
    UPSTREAM = "ERR_POLAR_UPSTREAM"
    CUSTOMER_NOT_FOUND = "ERR_POLAR_CUSTOMER_NOT_FOUND"
    INVALID_SIGNATURE = "ERR_POLAR_INVALID_SIGNATURE"
    INVALID_PAYLOAD = "ERR_POLAR_INVALID_PAYLOAD"
    MISSING_CUSTOMER_LINKAGE = "ERR_POLAR_MISSING_CUSTOMER_LINKAGE"
    PROCESSING_FAILED = "ERR_POLAR_PROCESSING_FAILED"
    EVENT_IN_PROGRESS = "ERR_POLAR_EVENT_IN_PROGRESS"


class PolarError(Exception):
    """Base exception for the Polar billing service."""

    code: ErrorCode = ErrorCode.PROCESSING_FAILED
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"ok": False, "code": str(self.code), "error": self.message}


class InvalidInputError(PolarError):
    """Raised when a checkout/portal request body is malformed."""

    code = ErrorCode.INVALID_INPUT
    status_code = 400


class UnauthorizedError(PolarError):
    """Raised when a server-to-server call lacks a valid bearer token."""

    code = ErrorCode.UNAUTHORIZED
    status_code = 401


class MissingConfigError(PolarError):
    """Raised when a required secret or product mapping is not configured."""

    code = ErrorCode.MISSING_CONFIG
    status_code = 500


class UpstreamError(PolarError):
    """Raised when a call to the Polar API fails."""

    code = ErrorCode.UPSTREAM
    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None, payload: object = None):
        self.upstream_status = upstream_status
        self.payload = payload
        super().__init__(message)


class CustomerNotFoundError(PolarError):
    code = ErrorCode.CUSTOMER_NOT_FOUND
    status_code = 404


class InvalidSignatureError(PolarError):
    """Raised when a webhook delivery fails authentication.

    ``reason`` separates a missing header, a bad timestamp and an HMAC mismatch
    in logs and responses.
    """

    code = ErrorCode.INVALID_SIGNATURE
    status_code = 401

    def __init__(self, message: str, reason: str = "signature_mismatch"):
        self.reason = reason
        super().__init__(message)

    def to_response(self) -> dict:
        body = super().to_response()
        body["reason"] = self.reason
        return body


class StaleTimestampError(InvalidSignatureError):
    """Raised when the signed timestamp falls outside the replay window."""

    def __init__(self, message: str):
        super().__init__(message, reason="stale_timestamp")


class InvalidPayloadError(PolarError):
    """Raised when the webhook body is not JSON or has no event type."""

    code = ErrorCode.INVALID_PAYLOAD
    status_code = 400


class MissingCustomerLinkageError(PolarError):
    """Raised when a subscription-bearing event has no resolvable customer."""

    code = ErrorCode.MISSING_CUSTOMER_LINKAGE
    status_code = 500


class ProcessingFailedError(PolarError):
    code = ErrorCode.PROCESSING_FAILED
    status_code = 500


class EventInProgressError(PolarError):
    """Raised when another delivery holds a live claim on the same event id.

    Rendered as 409 so the provider redelivers later instead of treating the
    event as done.
    """

    code = ErrorCode.EVENT_IN_PROGRESS
    status_code = 409
