"""
Error types for Mandi Authz.

ApiError is the only exception the admin API client raises. Engines catch
it at their async boundaries and turn it into a deny or empty outcome.
"""

from __future__ import annotations

from enum import Enum


class ApiErrorCode(str, Enum):
    """Why an admin API call failed."""

    TRANSPORT = "transport"  # connection, timeout
    HTTP_STATUS = "http_status"  # non-2xx response
    REJECTED = "rejected"  # responsecode != "0"
    INVALID_RESPONSE = "invalid_response"  # body is not a JSON object
    STEPUP_REQUIRED = "stepup_required"  # 403 challenge that was not satisfied


class ApiError(Exception):
    """
    Failed admin API call.

    Attributes:
        code: Failure category
        message: Human-readable message, safe to show to the admin
        status_code: HTTP status, when one was received
        response_code: Envelope `responsecode`, when the server rejected the call
    """

    def __init__(
        self,
        code: ApiErrorCode,
        message: str,
        *,
        status_code: int | None = None,
        response_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.response_code = response_code

    def __repr__(self) -> str:
        return f"ApiError(code={self.code.value!r}, message={self.message!r})"
