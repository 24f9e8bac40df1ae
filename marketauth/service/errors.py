from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions surfaced at the boundary.

    Each exception carries an HTTP-style status_code and a stable error_code.
    AuthError fills both from its kind; the base defaults to 400 validation_error.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthErrorKind(Enum):
    """Caller-actionable auth failures.

    Value layout: (stable code, numeric business code, status, default message).
    """

    DUPLICATE_CREDENTIAL = (
        "duplicate_credential", 15, 409, "Credentials already exist for this email"
    )
    EMAIL_ALREADY_EXISTS = ("email_already_exists", 31, 409, "Email already exists")
    INVALID_CREDENTIALS = ("invalid_credentials", 38, 401, "Invalid email or password")
    EMAIL_NOT_VERIFIED = ("email_not_verified", 30, 403, "Email not verified")
    SESSION_NOT_FOUND = (
        "otp_session_not_found", 21, 404, "Verification session not found"
    )
    SESSION_EXPIRED = ("otp_session_expired", 22, 410, "Verification session expired")
    SESSION_USED = (
        "otp_session_used", 27, 410, "Verification session already used or expired"
    )
    ATTEMPTS_EXCEEDED = (
        "otp_attempts_exceeded",
        24,
        429,
        "Maximum verification attempts exceeded. Request a new code.",
    )
    INVALID_CODE = ("otp_invalid_code", 25, 400, "Invalid verification code")
    ALREADY_VERIFIED = ("email_already_verified", 26, 409, "Email already verified")
    INVALID_TOKEN = ("invalid_refresh_token", 32, 401, "Invalid refresh token")
    TOKEN_EXPIRED = ("refresh_token_expired", 33, 401, "Refresh token expired")
    TOKEN_REUSE_DETECTED = (
        "token_reuse_detected", 34, 401, "Token reuse detected. All tokens revoked."
    )
    SAME_PASSWORD = (
        "same_password",
        37,
        400,
        "New password must be different from the current password",
    )
    EMAIL_NOT_FOUND = ("email_not_found", 36, 404, "Email not found")
    INVALID_ACCESS_TOKEN = (
        "invalid_access_token", 39, 401, "Invalid or expired access token"
    )

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def business_code(self) -> int:
        return self.value[1]

    @property
    def status_code(self) -> int:
        return self.value[2]

    @property
    def default_message(self) -> str:
        return self.value[3]


class AuthError(ServiceError):
    """A tagged auth failure; inspect ``kind`` rather than subclassing."""

    def __init__(
        self,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(
            message or kind.default_message,
            status_code=kind.status_code,
            error_code=kind.code,
            detail={"business_code": kind.business_code, **(detail or {})},
        )
        self.kind = kind


__all__ = [
    "ServiceError",
    "AuthErrorKind",
    "AuthError",
]
