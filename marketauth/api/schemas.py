from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketauth.service.errors import AuthErrorKind

_VALID_ERROR_CODES = {"validation_error", "server_error"} | {
    kind.code for kind in AuthErrorKind
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class Reply(BaseModel):
    """Outcome of one gateway operation: a status code and its envelope."""

    status_code: int
    body: Envelope


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class SessionIdResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")


class ProfileResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    email: str
    role: str


class RevokedResponse(BaseModel):
    revoked: int


# requests
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    first_name: Optional[str] = Field(default=None, max_length=128)
    last_name: Optional[str] = Field(default=None, max_length=128)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)


class VerifyOtpRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=16)


class ResendOtpRequest(BaseModel):
    session_id: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=320)


class ResetPasswordRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., min_length=1, max_length=1024)
