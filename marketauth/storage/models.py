from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class OtpState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"


class TokenState(str, Enum):
    ACTIVE = "active"
    REPLACED = "replaced"
    REVOKED = "revoked"
    EXPIRED = "expired"


USER_META_SCHEMA_VERSION = 1


@dataclass
class UserMeta:
    """Versioned identity metadata; unknown versions are refused on load."""

    schema_version: int = USER_META_SCHEMA_VERSION
    auth_provider: str = "local"
    auth_method: str = "password"

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "auth_provider": self.auth_provider,
            "auth_method": self.auth_method,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "UserMeta":
        if not data:
            return cls()
        version = data.get("schema_version", USER_META_SCHEMA_VERSION)
        if version != USER_META_SCHEMA_VERSION:
            raise ValueError(f"unsupported user meta schema_version: {version}")
        return cls(
            schema_version=version,
            auth_provider=data.get("auth_provider", "local"),
            auth_method=data.get("auth_method", "password"),
        )


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    meta: UserMeta = field(default_factory=UserMeta)

    @property
    def display_name(self) -> str:
        if not self.first_name:
            return self.email
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass
class Credential:
    id: str
    user_id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    is_verified: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpSession:
    id: str
    user_id: str
    otp_hash: str
    purpose: OtpPurpose
    expires_at: datetime
    attempts: int = 0
    is_verified: bool = False
    is_used: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        otp_hash: str,
        purpose: OtpPurpose,
        ttl_minutes: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "OtpSession":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            otp_hash=otp_hash,
            purpose=purpose,
            expires_at=created + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created,
        )

    def state(self, now: datetime, max_attempts: int) -> OtpState:
        if self.is_verified:
            return OtpState.VERIFIED
        if self.is_used:
            return OtpState.SUPERSEDED
        if now >= self.expires_at:
            return OtpState.EXPIRED
        if self.attempts >= max_attempts:
            return OtpState.EXHAUSTED
        return OtpState.PENDING


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    token_family: str
    expires_at: datetime
    is_revoked: bool = False
    revocation_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    replaced_by_token_hash: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def state(self, now: datetime) -> TokenState:
        if self.is_revoked:
            if self.replaced_by_token_hash:
                return TokenState.REPLACED
            return TokenState.REVOKED
        if now >= self.expires_at:
            return TokenState.EXPIRED
        return TokenState.ACTIVE
