"""Store interfaces and helpers shared between memory and postgres implementations.

Each service component depends on the narrowest interface it needs, so the
vault never sees refresh tokens and the ledger never sees password hashes.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, List, Optional, Protocol

from marketauth.storage.models import (
    Credential,
    OtpPurpose,
    OtpSession,
    RefreshToken,
    User,
    UserMeta,
)


class UnitOfWork(Protocol):
    def unit_of_work(self) -> ContextManager[None]: ...


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[UserMeta] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class CredentialStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_credential(
        self, user_id: str, email: str, password_hash: str, password_algo: str
    ) -> Credential: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def set_credential_verified(self, user_id: str) -> None: ...

    def touch_last_login(self, user_id: str, when: datetime) -> None: ...


class OtpSessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_otp_session(self, session: OtpSession) -> OtpSession: ...

    def get_otp_session(
        self, session_id: str, purpose: Optional[OtpPurpose] = None
    ) -> Optional[OtpSession]: ...

    def increment_otp_attempts(self, session_id: str) -> int: ...

    def mark_otp_verified(self, session_id: str, verified_at: datetime) -> None: ...

    def mark_otp_used(
        self, session_id: str, verified_at: Optional[datetime] = None
    ) -> None: ...

    def has_verified_otp(self, user_id: str, purpose: OtpPurpose) -> bool: ...


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def replace_refresh_token(
        self, old_token_id: str, successor: RefreshToken, revoked_at: datetime
    ) -> RefreshToken: ...

    def revoke_refresh_token(
        self, token_id: str, reason: str, revoked_at: datetime
    ) -> None: ...

    def revoke_token_family(
        self, token_family: str, reason: str, revoked_at: datetime
    ) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, revoked_at: datetime
    ) -> int: ...

    def list_token_family(self, token_family: str) -> List[RefreshToken]: ...


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata column that may arrive as a JSON string or a dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a value from a dict-like row, falling back to ``default``."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
