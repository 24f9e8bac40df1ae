from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, NoReturn, Optional, Tuple

from marketauth.config import Settings
from marketauth.logging import get_logger
from marketauth.service.errors import AuthError, AuthErrorKind
from marketauth.storage.common import RefreshTokenStore
from marketauth.storage.errors import ConcurrentModification
from marketauth.storage.models import RefreshToken, TokenState, User

logger = get_logger(__name__)

REASON_REPLACED = "replaced"
REASON_REUSE = "reuse detected"
REASON_LOGOUT = "logout"
REASON_REVOKE_ALL = "revoke_all"
REASON_PASSWORD_RESET = "password_reset"


def hash_token(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode()).hexdigest()


class RefreshTokenLedger:
    """Opaque refresh tokens grouped into rotation families.

    Presenting a token that was already rotated away or revoked is treated as
    theft: every live token in its family is revoked before the caller sees
    TOKEN_REUSE_DETECTED.
    """

    def __init__(self, store: RefreshTokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _new_record(
        self,
        user_id: str,
        family: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Tuple[str, RefreshToken]:
        plaintext = secrets.token_hex(32)
        now = self._now()
        record = RefreshToken(
            id=str(uuid.uuid4()),
            token_hash=hash_token(plaintext),
            user_id=user_id,
            token_family=family,
            expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        return plaintext, record

    def issue(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, RefreshToken]:
        plaintext, record = self._new_record(
            user_id, str(uuid.uuid4()), ip_address=ip_address, user_agent=user_agent
        )
        self.store.create_refresh_token(record)
        self.logger.info(
            "refresh_family_started", user_id=user_id, family_id=record.token_family
        )
        return plaintext, record

    def _reuse_detected(self, current: RefreshToken, now: datetime) -> NoReturn:
        revoked = self.store.revoke_token_family(
            current.token_family, REASON_REUSE, now
        )
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=current.user_id,
            family_id=current.token_family,
            revoked_count=revoked,
        )
        raise AuthError(AuthErrorKind.TOKEN_REUSE_DETECTED)

    def rotate(self, plaintext: str) -> Tuple[str, RefreshToken]:
        current = self.store.get_refresh_token_by_hash(hash_token(plaintext))
        if not current:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        now = self._now()
        state = current.state(now)
        if state in (TokenState.REVOKED, TokenState.REPLACED):
            self._reuse_detected(current, now)
        if state == TokenState.EXPIRED:
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED)
        new_plaintext, successor = self._new_record(
            current.user_id,
            current.token_family,
            ip_address=current.ip_address,
            user_agent=current.user_agent,
        )
        try:
            self.store.replace_refresh_token(current.id, successor, now)
        except ConcurrentModification:
            # Another rotation of the same token committed first
            self._reuse_detected(current, now)
        self.logger.info(
            "refresh_token_rotated",
            user_id=current.user_id,
            family_id=current.token_family,
        )
        return new_plaintext, successor

    def revoke(self, plaintext: str) -> None:
        current = self.store.get_refresh_token_by_hash(hash_token(plaintext))
        if not current:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        self.store.revoke_refresh_token(current.id, REASON_LOGOUT, self._now())
        self.logger.info(
            "refresh_token_revoked", user_id=current.user_id, reason=REASON_LOGOUT
        )

    def revoke_all_for_identity(
        self, user_id: str, reason: str = REASON_REVOKE_ALL
    ) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason, self._now())
        self.logger.info(
            "refresh_tokens_revoked_for_user",
            user_id=user_id,
            reason=reason,
            revoked_count=count,
        )
        return count


@dataclass
class AccessClaims:
    user_id: str
    email: str
    role: str
    jti: str
    issued_at: int
    expires_at: int


class AccessTokenIssuer:
    """Short-lived HS256 access tokens; stateless and not individually revocable."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode("utf-8", "surrogatepass"),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so a forged header cannot pick the algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def mint(self, user: User) -> str:
        issued_at = int(self._now().timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return self._encode_jwt(payload)

    def decode(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        sub = payload.get("sub")
        if not sub:
            return None
        return AccessClaims(
            user_id=str(sub),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "user")),
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )
