from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from marketauth.config import Settings
from marketauth.logging import email_digest, get_logger
from marketauth.service.credentials import CredentialVault
from marketauth.service.errors import AuthError, AuthErrorKind
from marketauth.service.otp import OtpEngine
from marketauth.service.tokens import (
    REASON_PASSWORD_RESET,
    AccessClaims,
    AccessTokenIssuer,
    RefreshTokenLedger,
)
from marketauth.storage.common import UnitOfWork, UserStore
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import OtpPurpose, User, UserMeta

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class AuthService:
    """Registration, login, token refresh and password reset flows.

    Composes the credential vault, OTP engine, refresh-token ledger and
    access-token issuer. Every failure a caller can act on is an ``AuthError``.
    """

    def __init__(
        self,
        store: UserStore,
        unit_of_work: UnitOfWork,
        vault: CredentialVault,
        otp: OtpEngine,
        ledger: RefreshTokenLedger,
        access_tokens: AccessTokenIssuer,
        settings: Settings,
    ) -> None:
        self.store = store
        self.uow = unit_of_work
        self.vault = vault
        self.otp = otp
        self.ledger = ledger
        self.access_tokens = access_tokens
        self.settings = settings
        self.logger = logger

    def _token_pair(self, user: User, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self.access_tokens.mint(user),
            refresh_token=refresh_token,
            expires_in=self.access_tokens.ttl_seconds,
        )

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        """Create an identity and its credential, then send a verification code.

        Returns the id of the email-verification session.
        """
        email = normalize_email(email)
        with self.uow.unit_of_work():
            if self.store.get_user_by_email(email) or self.vault.email_in_use(email):
                raise AuthError(AuthErrorKind.EMAIL_ALREADY_EXISTS)
            try:
                user = self.store.create_user(
                    email, first_name, last_name, meta=UserMeta()
                )
                self.vault.create_credential(user.id, email, password)
            except ConstraintViolation as exc:
                raise AuthError(AuthErrorKind.EMAIL_ALREADY_EXISTS) from exc
            except AuthError as exc:
                if exc.kind != AuthErrorKind.DUPLICATE_CREDENTIAL:
                    raise
                raise AuthError(AuthErrorKind.EMAIL_ALREADY_EXISTS) from exc
        self.logger.info(
            "user_registered", user_id=user.id, email_hash=email_digest(email)
        )
        session = self.otp.issue(user.id, OtpPurpose.EMAIL_VERIFICATION)
        return session.id

    async def verify_email(self, session_id: str, code: str) -> str:
        user_id = self.otp.verify(session_id, OtpPurpose.EMAIL_VERIFICATION, code)
        self.vault.mark_verified(user_id)
        self.logger.info("email_verified", user_id=user_id)
        return user_id

    async def resend_verification(self, session_id: str) -> str:
        return self.otp.resend(session_id)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        email = normalize_email(email)
        user = self.vault.verify(email, password)
        if not user or not user.is_active:
            self.logger.info("login_failed", email_hash=email_digest(email))
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
        if not self.otp.is_email_verified(user.id):
            raise AuthError(AuthErrorKind.EMAIL_NOT_VERIFIED)
        refresh_token, _ = self.ledger.issue(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        tokens = self._token_pair(user, refresh_token)
        self.vault.touch_last_login(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        new_refresh, record = self.ledger.rotate(refresh_token)
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            self.ledger.revoke_all_for_identity(record.user_id)
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        return self._token_pair(user, new_refresh)

    async def logout(self, refresh_token: str) -> None:
        self.ledger.revoke(refresh_token)

    async def revoke_all(self, user_id: str) -> int:
        return self.ledger.revoke_all_for_identity(user_id)

    async def forgot_password(self, email: str) -> str:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email", email_hash=email_digest(email)
            )
            if self.settings.forgot_password_reveals_email:
                raise AuthError(AuthErrorKind.EMAIL_NOT_FOUND)
            # Indistinguishable from a real session id; never resolves
            return str(uuid.uuid4())
        session = self.otp.issue(user.id, OtpPurpose.PASSWORD_RESET)
        self.logger.info("password_reset_requested", user_id=user.id)
        return session.id

    async def reset_password_with_otp(
        self, session_id: str, code: str, new_password: str
    ) -> None:
        user_id = self.otp.check(session_id, OtpPurpose.PASSWORD_RESET, code)
        if self.vault.matches(user_id, new_password):
            self.otp.record_failed_attempt(session_id)
            raise AuthError(AuthErrorKind.SAME_PASSWORD)
        self.vault.update_password(user_id, self.vault.hash_password(new_password))
        self.otp.mark_used(session_id, completed=True)
        if not self.otp.is_email_verified(user_id):
            self.otp.backfill_email_verification(user_id)
        self.vault.mark_verified(user_id)
        revoked = self.ledger.revoke_all_for_identity(
            user_id, reason=REASON_PASSWORD_RESET
        )
        self.logger.info(
            "password_reset_completed", user_id=user_id, revoked_count=revoked
        )

    async def authenticate(self, access_token: str) -> AccessClaims:
        claims = self.access_tokens.decode(access_token or "")
        if not claims:
            raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN)
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN)
        return claims

    async def get_profile(self, access_token: str) -> dict:
        claims = await self.authenticate(access_token)
        return {"userId": claims.user_id, "email": claims.email, "role": claims.role}
