from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import Optional

from marketauth.config import Settings
from marketauth.logging import get_logger
from marketauth.service.email import Notifier
from marketauth.service.errors import AuthError, AuthErrorKind
from marketauth.storage.common import OtpSessionStore
from marketauth.storage.models import OtpPurpose, OtpSession, OtpState

logger = get_logger(__name__)


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class OtpEngine:
    """Issues and checks short numeric codes bound to a purpose and identity.

    Sessions move from PENDING to exactly one of VERIFIED, EXPIRED, EXHAUSTED
    or SUPERSEDED. Only the SHA-256 digest of a code is stored; the plaintext
    goes to the notifier and nowhere else.
    """

    def __init__(
        self,
        store: OtpSessionStore,
        notifier: Optional[Notifier],
        settings: Settings,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_code(self) -> str:
        length = self.settings.otp_code_length
        floor = 10 ** (length - 1)
        return str(secrets.randbelow(9 * floor) + floor)

    def _deliver(self, session: OtpSession, code: str) -> None:
        if self.notifier is None:
            self.logger.warning("otp_delivery_skipped", session_id=session.id)
            return
        user = self.store.get_user(session.user_id)
        if not user:
            self.logger.warning(
                "otp_delivery_user_missing",
                session_id=session.id,
                user_id=session.user_id,
            )
            return
        if session.purpose == OtpPurpose.PASSWORD_RESET:
            send = self.notifier.send_password_reset_email
        else:
            send = self.notifier.send_otp_email
        try:
            delivered = send(user.email, code, user.display_name)
        except Exception as exc:
            self.logger.error(
                "otp_delivery_failed",
                session_id=session.id,
                purpose=session.purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.error(
                "otp_delivery_failed",
                session_id=session.id,
                purpose=session.purpose.value,
            )

    def issue(
        self,
        user_id: str,
        purpose: OtpPurpose,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpSession:
        code = self._generate_code()
        session = OtpSession.new(
            user_id,
            hash_code(code),
            purpose,
            self.settings.otp_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            now=self._now(),
        )
        self.store.create_otp_session(session)
        self.logger.info(
            "otp_issued",
            session_id=session.id,
            user_id=user_id,
            purpose=purpose.value,
            expires_at=session.expires_at.isoformat(),
        )
        self._deliver(session, code)
        return session

    def _load(self, session_id: str, purpose: OtpPurpose) -> OtpSession:
        session = self.store.get_otp_session(session_id, purpose)
        if not session:
            raise AuthError(AuthErrorKind.SESSION_NOT_FOUND)
        return session

    def _ensure_usable(self, session: OtpSession) -> None:
        state = session.state(self._now(), self.settings.otp_max_attempts)
        if state in (OtpState.VERIFIED, OtpState.SUPERSEDED):
            raise AuthError(AuthErrorKind.SESSION_USED)
        if state == OtpState.EXPIRED:
            raise AuthError(AuthErrorKind.SESSION_EXPIRED)
        if state == OtpState.EXHAUSTED:
            raise AuthError(AuthErrorKind.ATTEMPTS_EXCEEDED)

    def check(self, session_id: str, purpose: OtpPurpose, code: str) -> str:
        """Validate ``code`` without consuming the session; returns the user id.

        A mismatch is recorded as a failed attempt before INVALID_CODE is raised.
        """
        session = self._load(session_id, purpose)
        self._ensure_usable(session)
        if not hmac.compare_digest(hash_code(str(code)), session.otp_hash):
            attempts = self.record_failed_attempt(session.id)
            remaining = max(self.settings.otp_max_attempts - attempts, 0)
            self.logger.info(
                "otp_invalid_code",
                session_id=session.id,
                purpose=purpose.value,
                remaining_attempts=remaining,
            )
            raise AuthError(
                AuthErrorKind.INVALID_CODE,
                detail={"remaining_attempts": remaining},
            )
        return session.user_id

    def verify(self, session_id: str, purpose: OtpPurpose, code: str) -> str:
        user_id = self.check(session_id, purpose, code)
        self.store.mark_otp_verified(session_id, self._now())
        self.logger.info(
            "otp_verified", session_id=session_id, user_id=user_id, purpose=purpose.value
        )
        return user_id

    def record_failed_attempt(self, session_id: str) -> int:
        return self.store.increment_otp_attempts(session_id)

    def mark_used(self, session_id: str, *, completed: bool = False) -> None:
        """Retire a session; ``completed`` stamps it as redeemed now."""
        self.store.mark_otp_used(
            session_id, verified_at=self._now() if completed else None
        )

    def is_email_verified(self, user_id: str) -> bool:
        return self.store.has_verified_otp(user_id, OtpPurpose.EMAIL_VERIFICATION)

    def resend(self, session_id: str) -> str:
        """Supersede ``session_id`` with a fresh session of the same purpose."""
        previous = self.store.get_otp_session(session_id)
        if not previous:
            raise AuthError(AuthErrorKind.SESSION_NOT_FOUND)
        if previous.purpose == OtpPurpose.EMAIL_VERIFICATION and self.is_email_verified(
            previous.user_id
        ):
            raise AuthError(AuthErrorKind.ALREADY_VERIFIED)
        if previous.is_used or previous.is_verified:
            raise AuthError(AuthErrorKind.SESSION_USED)
        self.mark_used(previous.id)
        replacement = self.issue(
            previous.user_id,
            previous.purpose,
            ip_address=previous.ip_address,
            user_agent=previous.user_agent,
        )
        self.logger.info(
            "otp_resent",
            previous_session_id=previous.id,
            session_id=replacement.id,
            purpose=previous.purpose.value,
        )
        return replacement.id

    def backfill_email_verification(self, user_id: str) -> OtpSession:
        """Record an already-verified email session for ``user_id``."""
        now = self._now()
        session = OtpSession.new(
            user_id,
            hash_code(secrets.token_hex(16)),
            OtpPurpose.EMAIL_VERIFICATION,
            self.settings.otp_ttl_minutes,
            now=now,
        )
        session.is_verified = True
        session.is_used = True
        session.verified_at = now
        self.store.create_otp_session(session)
        self.logger.info("email_verification_backfilled", user_id=user_id)
        return session
