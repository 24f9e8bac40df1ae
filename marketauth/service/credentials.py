from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from marketauth.config import Settings
from marketauth.logging import email_digest, get_logger
from marketauth.service.errors import AuthError, AuthErrorKind
from marketauth.storage.common import CredentialStore
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import Credential, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVault:
    """Password credentials bound one-to-one to identities.

    Stores argon2id hashes only. ``verify`` answers None for an unknown email
    and for a wrong password alike, and spends a comparable amount of work on
    both paths.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )
        # Verified against when the email is unknown
        self._dummy_hash = self._pwd_hasher.hash("marketauth-dummy-password")
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def hash_password(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def create_credential(
        self, user_id: str, email: str, plaintext_password: str
    ) -> Credential:
        if self.store.get_credential_by_email(email) or self.store.get_credential(
            user_id
        ):
            raise AuthError(AuthErrorKind.DUPLICATE_CREDENTIAL)
        password_hash = self.hash_password(plaintext_password)
        try:
            credential = self.store.create_credential(
                user_id, email, password_hash, PASSWORD_ALGO
            )
        except ConstraintViolation as exc:
            raise AuthError(AuthErrorKind.DUPLICATE_CREDENTIAL) from exc
        self.logger.info("credential_created", user_id=user_id)
        return credential

    def _check_hash(self, stored_hash: str, plaintext: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable")
            return False

    def verify(self, email: str, plaintext_password: str) -> Optional[User]:
        credential = self.store.get_credential_by_email(email)
        if not credential:
            self._check_hash(self._dummy_hash, plaintext_password)
            self.logger.info("credential_verify_unknown_email", email_hash=email_digest(email))
            return None
        if credential.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch",
                user_id=credential.user_id,
                algo=credential.password_algo,
            )
            return None
        if not self._check_hash(credential.password_hash, plaintext_password):
            self.logger.info("password_verification_failed", user_id=credential.user_id)
            return None
        if self._pwd_hasher.check_needs_rehash(credential.password_hash):
            self.store.update_password_hash(
                credential.user_id, self.hash_password(plaintext_password)
            )
            self.logger.info("password_rehashed", user_id=credential.user_id)
        return self.store.get_user(credential.user_id)

    def matches(self, user_id: str, plaintext_password: str) -> bool:
        """True when ``plaintext_password`` is the identity's current password."""
        credential = self.store.get_credential(user_id)
        if not credential:
            return False
        return self._check_hash(credential.password_hash, plaintext_password)

    def email_in_use(self, email: str) -> bool:
        return self.store.get_credential_by_email(email) is not None

    def is_verified(self, user_id: str) -> bool:
        credential = self.store.get_credential(user_id)
        return bool(credential and credential.is_verified)

    def update_password(self, user_id: str, new_hash: str) -> None:
        self.store.update_password_hash(user_id, new_hash)
        self.logger.info("password_updated", user_id=user_id)

    def mark_verified(self, user_id: str) -> None:
        self.store.set_credential_verified(user_id)

    def touch_last_login(self, user_id: str) -> None:
        try:
            self.store.touch_last_login(user_id, self._now())
        except Exception as exc:
            self.logger.warning(
                "last_login_update_failed", user_id=user_id, error=str(exc)
            )
