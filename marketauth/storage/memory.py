from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from marketauth.logging import get_logger
from marketauth.storage.errors import ConcurrentModification, ConstraintViolation
from marketauth.storage.models import (
    Credential,
    OtpPurpose,
    OtpSession,
    RefreshToken,
    User,
    UserMeta,
    utcnow,
)


class MemoryStore:
    """In-memory store of record with optional JSON persistence.

    Suitable for tests and single-process deployments. Every public method
    holds ``_data_lock``; ``unit_of_work`` holds it for the whole block and
    restores a snapshot if the block raises.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.otp_sessions: Dict[str, OtpSession] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so unit_of_work can wrap the locked public methods
        self._data_lock = threading.RLock()
        self._uow_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._uow_depth += 1
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._uow_depth -= 1
            self._persist_state()

    def _snapshot(self) -> dict:
        return copy.deepcopy(
            {
                "users": self.users,
                "credentials": self.credentials,
                "otp_sessions": self.otp_sessions,
                "refresh_tokens": self.refresh_tokens,
            }
        )

    def _restore(self, snapshot: dict) -> None:
        self.users = snapshot["users"]
        self.credentials = snapshot["credentials"]
        self.otp_sessions = snapshot["otp_sessions"]
        self.refresh_tokens = snapshot["refresh_tokens"]

    # users
    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[UserMeta] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                meta=meta or UserMeta(),
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.copy(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()

    # credentials
    def create_credential(
        self, user_id: str, email: str, password_hash: str, password_algo: str
    ) -> Credential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            if user_id in self.credentials:
                raise ConstraintViolation(
                    "credential already exists", {"field": "user_id"}
                )
            if any(cred.email == email for cred in self.credentials.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            credential = Credential(
                id=str(uuid.uuid4()),
                user_id=user_id,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.credentials[user_id] = credential
            self._persist_state()
            return copy.copy(credential)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return copy.copy(cred) if cred else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            cred = next(
                (c for c in self.credentials.values() if c.email == email), None
            )
            return copy.copy(cred) if cred else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                raise ConstraintViolation(
                    "credential not found", {"user_id": user_id}
                )
            cred.password_hash = password_hash
            cred.updated_at = utcnow()
            self._persist_state()

    def set_credential_verified(self, user_id: str) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred or cred.is_verified:
                return
            cred.is_verified = True
            cred.updated_at = utcnow()
            self._persist_state()

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return
            cred.last_login = when
            self._persist_state()

    # otp sessions
    def create_otp_session(self, session: OtpSession) -> OtpSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.otp_sessions[session.id] = copy.copy(session)
            self._persist_state()
            return session

    def get_otp_session(
        self, session_id: str, purpose: Optional[OtpPurpose] = None
    ) -> Optional[OtpSession]:
        with self._data_lock:
            session = self.otp_sessions.get(session_id)
            if not session:
                return None
            if purpose is not None and session.purpose != purpose:
                return None
            return copy.copy(session)

    def increment_otp_attempts(self, session_id: str) -> int:
        with self._data_lock:
            session = self.otp_sessions.get(session_id)
            if not session:
                return 0
            session.attempts += 1
            self._persist_state()
            return session.attempts

    def mark_otp_verified(self, session_id: str, verified_at: datetime) -> None:
        with self._data_lock:
            session = self.otp_sessions.get(session_id)
            if not session:
                return
            session.is_verified = True
            session.is_used = True
            session.verified_at = verified_at
            self._persist_state()

    def mark_otp_used(
        self, session_id: str, verified_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            session = self.otp_sessions.get(session_id)
            if not session:
                return
            session.is_used = True
            if verified_at is not None:
                session.verified_at = verified_at
            self._persist_state()

    def has_verified_otp(self, user_id: str, purpose: OtpPurpose) -> bool:
        with self._data_lock:
            return any(
                s.user_id == user_id and s.purpose == purpose and s.is_verified
                for s in self.otp_sessions.values()
            )

    # refresh tokens
    def _insert_refresh_token(self, token: RefreshToken) -> None:
        if token.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            )
        self.refresh_tokens[token.id] = copy.copy(token)

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self._insert_refresh_token(token)
            self._persist_state()
            return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return copy.copy(token) if token else None

    def replace_refresh_token(
        self, old_token_id: str, successor: RefreshToken, revoked_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if not old:
                raise ConstraintViolation(
                    "refresh token not found", {"token_id": old_token_id}
                )
            if old.is_revoked:
                raise ConcurrentModification(
                    "refresh token already revoked", {"token_id": old_token_id}
                )
            # Insert first; a rejected successor leaves the old token untouched
            self._insert_refresh_token(successor)
            old.is_revoked = True
            old.revocation_reason = "replaced"
            old.revoked_at = revoked_at
            old.replaced_by_token_hash = successor.token_hash
            self._persist_state()
        return successor

    def revoke_refresh_token(
        self, token_id: str, reason: str, revoked_at: datetime
    ) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return
            token.is_revoked = True
            token.revocation_reason = reason
            token.revoked_at = revoked_at
            self._persist_state()

    def _revoke_matching(self, predicate, reason: str, revoked_at: datetime) -> int:
        count = 0
        for token in self.refresh_tokens.values():
            if token.is_revoked or not predicate(token):
                continue
            token.is_revoked = True
            token.revocation_reason = reason
            token.revoked_at = revoked_at
            count += 1
        if count:
            self._persist_state()
        return count

    def revoke_token_family(
        self, token_family: str, reason: str, revoked_at: datetime
    ) -> int:
        with self._data_lock:
            return self._revoke_matching(
                lambda t: t.token_family == token_family, reason, revoked_at
            )

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, revoked_at: datetime
    ) -> int:
        with self._data_lock:
            return self._revoke_matching(
                lambda t: t.user_id == user_id, reason, revoked_at
            )

    def list_token_family(self, token_family: str) -> List[RefreshToken]:
        with self._data_lock:
            members = [
                copy.copy(t)
                for t in self.refresh_tokens.values()
                if t.token_family == token_family
            ]
            return sorted(members, key=lambda t: t.created_at)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None or self._uow_depth:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "otp_sessions": [
                self._serialize_otp_session(s) for s in self.otp_sessions.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.otp_sessions = {
            s["id"]: self._deserialize_otp_session(s)
            for s in data.get("otp_sessions", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            otp_sessions=len(self.otp_sessions),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "meta": user.meta.to_dict(),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            meta=UserMeta.from_dict(data.get("meta")),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        return {
            "id": cred.id,
            "user_id": cred.user_id,
            "email": cred.email,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "is_verified": cred.is_verified,
            "last_login": self._serialize_datetime(cred.last_login),
            "created_at": self._serialize_datetime(cred.created_at),
            "updated_at": self._serialize_datetime(cred.updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            is_verified=data.get("is_verified", False),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_otp_session(self, session: OtpSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "otp_hash": session.otp_hash,
            "purpose": session.purpose.value,
            "expires_at": self._serialize_datetime(session.expires_at),
            "attempts": session.attempts,
            "is_verified": session.is_verified,
            "is_used": session.is_used,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
            "verified_at": self._serialize_datetime(session.verified_at),
        }

    def _deserialize_otp_session(self, data: dict) -> OtpSession:
        return OtpSession(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            otp_hash=data["otp_hash"],
            purpose=OtpPurpose(data["purpose"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            is_verified=data.get("is_verified", False),
            is_used=data.get("is_used", False),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            verified_at=self._deserialize_datetime(data.get("verified_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "token_family": token.token_family,
            "expires_at": self._serialize_datetime(token.expires_at),
            "is_revoked": token.is_revoked,
            "revocation_reason": token.revocation_reason,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "replaced_by_token_hash": token.replaced_by_token_hash,
            "ip_address": token.ip_address,
            "user_agent": token.user_agent,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            token_hash=data["token_hash"],
            user_id=str(data["user_id"]),
            token_family=data["token_family"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            revocation_reason=data.get("revocation_reason"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_token_hash=data.get("replaced_by_token_hash"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
