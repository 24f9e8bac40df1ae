from __future__ import annotations

import json
import uuid
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from marketauth.logging import get_logger
from marketauth.storage.common import ensure_utc, parse_json_meta, safe_row_value
from marketauth.storage.errors import ConcurrentModification, ConstraintViolation
from marketauth.storage.models import (
    Credential,
    OtpPurpose,
    OtpSession,
    RefreshToken,
    User,
    UserMeta,
)

# (store, connection) of the unit of work open in the current context
_active_transaction: ContextVar[Optional[Tuple["PostgresStore", Any]]] = ContextVar(
    "marketauth_pg_transaction", default=None
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_credential (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        otp_hash TEXT NOT NULL,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        verified_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_session_user_purpose_idx ON otp_session (user_id, purpose)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_family UUID NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revocation_reason TEXT,
        revoked_at TIMESTAMPTZ,
        replaced_by_token_hash TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (token_family)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)


class PostgresStore:
    """Postgres-backed store of record for identities, credentials and tokens."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def _connect(self):
        active = _active_transaction.get()
        if active is not None and active[0] is self:
            return nullcontext(active[1])
        return self.pool.connection()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """Run the enclosed store calls in one database transaction."""
        active = _active_transaction.get()
        if active is not None and active[0] is self:
            # nested: savepoint on the enclosing connection
            with active[1].transaction():
                yield
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = _active_transaction.set((self, conn))
                try:
                    yield
                finally:
                    _active_transaction.reset(token)

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ensured", tables=4)

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=safe_row_value(row, "first_name"),
            last_name=safe_row_value(row, "last_name"),
            role=safe_row_value(row, "role", "user"),
            is_active=safe_row_value(row, "is_active", True),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row.get("updated_at") or row["created_at"]),
            meta=UserMeta.from_dict(parse_json_meta(row.get("meta"))),
        )

    @staticmethod
    def _credential_from_row(row: dict) -> Credential:
        return Credential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            is_verified=bool(row.get("is_verified")),
            last_login=ensure_utc(row.get("last_login")),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row.get("updated_at") or row["created_at"]),
        )

    @staticmethod
    def _otp_session_from_row(row: dict) -> OtpSession:
        return OtpSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            otp_hash=row["otp_hash"],
            purpose=OtpPurpose(row["purpose"]),
            expires_at=ensure_utc(row["expires_at"]),
            attempts=int(row.get("attempts") or 0),
            is_verified=bool(row.get("is_verified")),
            is_used=bool(row.get("is_used")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=ensure_utc(row["created_at"]),
            verified_at=ensure_utc(row.get("verified_at")),
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            token_family=str(row["token_family"]),
            expires_at=ensure_utc(row["expires_at"]),
            is_revoked=bool(row.get("is_revoked")),
            revocation_reason=row.get("revocation_reason"),
            revoked_at=ensure_utc(row.get("revoked_at")),
            replaced_by_token_hash=row.get("replaced_by_token_hash"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=ensure_utc(row["created_at"]),
        )

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
        user_meta = meta or UserMeta()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        first_name,
                        last_name,
                        role,
                        json.dumps(user_meta.to_dict()),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, user_id),
            )

    # credentials
    def create_credential(
        self, user_id: str, email: str, password_hash: str, password_algo: str
    ) -> Credential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_credential (id, user_id, email, password_hash, password_algo)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, email, password_hash, password_algo),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "credential already exists", {"field": "email"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )
        return self._credential_from_row(row)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE email = %s", (email,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_credential
                SET password_hash = %s, updated_at = now()
                WHERE user_id = %s
                """,
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("credential not found", {"user_id": user_id})

    def set_credential_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_credential
                SET is_verified = TRUE, updated_at = now()
                WHERE user_id = %s AND NOT is_verified
                """,
                (user_id,),
            )

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_credential SET last_login = %s WHERE user_id = %s",
                (when, user_id),
            )

    # otp sessions
    def create_otp_session(self, session: OtpSession) -> OtpSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_session (
                        id, user_id, otp_hash, purpose, expires_at, attempts,
                        is_verified, is_used, ip_address, user_agent, created_at, verified_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.otp_hash,
                        session.purpose.value,
                        session.expires_at,
                        session.attempts,
                        session.is_verified,
                        session.is_used,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.verified_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": session.user_id}
            )
        return session

    def get_otp_session(
        self, session_id: str, purpose: Optional[OtpPurpose] = None
    ) -> Optional[OtpSession]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        query = "SELECT * FROM otp_session WHERE id = %s"
        params: tuple = (session_id,)
        if purpose is not None:
            query += " AND purpose = %s"
            params = (session_id, purpose.value)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._otp_session_from_row(row) if row else None

    def increment_otp_attempts(self, session_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_session SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (session_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def mark_otp_verified(self, session_id: str, verified_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE otp_session
                SET is_verified = TRUE, is_used = TRUE, verified_at = %s
                WHERE id = %s
                """,
                (verified_at, session_id),
            )

    def mark_otp_used(
        self, session_id: str, verified_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE otp_session
                SET is_used = TRUE, verified_at = COALESCE(%s, verified_at)
                WHERE id = %s
                """,
                (verified_at, session_id),
            )

    def has_verified_otp(self, user_id: str, purpose: OtpPurpose) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM otp_session
                WHERE user_id = %s AND purpose = %s AND is_verified
                LIMIT 1
                """,
                (user_id, purpose.value),
            ).fetchone()
        return row is not None

    # refresh tokens
    def _insert_refresh_token(self, conn, token: RefreshToken) -> None:
        try:
            conn.execute(
                """
                INSERT INTO refresh_token (
                    id, token_hash, user_id, token_family, expires_at, is_revoked,
                    ip_address, user_agent, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.token_hash,
                    token.user_id,
                    token.token_family,
                    token.expires_at,
                    token.is_revoked,
                    token.ip_address,
                    token.user_agent,
                    token.created_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            self._insert_refresh_token(conn, token)
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def replace_refresh_token(
        self, old_token_id: str, successor: RefreshToken, revoked_at: datetime
    ) -> RefreshToken:
        with self.unit_of_work():
            with self._connect() as conn:
                self._insert_refresh_token(conn, successor)
                cur = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE,
                        revocation_reason = 'replaced',
                        revoked_at = %s,
                        replaced_by_token_hash = %s
                    WHERE id = %s AND NOT is_revoked
                    """,
                    (revoked_at, successor.token_hash, old_token_id),
                )
                # Raising here rolls back the successor insert
                if cur.rowcount == 0:
                    raise ConcurrentModification(
                        "refresh token already revoked or missing",
                        {"token_id": old_token_id},
                    )
        return successor

    def revoke_refresh_token(
        self, token_id: str, reason: str, revoked_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revocation_reason = %s, revoked_at = %s
                WHERE id = %s AND NOT is_revoked
                """,
                (reason, revoked_at, token_id),
            )

    def revoke_token_family(
        self, token_family: str, reason: str, revoked_at: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revocation_reason = %s, revoked_at = %s
                WHERE token_family = %s AND NOT is_revoked
                """,
                (reason, revoked_at, token_family),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, revoked_at: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revocation_reason = %s, revoked_at = %s
                WHERE user_id = %s AND NOT is_revoked
                """,
                (reason, revoked_at, user_id),
            )
            return cur.rowcount

    def list_token_family(self, token_family: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE token_family = %s ORDER BY created_at",
                (token_family,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]
