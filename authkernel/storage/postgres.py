from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation, StoreUnavailable
from authkernel.storage.models import (
    AuthProvider,
    OAuthState,
    OneTimeCode,
    OTPPurpose,
    Session,
    User,
    normalize_email,
)

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_OTP_TABLES = {
    OTPPurpose.VERIFICATION: "verification_otp",
    OTPPurpose.PASSWORD_RESET: "password_reset_otp",
}

_UPDATABLE_USER_COLUMNS = ("password_hash", "provider_id", "email_verified", "display_name")

_UNSET: Any = object()


def _user_conflict(exc: errors.UniqueViolation) -> ConstraintViolation:
    if exc.diag.constraint_name == "auth_user_provider_idx":
        return ConstraintViolation("provider identity already linked", {"field": "provider_id"})
    return ConstraintViolation("email already exists", {"field": "email"})


class PostgresStore:
    """Postgres-backed credential store.

    Rotation is a single conditional UPDATE on ``version`` so two refreshes of
    one session can never both commit. OTP consumption locks the candidate row
    with ``SKIP LOCKED`` so concurrent consumers race on one row only.
    """

    required_tables = (
        "auth_user",
        "verification_otp",
        "password_reset_otp",
        "auth_session",
        "oauth_state",
    )

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self.ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def ensure_schema(self) -> None:
        """Apply ``schema.sql``; every statement is idempotent."""

        ddl = _SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user (id, email, auth_provider, password_hash, provider_id,
                                           email_verified, display_name, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        email,
                        user.auth_provider.value,
                        user.password_hash,
                        user.provider_id,
                        user.email_verified,
                        user.display_name,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _user_conflict(exc)
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_provider(self, provider: AuthProvider, provider_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE auth_provider = %s AND provider_id = %s",
                (provider.value, provider_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(
        self,
        user_id: str,
        *,
        password_hash: Any = _UNSET,
        provider_id: Any = _UNSET,
        email_verified: Any = _UNSET,
        display_name: Any = _UNSET,
    ) -> Optional[User]:
        values = dict(
            password_hash=password_hash,
            provider_id=provider_id,
            email_verified=email_verified,
            display_name=display_name,
        )
        columns = [c for c in _UPDATABLE_USER_COLUMNS if values[c] is not _UNSET]
        assignments = ", ".join(f"{c} = %s" for c in columns + ["updated_at"])
        params = [values[c] for c in columns] + [datetime.now(timezone.utc), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE auth_user SET {assignments} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _user_conflict(exc)
        return self._user_from_row(row) if row else None

    # one-time codes
    def replace_otp(self, otp: OneTimeCode, now: datetime) -> int:
        """Retire live codes and insert ``otp`` in one transaction.

        The owning user row is locked first, so concurrent issuers for the same
        user serialise and at most one code stays live.
        """
        table = _OTP_TABLES[otp.purpose]
        with self._connect() as conn:
            owner = conn.execute(
                "SELECT id FROM auth_user WHERE id = %s FOR UPDATE", (otp.user_id,)
            ).fetchone()
            if owner is None:
                raise ConstraintViolation("user does not exist", {"user_id": otp.user_id})
            result = conn.execute(
                f"UPDATE {table} SET used_at = %s WHERE user_id = %s AND used_at IS NULL",
                (now, otp.user_id),
            )
            retired = result.rowcount
            conn.execute(
                f"""
                INSERT INTO {table} (id, user_id, code, expires_at, used_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (otp.id, otp.user_id, otp.code, otp.expires_at, otp.used_at, otp.created_at),
            )
        return retired

    def otp_code_active(self, purpose: OTPPurpose, code: str, now: datetime) -> bool:
        table = _OTP_TABLES[purpose]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT 1 AS hit FROM {table}
                WHERE code = %s AND used_at IS NULL AND expires_at > %s
                LIMIT 1
                """,
                (code, now),
            ).fetchone()
        return row is not None

    def consume_otp(
        self,
        purpose: OTPPurpose,
        code: str,
        now: datetime,
        *,
        local_only: bool = False,
    ) -> Optional[str]:
        table = _OTP_TABLES[purpose]
        provider_clause = "AND u.auth_provider = 'LOCAL'" if local_only else ""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE {table} SET used_at = %s
                WHERE id = (
                    SELECT o.id FROM {table} o
                    JOIN auth_user u ON u.id = o.user_id
                    WHERE o.code = %s AND o.used_at IS NULL AND o.expires_at > %s
                    {provider_clause}
                    ORDER BY o.created_at DESC
                    LIMIT 1
                    FOR UPDATE OF o SKIP LOCKED
                )
                AND used_at IS NULL
                RETURNING user_id
                """,
                (now, code, now),
            ).fetchone()
        return str(row["user_id"]) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, current_refresh_token_hash,
                        previous_refresh_token_hash, ip_address, user_agent, created_at,
                        last_used_at, expires_at, revoked_at, rotated_at, version)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.current_refresh_token_hash,
                        session.previous_refresh_token_hash,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                        session.revoked_at,
                        session.rotated_at,
                        session.version,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_version: int,
        new_refresh_token_hash: str,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET
                    previous_refresh_token_hash = current_refresh_token_hash,
                    current_refresh_token_hash = %s,
                    expires_at = %s,
                    ip_address = COALESCE(%s, ip_address),
                    user_agent = COALESCE(%s, user_agent),
                    last_used_at = %s,
                    rotated_at = %s,
                    version = version + 1
                WHERE id = %s AND version = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (
                    new_refresh_token_hash,
                    expires_at,
                    ip_address,
                    user_agent,
                    now,
                    now,
                    session_id,
                    expected_version,
                    now,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s AND revoked_at IS NULL",
                (now, session_id),
            )

    def revoke_session(
        self, session_id: str, now: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        sql = "UPDATE auth_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL"
        params: list[Any] = [now, session_id]
        if user_id is not None:
            sql += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
            return result.rowcount

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # oauth state
    def save_oauth_state(self, oauth_state: OAuthState) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_state (state, provider, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (
                    oauth_state.state,
                    oauth_state.provider.value,
                    oauth_state.expires_at,
                    oauth_state.created_at,
                ),
            )

    def pop_oauth_state(self, state: str, now: datetime) -> Optional[OAuthState]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM oauth_state WHERE state = %s RETURNING *", (state,)
            ).fetchone()
        if not row or row["expires_at"] <= now:
            return None
        return OAuthState(
            state=row["state"],
            provider=AuthProvider(row["provider"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    # maintenance
    def purge_expired(self, before: datetime) -> Dict[str, int]:
        counts = {"otps": 0, "sessions": 0, "oauth_states": 0}
        with self._connect() as conn:
            for table in _OTP_TABLES.values():
                result = conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= %s OR used_at <= %s",
                    (before, before),
                )
                counts["otps"] += result.rowcount
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (before,)
            )
            counts["sessions"] = result.rowcount
            result = conn.execute(
                "DELETE FROM oauth_state WHERE expires_at <= %s", (before,)
            )
            counts["oauth_states"] = result.rowcount
        return counts

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=str(row["email"]),
            auth_provider=AuthProvider(row["auth_provider"]),
            password_hash=row.get("password_hash"),
            provider_id=row.get("provider_id"),
            email_verified=bool(row.get("email_verified")),
            display_name=row.get("display_name"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            current_refresh_token_hash=row["current_refresh_token_hash"],
            previous_refresh_token_hash=row.get("previous_refresh_token_hash"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            rotated_at=row.get("rotated_at"),
            version=int(row.get("version") or 0),
        )
