from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vaultauth.logging import get_logger
from vaultauth.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
    safe_row_value,
)
from vaultauth.storage.errors import ConstraintViolation
from vaultauth.storage.models import (
    MfaEnrollment,
    MfaMethod,
    User,
    UserAuthCredential,
    UserStatus,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        status TEXT NOT NULL DEFAULT 'pending_verification',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_methods JSONB NOT NULL DEFAULT '[]'::jsonb,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa_method (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        method TEXT NOT NULL,
        secret TEXT,
        destination TEXT,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, method)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_backup_code (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        PRIMARY KEY (user_id, code_hash)
    )
    """,
)

_UPDATABLE_USER_COLUMNS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "phone",
        "status",
        "email_verified",
        "phone_verified",
        "mfa_enabled",
        "mfa_methods",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
    }
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        methods = safe_row_value(row, "mfa_methods", [])
        if isinstance(methods, str):
            methods = json.loads(methods)
        now = datetime.now(timezone.utc)
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=safe_row_value(row, "first_name", ""),
            last_name=safe_row_value(row, "last_name", ""),
            phone=safe_row_value(row, "phone"),
            status=UserStatus(safe_row_value(row, "status", "pending_verification")),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            phone_verified=bool(safe_row_value(row, "phone_verified", False)),
            mfa_enabled=bool(safe_row_value(row, "mfa_enabled", False)),
            mfa_methods=list(methods),
            failed_login_attempts=int(safe_row_value(row, "failed_login_attempts", 0)),
            locked_until=safe_row_value(row, "locked_until"),
            created_at=safe_row_value(row, "created_at", now),
            updated_at=safe_row_value(row, "updated_at", now),
            last_login_at=safe_row_value(row, "last_login_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, phone, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, first_name, last_name, phone, UserStatus(status).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments: List[str] = []
        params: List[Any] = []
        for column, value in fields.items():
            if column == "email":
                value = normalize_email(value)
            elif column == "status":
                value = UserStatus(value).value
            elif column == "mfa_methods":
                value = json.dumps(list(value))
            assignments.append(f"{column} = %s")
            params.append(value)
        params.append(user_id)
        query = f"UPDATE app_user SET {', '.join(assignments)}, updated_at = now() WHERE id = %s RETURNING *"
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    # passwords
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserAuthCredential(
            user_id=str(row["user_id"]),
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            created_at=safe_row_value(row, "created_at", datetime.now(timezone.utc)),
            last_updated_at=safe_row_value(row, "last_updated_at"),
        )

    def record_failed_login(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def reset_failed_logins(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_attempts = 0, locked_until = NULL WHERE id = %s",
                (user_id,),
            )

    # mfa
    def save_mfa_enrollment(self, enrollment: MfaEnrollment) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_mfa_method (user_id, method, secret, destination, enabled, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, method) DO UPDATE
                SET secret = EXCLUDED.secret,
                    destination = EXCLUDED.destination,
                    enabled = EXCLUDED.enabled
                """,
                (
                    enrollment.user_id,
                    MfaMethod(enrollment.method).value,
                    encrypt_secret(self._mfa_cipher, enrollment.secret),
                    enrollment.destination,
                    enrollment.enabled,
                    enrollment.created_at,
                ),
            )

    def get_mfa_enrollments(self, user_id: str) -> List[MfaEnrollment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_mfa_method WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            MfaEnrollment(
                user_id=str(row["user_id"]),
                method=MfaMethod(row["method"]),
                secret=decrypt_secret(self._mfa_cipher, safe_row_value(row, "secret")),
                destination=safe_row_value(row, "destination"),
                enabled=bool(safe_row_value(row, "enabled", False)),
                created_at=safe_row_value(row, "created_at", datetime.now(timezone.utc)),
            )
            for row in rows
        ]

    def delete_mfa_enrollment(self, user_id: str, method: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_mfa_method WHERE user_id = %s AND method = %s",
                (user_id, MfaMethod(method).value),
            )

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_backup_code WHERE user_id = %s", (user_id,))
            for code_hash in code_hashes:
                conn.execute(
                    "INSERT INTO user_backup_code (user_id, code_hash) VALUES (%s, %s)",
                    (user_id, code_hash),
                )

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM user_backup_code WHERE user_id = %s AND code_hash = %s RETURNING code_hash",
                (user_id, code_hash),
            ).fetchone()
        return row is not None

    def backup_codes_remaining(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS remaining FROM user_backup_code WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0
