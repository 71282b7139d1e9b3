from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from filehaven.logging import get_logger
from filehaven.storage.errors import ConstraintViolation
from filehaven.storage.models import LoginLog, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        phone TEXT UNIQUE,
        provider TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
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
    CREATE TABLE IF NOT EXISTS login_log (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        ip TEXT NOT NULL,
        device TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_log_user_idx ON login_log (user_id, timestamp DESC)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed record store for identities, credentials and login activity."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            phone=row.get("phone"),
            provider=row.get("provider"),
            role=row.get("role") or "user",
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at") or row.get("created_at", datetime.utcnow()),
        )

    @staticmethod
    def _row_to_login_log(row: dict[str, Any]) -> LoginLog:
        return LoginLog(
            id=str(row["id"]),
            email=row["email"],
            user_id=row["user_id"],
            provider=row["provider"],
            ip=row["ip"],
            device=row["device"],
            timestamp=row["timestamp"],
        )

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        provider: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, phone, provider, role)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name, phone, provider, role),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "phone" if "phone" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE phone = %s", (phone,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Optional[User]:
        """Apply the given fields; ``None`` leaves a field unchanged."""
        if not _is_uuid(user_id):
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET name = COALESCE(%s, name),
                        phone = COALESCE(%s, phone),
                        role = COALESCE(%s, role),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, phone, role, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already exists", {"field": "phone"})
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        """Remove the identity together with its credential and login history."""
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            # login_log.user_id has no foreign key, so it is purged in the same transaction
            conn.execute("DELETE FROM login_log WHERE user_id = %s", (user_id,))
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
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
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # login activity
    def create_login_log(
        self,
        email: str,
        user_id: str,
        provider: str,
        *,
        ip: str = "unknown",
        device: str = "Unknown Device",
    ) -> LoginLog:
        entry = LoginLog.new(email, user_id, provider, ip=ip, device=device)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_log (id, email, user_id, provider, ip, device, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.email,
                    entry.user_id,
                    entry.provider,
                    entry.ip,
                    entry.device,
                    entry.timestamp,
                ),
            )
        return entry

    def list_login_logs(self, limit: int = 500) -> List[LoginLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_log ORDER BY timestamp DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_login_log(row) for row in rows]

    def list_login_logs_for_user(self, user_id: str) -> List[LoginLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_log WHERE user_id = %s ORDER BY timestamp DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_login_log(row) for row in rows]

    def delete_login_logs_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_log WHERE user_id = %s", (user_id,)
            )
            return result.rowcount
