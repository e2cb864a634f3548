from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import Guest, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        nickname VARCHAR(100) NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guest (
        id UUID PRIMARY KEY,
        ip_hash CHAR(64) NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        last_seen_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = ("app_user", "user_auth_provider", "guest")


def _row_to_user(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        nickname=row["nickname"],
        role=row.get("role") or "USER",
        status=row.get("status") or "ACTIVE",
        last_login_at=row.get("last_login_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_guest(row: dict[str, Any]) -> Guest:
    return Guest(
        id=str(row["id"]),
        ip_hash=row["ip_hash"],
        status=row.get("status") or "ACTIVE",
        last_seen_at=row["last_seen_at"],
        created_at=row.get("created_at") or row["last_seen_at"],
    )


class PostgresStore:
    """Postgres-backed identity store for users, provider links and guests."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=10.0,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when identity tables are missing."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [table for table in _REQUIRED_TABLES if table not in present]
        if missing:
            self.logger.error("postgres_schema_missing_tables", tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def link_oauth_identity(
        self,
        provider: str,
        provider_user_id: str,
        email: str,
        nickname: str,
        *,
        login_at: Optional[datetime] = None,
    ) -> User:
        """Find-or-create the user for an external identity, link it and stamp the login.

        Everything runs in one transaction. Concurrent first logins for the
        same email converge on one row through ``ON CONFLICT (email) DO
        NOTHING`` followed by a re-read.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id "
                "WHERE p.provider = %s AND p.provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE email = %s FOR UPDATE", (email,)
                ).fetchone()
                if not row:
                    candidate = User.new(email, nickname)
                    row = conn.execute(
                        """
                        INSERT INTO app_user (id, email, nickname, role, status, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (email) DO NOTHING
                        RETURNING *
                        """,
                        (
                            candidate.id,
                            candidate.email,
                            candidate.nickname,
                            candidate.role,
                            candidate.status,
                            candidate.created_at,
                        ),
                    ).fetchone()
                    if not row:
                        row = conn.execute(
                            "SELECT * FROM app_user WHERE email = %s", (email,)
                        ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_user_id, email)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (provider, provider_user_id) DO NOTHING
                    """,
                    (str(row["id"]), provider, provider_user_id, email),
                )
            stamped = conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s RETURNING *",
                (login_at or utcnow(), str(row["id"])),
            ).fetchone()
        return _row_to_user(stamped or row)

    # guests
    def get_guest_by_ip_hash(self, ip_hash: str) -> Optional[Guest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM guest WHERE ip_hash = %s", (ip_hash,)
            ).fetchone()
        return _row_to_guest(row) if row else None

    def create_guest(self, guest: Guest) -> Guest:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO guest (id, ip_hash, status, last_seen_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (guest.id, guest.ip_hash, guest.status, guest.last_seen_at, guest.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("guest already exists", {"field": "ip_hash"})
        return guest

    def touch_guest_last_seen(self, guest_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE guest SET last_seen_at = %s WHERE id = %s",
                (at or utcnow(), guest_id),
            )
