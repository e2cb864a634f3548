"""Unit tests for PostgresStore against a scripted connection."""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import Guest
from sessionguard.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Answers each execute() with the next scripted result set."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.results.pop(0) if self.results else []
        if isinstance(outcome, Exception):
            raise outcome
        return FakeCursor(outcome)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def make_store(results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store.pool = FakePool(FakeConnection(results))
    return store


def user_row(email="a@example.com", **overrides):
    row = {
        "id": uuid.uuid4(),
        "email": email,
        "nickname": "Ann",
        "role": "USER",
        "status": "ACTIVE",
        "last_login_at": None,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


class TestSchema:
    def test_missing_tables_fail_fast(self):
        store = make_store([[{"table_name": "app_user"}]])

        with pytest.raises(RuntimeError, match="user_auth_provider, guest"):
            store._verify_required_schema()

    def test_complete_schema_passes(self):
        tables = [{"table_name": name} for name in ("app_user", "user_auth_provider", "guest")]
        store = make_store([tables])

        store._verify_required_schema()


class TestLinkOAuthIdentity:
    def test_already_linked_stamps_login_in_same_transaction(self):
        row = user_row()
        login_at = datetime(2026, 4, 2, 7, 0, tzinfo=timezone.utc)
        stamped = dict(row, last_login_at=login_at)
        store = make_store([[row], [stamped]])

        user = store.link_oauth_identity(
            "google", "g-1", "a@example.com", "Ann", login_at=login_at
        )

        statements = store.pool.conn.statements
        assert user.id == str(row["id"])
        assert user.last_login_at == login_at
        assert len(statements) == 2
        assert statements[1][0].startswith("UPDATE app_user SET last_login_at")
        assert statements[1][1] == (login_at, str(row["id"]))

    def test_concurrent_insert_conflict_rereads(self):
        """ON CONFLICT DO NOTHING returns no row; the winner's row is read back."""
        winner = user_row()
        store = make_store([[], [], [], [winner], [], [winner]])

        user = store.link_oauth_identity("google", "g-1", "a@example.com", "Ann")

        statements = [sql for sql, _ in store.pool.conn.statements]
        assert user.id == str(winner["id"])
        assert "FOR UPDATE" in statements[1]
        assert "ON CONFLICT (email) DO NOTHING" in statements[2]
        assert "INSERT INTO user_auth_provider" in statements[4]
        assert store.pool.conn.statements[4][1][0] == str(winner["id"])
        assert statements[5].startswith("UPDATE app_user SET last_login_at")

    def test_existing_email_is_linked_and_mapped(self):
        row = user_row(nickname="Existing")
        store = make_store([[], [row], [], [row]])

        user = store.link_oauth_identity("google", "g-2", "a@example.com", "Ann")

        statements = [sql for sql, _ in store.pool.conn.statements]
        assert user.nickname == "Existing"
        assert not any("INSERT INTO app_user" in sql for sql in statements)
        assert "INSERT INTO user_auth_provider" in statements[2]


class TestGuests:
    def test_duplicate_guest(self):
        store = make_store([errors.UniqueViolation("duplicate key")])

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_guest(Guest.new("f" * 64))
        assert excinfo.value.field == "ip_hash"

    def test_guest_lookup(self):
        seen = datetime(2026, 2, 1, tzinfo=timezone.utc)
        row = {
            "id": uuid.uuid4(),
            "ip_hash": "f" * 64,
            "status": "ACTIVE",
            "last_seen_at": seen,
            "created_at": seen,
        }
        store = make_store([[row]])

        guest = store.get_guest_by_ip_hash("f" * 64)

        assert guest.last_seen_at == seen
