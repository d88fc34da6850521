"""
Pytest configuration and shared fixtures for the Club Gym API tests.

The services talk to MySQL through ``pymysql.connect``. Tests swap that for a
small adapter over a file-backed SQLite database built from
``sqlite_schema.sql`` so every test starts from an empty schema.
"""
import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

# Must be set before the app modules read their configuration
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import pymysql
import pytest
from fastapi.testclient import TestClient

from app.db import get_db_connection
from app.middleware import create_access_token
from app.services.subscription_sync import processed_events
from app.utils.helpers import hash_password, utcnow

SCHEMA_PATH = Path(__file__).parent / "sqlite_schema.sql"

sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))
sqlite3.register_converter("DATETIME", lambda raw: datetime.fromisoformat(raw.decode()))

# One bcrypt hash for every test user keeps the suite fast
TEST_PASSWORD = "Password123!"
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


class SQLiteCursor:
    """The slice of the PyMySQL DictCursor API the app uses."""

    def __init__(self, conn):
        self._cursor = conn.cursor()

    def execute(self, sql, params=None):
        try:
            self._cursor.execute(sql.replace("%s", "?"), tuple(params or ()))
        except sqlite3.IntegrityError as e:
            # Same exception class PyMySQL raises for a duplicate key
            raise pymysql.err.IntegrityError(1062, str(e))
        return self._cursor.rowcount

    def _as_dict(self, row):
        columns = [column[0] for column in self._cursor.description]
        return dict(zip(columns, row))

    def fetchone(self):
        row = self._cursor.fetchone()
        return None if row is None else self._as_dict(row)

    def fetchall(self):
        return [self._as_dict(row) for row in self._cursor.fetchall()]

    @property
    def rowcount(self):
        return self._cursor.rowcount

    @property
    def lastrowid(self):
        return self._cursor.lastrowid

    def close(self):
        self._cursor.close()


class SQLiteConnection:
    def __init__(self, path):
        self._conn = sqlite3.connect(
            path, detect_types=sqlite3.PARSE_DECLTYPES, timeout=2, check_same_thread=False,
        )
        self._conn.execute("PRAGMA foreign_keys = ON")

    def cursor(self, cursorclass=None):
        return SQLiteCursor(self._conn)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Fresh SQLite database per test, served through pymysql.connect."""
    path = str(tmp_path / "club_gym_test.db")
    conn = sqlite3.connect(path)
    conn.executescript(SCHEMA_PATH.read_text())
    conn.close()

    monkeypatch.setattr(pymysql, "connect", lambda **kwargs: SQLiteConnection(path))
    processed_events.clear()
    yield path
    processed_events.clear()


@pytest.fixture
def conn(database):
    connection = get_db_connection()
    yield connection
    connection.close()


@pytest.fixture
def cursor(conn):
    cur = conn.cursor(dictionary=True)
    yield cur
    cur.close()


@pytest.fixture
def client():
    from main import app

    return TestClient(app)


class Factory:
    """Seeds rows and commits them so request handlers can see them."""

    def __init__(self, conn, cursor):
        self.conn = conn
        self.cursor = cursor
        self._counter = 0

    def _next(self):
        self._counter += 1
        return self._counter

    def user(self, role="member", name=None, email=None, stripe_customer_id=None, is_active=1):
        n = self._next()
        name = name or f"{role.title()} {n}"
        email = email or f"{role}{n}@example.com"
        self.cursor.execute(
            """
            INSERT INTO users
                (name, email, password_hash, role, stripe_customer_id, token_version, is_active, created_at)
            VALUES (%s, %s, %s, %s, %s, 1, %s, %s)
            """,
            (name, email, TEST_PASSWORD_HASH, role, stripe_customer_id, is_active, utcnow()),
        )
        self.conn.commit()
        return {"id": self.cursor.lastrowid, "name": name, "email": email, "role": role}

    def member(self, subscribed=True, **kwargs):
        member = self.user("member", **kwargs)
        if subscribed:
            self.subscription(member["id"])
        return member

    def trainer(self, **kwargs):
        return self.user("trainer", **kwargs)

    def admin(self, **kwargs):
        return self.user("admin", **kwargs)

    def session(self, trainer_id, start_time=None, capacity=10, name="Morning Yoga", duration_minutes=60):
        start_time = start_time or (utcnow() + timedelta(days=1))
        now = utcnow()
        self.cursor.execute(
            """
            INSERT INTO class_sessions
                (trainer_id, name, start_time, end_time, capacity, location, status,
                 attendee_count, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, 'Studio A', 'scheduled', 0, %s, %s)
            """,
            (trainer_id, name, start_time, start_time + timedelta(minutes=duration_minutes), capacity, now, now),
        )
        self.conn.commit()
        self.cursor.execute("SELECT * FROM class_sessions WHERE id = %s", (self.cursor.lastrowid,))
        return self.cursor.fetchone()

    def plan(self, name="Monthly Unlimited", price=4900):
        self.cursor.execute(
            "INSERT INTO subscription_plans (name, price, currency, billing_interval, created_at) "
            "VALUES (%s, %s, 'usd', 'month', %s)",
            (name, price, utcnow()),
        )
        self.conn.commit()
        return self.cursor.lastrowid

    def subscription(self, member_id, status="active", stripe_subscription_id=None, plan_id=None, period_days=30):
        now = utcnow()
        self.cursor.execute(
            """
            INSERT INTO subscriptions
                (member_id, plan_id, stripe_subscription_id, status, current_period_start,
                 current_period_end, cancel_at_period_end, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, 0, %s, %s)
            """,
            (member_id, plan_id, stripe_subscription_id, status, now, now + timedelta(days=period_days), now, now),
        )
        self.conn.commit()
        return self.cursor.lastrowid

    def payment(self, member_id, amount=4900, status="paid", payment_intent_id=None, invoice_id=None, created_at=None):
        created_at = created_at or utcnow()
        self.cursor.execute(
            """
            INSERT INTO payments
                (member_id, amount, currency, status, stripe_payment_intent_id, stripe_invoice_id,
                 reconciled, created_at, updated_at)
            VALUES (%s, %s, 'usd', %s, %s, %s, 0, %s, %s)
            """,
            (member_id, amount, status, payment_intent_id, invoice_id, created_at, created_at),
        )
        self.conn.commit()
        return self.cursor.lastrowid

    def fetch(self, sql, params=()):
        self.cursor.execute(sql, params)
        return self.cursor.fetchall()

    def fetch_one(self, sql, params=()):
        self.cursor.execute(sql, params)
        return self.cursor.fetchone()


@pytest.fixture
def factory(conn, cursor):
    return Factory(conn, cursor)


def auth_headers(user: dict) -> dict:
    token = create_access_token({
        "user_id": user["id"],
        "email": user["email"],
        "role_name": user["role"],
        "token_version": 1,
    })
    return {"Authorization": f"Bearer {token}"}
