"""Shared fixtures: a throwaway SQLite database and a Flask test client."""
import pytest

from flowsync import db
from flowsync.app import app as flask_app
from flowsync.db import get_conn, init_db, utc_now


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "flowsync-test.db")
    monkeypatch.setattr(db, "_db_ready", False)
    init_db()
    yield tmp_path / "flowsync-test.db"


def create_user(username: str, is_admin: bool = False) -> int:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO users (username, is_admin, created_at) VALUES (?, ?, ?)",
            (username, 1 if is_admin else 0, utc_now()),
        )
        row = conn.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
    return row["id"]


@pytest.fixture
def user_id():
    return create_user("ana")


@pytest.fixture
def other_user_id():
    return create_user("bo")


@pytest.fixture
def admin_id():
    return create_user("root", is_admin=True)


@pytest.fixture
def client():
    flask_app.config.update(TESTING=True)
    with flask_app.test_client() as test_client:
        yield test_client


@pytest.fixture
def login(client):
    def _login(uid):
        with client.session_transaction() as sess:
            sess["user_id"] = uid
        return client

    return _login


@pytest.fixture
def count_rows():
    def _count(table: str, where: str = "1 = 1", params: tuple = ()) -> int:
        with get_conn() as conn:
            return conn.execute(
                f"SELECT COUNT(*) AS count FROM {table} WHERE {where}", params
            ).fetchone()["count"]

    return _count
