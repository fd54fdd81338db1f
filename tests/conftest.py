"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from inkpress.blog import app, init_db


@pytest.fixture(scope="session")
def _tmp_data_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp directory (DB + uploads) for the whole test session."""
    return tmp_path_factory.mktemp("data")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_data_dir: Path) -> None:
    """
    Configure the Flask app *once* before the first test runs.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_data_dir / "test.sqlite3"),
        UPLOAD_DIR=str(_tmp_data_dir / "uploads"),
        TOKEN_SECRET="",
        BASE_URL="",
        ADMIN_PASSWORD="admin123",
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin_headers(client) -> dict[str, str]:
    """Bearer header for the seeded admin account."""
    rv = client.post(
        "/api/auth/login", json={"username": "admin", "password": "admin123"}
    )
    assert rv.status_code == 200, rv.get_json()
    return {"Authorization": f"Bearer {rv.get_json()['token']}"}


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkpress.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from inkpress import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
