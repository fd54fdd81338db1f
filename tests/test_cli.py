"""
tests/test_cli.py
"""
from __future__ import annotations

import uuid

from inkpress.blog import app


# ───────────────────────── helpers ────────────────────────────────────
def _run(*args):
    return app.test_cli_runner().invoke(args=list(args))


def _login(client, username, password):
    return client.post(
        "/api/auth/login", json={"username": username, "password": password}
    )


# ───────────────────────── tests ──────────────────────────────────────
def test_init_is_idempotent(client):
    result = _run("init")
    assert result.exit_code == 0, result.output
    assert "Database ready" in result.output
    assert _run("init").exit_code == 0


def test_create_admin_and_reset_password(client):
    name = f"cli{uuid.uuid4().hex[:6]}"
    result = _run(
        "create-admin",
        "--username", name,
        "--email", f"{name}@example.com",
        "--password", "first-pass",
    )
    assert result.exit_code == 0, result.output
    assert _login(client, name, "first-pass").status_code == 200

    result = _run("reset-password", "--username", name, "--password", "second-pass")
    assert result.exit_code == 0, result.output
    assert _login(client, name, "first-pass").status_code == 401
    assert _login(client, name, "second-pass").status_code == 200


def test_create_admin_rejects_duplicates(client):
    result = _run(
        "create-admin",
        "--username", "admin",
        "--email", "someone-else@example.com",
        "--password", "whatever1",
    )
    assert result.exit_code != 0
    assert "already exists" in result.output


def test_reset_password_unknown_user(client):
    result = _run("reset-password", "--username", "ghost-user", "--password", "ghosted1")
    assert result.exit_code != 0
    assert "No user named" in result.output


def test_reset_password_too_short(client):
    result = _run("reset-password", "--username", "admin", "--password", "abc")
    assert result.exit_code != 0
