"""
tests/test_auth.py
"""
from __future__ import annotations

import time

from conftest import STRONG
from lynx.bio import app, serializer


# ───────────────────────── helpers ────────────────────────────────────
def _login(client, password: str):
    return client.post("/api/auth/login", json={"password": password})


def _verify(client, token: str | None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post("/api/auth/verify", headers=headers)


# ───────────────────────── first-time setup ───────────────────────────
def test_setup_status_flips_after_setup(client):
    assert client.get("/api/auth/setup-status").get_json() == {"isFirstTimeSetup": True}
    rv = client.post("/api/auth/setup", json={"password": STRONG})
    assert rv.status_code == 200
    body = rv.get_json()
    assert body["success"] is True
    assert body["token"]
    assert client.get("/api/auth/setup-status").get_json() == {"isFirstTimeSetup": False}


def test_setup_requires_password(client):
    rv = client.post("/api/auth/setup", json={})
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Password is required"


def test_setup_rejects_weak_password(client):
    rv = client.post("/api/auth/setup", json={"password": "password"})
    assert rv.status_code == 400
    assert "at least 8 characters" in rv.get_json()["error"]
    assert client.get("/api/auth/setup-status").get_json()["isFirstTimeSetup"] is True


def test_setup_only_once(client, token):
    rv = client.post("/api/auth/setup", json={"password": "An0ther!pass"})
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Admin account already exists"


def test_admin_is_always_called_admin(db, token):
    rows = db.execute("SELECT username, salt FROM admin_users").fetchall()
    assert len(rows) == 1
    assert rows[0]["username"] == "admin"
    assert rows[0]["salt"].startswith("$2")


# ───────────────────────── login + verify ─────────────────────────────
def test_successful_login(client, token):
    rv = _login(client, STRONG)
    assert rv.status_code == 200
    body = rv.get_json()
    assert body["success"] is True
    assert body["user"] == {"username": "admin"}
    assert _verify(client, body["token"]).get_json() == {
        "valid": True,
        "user": {"username": "admin"},
    }


def test_wrong_password(client, token):
    rv = _login(client, "Wr0ng!password")
    assert rv.status_code == 401
    assert rv.get_json()["error"] == "Invalid password"


def test_login_before_setup_fails(client):
    assert _login(client, STRONG).status_code == 401


def test_login_requires_password(client):
    assert client.post("/api/auth/login", json={}).status_code == 400
    assert client.post("/api/auth/login", data="not json").status_code == 400


def test_verify_without_token(client, token):
    rv = _verify(client, None)
    assert rv.status_code == 401
    assert rv.get_json()["error"] == "Access token required"


def test_token_forged(client, token):
    head, sig = token.rsplit(".", 1)
    bad = f"{head}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"  # break the sig
    rv = _verify(client, bad)
    assert rv.status_code == 403
    assert rv.get_json()["error"] == "Invalid or expired token"


def test_token_for_unknown_user(client, token):
    forged = serializer.dumps({"username": "mallory", "pwd": "0" * 16})
    rv = _verify(client, forged)
    assert rv.status_code == 403
    assert rv.get_json()["error"] == "User not found"


def test_token_expired(client, token, monkeypatch):
    later = time.time() + app.config["TOKEN_MAX_AGE"] + 60
    monkeypatch.setattr(time, "time", lambda: later)
    assert _verify(client, token).status_code == 403


def test_login_rate_limit(client, token):
    # 5 bogus attempts are allowed
    for _ in range(5):
        assert _login(client, "Wr0ng!password").status_code == 401

    # 6th → 429 Too Many Requests
    rv = _login(client, STRONG)
    assert rv.status_code == 429
    assert "Retry-After" in rv.headers


# ───────────────────────── change password ────────────────────────────
def _change(client, token, current, new):
    return client.post(
        "/api/auth/change-password",
        json={"currentPassword": current, "newPassword": new},
        headers={"Authorization": f"Bearer {token}"},
    )


def test_change_password_rotates_tokens(client, token):
    rv = _change(client, token, STRONG, "N3w&improved")
    assert rv.status_code == 200
    new_token = rv.get_json()["token"]

    assert _verify(client, token).status_code == 403  # old token is dead
    assert _verify(client, new_token).status_code == 200
    assert _login(client, STRONG).status_code == 401
    assert _login(client, "N3w&improved").status_code == 200


def test_change_password_wrong_current(client, token):
    rv = _change(client, token, "Wr0ng!password", "N3w&improved")
    assert rv.status_code == 401
    assert rv.get_json()["success"] is False


def test_change_password_weak_new(client, token):
    rv = _change(client, token, STRONG, "short")
    assert rv.status_code == 400
    assert _login(client, STRONG).status_code == 200


def test_change_password_needs_token(client, token):
    rv = client.post(
        "/api/auth/change-password",
        json={"currentPassword": STRONG, "newPassword": "N3w&improved"},
    )
    assert rv.status_code == 401


def test_change_password_disabled_in_demo(client, token, monkeypatch):
    monkeypatch.setitem(app.config, "DEMO_MODE", True)
    rv = _change(client, token, STRONG, "N3w&improved")
    assert rv.status_code == 403
    assert "disabled in the demo" in rv.get_json()["error"]


# ───────────────────────── utility endpoints ──────────────────────────
def test_generate_password_endpoint(client):
    pw = client.get("/api/generate-password").get_json()["password"]
    assert len(pw) == 16
    assert client.post("/api/validate-password", json={"password": pw}).get_json() == {
        "isStrong": True
    }


def test_validate_password_endpoint(client):
    rv = client.post("/api/validate-password", json={"password": "abc"})
    assert rv.get_json() == {"isStrong": False}
    rv = client.post("/api/validate-password", json={})
    assert rv.get_json() == {"isStrong": False}
