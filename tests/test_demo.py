"""
tests/test_demo.py
"""
from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from pathlib import Path

import lynx.bio as bio

ROOT = Path(__file__).resolve().parent.parent


def _wait_for(cond, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.05)
    return False


def test_demo_reset_seeds_demo_admin(client, auth, db):
    client.put("/api/links", json=[{"id": "a", "title": "A"}], headers=auth)

    assert bio.reset_demo_data(db) is True

    assert client.get("/api/links").get_json() == []
    assert client.get("/api/profile").get_json()["name"] == "Your Name"
    rv = client.post("/api/auth/login", json={"password": "demo123"})
    assert rv.status_code == 200
    # the pre-reset token belonged to a different password hash
    assert client.post("/api/auth/verify", headers=auth).status_code == 403


def test_demo_password_from_env(client, db, monkeypatch):
    monkeypatch.setenv("DEMO_ADMIN_PASSWORD", "Demo!2024x")
    bio.reset_demo_data(db)
    assert client.post("/api/auth/login", json={"password": "Demo!2024x"}).status_code == 200


def test_demo_reset_restores_deployment_theme(client, auth, db, monkeypatch):
    client.put("/api/theme", json={"primary": "#123456"}, headers=auth)
    monkeypatch.setenv("THEME_PRIMARY_COLOR", "#ff0066")
    monkeypatch.setenv("THEME_BUTTON_STYLE", "pill")

    bio.reset_demo_data(db)

    row = db.execute("SELECT * FROM theme_config WHERE id=1").fetchone()
    assert row["primary_color"] == "#ff0066"
    assert row["button_style"] == "pill"
    theme = client.get("/api/theme").get_json()
    assert theme["primaryColor"] == "#ff0066"
    assert theme["buttonStyle"] == "pill"


def test_demo_reset_uses_full_theme_json(client, db, monkeypatch):
    monkeypatch.setenv("THEME_FULL_CONFIG_JSON", json.dumps({"primary": "#00ff00"}))
    bio.reset_demo_data(db)
    assert client.get("/api/theme").get_json() == {"primary": "#00ff00"}


def test_demo_reset_ignores_broken_theme_json(client, db, monkeypatch):
    monkeypatch.setenv("THEME_FULL_CONFIG_JSON", "{nope")
    bio.reset_demo_data(db)
    assert client.get("/api/theme").get_json()["primaryColor"] == "#007bff"


def test_demo_reset_keeps_custom_theme_rows_table(client, db):
    db.execute("INSERT INTO theme_config (primary_color) VALUES ('#abcdef')")
    db.commit()
    bio.reset_demo_data(db)
    # theme_config is never dropped, only row 1 is rewritten
    assert db.execute("SELECT COUNT(*) FROM theme_config").fetchone()[0] == 2


def test_overlapping_cycle_is_skipped(client, token, db):
    assert bio._demo_lock.acquire(blocking=False)
    try:
        assert bio.reset_demo_data(db) is False
    finally:
        bio._demo_lock.release()
    # nothing happened: the real admin is still there
    assert client.post("/api/auth/login", json={"password": "Sup3r$ecret"}).status_code == 200


def test_failed_demo_reset_rolls_back(client, auth, db, monkeypatch):
    client.put("/api/links", json=[{"id": "a", "title": "A"}], headers=auth)

    def _boom():
        raise RuntimeError("no theme for you")

    monkeypatch.setattr(bio, "demo_theme", _boom)
    try:
        bio.reset_demo_data(db)
    except RuntimeError:
        pass
    else:  # pragma: no cover
        raise AssertionError("expected the reset to fail")

    assert [ln["id"] for ln in client.get("/api/links").get_json()] == ["a"]
    assert not bio._demo_lock.locked()


def test_background_loop_runs_first_cycle_immediately(client):
    assert client.get("/api/auth/setup-status").get_json()["isFirstTimeSetup"] is True

    stop = bio.start_demo_reset(interval=3600)
    try:
        assert _wait_for(
            lambda: client.get("/api/auth/setup-status").get_json()["isFirstTimeSetup"]
            is False
        )
    finally:
        stop.set()


def test_full_theme_json_must_be_an_object(client, db, monkeypatch):
    for raw in ("[]", "null", '"#00ff00"'):
        monkeypatch.setenv("THEME_FULL_CONFIG_JSON", raw)
        bio.reset_demo_data(db)
        assert client.get("/api/theme").get_json()["primaryColor"] == "#007bff"


def test_zero_interval_does_not_spin(monkeypatch):
    calls = []
    monkeypatch.setattr(bio, "_demo_cycle", lambda: calls.append(time.monotonic()))

    stop = bio.start_demo_reset(interval=0)
    try:
        assert _wait_for(lambda: len(calls) == 1)
        time.sleep(0.3)
        assert len(calls) == 1
    finally:
        stop.set()


def test_loop_starts_on_first_request_only_once(client, monkeypatch):
    started = []
    monkeypatch.setattr(bio, "_demo_stop", None)
    monkeypatch.setattr(bio, "start_demo_reset", lambda: started.append(1) or "stop")
    monkeypatch.setitem(bio.app.config, "DEMO_MODE", True)

    client.get("/api/links")
    client.get("/")
    assert started == [1]


def test_importing_in_demo_mode_keeps_data(tmp_path):
    path = tmp_path / "live.db"
    db = bio.connect(str(path))
    bio.init_db(db)
    db.execute("INSERT INTO links (id, title) VALUES ('keep', 'Keep me')")
    db.commit()
    db.close()

    env = {
        **os.environ,
        "LYNX_MODE": "demo",
        "LYNX_DB": str(path),
        "LYNX_SECRET_KEY": "not-so-secret",
        "PYTHONPATH": str(ROOT),
    }
    subprocess.run(
        [sys.executable, "-c", "import lynx.bio, time; time.sleep(1)"],
        env=env,
        cwd=ROOT,
        check=True,
        timeout=30,
    )

    db = bio.connect(str(path))
    assert db.execute("SELECT COUNT(*) FROM links").fetchone()[0] == 1
    db.close()
