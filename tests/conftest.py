"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from lynx.bio import app, get_db  # noqa: WPS433 (importing from a module)

STRONG = "Sup3r$ecret"

_ip_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Every test gets its own empty database file and cheap bcrypt rounds.
    """
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "test.db"))
    monkeypatch.setitem(app.config, "BCRYPT_ROUNDS", 4)
    monkeypatch.setitem(app.config, "DEMO_MODE", False)
    for key in ("RESET_TOKEN", "DEMO_ADMIN_PASSWORD", "THEME_FULL_CONFIG_JSON"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client with a REMOTE_ADDR unique to this test, so the login
    rate-limit (keyed by IP) never bleeds between tests.
    """
    n = next(_ip_counter)
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = f"10.{n >> 16 & 255}.{n >> 8 & 255}.{n & 255}"
        yield c


@pytest.fixture
def db(client):
    return get_db()


@pytest.fixture
def token(client) -> str:
    """Run first-time setup and hand back the bearer token it issues."""
    rv = client.post("/api/auth/setup", json={"password": STRONG})
    assert rv.status_code == 200
    return rv.get_json()["token"]


@pytest.fixture
def auth(token) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
