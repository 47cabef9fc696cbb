#!/usr/bin/env python3
"""
A single-file link-in-bio page.

One owner edits a profile, an ordered list of cards and a theme through a
small JSON API; everybody else gets the rendered page at ``/``.
"""

import hashlib
import json
import os
import re
import secrets
import sqlite3
import string
import threading
from collections import defaultdict, deque
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import bcrypt
import click
from flask import Flask, abort, g, render_template_string, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from markupsafe import Markup
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_setting(key: str, default: str | None = None) -> str | None:
    """Process env first, then the .env file next to this module."""
    val = os.environ.get(key) or _read_env_file().get(key)
    return val.strip() if val else default


def _load_secret_key() -> str:
    key = env_setting("LYNX_SECRET_KEY")
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


DB_FILE = Path(env_setting("LYNX_DB") or ROOT / "lynx.db")
SECRET_KEY = _load_secret_key()
DEMO_MODE = env_setting("LYNX_MODE", "") == "demo"

ADMIN_USERNAME = "admin"
BCRYPT_ROUNDS = 12
TOKEN_MAX_AGE = 12 * 60 * 60  # 12 h
UPLOAD_MAX_BYTES = 10 * 1024 * 1024  # base64 avatars travel inside the JSON body
DEMO_MIN_INTERVAL = 1  # seconds; 0 would spin the reset loop
DEMO_RESET_INTERVAL = max(
    int(env_setting("DEMO_RESET_INTERVAL", "900")), DEMO_MIN_INTERVAL
)

PASSWORD_SPECIALS = '!@#$%^&*(),.?":{}|<>'
GENERATED_PASSWORD_LEN = 16

LINK_TYPES = {"link", "text"}
LINK_SIZES = {"small", "medium", "large"}
ICON_TYPES = {"emoji", "image", "svg"}

DEFAULT_PROFILE = {
    "name": "Alex Johnson",
    "bio": (
        "Digital creator & entrepreneur sharing my favorite tools and resources. "
        "Follow along for the latest in tech, design, and productivity."
    ),
    "avatar": "/src/assets/profile-avatar.jpg",
    "social_links": {},
    "show_avatar": 1,
}
RESET_PROFILE = ("Your Name", "A short bio about yourself", "", "{}")

THEME_DEFAULTS = {
    "primary": "#007bff",
    "background": "#ffffff",
    "foreground": "#000000",
}
BUTTON_STYLE_DEFAULT = "rounded"
FONT_DEFAULT = "Inter, system-ui, sans-serif"

try:
    __version__ = version("lynx")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    BCRYPT_ROUNDS=BCRYPT_ROUNDS,
    TOKEN_MAX_AGE=TOKEN_MAX_AGE,
    DEMO_MODE=DEMO_MODE,
    DEMO_RESET_INTERVAL=DEMO_RESET_INTERVAL,
    CORS_ORIGIN=env_setting("FRONTEND_URL", "*"),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

serializer = URLSafeTimedSerializer(SECRET_KEY, salt="admin-auth")


###############################################################################
# Database helpers
###############################################################################
SCHEMA = {
    "admin_users": """
        CREATE TABLE IF NOT EXISTS admin_users (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            username      TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            salt          TEXT NOT NULL,
            created_at    DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "profile_data": """
        CREATE TABLE IF NOT EXISTS profile_data (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            name         TEXT NOT NULL,
            bio          TEXT,
            avatar       TEXT,
            social_links TEXT,
            show_avatar  BOOLEAN DEFAULT 1,
            updated_at   DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "links": """
        CREATE TABLE IF NOT EXISTS links (
            id               TEXT PRIMARY KEY,
            title            TEXT NOT NULL,
            description      TEXT,
            url              TEXT,
            icon             TEXT,
            type             TEXT DEFAULT 'link',   -- link | text
            text_items       TEXT,                  -- JSON [{text, url?}]
            sort_order       INTEGER DEFAULT 0,
            is_active        BOOLEAN DEFAULT 1,
            created_at       DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at       DATETIME DEFAULT CURRENT_TIMESTAMP,
            background_color TEXT,
            text_color       TEXT,
            size             TEXT,
            icon_type        TEXT,
            content          TEXT
        )
    """,
    "theme_config": """
        CREATE TABLE IF NOT EXISTS theme_config (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            primary_color    TEXT DEFAULT '#007bff',
            background_color TEXT DEFAULT '#ffffff',
            text_color       TEXT DEFAULT '#000000',
            button_style     TEXT DEFAULT 'rounded',
            full_config      TEXT,
            updated_at       DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

# Columns added after the first release; older files get them on start-up.
LATE_COLUMNS = {
    "links": {
        "background_color": "TEXT",
        "text_color": "TEXT",
        "size": "TEXT",
        "icon_type": "TEXT",
        "content": "TEXT",
    },
    "profile_data": {"show_avatar": "BOOLEAN DEFAULT 1"},
    "theme_config": {"full_config": "TEXT"},
}

_SCHEMA_READY: set[str] = set()


def connect(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path)
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        path = app.config["DATABASE"]
        g.db = connect(path)
        if path not in _SCHEMA_READY:
            init_db(g.db)
            _SCHEMA_READY.add(path)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def create_tables(db, tables=SCHEMA) -> None:
    """Run the CREATE statements one by one so they can share a transaction."""
    for name in tables:
        db.execute(SCHEMA[name])


def init_db(db=None) -> None:
    db = db or get_db()
    create_tables(db)
    ensure_columns(db)
    if not db.execute("SELECT 1 FROM theme_config LIMIT 1").fetchone():
        db.execute(
            "INSERT INTO theme_config (primary_color, background_color, text_color, button_style) "
            "VALUES (?,?,?,?)",
            (
                THEME_DEFAULTS["primary"],
                THEME_DEFAULTS["background"],
                THEME_DEFAULTS["foreground"],
                BUTTON_STYLE_DEFAULT,
            ),
        )
    db.commit()


def ensure_columns(db) -> None:
    """
    Add the columns listed in LATE_COLUMNS if an older DB lacks them.
    """
    for table, cols in LATE_COLUMNS.items():
        have = {row["name"] for row in db.execute(f"PRAGMA table_info({table})")}
        for col, decl in cols.items():
            if col not in have:
                db.execute(f"ALTER TABLE {table} ADD COLUMN {col} {decl}")


def user_tables(db) -> list[str]:
    rows = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' "
        "AND name NOT LIKE 'sqlite_%' AND name != 'migrations'"
    )
    return [r["name"] for r in rows]


def _has_table(db, name: str) -> bool:
    return bool(
        db.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
        ).fetchone()
    )


###############################################################################
# Authentication
###############################################################################
class AuthError(ValueError):
    """Raised when a credential operation is refused."""


def is_password_strong(password) -> bool:
    if not isinstance(password, str):
        return False
    return (
        len(password) >= 8
        and re.search(r"[A-Z]", password) is not None
        and re.search(r"[a-z]", password) is not None
        and re.search(r"\d", password) is not None
        and any(c in PASSWORD_SPECIALS for c in password)
    )


def generate_secure_password(length: int = GENERATED_PASSWORD_LEN) -> str:
    """
    Random password that always passes ``is_password_strong``:
    one character from every class, the rest from the union, then shuffled.
    """
    classes = (
        string.ascii_uppercase,
        string.ascii_lowercase,
        string.digits,
        PASSWORD_SPECIALS,
    )
    chars = [secrets.choice(c) for c in classes]
    pool = "".join(classes)
    chars += [secrets.choice(pool) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def hash_password(password: str) -> tuple[str, str]:
    """Return ``(hash, salt)``; the salt is kept in its own column as well."""
    salt = bcrypt.gensalt(rounds=app.config["BCRYPT_ROUNDS"])
    return bcrypt.hashpw(password.encode(), salt).decode(), salt.decode()


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False  # malformed hash in the DB


def _fingerprint(password_hash: str) -> str:
    return hashlib.sha256(password_hash.encode()).hexdigest()[:16]


def admin_row(db):
    return db.execute(
        "SELECT id, username, password_hash, salt FROM admin_users WHERE username=?",
        (ADMIN_USERNAME,),
    ).fetchone()


def is_first_time_setup(db) -> bool:
    return db.execute("SELECT COUNT(*) FROM admin_users").fetchone()[0] == 0


def setup_initial_credentials(password: str, *, db) -> None:
    if not is_first_time_setup(db):
        raise AuthError("Admin account already exists")
    if not is_password_strong(password):
        raise AuthError(
            "Password must be at least 8 characters with uppercase, lowercase, "
            "number, and special character"
        )
    pw_hash, salt = hash_password(password)
    db.execute(
        "INSERT INTO admin_users (username, password_hash, salt) VALUES (?,?,?)",
        (ADMIN_USERNAME, pw_hash, salt),
    )
    db.commit()
    app.logger.info("Admin account created")


def set_admin_password(password: str, *, db) -> None:
    """Create the admin row or replace its hash (CLI + change-password)."""
    pw_hash, salt = hash_password(password)
    if admin_row(db):
        db.execute(
            "UPDATE admin_users SET password_hash=?, salt=? WHERE username=?",
            (pw_hash, salt, ADMIN_USERNAME),
        )
    else:
        db.execute(
            "INSERT INTO admin_users (username, password_hash, salt) VALUES (?,?,?)",
            (ADMIN_USERNAME, pw_hash, salt),
        )
    db.commit()


def authenticate_user(password: str, *, db) -> bool:
    row = admin_row(db)
    if not row:
        return False
    return check_password(password, row["password_hash"])


def generate_token(*, db) -> str:
    """
    Signed, timestamped bearer token.  The payload pins the current
    password hash, so changing the password (or wiping the admin) kills
    every token issued before.
    """
    row = admin_row(db)
    if not row:
        raise AuthError("Admin account does not exist")
    return serializer.dumps(
        {"username": row["username"], "pwd": _fingerprint(row["password_hash"])}
    )


def verify_token(token: str) -> dict | None:
    try:
        claims = serializer.loads(token, max_age=app.config["TOKEN_MAX_AGE"])
    except SignatureExpired:
        return None  # too old ➜ invalid
    except BadSignature:
        return None  # forged ➜ invalid
    return claims if isinstance(claims, dict) else None


def admin_required() -> dict:
    """
    Bearer gate for mutating endpoints.  Returns the token claims and sets
    ``g.admin``; aborts with 401 / 403 otherwise.
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        abort(401, description="Access token required")

    claims = verify_token(token)
    if claims is None:
        abort(403, description="Invalid or expired token")

    row = admin_row(get_db())
    if not row or row["username"] != claims.get("username"):
        abort(403, description="User not found")
    if claims.get("pwd") != _fingerprint(row["password_hash"]):
        abort(403, description="Invalid or expired token")

    g.admin = row["username"]
    return claims


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return (
                    {"error": "Too many requests – try again later."},
                    429,
                    {"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _json_body():
    return request.get_json(force=True, silent=True)


def _password_field(data, key: str = "password") -> str:
    pw = data.get(key) if isinstance(data, dict) else None
    if not pw or not isinstance(pw, str):
        abort(400, description="Password is required")
    return pw


@app.route("/api/auth/setup-status")
def setup_status():
    return {"isFirstTimeSetup": is_first_time_setup(get_db())}


@app.route("/api/auth/setup", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def setup():
    password = _password_field(_json_body())
    db = get_db()
    try:
        setup_initial_credentials(password, db=db)
    except AuthError as exc:
        return {"error": str(exc)}, 400
    return {
        "success": True,
        "token": generate_token(db=db),
        "message": "Admin account created successfully",
    }


@app.route("/api/auth/login", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def login():
    password = _password_field(_json_body())
    db = get_db()
    if not authenticate_user(password, db=db):
        app.logger.warning("Failed admin login from %s", request.remote_addr)
        return {"error": "Invalid password"}, 401
    return {
        "success": True,
        "token": generate_token(db=db),
        "user": {"username": ADMIN_USERNAME},
    }


@app.route("/api/auth/verify", methods=["POST"])
def verify():
    admin_required()
    return {"valid": True, "user": {"username": g.admin}}


@app.route("/api/auth/change-password", methods=["POST"])
def change_password():
    admin_required()
    if app.config["DEMO_MODE"]:
        return {
            "success": False,
            "error": "Password changes are disabled in the demo.",
        }, 403

    data = _json_body()
    current = _password_field(data, "currentPassword")
    new = _password_field(data, "newPassword")
    db = get_db()
    if not authenticate_user(current, db=db):
        return {"success": False, "error": "Current password is incorrect"}, 401
    if not is_password_strong(new):
        return {
            "success": False,
            "error": "New password does not meet the strength requirements",
        }, 400

    set_admin_password(new, db=db)
    app.logger.info("Admin password changed")
    return {
        "success": True,
        "message": "Password changed successfully",
        "token": generate_token(db=db),
    }


@app.route("/api/generate-password")
def generate_password():
    return {"password": generate_secure_password()}


@app.route("/api/validate-password", methods=["POST"])
def validate_password():
    data = _json_body()
    password = data.get("password") if isinstance(data, dict) else None
    return {"isStrong": is_password_strong(password)}


###############################################################################
# Profile
###############################################################################
DATA_URI_RE = re.compile(
    r"^data:image/(?:png|jpe?g|gif|webp|svg\+xml);base64,[A-Za-z0-9+/=\s]+$"
)


def is_valid_avatar(value: str) -> bool:
    """Data URI, absolute http(s) URL or site-relative path."""
    if value.startswith("data:"):
        return DATA_URI_RE.match(value) is not None
    if value.startswith("/") and not value.startswith("//"):
        return True
    p = urlparse(value)
    return p.scheme in {"http", "https"} and bool(p.netloc)


def clean_profile(data) -> dict:
    if not isinstance(data, dict):
        abort(400, description="Profile must be a JSON object")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        abort(400, description="Name is required")

    bio = data.get("bio") or ""
    avatar = data.get("avatar") or ""
    if not isinstance(bio, str) or not isinstance(avatar, str):
        abort(400, description="Bio and avatar must be strings")
    if avatar and not is_valid_avatar(avatar):
        abort(400, description="Avatar must be an image data URI or URL")

    # the admin client sends both spellings
    social = data.get("socialLinks", data.get("social_links")) or {}
    if not isinstance(social, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in social.items()
    ):
        abort(400, description="Social links must map platform names to URLs")
    social = {k: v.strip() for k, v in social.items() if v.strip()}

    show = data.get("showAvatar", data.get("show_avatar", True))
    return {
        "name": name.strip(),
        "bio": bio,
        "avatar": avatar,
        "social_links": social,
        "show_avatar": 1 if show else 0,
    }


def load_profile(db) -> dict:
    row = db.execute("SELECT * FROM profile_data ORDER BY id DESC LIMIT 1").fetchone()
    if not row:
        return dict(DEFAULT_PROFILE)
    try:
        social = json.loads(row["social_links"]) if row["social_links"] else {}
    except ValueError:
        social = {}
    return {
        "name": row["name"],
        "bio": row["bio"],
        "avatar": row["avatar"],
        "social_links": social,
        "show_avatar": 0 if row["show_avatar"] == 0 else 1,
    }


def save_profile(profile: dict, *, db) -> None:
    params = (
        profile["name"],
        profile["bio"],
        profile["avatar"],
        json.dumps(profile["social_links"]),
        profile["show_avatar"],
    )
    existing = db.execute("SELECT id FROM profile_data ORDER BY id DESC LIMIT 1").fetchone()
    if existing:
        db.execute(
            "UPDATE profile_data SET name=?, bio=?, avatar=?, social_links=?, "
            "show_avatar=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (*params, existing["id"]),
        )
    else:
        db.execute(
            "INSERT INTO profile_data (name, bio, avatar, social_links, show_avatar) "
            "VALUES (?,?,?,?,?)",
            params,
        )
    db.commit()


@app.route("/api/profile", methods=["GET", "PUT"])
def profile():
    db = get_db()
    if request.method == "GET":
        return load_profile(db)

    admin_required()
    save_profile(clean_profile(_json_body()), db=db)
    return {"success": True}


###############################################################################
# Links
###############################################################################
def _optional_str(raw: dict, key: str, where: str) -> str | None:
    val = raw.get(key)
    if val in (None, ""):
        return None
    if not isinstance(val, str):
        abort(400, description=f"{where}: '{key}' must be a string")
    return val


def _clean_text_items(raw, where: str) -> list[dict] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        abort(400, description=f"{where}: 'textItems' must be a list")
    items = []
    for it in raw:
        if not isinstance(it, dict) or not isinstance(it.get("text"), str):
            abort(400, description=f"{where}: every text item needs a 'text'")
        item = {"text": it["text"]}
        url = it.get("url")
        if url:
            if not isinstance(url, str):
                abort(400, description=f"{where}: text item 'url' must be a string")
            item["url"] = url
        items.append(item)
    return items


def clean_link(raw, idx: int) -> dict:
    """Validate one card from the PUT body and map it to column values."""
    where = f"Link #{idx + 1}"
    if not isinstance(raw, dict):
        abort(400, description=f"{where} must be a JSON object")

    link_id = raw.get("id")
    if isinstance(link_id, int) and not isinstance(link_id, bool):
        link_id = str(link_id)
    if not isinstance(link_id, str) or not link_id:
        abort(400, description=f"{where}: 'id' is required")

    title = raw.get("title")
    if not isinstance(title, str):
        abort(400, description=f"{where}: 'title' is required")

    ltype = raw.get("type") or "link"
    if ltype not in LINK_TYPES:
        abort(400, description=f"{where}: unknown type {ltype!r}")

    size = _optional_str(raw, "size", where)
    if size and size not in LINK_SIZES:
        abort(400, description=f"{where}: unknown size {size!r}")
    icon_type = _optional_str(raw, "iconType", where)
    if icon_type and icon_type not in ICON_TYPES:
        abort(400, description=f"{where}: unknown iconType {icon_type!r}")

    text_items = _clean_text_items(raw.get("textItems"), where)
    return {
        "id": link_id,
        "title": title,
        "description": _optional_str(raw, "description", where) or "",
        "url": _optional_str(raw, "url", where) or "",
        "icon": _optional_str(raw, "icon", where),
        "type": ltype,
        "text_items": json.dumps(text_items) if text_items else None,
        "background_color": _optional_str(raw, "backgroundColor", where),
        "text_color": _optional_str(raw, "textColor", where),
        "size": size,
        "icon_type": icon_type,
        "content": _optional_str(raw, "content", where),
    }


def clean_links(data) -> list[dict]:
    if not isinstance(data, list):
        abort(400, description="Links must be a JSON array")
    links = [clean_link(raw, i) for i, raw in enumerate(data)]
    seen = set()
    for link in links:
        if link["id"] in seen:
            abort(400, description=f"Duplicate link id {link['id']!r}")
        seen.add(link["id"])
    return links


def format_link(row) -> dict:
    """Row ➜ camelCase wire shape; empty optionals are left out."""
    try:
        items = json.loads(row["text_items"]) if row["text_items"] else None
    except ValueError:
        items = None
    out = {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"] or "",
        "url": row["url"],
        "type": row["type"] or "link",
        "icon": row["icon"],
    }
    optional = {
        "iconType": row["icon_type"],
        "backgroundColor": row["background_color"],
        "textColor": row["text_color"],
        "size": row["size"],
        "content": row["content"],
        "textItems": items,
    }
    out.update({k: v for k, v in optional.items() if v})
    return out


def load_links(db) -> list[dict]:
    rows = db.execute("SELECT * FROM links WHERE is_active=1 ORDER BY sort_order")
    return [format_link(r) for r in rows]


def replace_links(links: list[dict], *, db) -> None:
    """Delete-all-then-reinsert; ``sort_order`` is the list position."""
    with db:
        db.execute("DELETE FROM links")
        db.executemany(
            """INSERT INTO links
                      (id, title, description, url, icon, type, text_items,
                       sort_order, is_active, background_color, text_color,
                       size, icon_type, content)
               VALUES (?,?,?,?,?,?,?,?,1,?,?,?,?,?)""",
            [
                (
                    ln["id"],
                    ln["title"],
                    ln["description"],
                    ln["url"],
                    ln["icon"],
                    ln["type"],
                    ln["text_items"],
                    i,
                    ln["background_color"],
                    ln["text_color"],
                    ln["size"],
                    ln["icon_type"],
                    ln["content"],
                )
                for i, ln in enumerate(links)
            ],
        )


@app.route("/api/links", methods=["GET", "PUT"])
def links():
    db = get_db()
    if request.method == "GET":
        return load_links(db)

    admin_required()
    replace_links(clean_links(_json_body()), db=db)
    return {"success": True}


###############################################################################
# Theme
###############################################################################
def load_theme(db) -> dict:
    row = db.execute("SELECT * FROM theme_config ORDER BY id DESC LIMIT 1").fetchone()
    if not row:
        return dict(THEME_DEFAULTS)
    if row["full_config"]:
        try:
            full = json.loads(row["full_config"])
        except ValueError:
            full = None  # fall back to the flat columns
        if isinstance(full, dict):
            return full
    return {
        "primary": row["primary_color"],
        "background": row["background_color"],
        "foreground": row["text_color"],
    }


def save_theme(theme: dict, *, db) -> None:
    def flat(key):
        val = theme.get(key)
        return val if isinstance(val, str) and val else THEME_DEFAULTS[key]

    params = (flat("primary"), flat("background"), flat("foreground"), json.dumps(theme))
    existing = db.execute("SELECT id FROM theme_config ORDER BY id DESC LIMIT 1").fetchone()
    if existing:
        db.execute(
            "UPDATE theme_config SET primary_color=?, background_color=?, text_color=?, "
            "full_config=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
            (*params, existing["id"]),
        )
    else:
        db.execute(
            "INSERT INTO theme_config (primary_color, background_color, text_color, full_config) "
            "VALUES (?,?,?,?)",
            params,
        )
    db.commit()


@app.route("/api/theme", methods=["GET", "PUT"])
def theme():
    db = get_db()
    if request.method == "GET":
        return load_theme(db)

    admin_required()
    data = _json_body()
    if not isinstance(data, dict):
        abort(400, description="Theme must be a JSON object")
    save_theme(data, db=db)
    return {"success": True}


###############################################################################
# Reset
###############################################################################
def _reset_theme_config() -> dict:
    return {
        "primaryColor": THEME_DEFAULTS["primary"],
        "backgroundColor": THEME_DEFAULTS["background"],
        "textColor": THEME_DEFAULTS["foreground"],
        "buttonStyle": BUTTON_STYLE_DEFAULT,
        "fontFamily": FONT_DEFAULT,
        "linkStyle": "card",
        "customCSS": "",
    }


def seed_defaults(db) -> None:
    db.execute(
        """INSERT OR REPLACE INTO theme_config
                  (id, primary_color, background_color, text_color, button_style, full_config)
           VALUES (1,?,?,?,?,?)""",
        (
            THEME_DEFAULTS["primary"],
            THEME_DEFAULTS["background"],
            THEME_DEFAULTS["foreground"],
            BUTTON_STYLE_DEFAULT,
            json.dumps(_reset_theme_config()),
        ),
    )
    db.execute(
        """INSERT OR REPLACE INTO profile_data
                  (id, name, bio, avatar, social_links, show_avatar)
           VALUES (1,?,?,?,?,1)""",
        RESET_PROFILE,
    )


def reset_application_data(db) -> dict:
    """
    Wipe every user table, restart the AUTOINCREMENT counters and put the
    default theme + placeholder profile back.  All or nothing.
    """
    db.commit()
    db.execute("BEGIN")
    try:
        for table in user_tables(db):
            app.logger.info("Clearing table: %s", table)
            db.execute(f'DELETE FROM "{table}"')
        if _has_table(db, "sqlite_sequence"):
            db.execute("DELETE FROM sqlite_sequence")
        seed_defaults(db)
        db.commit()
    except Exception:
        db.rollback()
        app.logger.exception("Application reset failed, rolled back")
        raise

    app.logger.info("Application reset completed")
    return {
        "success": True,
        "message": (
            "Application reset successful. All data has been cleared "
            "and default settings have been restored."
        ),
    }


def _reset_response(message: str):
    try:
        result = reset_application_data(get_db())
    except Exception as exc:
        return {
            "success": False,
            "error": f"Failed to reset application. {exc}",
        }, 500
    return {**result, "message": message}


@app.route("/api/auth/reset", methods=["POST"])
def reset():
    admin_required()
    app.logger.info("Authenticated reset requested by %s", g.admin)
    return _reset_response(
        "Application reset successful. You will be redirected to the setup page."
    )


@app.route("/api/auth/force-reset", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def force_reset():
    expected = env_setting("RESET_TOKEN")
    data = _json_body()
    sent = request.headers.get("X-Reset-Token") or (
        data.get("token") if isinstance(data, dict) else None
    )
    if (
        not expected
        or not isinstance(sent, str)
        or not secrets.compare_digest(expected, sent)
    ):
        app.logger.warning("Rejected force reset from %s", request.remote_addr)
        return {"success": False, "error": "Unauthorized: Invalid reset token"}, 403

    app.logger.info("Force reset accepted")
    return _reset_response(
        "Application reset successful. You can now set up a new admin account."
    )


###############################################################################
# Demo mode
###############################################################################
_demo_lock = threading.Lock()


def demo_theme() -> tuple[str, str, str, str, str]:
    """Deployment theme defaults; re-read on every cycle."""
    primary = env_setting("THEME_PRIMARY_COLOR", THEME_DEFAULTS["primary"])
    background = env_setting("THEME_BACKGROUND_COLOR", THEME_DEFAULTS["background"])
    text = env_setting("THEME_TEXT_COLOR", THEME_DEFAULTS["foreground"])
    button = env_setting("THEME_BUTTON_STYLE", BUTTON_STYLE_DEFAULT)

    full = env_setting("THEME_FULL_CONFIG_JSON")
    if full:
        try:
            parsed = json.loads(full)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            app.logger.warning("THEME_FULL_CONFIG_JSON is not a JSON object, ignored")
            full = None
    if not full:
        full = json.dumps(
            {
                "primaryColor": primary,
                "backgroundColor": background,
                "textColor": text,
                "buttonStyle": button,
                "fontFamily": FONT_DEFAULT,
                "linkStyle": "card",
                "customCSS": "",
            }
        )
    return primary, background, text, button, full


def reset_demo_data(db) -> bool:
    """
    One demo cycle: rebuild admin/links/profile from scratch, restore the
    deployment theme and seed the demo admin.  Returns False when another
    cycle is still running.
    """
    if not _demo_lock.acquire(blocking=False):
        app.logger.warning("Previous demo reset still in progress, skipping this cycle")
        return False
    try:
        db.commit()
        db.execute("BEGIN IMMEDIATE")
        try:
            for table in ("admin_users", "links", "profile_data"):
                db.execute(f"DROP TABLE IF EXISTS {table}")
            create_tables(db)

            theme_row = demo_theme()
            db.execute(
                """INSERT OR IGNORE INTO theme_config
                          (id, primary_color, background_color, text_color, button_style, full_config)
                   VALUES (1,?,?,?,?,?)""",
                theme_row,
            )
            db.execute(
                """UPDATE theme_config
                      SET primary_color=?, background_color=?, text_color=?,
                          button_style=?, full_config=?, updated_at=CURRENT_TIMESTAMP
                    WHERE id=1""",
                theme_row,
            )
            db.execute(
                "INSERT INTO profile_data (name, bio, avatar, social_links, show_avatar) "
                "VALUES (?,?,?,?,1)",
                RESET_PROFILE,
            )
            pw_hash, salt = hash_password(env_setting("DEMO_ADMIN_PASSWORD", "demo123"))
            db.execute(
                "INSERT INTO admin_users (username, password_hash, salt) VALUES (?,?,?)",
                (ADMIN_USERNAME, pw_hash, salt),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        app.logger.info("Demo database has been reset")
        return True
    finally:
        _demo_lock.release()


def _demo_cycle() -> None:
    with app.app_context():
        try:
            reset_demo_data(get_db())
        except Exception:
            app.logger.exception("Demo reset failed")


def start_demo_reset(interval: int | None = None) -> threading.Event:
    """
    Reset now, then every *interval* seconds, on a daemon thread.
    Set the returned event to stop the loop.
    """
    if interval is None:
        interval = app.config["DEMO_RESET_INTERVAL"]
    interval = max(interval, DEMO_MIN_INTERVAL)
    stop = threading.Event()

    def _loop():
        while not stop.is_set():
            _demo_cycle()
            stop.wait(interval)

    threading.Thread(target=_loop, name="demo-reset", daemon=True).start()
    app.logger.info("Demo mode: resetting the database every %ss", interval)
    return stop


_demo_stop: threading.Event | None = None
_demo_start_lock = threading.Lock()


@app.before_request
def start_demo_on_first_request():
    """
    The demo loop belongs to the running server only; importing the module
    (CLI, migrate.py, tests) must never wipe anything.
    """
    global _demo_stop
    if not app.config["DEMO_MODE"] or _demo_stop is not None:
        return
    with _demo_start_lock:
        if _demo_stop is None:
            _demo_stop = start_demo_reset()


###############################################################################
# Public page
###############################################################################
CSS_COLOR_RE = re.compile(
    r"^(#[0-9a-fA-F]{3,8}|(?:rgb|hsl)a?\([\d\s.,%/]+\)|[a-zA-Z]{3,20})$"
)
FONT_RE = re.compile(r"^[\w\s,'\"-]+$")
SAFE_SCHEMES = {"http", "https", "mailto", "tel"}


def css_color(value, default: str) -> str:
    return value if isinstance(value, str) and CSS_COLOR_RE.match(value) else default


@app.template_filter("href")
def href_filter(url: str | None) -> str:
    """Only let harmless link targets through; everything else becomes '#'."""
    if not url:
        return "#"
    if url.startswith("/") and not url.startswith("//"):
        return url
    scheme = urlparse(url).scheme.lower()
    return url if scheme in SAFE_SCHEMES else "#"


def page_style(theme_cfg: dict) -> dict:
    """Pull the handful of values the public page uses out of either theme shape."""
    t = theme_cfg
    font = t.get("fontFamily")
    radius = t.get("cardRadius")
    grad = t.get("backgroundGradient") if isinstance(t.get("backgroundGradient"), dict) else {}
    background = css_color(t.get("background") or t.get("backgroundColor"), "#ffffff")
    content = t.get("content") if isinstance(t.get("content"), dict) else {}
    return {
        "primary": css_color(t.get("primary") or t.get("primaryColor"), "#007bff"),
        "background": background,
        "bg_from": css_color(grad.get("from"), background),
        "bg_to": css_color(grad.get("to"), background),
        "foreground": css_color(t.get("foreground") or t.get("textColor"), "#000000"),
        "card": css_color(t.get("card"), "transparent"),
        "muted": css_color(t.get("muted"), "#64748b"),
        # checked above, so quotes may go into <style> unescaped
        "font": Markup(font) if isinstance(font, str) and FONT_RE.match(font) else FONT_DEFAULT,
        "radius": radius if isinstance(radius, int) and 0 <= radius <= 64 else 12,
        "footer": content.get("footerText") if isinstance(content.get("footerText"), str) else "",
    }


TEMPL_PAGE = """
<!doctype html>
<html lang="en">
<title>{{ profile.name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ profile.bio or profile.name }}">
<style>
body{margin:0;min-height:100vh;font-family:{{ style.font }};color:{{ style.foreground }};
     background:linear-gradient(135deg,{{ style.bg_from }},{{ style.bg_to }});}
main{max-width:28rem;margin:auto;padding:2.5rem 1rem;text-align:center}
.avatar{width:6rem;height:6rem;border-radius:50%;object-fit:cover}
.bio{color:{{ style.muted }};white-space:pre-line}
.social a{margin:0 .4rem;color:{{ style.primary }}}
.card{display:block;margin:.75rem 0;padding:1rem;border-radius:{{ style.radius }}px;
      background:{{ style.card }};border:1px solid {{ style.primary }};
      color:inherit;text-decoration:none}
.card.small{padding:.6rem}.card.large{padding:1.5rem}
.card .desc{font-size:.875em;color:{{ style.muted }}}
.card .content{white-space:pre-line;text-align:left}
.card ul{list-style:none;padding:0;margin:.5rem 0 0}
footer{margin-top:2rem;font-size:.8em;color:{{ style.muted }}}
</style>
<body>
<main>
  {% if profile.show_avatar and profile.avatar %}
  <img class="avatar" src="{{ profile.avatar }}" alt="{{ profile.name }}">
  {% endif %}
  <h1>{{ profile.name }}</h1>
  {% if profile.bio %}<p class="bio">{{ profile.bio }}</p>{% endif %}
  {% if profile.social_links %}
  <p class="social">
    {% for platform, url in profile.social_links.items() %}
    <a href="{{ url|href }}" rel="me noopener">{{ platform|capitalize }}</a>
    {% endfor %}
  </p>
  {% endif %}

  {% for link in links %}
    {% set look %}{% if link.backgroundColor %}background:{{ css_color(link.backgroundColor, 'transparent') }};{% endif %}{% if link.textColor %}color:{{ css_color(link.textColor, 'inherit') }};{% endif %}{% endset %}
    {% if link.type == 'text' %}
    <section class="card text {{ link.size or 'medium' }}" style="{{ look }}">
      {% if link.title %}<strong>{{ link.title }}</strong>{% endif %}
      {% if link.content %}<div class="content">{{ link.content }}</div>{% endif %}
      {% if link.textItems %}
      <ul>
        {% for item in link.textItems %}
        <li>{% if item.url %}<a href="{{ item.url|href }}" rel="noopener">{{ item.text }}</a>{% else %}{{ item.text }}{% endif %}</li>
        {% endfor %}
      </ul>
      {% endif %}
    </section>
    {% else %}
    <a class="card link {{ link.size or 'medium' }}" href="{{ link.url|href }}" rel="noopener" style="{{ look }}">
      {% if link.icon and link.iconType != 'image' and link.iconType != 'svg' %}<span>{{ link.icon }}</span>{% endif %}
      <strong>{{ link.title }}</strong>
      {% if link.description %}<div class="desc">{{ link.description }}</div>{% endif %}
    </a>
    {% endif %}
  {% endfor %}

  {% if style.footer %}<footer>{{ style.footer }}</footer>{% endif %}
</main>
</body>
</html>
"""

TEMPL_404 = """
<!doctype html>
<title>Page not found</title>
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist. <a href="/">Back to the page</a>.</p>
"""

app.jinja_env.globals["css_color"] = css_color


@app.route("/")
def index():
    db = get_db()
    return render_template_string(
        TEMPL_PAGE,
        profile=load_profile(db),
        links=load_links(db),
        style=page_style(load_theme(db)),
    )


###############################################################################
# Errors + response headers
###############################################################################
def _is_api() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(HTTPException)
def http_error(exc):
    if _is_api():
        if exc.code == 500:
            return {"error": "Internal server error"}, 500
        return {"error": exc.description}, exc.code
    if exc.code == 404:
        return render_template_string(TEMPL_404), 404
    return exc


@app.after_request
def cors_and_security_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    if _is_api():
        resp.headers.update(
            {
                "Access-Control-Allow-Origin": app.config["CORS_ORIGIN"],
                "Access-Control-Allow-Methods": "GET, POST, PUT, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Reset-Token",
            }
        )
    return resp


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create or upgrade the database schema."""
    init_db()
    click.secho(f"\n✅  Database ready at {app.config['DATABASE']}", fg="green")


@app.cli.command("set-password")
@click.password_option(help="New admin password")
@click.option("--force", is_flag=True, help="Skip the strength check")
def cli_set_password(password: str, force: bool):
    """Set (or replace) the admin password without touching any content."""
    if not force and not is_password_strong(password):
        raise click.ClickException(
            "Password needs 8+ characters with upper, lower, digit and special character."
        )
    set_admin_password(password, db=get_db())
    click.secho("\n🔑  Admin password updated; old sessions are signed out.", fg="yellow")


@app.cli.command("reset")
@click.confirmation_option(prompt="Wipe ALL data and restore defaults?")
def cli_reset():
    """Full-state reset, same as POST /api/auth/reset."""
    reset_application_data(get_db())
    click.secho("\n🧹  All data cleared, defaults restored.", fg="green")


@app.cli.command("demo-reset")
def cli_demo_reset():
    """Run a single demo reset cycle."""
    if reset_demo_data(get_db()):
        click.secho("\n🧹  Demo data restored.", fg="green")
    else:
        click.secho("\nAnother reset is running, skipped.", fg="yellow")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import logging

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    app.run(port=int(env_setting("PORT", "3001")))
