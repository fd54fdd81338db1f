#!/usr/bin/env python3
"""
A single-file CRUD blog: JSON admin API, public pages and an RSS feed.
"""

import json
import os
import re
import secrets
import sqlite3
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

import click
import markdown
from flask import (
    Flask,
    Response,
    g,
    render_template_string,
    request,
    send_from_directory,
)
from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer
from markupsafe import Markup
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.routing import IntegerConverter
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKPRESS_DB") or ROOT / "blog.sqlite3")
UPLOAD_DIR = Path(os.environ.get("INKPRESS_UPLOAD_DIR") or DB_FILE.parent / "uploads")
TOKEN_SECRET = os.environ.get("INKPRESS_TOKEN_SECRET", "")
BASE_URL = os.environ.get("INKPRESS_BASE_URL", "").rstrip("/")
DEFAULT_ADMIN_PASSWORD = "admin123"
ADMIN_PASSWORD = os.environ.get("INKPRESS_ADMIN_PASSWORD") or DEFAULT_ADMIN_PASSWORD
MAX_UPLOAD_MB = int(os.environ.get("INKPRESS_MAX_UPLOAD_MB", "32"))

TOKEN_SALT = "admin-session"
TOKEN_TTL = timedelta(days=7)
MIN_PASSWORD_LEN = 6

SLUG_MAX_LEN = 100
SLUG_MAX_ATTEMPTS = 1000
SLUG_FALLBACK = "post"

TITLE_MAX_LEN = 200
SUMMARY_MAX_LEN = 500
TAG_NAME_MAX_LEN = 50
COMMENT_NAME_MAX_LEN = 100
COMMENT_CONTENT_MAX_LEN = 5000

TAG_COLORS = (
    "#3B82F6",  # blue
    "#10B981",  # emerald
    "#8B5CF6",  # violet
    "#F59E0B",  # amber
    "#EF4444",  # red
    "#EC4899",  # pink
    "#06B6D4",  # cyan
    "#84CC16",  # lime
    "#F97316",  # orange
    "#6366F1",  # indigo
)
HEX_COLOR_RE = re.compile(r"#(?:[0-9A-Fa-f]{3}|[0-9A-Fa-f]{6})")
EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
LANGUAGE_RE = re.compile(r"[A-Za-z]{2,3}(?:-[A-Za-z0-9]{2,8})*")
HTML_TAG_RE = re.compile(r"<[^>]*>")

COMMENT_STATUSES = ("pending", "approved", "hidden")

PAGE_DEFAULT = 10
LIST_DEFAULT = 20
LIMIT_MAX = 100
# SQLite stores integers as signed 64-bit values
ROW_ID_MAX = 2**63 - 1
PAGE_MAX = ROW_ID_MAX // LIMIT_MAX
RSS_LIMIT_DEFAULT = 20
RSS_LIMIT_MAX = 50
RSS_SUMMARY_LEN = 300
RSS_SUMMARY_MIN_CUT = 200
RFC2822_FMT = "%a, %d %b %Y %H:%M:%S %z"
DEFAULT_MIME = "application/octet-stream"

DEFAULT_FOOTER_LINKS = [
    {"text": "Home", "url": "/"},
    {"text": "Tags", "url": "/tags"},
    {"text": "RSS", "url": "/feed"},
]
SIGNING_SECRET_KEY = "signing_secret"
CONFIG_DEFAULTS = {
    "blog_name": "Inkpress",
    "blog_description": "A simple and elegant blog platform",
    "blog_introduction": "",
    "language": "en",
    "timezone": "UTC",
    "custom_css": "",
    "footer_links": json.dumps(DEFAULT_FOOTER_LINKS),
}
CONFIG_DESCRIPTIONS = {
    "blog_name": "The name of the blog displayed in the header",
    "blog_description": "Short description used in meta tags and the feed",
    "blog_introduction": "Introduction shown above the post list",
    "language": "Language code for pages and the feed",
    "timezone": "IANA timezone used to display dates",
    "custom_css": "Extra CSS appended to every page",
    "footer_links": "JSON list of {text, url} footer links",
    SIGNING_SECRET_KEY: "Secret used to sign admin tokens",
}
EDITABLE_CONFIG_KEYS = frozenset(CONFIG_DEFAULTS)

MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {"guess_lang": False, "noclasses": True},
}
MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]

_SCHEMA_READY: set[str] = set()

try:
    __version__ = version("inkpress")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
class RowIdConverter(IntegerConverter):
    """`<int:...>` that only matches values SQLite can hold."""

    def __init__(self, map, *args, **kwargs):
        kwargs.setdefault("max", ROW_ID_MAX)
        super().__init__(map, *args, **kwargs)


app = Flask(__name__)
app.url_map.converters["int"] = RowIdConverter
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=str(DB_FILE),
    UPLOAD_DIR=str(UPLOAD_DIR),
    TOKEN_SECRET=TOKEN_SECRET,
    BASE_URL=BASE_URL,
    ADMIN_PASSWORD=ADMIN_PASSWORD,
    MAX_CONTENT_LENGTH=MAX_UPLOAD_MB * 1024 * 1024,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def render_markdown_html(text: str | None) -> str:
    """Shared Markdown renderer for post bodies."""
    return markdown.markdown(
        text or "",
        extensions=MD_EXTENSIONS,
        extension_configs=MD_EXTENSION_CONFIGS,
    )


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("localdate")
def localdate_filter(iso: str | None, tz_name: str = "UTC") -> str:
    """ISO-8601 UTC timestamp → YYYY-MM-DD in the blog's timezone."""
    if not iso:
        return ""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    try:
        return datetime.fromisoformat(iso).astimezone(tz).strftime("%Y-%m-%d")
    except ValueError:
        return iso


app.jinja_env.globals["version"] = __version__


################################################################################
# Errors
################################################################################
class BlogError(Exception):
    """Base class for every error a view turns into a JSON response."""

    status = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        if message:
            self.message = message
        super().__init__(self.message)


class ValidationError(BlogError):
    status = 400
    message = "Invalid request"


class Unauthorized(BlogError):
    status = 401
    message = "Authentication required"


class InvalidCredentials(Unauthorized):
    message = "Invalid username or password"


class AccessDenied(BlogError):
    status = 403
    message = "Access denied"


class NotFound(BlogError):
    status = 404
    message = "Not found"


class Conflict(BlogError):
    status = 409
    message = "Conflict"


class InternalError(BlogError):
    pass


class SlugGenerationError(InternalError):
    message = "Failed to generate unique slug"


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
    ------------------------------------------------------------
    -- 1.  Accounts + settings
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS user (
        id            INTEGER PRIMARY KEY,
        username      TEXT UNIQUE NOT NULL,
        email         TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        is_admin      INTEGER NOT NULL DEFAULT 0,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS config (
        key         TEXT PRIMARY KEY,
        value       TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    ------------------------------------------------------------
    -- 2.  Content
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS post (
        id          INTEGER PRIMARY KEY,
        title       TEXT NOT NULL,
        content     TEXT NOT NULL,
        summary     TEXT NOT NULL DEFAULT '',
        slug        TEXT NOT NULL,
        published   INTEGER NOT NULL DEFAULT 0,
        view_count  INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        deleted_at  TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_post_slug_live
        ON post(slug) WHERE deleted_at IS NULL;
    CREATE INDEX IF NOT EXISTS idx_post_created ON post(created_at);

    CREATE TABLE IF NOT EXISTS tag (
        id          INTEGER PRIMARY KEY,
        name        TEXT NOT NULL,
        color       TEXT NOT NULL,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        deleted_at  TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_tag_name_live
        ON tag(name) WHERE deleted_at IS NULL;

    CREATE TABLE IF NOT EXISTS post_tag (
        post_id INTEGER NOT NULL REFERENCES post(id),
        tag_id  INTEGER NOT NULL REFERENCES tag(id),
        PRIMARY KEY (post_id, tag_id)
    );
    CREATE INDEX IF NOT EXISTS idx_post_tag_tag ON post_tag(tag_id);

    ------------------------------------------------------------
    -- 3.  Post-owned records
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS comment (
        id          INTEGER PRIMARY KEY,
        post_id     INTEGER NOT NULL REFERENCES post(id),
        name        TEXT NOT NULL,
        email       TEXT NOT NULL DEFAULT '',
        content     TEXT NOT NULL,
        status      TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'approved', 'hidden')),
        ip_address  TEXT NOT NULL DEFAULT '',
        referer     TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        deleted_at  TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_comment_post ON comment(post_id, status);

    CREATE TABLE IF NOT EXISTS file (
        id                INTEGER PRIMARY KEY,
        post_id           INTEGER NOT NULL REFERENCES post(id),
        original_filename TEXT NOT NULL,
        display_name      TEXT NOT NULL DEFAULT '',
        description       TEXT NOT NULL DEFAULT '',
        server_path       TEXT UNIQUE NOT NULL,
        file_size         INTEGER NOT NULL DEFAULT 0,
        mime_type         TEXT NOT NULL,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL,
        deleted_at        TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_file_post ON file(post_id);
"""


def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
        if app.config["DATABASE"] not in _SCHEMA_READY:
            _prepare_db(g.db)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def _prepare_db(db) -> None:
    """Create tables, seed the first admin and the default settings."""
    db.executescript(SCHEMA)
    seed_admin(db)
    init_default_configs(db)
    db.commit()
    _SCHEMA_READY.add(app.config["DATABASE"])


def init_db():
    """Idempotent: safe to call on every start."""
    db = get_db()
    _prepare_db(db)
    return db


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, total


def pagination(*, page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }


# -------------------------------------------------------------------------
# Users
# -------------------------------------------------------------------------
def create_user(db, *, username: str, email: str, password: str, is_admin=False):
    username, email = (username or "").strip(), (email or "").strip()
    if not username or not email:
        raise ValidationError("Username and email are required")
    if len(password or "") < MIN_PASSWORD_LEN:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LEN} characters"
        )
    now = _now_iso()
    try:
        cur = db.execute(
            "INSERT INTO user (username, email, password_hash, is_admin,"
            " created_at, updated_at) VALUES (?,?,?,?,?,?)",
            (username, email, generate_password_hash(password), int(is_admin), now, now),
        )
    except sqlite3.IntegrityError as exc:
        db.rollback()
        raise Conflict("Username or email already exists") from exc
    db.commit()
    return cur.lastrowid


def get_user(db, user_id: int):
    return db.execute("SELECT * FROM user WHERE id=?", (user_id,)).fetchone()


def set_password(db, user_id: int, password: str) -> None:
    db.execute(
        "UPDATE user SET password_hash=?, updated_at=? WHERE id=?",
        (generate_password_hash(password), _now_iso(), user_id),
    )
    db.commit()


def seed_admin(db) -> bool:
    """Create the default admin when the user table is empty."""
    if db.execute("SELECT 1 FROM user LIMIT 1").fetchone():
        return False
    password = app.config.get("ADMIN_PASSWORD") or DEFAULT_ADMIN_PASSWORD
    create_user(
        db,
        username="admin",
        email="admin@example.com",
        password=password,
        is_admin=True,
    )
    app.logger.info("Created default admin user 'admin'")
    if password == DEFAULT_ADMIN_PASSWORD:
        app.logger.warning(
            "Default admin password is in use; change it with "
            "`flask reset-password --username admin` or set INKPRESS_ADMIN_PASSWORD"
        )
    return True


###############################################################################
# CLI – schema + admin accounts
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the schema, the default admin and the default settings."""
    init_db()
    click.secho("✅  Database ready.", fg="green")


@app.cli.command("create-admin")
@click.option("--username", prompt=True, help="Admin username")
@click.option("--email", prompt=True, help="Admin e-mail address")
@click.password_option()
def cli_create_admin(username: str, email: str, password: str):
    """Add another administrator account."""
    db = get_db()
    try:
        user_id = create_user(
            db, username=username, email=email, password=password, is_admin=True
        )
    except BlogError as exc:
        raise click.ClickException(exc.message) from exc
    click.secho(f"\n✅  Admin '{username.strip()}' created (id {user_id}).", fg="green")


@app.cli.command("reset-password")
@click.option("--username", prompt=True, help="Existing username")
@click.password_option()
def cli_reset_password(username: str, password: str):
    """Set a new password for an existing account."""
    db = get_db()
    row = db.execute(
        "SELECT id FROM user WHERE username=?", (username.strip(),)
    ).fetchone()
    if row is None:
        raise click.ClickException(f"No user named '{username.strip()}'")
    if len(password) < MIN_PASSWORD_LEN:
        raise click.ClickException(
            f"Password must be at least {MIN_PASSWORD_LEN} characters"
        )
    set_password(db, row["id"], password)
    click.secho("\n🔑  Password updated.", fg="yellow")


###############################################################################
# Config provider
###############################################################################
CONFIG_UPSERT_SQL = (
    "INSERT INTO config (key, value, description, created_at, updated_at) "
    "VALUES (?,?,?,?,?) "
    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
    "updated_at=excluded.updated_at"
)


def init_default_configs(db) -> None:
    now = _now_iso()
    db.executemany(
        "INSERT OR IGNORE INTO config (key, value, description, created_at, updated_at)"
        " VALUES (?,?,?,?,?)",
        [
            (key, value, CONFIG_DESCRIPTIONS[key], now, now)
            for key, value in CONFIG_DEFAULTS.items()
        ],
    )


def get_config(key: str) -> str:
    row = get_db().execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
    if row is not None:
        return row["value"]
    if key in CONFIG_DEFAULTS:
        return CONFIG_DEFAULTS[key]
    raise NotFound("Configuration not found")


def get_all_configs(*, include_secret: bool = False) -> dict[str, str]:
    configs = dict(CONFIG_DEFAULTS)
    for row in get_db().execute("SELECT key, value FROM config"):
        configs[row["key"]] = row["value"]
    if not include_secret:
        configs.pop(SIGNING_SECRET_KEY, None)
    return configs


def update_configs(updates: dict[str, str]) -> None:
    """Upsert every pair in one transaction; nothing is written on failure."""
    db = get_db()
    now = _now_iso()
    with db:
        for key, value in updates.items():
            db.execute(
                CONFIG_UPSERT_SQL,
                (key, value, CONFIG_DESCRIPTIONS.get(key, ""), now, now),
            )


def _valid_footer_links(links) -> bool:
    return isinstance(links, list) and all(
        isinstance(link, dict)
        and isinstance(link.get("text"), str)
        and isinstance(link.get("url"), str)
        for link in links
    )


def parse_footer_links(raw: str | None) -> list[dict[str, str]]:
    if not raw:
        return [dict(link) for link in DEFAULT_FOOTER_LINKS]
    try:
        links = json.loads(raw)
    except ValueError:
        app.logger.warning("Invalid footer_links JSON, using defaults")
        return [dict(link) for link in DEFAULT_FOOTER_LINKS]
    if not _valid_footer_links(links):
        app.logger.warning("footer_links is not a list of {text, url}, using defaults")
        return [dict(link) for link in DEFAULT_FOOTER_LINKS]
    return [{"text": link["text"], "url": link["url"]} for link in links]


def get_footer_links() -> list[dict[str, str]]:
    return parse_footer_links(get_config("footer_links"))


def set_footer_links(links: list[dict[str, str]]) -> None:
    if not _valid_footer_links(links):
        raise ValidationError("footer_links must be a list of {text, url} objects")
    update_configs({"footer_links": json.dumps(links)})


def get_signing_secret() -> str:
    """
    Return the token signing secret, creating it on first use.

    The upsert only fills a missing or empty value, so concurrent first
    callers all end up reading whichever secret committed first.
    """
    db = get_db()
    row = db.execute(
        "SELECT value FROM config WHERE key=?", (SIGNING_SECRET_KEY,)
    ).fetchone()
    if row is not None and row["value"]:
        return row["value"]

    now = _now_iso()
    with db:
        cur = db.execute(
            CONFIG_UPSERT_SQL + " WHERE config.value = ''",
            (
                SIGNING_SECRET_KEY,
                secrets.token_hex(32),
                CONFIG_DESCRIPTIONS[SIGNING_SECRET_KEY],
                now,
                now,
            ),
        )
    if cur.rowcount:
        app.logger.info("Generated a new token signing secret")
    return db.execute(
        "SELECT value FROM config WHERE key=?", (SIGNING_SECRET_KEY,)
    ).fetchone()["value"]


def validate_config_updates(updates) -> dict[str, str]:
    """Check an admin settings payload against the editable keys."""
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("configs must be a non-empty object")
    clean: dict[str, str] = {}
    for key, value in updates.items():
        if key not in EDITABLE_CONFIG_KEYS:
            raise ValidationError(f"Configuration key '{key}' cannot be updated")
        if key == "footer_links" and isinstance(value, list):
            value = json.dumps(value)
        if not isinstance(value, str):
            raise ValidationError(f"Value for '{key}' must be a string")
        clean[key] = value

    if "blog_name" in clean:
        clean["blog_name"] = clean["blog_name"].strip()
        if not clean["blog_name"]:
            raise ValidationError("blog_name cannot be empty")
    if "timezone" in clean and clean["timezone"] not in available_timezones():
        raise ValidationError("Invalid timezone")
    if "language" in clean and not LANGUAGE_RE.fullmatch(clean["language"]):
        raise ValidationError("Invalid language code")
    if "footer_links" in clean:
        try:
            links = json.loads(clean["footer_links"])
        except ValueError:
            raise ValidationError("footer_links must be valid JSON") from None
        if not _valid_footer_links(links):
            raise ValidationError(
                "footer_links must be a list of {text, url} objects"
            )
    return clean


###############################################################################
# Slugs
###############################################################################
def sanitize_slug(text: str | None) -> str:
    """
    Reduce *text* to a URL-safe slug.

    Letters and digits survive (lower-cased); whitespace, '-' and '_'
    become single hyphens; everything else is dropped.
    """
    out: list[str] = []
    for ch in (text or "").lower():
        if ch.isalpha() or ch.isdigit():
            out.append(ch)
        elif ch.isspace() or ch in "-_":
            out.append("-")
    slug = re.sub(r"-{2,}", "-", "".join(out)).strip("-")
    if len(slug) > SLUG_MAX_LEN:
        slug = slug[:SLUG_MAX_LEN].rstrip("-")
    return slug or SLUG_FALLBACK


def _slug_taken(slug: str, *, db, exclude_id: int | None = None) -> bool:
    sql = "SELECT 1 FROM post WHERE slug=? AND deleted_at IS NULL"
    params: tuple = (slug,)
    if exclude_id is not None:
        sql += " AND id != ?"
        params += (exclude_id,)
    return db.execute(sql, params).fetchone() is not None


def ensure_unique_slug(base: str, *, db, exclude_id: int | None = None) -> str:
    """Return *base*, or the first free `base-N`."""
    slug = base
    for counter in range(1, SLUG_MAX_ATTEMPTS + 1):
        if not _slug_taken(slug, db=db, exclude_id=exclude_id):
            return slug
        slug = f"{base}-{counter}"
    app.logger.error("Gave up finding a free slug for %r", base)
    raise SlugGenerationError()


###############################################################################
# Tags
###############################################################################
def default_tag_color(name: str) -> str:
    """Deterministic palette colour for a tag name."""
    return TAG_COLORS[sum(ord(ch) for ch in name) % len(TAG_COLORS)]


def tag_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "color": row["color"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _clean_tag_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Tag name is required")
    name = name.strip()
    if len(name) > TAG_NAME_MAX_LEN:
        raise ValidationError(
            f"Tag name must be at most {TAG_NAME_MAX_LEN} characters"
        )
    return name


def _clean_color(color) -> str | None:
    if color is None or color == "":
        return None
    if not isinstance(color, str) or not HEX_COLOR_RE.fullmatch(color.strip()):
        raise ValidationError("Color must be a hex value like #3B82F6")
    return color.strip()


def _tag_name_taken(name: str, *, db, exclude_id: int | None = None) -> bool:
    sql = "SELECT 1 FROM tag WHERE name=? AND deleted_at IS NULL"
    params: tuple = (name,)
    if exclude_id is not None:
        sql += " AND id != ?"
        params += (exclude_id,)
    return db.execute(sql, params).fetchone() is not None


def _live_tag(tag_id: int, *, db):
    row = db.execute(
        "SELECT * FROM tag WHERE id=? AND deleted_at IS NULL", (tag_id,)
    ).fetchone()
    if row is None:
        raise NotFound("Tag not found")
    return row


def get_tag(tag_id: int, *, db) -> dict:
    return tag_to_dict(_live_tag(tag_id, db=db))


def list_tags(*, db) -> list[dict]:
    rows = db.execute(
        "SELECT * FROM tag WHERE deleted_at IS NULL ORDER BY name"
    ).fetchall()
    return [tag_to_dict(r) for r in rows]


def list_tags_with_counts(*, db) -> list[dict]:
    """Every live tag with the number of live, published posts using it."""
    rows = db.execute(
        """SELECT t.*, COUNT(p.id) AS post_count
             FROM tag t
             LEFT JOIN post_tag pt ON pt.tag_id = t.id
             LEFT JOIN post p      ON p.id = pt.post_id
                                  AND p.deleted_at IS NULL
                                  AND p.published = 1
            WHERE t.deleted_at IS NULL
            GROUP BY t.id
            ORDER BY t.name"""
    ).fetchall()
    return [{**tag_to_dict(r), "post_count": r["post_count"]} for r in rows]


def create_tag(name, color=None, *, db) -> dict:
    name = _clean_tag_name(name)
    color = _clean_color(color) or default_tag_color(name)
    if _tag_name_taken(name, db=db):
        raise Conflict(f"Tag with name '{name}' already exists")
    now = _now_iso()
    try:
        with db:
            cur = db.execute(
                "INSERT INTO tag (name, color, created_at, updated_at) VALUES (?,?,?,?)",
                (name, color, now, now),
            )
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"Tag with name '{name}' already exists") from exc
    return get_tag(cur.lastrowid, db=db)


def update_tag(tag_id: int, *, name=None, color=None, db) -> dict:
    row = _live_tag(tag_id, db=db)
    new_name = row["name"] if name is None else _clean_tag_name(name)
    new_color = _clean_color(color) or row["color"]
    if new_name != row["name"] and _tag_name_taken(new_name, db=db, exclude_id=tag_id):
        raise Conflict(f"Tag with name '{new_name}' already exists")
    try:
        with db:
            db.execute(
                "UPDATE tag SET name=?, color=?, updated_at=? WHERE id=?",
                (new_name, new_color, _now_iso(), tag_id),
            )
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"Tag with name '{new_name}' already exists") from exc
    return get_tag(tag_id, db=db)


def delete_tag(tag_id: int, *, db) -> None:
    """Detach the tag from every post, then soft-delete it."""
    _live_tag(tag_id, db=db)
    with db:
        db.execute("DELETE FROM post_tag WHERE tag_id=?", (tag_id,))
        db.execute(
            "UPDATE tag SET deleted_at=? WHERE id=?", (_now_iso(), tag_id)
        )


def get_tags_by_ids(tag_ids, *, db) -> list:
    """Live tags among *tag_ids*; unknown IDs are ignored."""
    ids = sorted({i for i in tag_ids or () if abs(i) <= ROW_ID_MAX})
    if not ids:
        return []
    marks = ",".join("?" * len(ids))
    return db.execute(
        f"SELECT * FROM tag WHERE deleted_at IS NULL AND id IN ({marks}) ORDER BY name",
        tuple(ids),
    ).fetchall()


def attach_tags(post_id: int, tags, *, db) -> None:
    db.executemany(
        "INSERT OR IGNORE INTO post_tag (post_id, tag_id) VALUES (?,?)",
        [(post_id, t["id"]) for t in tags],
    )


def set_post_tags(post_id: int, tag_ids, *, db) -> None:
    """Replace the post's tags with the resolvable subset of *tag_ids*."""
    db.execute("DELETE FROM post_tag WHERE post_id=?", (post_id,))
    attach_tags(post_id, get_tags_by_ids(tag_ids, db=db), db=db)


def tags_for_posts(post_ids, *, db) -> dict[int, list[dict]]:
    ids = list(post_ids)
    if not ids:
        return {}
    marks = ",".join("?" * len(ids))
    rows = db.execute(
        f"""SELECT pt.post_id, t.*
              FROM post_tag pt JOIN tag t ON t.id = pt.tag_id
             WHERE t.deleted_at IS NULL AND pt.post_id IN ({marks})
             ORDER BY t.name""",
        tuple(ids),
    ).fetchall()
    out: dict[int, list[dict]] = defaultdict(list)
    for r in rows:
        out[r["post_id"]].append(tag_to_dict(r))
    return out


def parse_tag_ids(value) -> list[int]:
    if not isinstance(value, list) or not all(
        isinstance(v, int) and not isinstance(v, bool) for v in value
    ):
        raise ValidationError("tag_ids must be a list of integers")
    return value


###############################################################################
# Auth
###############################################################################
@dataclass(frozen=True)
class Principal:
    """The authenticated administrator behind a request."""

    id: int
    username: str
    email: str
    is_admin: bool
    password_hash: str = field(repr=False)

    @classmethod
    def from_row(cls, row) -> "Principal":
        return cls(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            is_admin=bool(row["is_admin"]),
            password_hash=row["password_hash"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "is_admin": self.is_admin,
        }


def _token_serializer() -> URLSafeTimedSerializer:
    key = app.config.get("TOKEN_SECRET") or get_signing_secret()
    return URLSafeTimedSerializer(key, salt=TOKEN_SALT)


def issue_token(user_id: int) -> str:
    issued = int(time.time())
    payload = {
        "uid": user_id,
        "iat": issued,
        "exp": issued + int(TOKEN_TTL.total_seconds()),
    }
    return _token_serializer().dumps(payload)


def verify_token(token: str) -> int:
    """Return the user ID carried by *token* or raise `Unauthorized`."""
    try:
        payload = _token_serializer().loads(
            token, max_age=int(TOKEN_TTL.total_seconds())
        )
    except SignatureExpired:
        raise Unauthorized("Token expired") from None
    except BadData:
        raise Unauthorized("Invalid token") from None
    uid = payload.get("uid") if isinstance(payload, dict) else None
    if not isinstance(uid, int) or isinstance(uid, bool):
        raise Unauthorized("Invalid token")
    if payload.get("exp", 0) < time.time():
        raise Unauthorized("Token expired")
    return uid


def authenticate(login: str, password: str, *, db) -> Principal:
    row = db.execute(
        "SELECT * FROM user WHERE username=? OR email=?"
        " ORDER BY username=? DESC LIMIT 1",
        (login, login, login),
    ).fetchone()
    if row is None or not check_password_hash(row["password_hash"], password):
        raise InvalidCredentials()
    if not row["is_admin"]:
        raise AccessDenied()
    return Principal.from_row(row)


def principal_from_header(header: str | None) -> Principal:
    if not header:
        raise Unauthorized("Authorization header required")
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme != "Bearer" or not token:
        raise Unauthorized("Authorization header must be 'Bearer <token>'")
    user_id = verify_token(token)
    row = get_user(get_db(), user_id)
    if row is None or not row["is_admin"]:
        raise Unauthorized("Invalid user or access denied")
    return Principal.from_row(row)


def admin_required(view):
    """Reject the request unless it carries a valid admin bearer token."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        principal = principal_from_header(request.headers.get("Authorization"))
        g.principal = principal
        return view(principal, *args, **kwargs)

    return wrapped


def change_password(principal: Principal, current: str, new: str, *, db) -> None:
    if not check_password_hash(principal.password_hash, current or ""):
        raise ValidationError("Current password is incorrect")
    if not isinstance(new, str) or len(new) < MIN_PASSWORD_LEN:
        raise ValidationError(
            f"New password must be at least {MIN_PASSWORD_LEN} characters"
        )
    set_password(db, principal.id, new)
    app.logger.info("Password changed for user %s", principal.username)


###############################################################################
# Request-body helpers
###############################################################################
def _text_field(data: dict, key: str, *, required=False, max_len=None, strip=True):
    """Read an optional/required string field from a JSON body."""
    label = key.replace("_", " ").capitalize()
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{label} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    if strip:
        value = value.strip()
    if required and not value.strip():
        raise ValidationError(f"{label} is required")
    if max_len is not None and len(value) > max_len:
        raise ValidationError(f"{label} must be at most {max_len} characters")
    return value


def _bool_field(data: dict, key: str):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value


###############################################################################
# Posts
###############################################################################
def post_to_dict(row, tags=()) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "content": row["content"],
        "summary": row["summary"],
        "slug": row["slug"],
        "published": bool(row["published"]),
        "view_count": row["view_count"],
        "tags": list(tags),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _with_tags(rows, *, db) -> list[dict]:
    tag_map = tags_for_posts([r["id"] for r in rows], db=db)
    return [post_to_dict(r, tag_map.get(r["id"], [])) for r in rows]


def _live_post(post_id: int, *, db, published_only=False):
    sql = "SELECT * FROM post WHERE id=? AND deleted_at IS NULL"
    if published_only:
        sql += " AND published=1"
    row = db.execute(sql, (post_id,)).fetchone()
    if row is None:
        raise NotFound("Post not found")
    return row


def _find_post_row(ident, *, db, published_only=False, slug_only=False):
    """Numeric identifiers are IDs first; anything else is a slug."""
    flt = " AND deleted_at IS NULL" + (" AND published=1" if published_only else "")
    ident = str(ident).strip()
    row = None
    if ident.isdigit() and int(ident) <= ROW_ID_MAX and not slug_only:
        row = db.execute(f"SELECT * FROM post WHERE id=?{flt}", (int(ident),)).fetchone()
    if row is None:
        row = db.execute(f"SELECT * FROM post WHERE slug=?{flt}", (ident,)).fetchone()
    if row is None:
        raise NotFound("Post not found")
    return row


def list_posts(*, db, page=1, limit=PAGE_DEFAULT, published=None):
    """Newest first. *published* of None means both states."""
    sql = "SELECT * FROM post WHERE deleted_at IS NULL"
    params: tuple = ()
    if published is not None:
        sql += " AND published=?"
        params += (int(published),)
    sql += " ORDER BY created_at DESC, id DESC"
    rows, total = paginate(sql, params, page=page, per_page=limit, db=db)
    return _with_tags(rows, db=db), pagination(page=page, limit=limit, total=total)


def posts_by_tag(
    tag_id: int, *, db, page=1, limit=PAGE_DEFAULT, published_only=True
):
    """Live posts carrying the tag; drafts are included unless *published_only*."""
    _live_tag(tag_id, db=db)
    sql = (
        "SELECT p.* FROM post p JOIN post_tag pt ON pt.post_id = p.id"
        " WHERE pt.tag_id=? AND p.deleted_at IS NULL"
    )
    if published_only:
        sql += " AND p.published=1"
    sql += " ORDER BY p.created_at DESC, p.id DESC"
    rows, total = paginate(sql, (tag_id,), page=page, per_page=limit, db=db)
    return _with_tags(rows, db=db), pagination(page=page, limit=limit, total=total)


def get_post(ident, *, db, published_only=False, slug_only=False) -> dict:
    row = _find_post_row(
        ident, db=db, published_only=published_only, slug_only=slug_only
    )
    return _with_tags([row], db=db)[0]


def view_post(ident, *, db, slug_only=False) -> dict:
    """Public read: published posts only, and count the view."""
    post = get_post(ident, db=db, published_only=True, slug_only=slug_only)
    try:
        with db:
            db.execute(
                "UPDATE post SET view_count = view_count + 1 WHERE id=?",
                (post["id"],),
            )
    except sqlite3.Error:
        app.logger.warning("Could not increment views for post %s", post["id"])
    else:
        post["view_count"] += 1
    return post


def create_post(data: dict, *, db) -> dict:
    title = _text_field(data, "title", required=True, max_len=TITLE_MAX_LEN)
    content = _text_field(data, "content", required=True, strip=False)
    summary = _text_field(data, "summary", max_len=SUMMARY_MAX_LEN) or ""
    published = bool(_bool_field(data, "published"))
    tag_ids = (
        parse_tag_ids(data["tag_ids"]) if data.get("tag_ids") is not None else []
    )
    explicit = _text_field(data, "slug")
    slug = ensure_unique_slug(sanitize_slug(explicit or title), db=db)

    now = _now_iso()
    try:
        with db:
            cur = db.execute(
                "INSERT INTO post (title, content, summary, slug, published,"
                " created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
                (title, content, summary, slug, int(published), now, now),
            )
            post_id = cur.lastrowid
            if tag_ids:
                attach_tags(post_id, get_tags_by_ids(tag_ids, db=db), db=db)
    except sqlite3.IntegrityError as exc:
        raise Conflict("A post with this slug already exists") from exc
    app.logger.info("Created post %s (%s)", post_id, slug)
    return get_post(post_id, db=db)


def update_post(post_id: int, data: dict, *, db) -> dict:
    """
    Partial update. `tag_ids` replaces the tag set when present (even
    empty) and leaves it alone when omitted.
    """
    row = _live_post(post_id, db=db)
    fields: dict[str, object] = {}

    title = _text_field(
        data,
        "title",
        required=data.get("title") is not None,
        max_len=TITLE_MAX_LEN,
    )
    explicit = _text_field(data, "slug")
    if title is not None:
        fields["title"] = title
    if explicit:
        wanted = sanitize_slug(explicit)
        if wanted != row["slug"]:
            fields["slug"] = ensure_unique_slug(wanted, db=db, exclude_id=post_id)
    elif title is not None:
        fields["slug"] = ensure_unique_slug(
            sanitize_slug(title), db=db, exclude_id=post_id
        )

    if data.get("content") is not None:
        fields["content"] = _text_field(data, "content", required=True, strip=False)
    summary = _text_field(data, "summary", max_len=SUMMARY_MAX_LEN)
    if summary is not None:
        fields["summary"] = summary
    published = _bool_field(data, "published")
    if published is not None:
        fields["published"] = int(published)
    tag_ids = (
        parse_tag_ids(data["tag_ids"]) if data.get("tag_ids") is not None else None
    )

    fields["updated_at"] = _now_iso()
    assignments = ", ".join(f"{col}=?" for col in fields)
    try:
        with db:
            db.execute(
                f"UPDATE post SET {assignments} WHERE id=?",
                (*fields.values(), post_id),
            )
            if tag_ids is not None:
                set_post_tags(post_id, tag_ids, db=db)
    except sqlite3.IntegrityError as exc:
        raise Conflict("A post with this slug already exists") from exc
    return get_post(post_id, db=db)


def delete_post(post_id: int, *, db) -> None:
    _live_post(post_id, db=db)
    with db:
        db.execute("UPDATE post SET deleted_at=? WHERE id=?", (_now_iso(), post_id))
    app.logger.info("Deleted post %s", post_id)


###############################################################################
# Comments
###############################################################################
def comment_to_dict(row, *, admin=False) -> dict:
    out = {
        "id": row["id"],
        "post_id": row["post_id"],
        "name": row["name"],
        "content": row["content"],
        "created_at": row["created_at"],
    }
    if admin:
        out.update(
            email=row["email"],
            status=row["status"],
            ip_address=row["ip_address"],
            referer=row["referer"],
            updated_at=row["updated_at"],
            post=(
                {"id": row["post_id"], "title": row["post_title"], "slug": row["post_slug"]}
                if row["post_title"] is not None
                else None
            ),
        )
    return out


ADMIN_COMMENT_SQL = """
    SELECT c.*, p.title AS post_title, p.slug AS post_slug
      FROM comment c
      LEFT JOIN post p ON p.id = c.post_id AND p.deleted_at IS NULL
     WHERE c.deleted_at IS NULL
"""


def _validate_status(status) -> str:
    if status not in COMMENT_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}. Must be one of {', '.join(COMMENT_STATUSES)}"
        )
    return status


def client_ip() -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or ""


def create_comment(data: dict, *, db, ip_address="", referer="") -> dict:
    post_id = data.get("post_id")
    if not isinstance(post_id, int) or isinstance(post_id, bool):
        raise ValidationError("post_id must be an integer")
    if abs(post_id) > ROW_ID_MAX:
        raise NotFound("Post not found or not published")
    name = _text_field(data, "name", required=True, max_len=COMMENT_NAME_MAX_LEN)
    content = _text_field(
        data, "content", required=True, max_len=COMMENT_CONTENT_MAX_LEN
    )
    email = _text_field(data, "email") or ""
    if email and not EMAIL_RE.fullmatch(email):
        raise ValidationError("Email must be a valid address")

    row = db.execute(
        "SELECT id FROM post WHERE id=? AND deleted_at IS NULL AND published=1",
        (post_id,),
    ).fetchone()
    if row is None:
        raise NotFound("Post not found or not published")

    now = _now_iso()
    with db:
        cur = db.execute(
            "INSERT INTO comment (post_id, name, email, content, status,"
            " ip_address, referer, created_at, updated_at)"
            " VALUES (?,?,?,?, 'pending', ?,?,?,?)",
            (post_id, name, email, content, ip_address, referer, now, now),
        )
    row = db.execute("SELECT * FROM comment WHERE id=?", (cur.lastrowid,)).fetchone()
    return {**comment_to_dict(row), "status": row["status"]}


def approved_comments(post_id: int, *, db) -> list[dict]:
    _live_post(post_id, db=db, published_only=True)
    rows = db.execute(
        "SELECT * FROM comment WHERE post_id=? AND status='approved'"
        " AND deleted_at IS NULL ORDER BY created_at, id",
        (post_id,),
    ).fetchall()
    return [comment_to_dict(r) for r in rows]


def list_comments(*, db, page=1, limit=LIST_DEFAULT, status=None):
    sql = ADMIN_COMMENT_SQL
    params: tuple = ()
    if status not in (None, "", "all"):
        sql += " AND c.status=?"
        params += (_validate_status(status),)
    sql += " ORDER BY c.created_at DESC, c.id DESC"
    rows, total = paginate(sql, params, page=page, per_page=limit, db=db)
    return (
        [comment_to_dict(r, admin=True) for r in rows],
        pagination(page=page, limit=limit, total=total),
    )


def get_comment(comment_id: int, *, db) -> dict:
    row = db.execute(ADMIN_COMMENT_SQL + " AND c.id=?", (comment_id,)).fetchone()
    if row is None:
        raise NotFound("Comment not found")
    return comment_to_dict(row, admin=True)


def update_comment_status(comment_id: int, status, *, db) -> dict:
    status = _validate_status(status)
    with db:
        cur = db.execute(
            "UPDATE comment SET status=?, updated_at=? WHERE id=? AND deleted_at IS NULL",
            (status, _now_iso(), comment_id),
        )
    if cur.rowcount == 0:
        raise NotFound("Comment not found")
    return get_comment(comment_id, db=db)


def delete_comment(comment_id: int, *, db) -> None:
    with db:
        cur = db.execute(
            "UPDATE comment SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
            (_now_iso(), comment_id),
        )
    if cur.rowcount == 0:
        raise NotFound("Comment not found")


def comment_stats(*, db) -> dict[str, int]:
    stats = {status: 0 for status in COMMENT_STATUSES}
    for r in db.execute(
        "SELECT status, COUNT(*) AS n FROM comment"
        " WHERE deleted_at IS NULL GROUP BY status"
    ):
        stats[r["status"]] = r["n"]
    stats["total"] = sum(stats[s] for s in COMMENT_STATUSES)
    return stats


###############################################################################
# Files
###############################################################################
def file_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "post_id": row["post_id"],
        "original_filename": row["original_filename"],
        "display_name": row["display_name"],
        "description": row["description"],
        "server_path": row["server_path"],
        "url": f"/uploads/{row['server_path']}",
        "file_size": row["file_size"],
        "mime_type": row["mime_type"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "post": (
            {"id": row["post_id"], "title": row["post_title"], "slug": row["post_slug"]}
            if row["post_title"] is not None
            else None
        ),
    }


ADMIN_FILE_SQL = """
    SELECT f.*, p.title AS post_title, p.slug AS post_slug
      FROM file f
      LEFT JOIN post p ON p.id = f.post_id AND p.deleted_at IS NULL
     WHERE f.deleted_at IS NULL
"""


def upload_root() -> Path:
    return Path(app.config["UPLOAD_DIR"])


def save_upload(storage, *, post_id, db, display_name="", description="") -> dict:
    """
    Store an uploaded file under YYYY/MM/<ns-timestamp><ext> and record it.
    The written file is removed again if the row cannot be inserted.
    """
    try:
        post_id = int(post_id)
    except (TypeError, ValueError):
        raise ValidationError("post_id must be an integer") from None
    if abs(post_id) > ROW_ID_MAX:
        raise NotFound("Post not found")
    if storage is None or not storage.filename:
        raise ValidationError("File is required")
    _live_post(post_id, db=db)

    now = utc_now()
    ext = Path(secure_filename(storage.filename)).suffix.lower()
    server_path = f"{now:%Y}/{now:%m}/{time.time_ns()}{ext}"
    target = upload_root() / server_path
    target.parent.mkdir(parents=True, exist_ok=True)
    storage.save(target)

    stamp = now.isoformat(timespec="seconds")
    try:
        with db:
            cur = db.execute(
                "INSERT INTO file (post_id, original_filename, display_name,"
                " description, server_path, file_size, mime_type,"
                " created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    post_id,
                    storage.filename,
                    (display_name or "").strip(),
                    (description or "").strip(),
                    server_path,
                    target.stat().st_size,
                    storage.mimetype or DEFAULT_MIME,
                    stamp,
                    stamp,
                ),
            )
    except sqlite3.Error:
        target.unlink(missing_ok=True)
        raise
    app.logger.info("Stored upload %s for post %s", server_path, post_id)
    return get_file(cur.lastrowid, db=db)


def get_file(file_id: int, *, db) -> dict:
    row = db.execute(ADMIN_FILE_SQL + " AND f.id=?", (file_id,)).fetchone()
    if row is None:
        raise NotFound("File not found")
    return file_to_dict(row)


def list_files(*, db, page=1, limit=LIST_DEFAULT):
    sql = ADMIN_FILE_SQL + " ORDER BY f.created_at DESC, f.id DESC"
    rows, total = paginate(sql, (), page=page, per_page=limit, db=db)
    return [file_to_dict(r) for r in rows], pagination(
        page=page, limit=limit, total=total
    )


def files_for_post(post_id: int, *, db) -> list[dict]:
    _live_post(post_id, db=db)
    rows = db.execute(
        ADMIN_FILE_SQL + " AND f.post_id=? ORDER BY f.created_at DESC, f.id DESC",
        (post_id,),
    ).fetchall()
    return [file_to_dict(r) for r in rows]


def update_file(file_id: int, data: dict, *, db) -> dict:
    get_file(file_id, db=db)
    display_name = _text_field(data, "display_name")
    description = _text_field(data, "description")
    with db:
        db.execute(
            "UPDATE file SET display_name=COALESCE(?, display_name),"
            " description=COALESCE(?, description), updated_at=? WHERE id=?",
            (display_name, description, _now_iso(), file_id),
        )
    return get_file(file_id, db=db)


def delete_file(file_id: int, *, db) -> None:
    """Soft-delete the record, then remove the stored file best-effort."""
    record = get_file(file_id, db=db)
    with db:
        db.execute("UPDATE file SET deleted_at=? WHERE id=?", (_now_iso(), file_id))
    try:
        (upload_root() / record["server_path"]).unlink(missing_ok=True)
    except OSError:
        app.logger.warning("Could not remove stored file %s", record["server_path"])


###############################################################################
# Render context
###############################################################################
@dataclass(frozen=True)
class RenderContext:
    """Site-wide values every page and the feed need, read once per request."""

    blog_name: str
    blog_description: str
    blog_introduction: str
    language: str
    timezone: str
    custom_css: str
    footer_links: list
    base_url: str
    year: int


def base_url() -> str:
    return app.config.get("BASE_URL") or request.url_root.rstrip("/")


def render_context() -> RenderContext:
    """Read the settings once and freeze them for one page or feed."""
    cfg = get_all_configs()
    return RenderContext(
        blog_name=cfg["blog_name"],
        blog_description=cfg["blog_description"],
        blog_introduction=cfg["blog_introduction"],
        language=cfg["language"] or "en",
        timezone=cfg["timezone"] or "UTC",
        custom_css=cfg["custom_css"],
        footer_links=parse_footer_links(cfg["footer_links"]),
        base_url=base_url(),
        year=utc_now().year,
    )


###############################################################################
# RSS feed
###############################################################################
def _rfc2822(dt_str: str) -> str:
    """ISO-8601 → RFC 2822 (Tue, 24 Jun 2025 09:22:20 +0000)."""
    try:
        return datetime.fromisoformat(dt_str).strftime(RFC2822_FMT)
    except ValueError:
        return dt_str


def feed_description(post: dict) -> str:
    """The summary, or the tag-stripped body cut near a word boundary."""
    if post["summary"]:
        return post["summary"]
    text = re.sub(r"\s*\n+\s*", " ", HTML_TAG_RE.sub("", post["content"])).strip()
    if len(text) <= RSS_SUMMARY_LEN:
        return text
    cut = text[:RSS_SUMMARY_LEN]
    space = cut.rfind(" ")
    if space > RSS_SUMMARY_MIN_CUT:
        cut = cut[:space]
    return cut + "..."


def rss_limit(raw) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return RSS_LIMIT_DEFAULT
    if limit < 1:
        return RSS_LIMIT_DEFAULT
    return min(limit, RSS_LIMIT_MAX)


def build_rss(posts: list[dict], ctx: RenderContext) -> str:
    """Build a valid RSS 2.0 document (single string)."""
    now = utc_now().strftime(RFC2822_FMT)
    items = []
    for p in posts:
        link = f"{ctx.base_url}/posts/{p['slug']}"
        categories = "".join(
            f"\n      <category>{escape(t['name'])}</category>" for t in p["tags"]
        )
        items.append(
            f"""    <item>
      <title>{escape(p["title"])}</title>
      <link>{escape(link)}</link>
      <guid isPermaLink="true">{escape(link)}</guid>
      <description>{escape(feed_description(p))}</description>
      <pubDate>{_rfc2822(p["created_at"])}</pubDate>{categories}
    </item>"""
        )
    last_build = _rfc2822(posts[0]["created_at"]) if posts else now
    body = "\n".join(items)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>{escape(ctx.blog_name)}</title>
    <link>{escape(ctx.base_url)}</link>
    <description>{escape(ctx.blog_description)}</description>
    <language>{escape(ctx.language)}</language>
    <lastBuildDate>{last_build}</lastBuildDate>
    <pubDate>{now}</pubDate>
    <ttl>60</ttl>
    <generator>inkpress {escape(__version__)}</generator>
{body}
  </channel>
</rss>
"""


@app.route("/rss")
@app.route("/rss.xml")
@app.route("/feed")
@app.route("/feed.xml")
def rss_feed():
    db = get_db()
    limit = rss_limit(request.args.get("limit"))
    posts, _ = list_posts(db=db, page=1, limit=limit, published=True)
    resp = Response(
        build_rss(posts, render_context()),
        content_type="application/rss+xml; charset=utf-8",
    )
    resp.headers["Cache-Control"] = "public, max-age=3600"
    return resp


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="{{ ctx.language }}">
<title>{% if title %}{{ title }} · {% endif %}{{ ctx.blog_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
<meta name="description" content="{{ ctx.blog_description }}">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('rss_feed') }}" title="{{ ctx.blog_name }} – RSS">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;word-break:break-word}p{margin-top:0;margin-bottom:2.5rem}a{color:#ffffff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:0.18em}a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}pre{background-color:#4a4a4a;padding:1em;overflow-x:auto;font-size:0.9em}code{font-size:0.9em;padding:0 0.5em;background-color:#4a4a4a}pre>code{padding:0;background:transparent}blockquote{margin:0 0 2.5rem;padding:.8em 1em;border-left:5px solid #ffffff;background-color:#4a4a4a}img{max-width:100%;height:auto}
.tagline{color:#bcbcbc;margin:0}
.post-card{margin-bottom:3rem}.post-card h2{margin:0 0 .5rem}
.meta{color:#888;font-size:.8em}
.tag-pill{display:inline-block;padding:.1em .6em;margin-right:.4em;border-radius:1em;font-size:.75em;color:#fff;text-decoration:none}
.comment{border-left:3px solid #444;padding-left:1rem;margin-bottom:1.5rem}
.pager{display:flex;justify-content:space-between;margin-top:2rem}
footer{margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;display:flex;justify-content:space-between;border-top:1px solid #444}
{{ ctx.custom_css|safe }}
</style>
<body>
{% macro tag_pills(tags) -%}
  {% for t in tags %}
    <a class="tag-pill" href="{{ url_for('tag_page', tag_id=t.id) }}"
       style="background:{{ t.color }}">{{ t.name }}</a>
  {% endfor %}
{%- endmacro %}
{% macro pager(pg) -%}
  {% if pg.total_pages > 1 %}
  <nav class="pager" aria-label="Pagination">
    <span>{% if pg.page > 1 %}<a href="?page={{ pg.page - 1 }}">← Newer</a>{% endif %}</span>
    <span class="meta">{{ pg.page }} / {{ pg.total_pages }}</span>
    <span>{% if pg.page < pg.total_pages %}<a href="?page={{ pg.page + 1 }}">Older →</a>{% endif %}</span>
  </nav>
  {% endif %}
{%- endmacro %}
<div class="container" style="max-width: 60rem; margin: 3rem auto;">
    <header style="margin-bottom:2rem;">
        <h1 style="margin:0;font-size:2.25em">
            <a href="{{ url_for('index') }}" style="text-decoration:none;">{{ ctx.blog_name }}</a>
        </h1>
        {% if ctx.blog_description %}<p class="tagline">{{ ctx.blog_description }}</p>{% endif %}
    </header>
    <main id="main-content" role="main">
"""

TEMPL_EPILOG = """
    </main>
    <footer id="page-bottom">
        <span>© {{ ctx.year }} {{ ctx.blog_name }} · inkpress v{{ version }}</span>
        <nav aria-label="Footer">
            {% for link in ctx.footer_links %}
                <a href="{{ link.url }}">{{ link.text }}</a>{% if not loop.last %}&nbsp;{% endif %}
            {% endfor %}
        </nav>
    </footer>
</div>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
  {% if ctx.blog_introduction and pagination.page == 1 %}
    <section class="intro">{{ ctx.blog_introduction|md }}</section>
  {% endif %}
  {% for p in posts %}
    <article class="post-card">
      <h2><a href="{{ url_for('post_detail', slug=p.slug) }}">{{ p.title }}</a></h2>
      <div class="meta">{{ p.created_at|localdate(ctx.timezone) }} · {{ p.view_count }} views</div>
      {% if p.summary %}<p>{{ p.summary }}</p>{% endif %}
      {{ tag_pills(p.tags) }}
    </article>
  {% else %}
    <p>No posts yet.</p>
  {% endfor %}
  {{ pager(pagination) }}
{% endblock %}
""")

TEMPL_POST = wrap("""
{% block body %}
  <article>
    <h2 style="margin-top:0">{{ post.title }}</h2>
    <div class="meta">{{ post.created_at|localdate(ctx.timezone) }} · {{ post.view_count }} views</div>
    {{ tag_pills(post.tags) }}
    <div class="e-content">{{ post.content|md }}</div>
  </article>
  <section id="comments">
    <h3>Comments ({{ comments|length }})</h3>
    {% for c in comments %}
      <div class="comment">
        <strong>{{ c.name }}</strong>
        <span class="meta">{{ c.created_at|localdate(ctx.timezone) }}</span>
        <p>{{ c.content }}</p>
      </div>
    {% else %}
      <p class="meta">No comments yet.</p>
    {% endfor %}
  </section>
{% endblock %}
""")

TEMPL_TAGS = wrap("""
{% block body %}
  <h2 style="margin-top:0">Tags</h2>
  {% for t in tags %}
    <a class="tag-pill" href="{{ url_for('tag_page', tag_id=t.id) }}"
       style="background:{{ t.color }}">{{ t.name }} ({{ t.post_count }})</a>
  {% else %}
    <p>No tags yet.</p>
  {% endfor %}
{% endblock %}
""")

TEMPL_TAG = wrap("""
{% block body %}
  <h2 style="margin-top:0">Posts tagged <span style="color:{{ tag.color }}">{{ tag.name }}</span></h2>
  {% for p in posts %}
    <article class="post-card">
      <h3><a href="{{ url_for('post_detail', slug=p.slug) }}">{{ p.title }}</a></h3>
      <div class="meta">{{ p.created_at|localdate(ctx.timezone) }}</div>
      {% if p.summary %}<p>{{ p.summary }}</p>{% endif %}
    </article>
  {% else %}
    <p>No posts with this tag.</p>
  {% endfor %}
  {{ pager(pagination) }}
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Something went wrong on our side.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")


###############################################################################
# Public pages
###############################################################################
def _int_arg(name: str, default: int, *, hi: int | None = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    value = max(value, 1)
    return min(value, hi) if hi else value


def _page_args(default_limit: int) -> tuple[int, int]:
    page = _int_arg("page", 1, hi=PAGE_MAX)
    return page, _int_arg("limit", default_limit, hi=LIMIT_MAX)


def _bool_arg(name: str, default=None):
    raw = request.args.get(name, "").strip().lower()
    if raw in ("true", "1", "yes"):
        return True
    if raw in ("false", "0", "no"):
        return False
    return default


@app.route("/")
def index():
    posts, pag = list_posts(
        db=get_db(),
        page=_int_arg("page", 1, hi=PAGE_MAX),
        limit=PAGE_DEFAULT,
        published=True,
    )
    return render_template_string(
        TEMPL_INDEX, ctx=render_context(), posts=posts, pagination=pag
    )


@app.route("/posts/<slug>")
def post_detail(slug):
    db = get_db()
    post = view_post(slug, db=db, slug_only=True)
    return render_template_string(
        TEMPL_POST,
        ctx=render_context(),
        title=post["title"],
        post=post,
        comments=approved_comments(post["id"], db=db),
    )


@app.route("/tags")
def tags_page():
    return render_template_string(
        TEMPL_TAGS,
        ctx=render_context(),
        title="Tags",
        tags=list_tags_with_counts(db=get_db()),
    )


@app.route("/tags/<int:tag_id>")
def tag_page(tag_id):
    db = get_db()
    tag = get_tag(tag_id, db=db)
    posts, pag = posts_by_tag(
        tag_id,
        db=db,
        page=_int_arg("page", 1, hi=PAGE_MAX),
        limit=PAGE_DEFAULT,
        published_only=True,
    )
    return render_template_string(
        TEMPL_TAG,
        ctx=render_context(),
        title=tag["name"],
        tag=tag,
        posts=posts,
        pagination=pag,
    )


@app.route("/uploads/<path:filename>")
def uploaded_file(filename):
    return send_from_directory(upload_root(), filename)


@app.route("/health")
def health():
    return {"status": "ok"}


###############################################################################
# JSON API – auth + settings
###############################################################################
def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid request body")
    return data


@app.route("/api/auth/login", methods=["POST"])
def api_login():
    data = _json_body()
    login, password = data.get("username"), data.get("password")
    if not isinstance(login, str) or not login.strip():
        raise ValidationError("Username and password are required")
    if not isinstance(password, str) or not password:
        raise ValidationError("Username and password are required")
    principal = authenticate(login.strip(), password, db=get_db())
    return {"token": issue_token(principal.id), "user": principal.to_dict()}


@app.route("/api/config")
def api_config():
    return {"configs": get_all_configs()}


@app.route("/api/settings/config", methods=["PUT"])
@admin_required
def api_update_config(principal):
    updates = validate_config_updates(_json_body().get("configs"))
    update_configs(updates)
    app.logger.info(
        "%s updated settings: %s", principal.username, ", ".join(sorted(updates))
    )
    return {
        "message": "Configuration updated successfully",
        "configs": get_all_configs(),
    }


@app.route("/api/settings/password", methods=["PUT"])
@admin_required
def api_change_password(principal):
    data = _json_body()
    current, new = data.get("current_password"), data.get("new_password")
    if not isinstance(current, str) or not isinstance(new, str):
        raise ValidationError("current_password and new_password are required")
    change_password(principal, current, new, db=get_db())
    return {"message": "Password updated successfully"}


###############################################################################
# JSON API – posts
###############################################################################
@app.route("/api/posts", methods=["GET"])
def api_posts():
    page, limit = _page_args(PAGE_DEFAULT)
    posts, pag = list_posts(db=get_db(), page=page, limit=limit, published=True)
    return {"posts": posts, "pagination": pag}


@app.route("/api/posts/<ident>", methods=["GET"])
def api_post(ident):
    return {"post": view_post(ident, db=get_db())}


@app.route("/api/posts/<int:post_id>/comments")
def api_post_comments(post_id):
    return {"comments": approved_comments(post_id, db=get_db())}


@app.route("/api/admin/posts")
@admin_required
def api_admin_posts(principal):
    page, limit = _page_args(PAGE_DEFAULT)
    posts, pag = list_posts(
        db=get_db(), page=page, limit=limit, published=_bool_arg("published")
    )
    return {"posts": posts, "pagination": pag}


@app.route("/api/admin/posts/<int:post_id>")
@admin_required
def api_admin_post(principal, post_id):
    db = get_db()
    return {"post": _with_tags([_live_post(post_id, db=db)], db=db)[0]}


@app.route("/api/admin/posts/<int:post_id>/files")
@admin_required
def api_admin_post_files(principal, post_id):
    return {"files": files_for_post(post_id, db=get_db())}


@app.route("/api/posts", methods=["POST"])
@admin_required
def api_create_post(principal):
    return {"post": create_post(_json_body(), db=get_db())}, 201


@app.route("/api/posts/<int:post_id>", methods=["PUT"])
@admin_required
def api_update_post(principal, post_id):
    return {"post": update_post(post_id, _json_body(), db=get_db())}


@app.route("/api/posts/<int:post_id>", methods=["DELETE"])
@admin_required
def api_delete_post(principal, post_id):
    delete_post(post_id, db=get_db())
    return {"message": "Post deleted successfully"}


###############################################################################
# JSON API – tags
###############################################################################
@app.route("/api/tags", methods=["GET"])
def api_tags():
    return {"tags": list_tags(db=get_db())}


@app.route("/api/tags/with-counts")
def api_tags_with_counts():
    return {"tags": list_tags_with_counts(db=get_db())}


@app.route("/api/tags/<int:tag_id>", methods=["GET"])
def api_tag(tag_id):
    return {"tag": get_tag(tag_id, db=get_db())}


@app.route("/api/tags/<int:tag_id>/posts")
def api_tag_posts(tag_id):
    db = get_db()
    page, limit = _page_args(PAGE_DEFAULT)
    posts, pag = posts_by_tag(
        tag_id,
        db=db,
        page=page,
        limit=limit,
        published_only=_bool_arg("published", True),
    )
    return {"tag": get_tag(tag_id, db=db), "posts": posts, "pagination": pag}


@app.route("/api/tags", methods=["POST"])
@admin_required
def api_create_tag(principal):
    data = _json_body()
    return {"tag": create_tag(data.get("name"), data.get("color"), db=get_db())}, 201


@app.route("/api/tags/<int:tag_id>", methods=["PUT"])
@admin_required
def api_update_tag(principal, tag_id):
    data = _json_body()
    tag = update_tag(
        tag_id, name=data.get("name"), color=data.get("color"), db=get_db()
    )
    return {"tag": tag}


@app.route("/api/tags/<int:tag_id>", methods=["DELETE"])
@admin_required
def api_delete_tag(principal, tag_id):
    delete_tag(tag_id, db=get_db())
    return {"message": "Tag deleted successfully"}


###############################################################################
# JSON API – comments
###############################################################################
@app.route("/api/comments", methods=["POST"])
def api_create_comment():
    comment = create_comment(
        _json_body(),
        db=get_db(),
        ip_address=client_ip(),
        referer=request.headers.get("Referer", ""),
    )
    return {
        "message": "Comment submitted successfully and is pending moderation",
        "comment": comment,
    }, 201


@app.route("/api/admin/comments")
@admin_required
def api_admin_comments(principal):
    page, limit = _page_args(LIST_DEFAULT)
    comments, pag = list_comments(
        db=get_db(), page=page, limit=limit, status=request.args.get("status")
    )
    return {"comments": comments, "pagination": pag}


@app.route("/api/admin/comments/stats")
@admin_required
def api_comment_stats(principal):
    return {"stats": comment_stats(db=get_db())}


@app.route("/api/admin/comments/<int:comment_id>", methods=["GET"])
@admin_required
def api_admin_comment(principal, comment_id):
    return {"comment": get_comment(comment_id, db=get_db())}


@app.route("/api/admin/comments/<int:comment_id>/status", methods=["PUT"])
@admin_required
def api_comment_status(principal, comment_id):
    status = _json_body().get("status")
    return {"comment": update_comment_status(comment_id, status, db=get_db())}


@app.route("/api/admin/comments/<int:comment_id>", methods=["DELETE"])
@admin_required
def api_delete_comment(principal, comment_id):
    delete_comment(comment_id, db=get_db())
    return {"message": "Comment deleted successfully"}


###############################################################################
# JSON API – files
###############################################################################
@app.route("/api/admin/files", methods=["POST"])
@admin_required
def api_upload_file(principal):
    record = save_upload(
        request.files.get("file"),
        post_id=request.form.get("post_id"),
        display_name=request.form.get("display_name", ""),
        description=request.form.get("description", ""),
        db=get_db(),
    )
    return {"file": record}, 201


@app.route("/api/admin/files", methods=["GET"])
@admin_required
def api_files(principal):
    page, limit = _page_args(LIST_DEFAULT)
    files, pag = list_files(db=get_db(), page=page, limit=limit)
    return {"files": files, "pagination": pag}


@app.route("/api/admin/files/<int:file_id>", methods=["GET"])
@admin_required
def api_file(principal, file_id):
    return {"file": get_file(file_id, db=get_db())}


@app.route("/api/admin/files/<int:file_id>", methods=["PUT"])
@admin_required
def api_update_file(principal, file_id):
    return {"file": update_file(file_id, _json_body(), db=get_db())}


@app.route("/api/admin/files/<int:file_id>", methods=["DELETE"])
@admin_required
def api_delete_file(principal, file_id):
    delete_file(file_id, db=get_db())
    return {"message": "File deleted successfully"}


###############################################################################
# Error handlers
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


def _page_context() -> RenderContext:
    """Render context for error pages; falls back to defaults if the DB is down."""
    try:
        return render_context()
    except sqlite3.Error:
        return RenderContext(
            blog_name=CONFIG_DEFAULTS["blog_name"],
            blog_description=CONFIG_DEFAULTS["blog_description"],
            blog_introduction="",
            language=CONFIG_DEFAULTS["language"],
            timezone=CONFIG_DEFAULTS["timezone"],
            custom_css="",
            footer_links=[dict(link) for link in DEFAULT_FOOTER_LINKS],
            base_url=base_url(),
            year=utc_now().year,
        )


def not_found_page():
    """Site-wide “Not Found” page."""
    return render_template_string(
        TEMPL_404, ctx=_page_context(), title="Not found"
    ), 404


def server_error_page():
    return render_template_string(
        TEMPL_500, ctx=_page_context(), title="Error"
    ), 500


@app.errorhandler(BlogError)
def handle_blog_error(exc: BlogError):
    if exc.status >= 500:
        app.logger.error("%s: %s", type(exc).__name__, exc.message)
    if not _wants_json():
        if exc.status == 404:
            return not_found_page()
        if exc.status >= 500:
            return server_error_page()
    return {"error": exc.message}, exc.status


@app.errorhandler(sqlite3.Error)
def handle_db_error(exc):
    app.logger.exception("Database error on %s %s", request.method, request.path)
    if _wants_json():
        return {"error": "Internal server error"}, 500
    return server_error_page()


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    if _wants_json():
        return {"error": exc.description}, exc.code
    if exc.code == 404:
        return not_found_page()
    if exc.code == 500:
        return server_error_page()
    return exc


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
