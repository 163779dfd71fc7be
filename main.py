# main.py: certification exam API, BASE_PATH-aware (psycopg3 + pooling)
# Sign-in is Google OAuth; every /api handler answers 401 itself when there is no session.

import os
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse, parse_qs, unquote, urlsplit, urlunsplit
from typing import Any, Dict, Optional

from flask import Flask, abort, request, redirect, g, session, jsonify
from werkzeug.exceptions import HTTPException

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

# Blueprints / route groups
from exam import create_exam_blueprint
from certificates import create_certificates_blueprint, issue_certificate
from payments import create_payments_blueprint
from course import register_course_routes
from course_content_loader import (
    list_courses, load_course_lessons, load_course_metadata, load_exam_questions,
)
from notifier import dispatch_result_email
from ratelimit import create_rate_limiter

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
APP_URL = (os.getenv("APP_URL", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# OAuth (Google); supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
else:
    print("[Auth] Google OAuth not configured; sign-in is unavailable.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

def _on_managed_runtime() -> bool:
    # Cloud Run / GAE
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {host}")
    else:
        print(f"[DB] {origin}: TCP -> {host}:{kwargs.get('port', 5432)}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style driver suffixes are accepted and dropped
    scheme, sep, rest = url.partition("://")
    if sep and "+" in scheme:
        url = scheme.split("+", 1)[0] + "://" + rest

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    for origin, url in (("DATABASE_URL_LOCAL", None if managed else DATABASE_URL_LOCAL),
                        ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            parsed = _parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}")
            continue
        host = parsed.get("host")
        if not managed and isinstance(host, str) and host.startswith("/cloudsql/"):
            print(f"[DB] {origin} targets /cloudsql/ but we are local; ignoring.")
            continue
        _log_choice(parsed, f"Using {origin}")
        return parsed

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if not s or any(ch.isspace() for ch in s) or "'" in s or "\\" in s:
            s = "'" + s.replace("\\", "\\\\").replace("'", "\\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1,
                              max_size=DB_POOL_MAX, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall() if cur.description else []

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(q, params or ())
            count = cur.rowcount
        conn.commit()
        return count

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

class _Tx:
    """Query helpers bound to one open transaction."""

    def __init__(self, conn):
        self._conn = conn

    def fetch_all(self, q, params=None):
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall() if cur.description else []

    def fetch_one(self, q, params=None):
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q, params=None):
        with self._conn.cursor() as cur:
            cur.execute(q, params or ())
            return cur.rowcount

    @contextmanager
    def savepoint(self):
        # nested transaction() == SAVEPOINT; an exception rolls back to it and re-raises
        with self._conn.transaction():
            yield self

@contextmanager
def transaction():
    """Commit on clean exit, roll back on exception."""
    with get_conn() as conn:
        with conn.transaction():
            yield _Tx(conn)

# =============================================================================
# Identity helpers
# =============================================================================
def current_user_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def ensure_user_row(email: str, full_name: Optional[str] = None) -> Dict[str, Any]:
    row = fetch_one("SELECT id, role, full_name FROM public.users WHERE email = %s;", (email,))
    if row:
        return row
    display = (full_name or "").strip() or email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO public.users (email, full_name, role)
        VALUES (%s, %s, 'candidate')
        ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
        RETURNING id, role, full_name;
    """, (email, display))
    return rows[0]

@app.before_request
def attach_identity():
    g.user_id = None
    g.user_email = None
    g.user_role = None
    g.user_name = None
    email = current_user_email()
    if not email:
        return
    try:
        row = ensure_user_row(email, (session.get("user") or {}).get("name"))
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}", flush=True)
        return
    g.user_email = email
    g.user_id = str(row["id"])
    g.user_role = row.get("role")
    g.user_name = row.get("full_name")

# =============================================================================
# Errors (JSON only, no stack traces)
# =============================================================================
@app.errorhandler(HTTPException)
def http_error(e: HTTPException):
    return jsonify({"ok": False, "error": e.description or e.name}), e.code

@app.errorhandler(Exception)
def unhandled_error(e: Exception):
    print(f"[app] unhandled error on {request.method} {request.path}: {e!r}", flush=True)
    return jsonify({"ok": False, "error": "Internal server error"}), 500

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        print(f"[DB] healthz failed: {e}", flush=True)
        return ("db-fail", 500)

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return "/"
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc or next_url.startswith("//"):
        return "/"
    return urlunsplit(("", "", parts.path or "/", parts.query, "")) or "/"

def _after_auth_url(next_url: str) -> str:
    return (APP_URL + next_url) if APP_URL else next_url

def login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

def logout():
    session.clear()
    return redirect(_after_auth_url(_sanitize_next(request.args.get("next"))))

def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") or {}
    if not claims:
        resp = provider.google.get("https://openidconnect.googleapis.com/v1/userinfo")
        claims = resp.json() or {}

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "sub": claims.get("sub"),
    }
    try:
        ensure_user_row(email, claims.get("name"))
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}", flush=True)

    return redirect(_after_auth_url(_sanitize_next(session.pop("login_next", None))))

def whoami():
    if not g.user_id:
        return jsonify({"ok": False, "error": "Unauthorized"}), 401
    return jsonify({
        "ok": True,
        "user": {"id": g.user_id, "email": g.user_email, "name": g.user_name, "role": g.user_role},
    })

for _prefix in ([""] + ([BASE_PATH] if BASE_PATH else [])):
    _sfx = "_bp" if _prefix else ""
    app.add_url_rule(f"{_prefix}/login", endpoint=f"login{_sfx}", view_func=login, methods=["GET"])
    app.add_url_rule(f"{_prefix}/logout", endpoint=f"logout{_sfx}", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{_prefix}/auth/google/callback", endpoint=f"auth_callback{_sfx}",
                     view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{_prefix}/api/auth/me", endpoint=f"whoami{_sfx}", view_func=whoami, methods=["GET"])

# =============================================================================
# Register route groups
# =============================================================================
rate_limit = create_rate_limiter(execute_returning, execute)

_exam_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "transaction": transaction,
    "load_course_metadata": load_course_metadata,
    "load_exam_questions": load_exam_questions,
    "issue_certificate": issue_certificate,
    "notify_result": dispatch_result_email,
    "rate_limit": rate_limit,
}
_certificate_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "transaction": transaction,
    "load_course_metadata": load_course_metadata,
    "rate_limit": rate_limit,
    "app_url": APP_URL,
}
_payment_deps = {
    "fetch_one": fetch_one,
    "execute": execute,
    "execute_returning": execute_returning,
    "load_course_metadata": load_course_metadata,
    "load_course_lessons": load_course_lessons,
    "rate_limit": rate_limit,
    "app_url": APP_URL,
}
_course_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "transaction": transaction,
    "list_courses": list_courses,
    "load_course_metadata": load_course_metadata,
    "load_course_lessons": load_course_lessons,
}

app.register_blueprint(create_exam_blueprint("", _exam_deps, name="exam"))
app.register_blueprint(create_certificates_blueprint("", _certificate_deps, name="certificates"))
app.register_blueprint(create_payments_blueprint("", _payment_deps, name="payments"))
if BASE_PATH:
    app.register_blueprint(create_exam_blueprint(BASE_PATH, _exam_deps, name="exam_alias"))
    app.register_blueprint(create_certificates_blueprint(BASE_PATH, _certificate_deps, name="certificates_alias"))
    app.register_blueprint(create_payments_blueprint(BASE_PATH, _payment_deps, name="payments_alias"))
register_course_routes(app, BASE_PATH, _course_deps)

# =============================================================================
# CLI: apply database/schema.sql
# =============================================================================
SCHEMA_PATH = Path(__file__).resolve().parent / "database" / "schema.sql"

@app.cli.command("init-db")
def init_db_command():
    """Create the tables this service uses (idempotent)."""
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    with get_conn() as conn:
        conn.execute(sql)
        conn.commit()
    print(f"[DB] schema applied from {SCHEMA_PATH}")

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
