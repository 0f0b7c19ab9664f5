# main.py: quiz attempt service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the session (Google OAuth or single-password login) or IAP headers;
# per-course roles come from public.enrollments.

import os
import json
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit
from typing import Optional

from flask import Flask, abort, request, redirect, g, session, jsonify
from markupsafe import escape

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from quiz import create_quiz_blueprint
from quiz_storage import make_download

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
API_PREFIX = BASE_PATH + "/api/"

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,  # HTTPS in production
)

AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# OAuth (Google)
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

SIMPLE_LOGIN_PASSWORD = os.getenv("SIMPLE_LOGIN_PASSWORD", "")
SIMPLE_LOGIN_USER_EMAIL = (os.getenv("SIMPLE_LOGIN_USER_EMAIL") or "quiz-user@example.com").strip().lower()
PASSWORD_LOGIN_ENABLED = bool(SIMPLE_LOGIN_PASSWORD) and (
    oauth is None or os.getenv("ENABLE_PASSWORD_LOGIN", "0").lower() in {"1", "true", "yes"}
)

if AUTH_REQUIRED:
    if PASSWORD_LOGIN_ENABLED:
        print("[Auth] Password login enabled.", flush=True)
    elif oauth is not None:
        print("[Auth] Google OAuth configured.", flush=True)
    else:
        print("[Auth] No login method configured; only IAP headers will authenticate.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _parse_database_url(url: str) -> dict:
    # Accept SQLAlchemy-style schemes too
    if "+psycopg" in url.split("://", 1)[0]:
        url = "postgresql://" + url.split("://", 1)[1]
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
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
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port and not str(host or "").startswith("/"):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()
    urls = [] if FORCE_TCP else [("DATABASE_URL_LOCAL", None if managed else DATABASE_URL_LOCAL),
                                 ("DATABASE_URL", DATABASE_URL)]
    for name, url in urls:
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {name}: {e}")
            continue
        host = str(kwargs.get("host") or "")
        if not managed and host.startswith("/cloudsql/"):
            print(f"[DB] {name} targets /cloudsql/ but we are local; ignoring.")
            continue
        print(f"[DB] Using {name} -> {host or 'localhost'}")
        return kwargs
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL or DB_NAME, DB_USER, DB_PASS.")
    kwargs = {
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if managed and INSTANCE_CONNECTION_NAME and not FORCE_TCP:
        kwargs["host"] = f"/cloudsql/{INSTANCE_CONNECTION_NAME}"
        print(f"[DB] Managed runtime: Unix socket -> {kwargs['host']}")
    else:
        kwargs.update(host=DB_HOST or "127.0.0.1", port=int(DB_PORT or "5432"))
        print(f"[DB] TCP -> {kwargs['host']}:{kwargs['port']}")
    return kwargs

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
        if any(ch.isspace() for ch in s) or "'" in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=DB_POOL_MAX)

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
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

# =============================================================================
# Activity log (append-only audit trail)
# =============================================================================
def log_activity(user_id: int, course_id: int, lesson_uid: Optional[str],
                 a_type: Optional[str], score_points: Optional[int] = None,
                 passed: Optional[bool] = None, payload: Optional[dict] = None):
    if not payload or not isinstance(payload, (dict, list)):
        payload = {"kind": "event"}
    try:
        execute("""
            INSERT INTO public.activity_log
                (user_id, course_id, lesson_uid, a_type, created_at, score_points, passed, payload)
            VALUES (%s, %s, %s, %s, now(), %s, %s, %s);
        """, (user_id, course_id, str(lesson_uid), a_type or "event", score_points, passed,
              json.dumps(payload, default=str)))
    except Exception as e:
        print(f"[activity] insert failed (safe): {e}")

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM public.users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO public.users (email, full_name)
        VALUES (%s, %s)
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

def get_role(user_id: int, course_id: int) -> Optional[str]:
    """'student' | 'teacher' | 'ta' for an enrolled user, else None."""
    row = fetch_one("""
        SELECT role
          FROM public.enrollments
         WHERE user_id = %s AND course_id = %s
         LIMIT 1;
    """, (user_id, course_id))
    role = (row or {}).get("role")
    return role.strip().lower() if isinstance(role, str) and role.strip() else None

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
        return (f"error: {e}", 500)

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/")
    path = parts.path or "/"
    if any(path == p or path.startswith(p + "/") for p in {_bp("/login"), _bp("/auth")}):
        return _bp("/")
    return urlunsplit(("", "", path, parts.query, "")) or _bp("/")

_LOGIN_FORM = """
<!doctype html>
<html lang="en"><meta charset="utf-8">
<title>Sign in</title>
<body style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial,sans-serif;margin:2rem">
  <h1>Sign in</h1>
  {error}
  <form method="post" action="{action}">
    <input type="hidden" name="next" value="{next_url}">
    <input type="password" name="password" placeholder="Password" autofocus>
    <button type="submit">Sign in</button>
  </form>
</body></html>"""

@app.route("/login", methods=["GET", "POST"])
def login():
    if PASSWORD_LOGIN_ENABLED:
        next_url = _sanitize_next(request.values.get("next") or session.get("login_next"))
        session["login_next"] = next_url
        error = ""
        if request.method == "POST":
            if (request.form.get("password") or "").strip() == SIMPLE_LOGIN_PASSWORD:
                session["user"] = {"email": SIMPLE_LOGIN_USER_EMAIL, "name": "Quiz User", "sub": "password-login"}
                return redirect(_sanitize_next(session.pop("login_next", None)))
            error = "<p style='color:#b00'>Incorrect password. Please try again.</p>"
        html = _LOGIN_FORM.format(error=error, action=escape(_bp("/login")), next_url=escape(next_url))
        return (html, 401 if error else 200)

    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/logout")
def logout():
    session.clear()
    return redirect(_bp("/login"))

@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") or {}
    if not claims:
        resp = provider.google.get("https://openidconnect.googleapis.com/v1/userinfo")
        claims = resp.json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "picture": claims.get("picture"),
        "sub": claims.get("sub"),
    }
    try:
        ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}")
    return redirect(_sanitize_next(session.pop("login_next", None)))

if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET", "POST"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_bp",
                     view_func=auth_callback, methods=["GET"])

def _is_public_path(path: str) -> bool:
    public_exact = {
        "/healthz", _bp("/healthz"),
        "/login", _bp("/login"),
        "/logout", _bp("/logout"),
        "/auth/google/callback", _bp("/auth/google/callback"),
    }
    return path in public_exact

@app.before_request
def enforce_or_attach_identity():
    path = request.path
    if _is_public_path(path):
        return
    email = current_user_email()
    if email:
        g.user_email = email
        try:
            g.user_id = ensure_user_row(email)
        except Exception as e:
            print(f"[Auth] ensure_user_row failed for {email}: {e}")
            if path.startswith(API_PREFIX):
                return jsonify({"ok": False, "error": "Storage is temporarily unavailable.",
                                "code": "store_unavailable"}), 503
        return
    if not AUTH_REQUIRED:
        return
    if path.startswith(API_PREFIX):
        return jsonify({"ok": False, "error": "Unauthorized", "code": "unauthenticated"}), 401
    full = request.full_path if request.query_string else request.path
    return redirect(f"{_bp('/login')}?next={quote(_sanitize_next(full), safe='/:?&=')}")

# =============================================================================
# Quiz API
# =============================================================================
_quiz_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "get_role": get_role,
    "log_activity": log_activity,
    "download": make_download(),
}
app.register_blueprint(create_quiz_blueprint(BASE_PATH, _quiz_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
