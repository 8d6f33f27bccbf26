import csv
import io
import logging
import os
import re
import secrets
import ssl as _ssl_mod
import time
import traceback
import urllib.parse
from datetime import datetime, timezone

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Form, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from . import auth, repository
from .aggregate import (
    daily_series, grand_totals, monthly_series, platform_summary,
    sales_by_date_and_driver, series_drivers, commission_for,
)
from .context import AppContext, CompanySettings
from .filters import FilterState, RequestSequencer, QUICK_RANGES, today_in
from .models import Base
from .repository import RepositoryError
from .schemas import (
    AVAILABLE_CURRENCIES, CompanyIn, DriverIn, DriverUpdate, SaleIn, SettingsIn, first_error,
)
from .session_store import CookieStorage, SessionStore
from .utils import fmt_date, fmt_datetime, money, parse_date


logger = logging.getLogger("main")

if os.environ.get("LOG_LEVEL"):
    logging.basicConfig(
        level=os.environ["LOG_LEVEL"].upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

# ─── DB setup ───
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:////tmp/driversales.db").strip()

def _sanitize_url(url: str) -> str:
    # Only Postgres URLs carry libpq SSL args; urlunsplit would also drop the
    # empty authority of sqlite:////abs/path on some interpreters.
    if not url.startswith("postgres"):
        return url
    try:
        p = urllib.parse.urlsplit(url)
        qs = [(k, v) for k, v in urllib.parse.parse_qsl(p.query, keep_blank_values=True)
              if k.lower() not in {"sslmode", "sslrootcert", "sslcert", "sslkey"}]
        return urllib.parse.urlunsplit((p.scheme, p.netloc, p.path, urllib.parse.urlencode(qs), p.fragment))
    except ValueError:
        return url

db_url = _sanitize_url(DATABASE_URL)
if db_url.startswith("postgres://"):
    db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
elif db_url.startswith("postgresql://") and "+asyncpg" not in db_url:
    db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

connect_args = {}
_is_pg = "asyncpg" in db_url

def _get_ssl_ctx() -> _ssl_mod.SSLContext:
    # Supabase's transaction pooler presents a self-signed chain; the TLS
    # session still encrypts, we just can't verify the proxy's certificate.
    ctx = _ssl_mod.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = _ssl_mod.CERT_NONE
    return ctx

if _is_pg:
    connect_args = {
        "ssl": _get_ssl_ctx(),
        "statement_cache_size": 0,
        "prepared_statement_cache_size": 0,
        "prepared_statement_name_func": lambda: f"__asyncpg_{secrets.token_hex(8)}__",
    }
    engine = create_async_engine(
        db_url, echo=False, future=True,
        connect_args=connect_args,
        pool_size=2,           # Keep 2 warm connections
        max_overflow=3,        # Allow up to 5 total under burst
        pool_recycle=120,      # Recycle connections every 2 min (serverless-friendly)
        pool_pre_ping=True,    # Verify connection is alive before use
    )
else:
    engine = create_async_engine(db_url, echo=False, future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


# ─── CSRF Protection (double-submit cookie pattern) ───
# Every page sets a random token cookie and renders the same value as a hidden
# field. Every POST must echo the cookie value back in the form.

CSRF_COOKIE = "ds_csrf"
CSRF_FORM_FIELD = "csrf_token"
EXPIRED_COOKIE = "ds_expired"

def _generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)

def _validate_csrf(request_token: str | None, cookie_token: str | None) -> bool:
    """Constant-time comparison of form token vs cookie token."""
    if not request_token or not cookie_token:
        return False
    return secrets.compare_digest(request_token, cookie_token)

def _require_csrf(request: Request, csrf_token: str):
    if not _validate_csrf(csrf_token, request.cookies.get(CSRF_COOKIE)):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")

def _is_secure() -> bool:
    return not DATABASE_URL.startswith("sqlite")


# ─── App setup ───
@asynccontextmanager
async def lifespan(application: FastAPI):
    if not _is_pg:
        # Local/dev database: the hosted backend owns the real schema
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    await auth.close_http_client()
    await engine.dispose()

app = FastAPI(title="Driver Sales", lifespan=lifespan)

# ── GZip compression for HTML/JSON payloads ──
from fastapi.middleware.gzip import GZipMiddleware
app.add_middleware(GZipMiddleware, minimum_size=1000)

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

templates.env.filters["d"] = fmt_date
templates.env.filters["dt"] = fmt_datetime
templates.env.globals["csrf_field_name"] = CSRF_FORM_FIELD
templates.env.globals["currencies"] = AVAILABLE_CURRENCIES
templates.env.globals["quick_ranges"] = QUICK_RANGES

static_dir = os.path.join(os.path.dirname(__file__), "static")
if os.path.isdir(static_dir):
    app.mount("/static", StaticFiles(directory=static_dir), name="static")

sequencer = RequestSequencer()


def _render(request: Request, name: str, context: dict, status_code: int = 200):
    """TemplateResponse with the CSRF token, the app context and money formatting injected."""
    token = request.cookies.get(CSRF_COOKIE) or getattr(request.state, "_csrf_generated", None) or _generate_csrf_token()
    # Store on request.state so the CSRF middleware can set the matching cookie
    request.state._csrf_generated = token
    c = ctx(request)
    currency = c.settings.currency
    return templates.TemplateResponse(request, name, {
        "ctx": c,
        "csrf_token": token,
        "money": lambda v: money(v, currency),
        **context,
    }, status_code=status_code)


@app.exception_handler(Exception)
async def _exc(request: Request, exc: Exception):
    logger.error(f"Unhandled exception at {request.url}: {traceback.format_exc()}")
    return HTMLResponse(
        """<!DOCTYPE html><html><head><title>Error</title>
        <style>body{font-family:system-ui,sans-serif;display:flex;align-items:center;justify-content:center;min-height:100vh;margin:0;background:#f8fafc}
        .box{text-align:center;padding:2rem;max-width:400px}h1{font-size:1.5rem;color:#0f172a;margin-bottom:.5rem}
        p{color:#64748b;font-size:.95rem}a{color:#4f46e5;text-decoration:none}</style></head>
        <body><div class="box"><h1>Something went wrong</h1>
        <p>An unexpected error occurred. The issue has been logged.</p>
        <p style="margin-top:1.5rem"><a href="/dashboard">← Back to Dashboard</a></p></div></body></html>""",
        status_code=500,
    )

async def get_db():
    async with SessionLocal() as session:
        yield session


# ─── Auth helpers ───
PUBLIC_PATHS = {"/", "/logout", "/api/session-status"}
ADMIN_PREFIXES = ("/drivers", "/settings")

@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    """CSRF double-submit cookie: POSTs without the cookie never reach a handler."""
    if request.method == "POST" and not request.url.path.startswith("/api/"):
        if not request.cookies.get(CSRF_COOKIE):
            return HTMLResponse(
                '<h1>403 Forbidden</h1><p>Missing CSRF token. Please <a href="/">go back</a> and try again.</p>',
                status_code=403,
            )
    response = await call_next(request)
    if not request.cookies.get(CSRF_COOKIE):
        token = getattr(request.state, "_csrf_generated", None) or _generate_csrf_token()
        response.set_cookie(
            CSRF_COOKIE, token,
            httponly=False, samesite="lax", secure=_is_secure(),
            max_age=60 * 60 * 24,
        )
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    if request.url.path.startswith("/static/"):
        response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    return response


def _to_sign_in(request: Request, storage: CookieStorage, expired: bool = False):
    if request.url.path.startswith("/api/"):
        resp = JSONResponse({"detail": "Not authenticated"}, status_code=401)
    else:
        dest = request.url.path
        if request.url.query:
            dest += f"?{request.url.query}"
        resp = RedirectResponse(url=f"/?{urllib.parse.urlencode({'next': dest})}", status_code=303)
    storage.apply(resp)
    if expired:
        resp.set_cookie(EXPIRED_COOKIE, "1", httponly=True, samesite="lax", secure=_is_secure(), max_age=300)
    return resp


async def _resolve_identity(db: AsyncSession, credential: dict) -> tuple | None:
    """(user_id, company_id, role, name, admin_id) for a stored credential, or None."""
    token = credential["access_token"]
    cached = auth.cache_get(token)
    if cached is not None:
        return cached
    user = await repository.get_user_by_auth_id(db, credential["auth_id"])
    if user is None:
        return None
    identity = (user.id, user.company_id, user.role, user.name, user.admin_id)
    auth.cache_set(token, identity)
    return identity


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    path = request.url.path
    request.state.ctx = AppContext()
    if path.startswith("/static"):
        return await call_next(request)

    storage = CookieStorage(request)
    store = SessionStore(storage)
    credential = store.load()
    had_credential = credential is not None or storage.dirty

    if credential is not None and not auth.credential_usable(credential):
        store.save(None)
        credential = None

    if credential is not None and auth.credential_expired(credential):
        refreshed = await auth.refresh_session(credential.get("refresh_token") or "")
        auth.cache_delete(credential.get("access_token"))
        if "error" in refreshed:
            logger.info(f"Session refresh failed: {refreshed['error']}")
            store.save(None)
            credential = None
        else:
            credential = auth.credential_from_session(refreshed)
            store.save(credential)

    identity = None
    if credential is not None:
        async with SessionLocal() as db:
            identity = await _resolve_identity(db, credential)
            if identity is None:
                store.save(None)
                credential = None
            else:
                user_id, company_id, role, name, admin_id = identity
                settings = await repository.get_settings(db, company_id, role)
                request.state.ctx = (
                    AppContext()
                    .login(role, user_id, name, company_id, admin_id)
                    .with_settings(settings)
                )
        request.state.credential = credential

    if path in PUBLIC_PATHS:
        if path == "/" and request.method == "GET" and identity is not None:
            resp = RedirectResponse(url="/dashboard", status_code=303)
            storage.apply(resp)
            return resp
        response = await call_next(request)
        # Sign-in and sign-out write the session cookie themselves
        if not getattr(request.state, "session_written", False):
            storage.apply(response)
        return response

    # Protected pages
    if identity is None:
        return _to_sign_in(request, storage, expired=had_credential)

    if path.startswith(ADMIN_PREFIXES) and not request.state.ctx.is_admin:
        resp = RedirectResponse(url="/", status_code=303)
        storage.apply(resp)
        return resp

    response = await call_next(request)
    storage.apply(response)
    return response


def ctx(request: Request) -> AppContext:
    return getattr(request.state, "ctx", None) or AppContext()


def _safe_next(next_url: str | None, default: str = "/dashboard") -> str:
    # Prevent open redirect: only allow relative paths (no //evil.com or protocol-relative)
    if next_url and next_url.startswith("/") and not re.match(r'^//|^/\\', next_url) and next_url != "/":
        return next_url
    return default


def _filter_state(
    request: Request,
    range_name: str | None,
    start: str | None,
    end: str | None,
    driver: str | None,
) -> FilterState:
    c = ctx(request)
    state = FilterState.from_query(range_name, parse_date(start), parse_date(end), driver if c.is_admin else None)
    if c.is_driver:
        state = state.with_driver(c.user_id)
    return state


async def _driver_commission(db: AsyncSession, c: AppContext) -> float | None:
    """Commission percentage for the totals card: only drivers see one."""
    if not c.is_driver:
        return None
    me = await repository.get_user(db, c.user_id, c.company_id)
    return me.commission if me else None


# One-shot banners carried as a code on a redirect
NOTICES = {
    "delete_failed": "Failed to delete sale",
}

SORT_FIELDS = {
    "date": lambda s: s.date,
    "driver": lambda s: (s.driver_name or "").lower(),
    "platform": lambda s: (s.platform or "").lower(),
    "card": lambda s: s.card_payments,
    "cash": lambda s: s.cash_payments,
    "total": lambda s: s.total_sale,
    "updated": lambda s: s.updated_at or datetime.min,
}

def _sort_sales(sales: list, sort: str, direction: str) -> list:
    key = SORT_FIELDS.get(sort, SORT_FIELDS["date"])
    return sorted(sales, key=key, reverse=(direction != "asc"))


# ════════════════════════════════════════════════
# AUTH ROUTES
# ════════════════════════════════════════════════

# ── Rate limiting for login (in-memory, resets on cold start) ──
_LOGIN_ATTEMPTS: dict[str, list[float]] = {}  # ip -> list of timestamps
_LOGIN_RATE_LIMIT = 10  # max attempts per window
_LOGIN_RATE_WINDOW = 900.0  # 15 minute window

def _check_rate_limit(ip: str) -> bool:
    """Returns True if the IP is rate-limited (too many attempts)."""
    now = time.monotonic()
    attempts = [t for t in _LOGIN_ATTEMPTS.get(ip, []) if now - t < _LOGIN_RATE_WINDOW]
    _LOGIN_ATTEMPTS[ip] = attempts
    return len(attempts) >= _LOGIN_RATE_LIMIT

def _record_failed_login(ip: str):
    now = time.monotonic()
    _LOGIN_ATTEMPTS.setdefault(ip, []).append(now)
    if len(_LOGIN_ATTEMPTS) > 1000:
        _LOGIN_ATTEMPTS.clear()


@app.get("/", response_class=HTMLResponse)
async def login_page(request: Request, next: str = ""):
    # The expiry notice is shown once; the flag goes away with this response
    expired = request.cookies.get(EXPIRED_COOKIE) == "1"
    resp = _render(request, "login.html", {
        "error": "",
        "email": "",
        "next": next,
        "session_expired": expired,
    })
    if expired:
        resp.delete_cookie(EXPIRED_COOKIE)
    return resp


@app.post("/")
async def login_post(
    request: Request,
    db: AsyncSession = Depends(get_db),
    email: str = Form(""),
    password: str = Form(""),
    next: str = Form(""),
    csrf_token: str = Form(""),
):
    _require_csrf(request, csrf_token)
    login_email = email.strip().lower()
    error_ctx = {"email": login_email, "next": next, "session_expired": False}

    client_ip = request.client.host if request.client else "unknown"
    if _check_rate_limit(client_ip):
        return _render(request, "login.html", {
            **error_ctx, "error": "Too many attempts. Please wait a few minutes and try again.",
        })

    if not login_email or not password.strip():
        return _render(request, "login.html", {**error_ctx, "error": "Email and password are required"})

    result = await auth.sign_in(login_email, password)
    if "error" in result:
        _record_failed_login(client_ip)
        return _render(request, "login.html", {**error_ctx, "error": result["error"]})

    credential = auth.credential_from_session(result)
    user = await repository.get_user_by_auth_id(db, credential["auth_id"]) if credential["auth_id"] else None
    if user is None:
        logger.warning(f"Sign-in for {login_email} has no users row")
        return _render(request, "login.html", {**error_ctx, "error": "No account found with that email address."})

    storage = CookieStorage(request)
    SessionStore(storage).save(credential)
    request.state.session_written = True
    auth.cache_set(credential["access_token"], (user.id, user.company_id, user.role, user.name, user.admin_id))
    logger.info(f"User {user.id} signed in ({user.role}, company {user.company_id})")

    resp = RedirectResponse(url=_safe_next(next), status_code=303)
    storage.apply(resp)
    return resp


@app.get("/logout")
async def logout(request: Request):
    storage = CookieStorage(request)
    store = SessionStore(storage)
    credential = store.load()
    if credential:
        auth.cache_delete(credential.get("access_token"))
        await auth.sign_out(credential.get("access_token"))
    store.save(None)
    resp = RedirectResponse(url="/", status_code=303)
    request.state.session_written = True
    storage.apply(resp)
    return resp


@app.get("/api/session-status")
async def session_status(request: Request):
    """Seconds left on the stored credential; used by the expiry warning."""
    credential = getattr(request.state, "credential", None)
    if not credential:
        return JSONResponse({"authenticated": False, "seconds_remaining": 0})
    remaining = int(credential.get("expires_at", 0) - datetime.now(timezone.utc).timestamp())
    return JSONResponse({"authenticated": True, "seconds_remaining": max(0, remaining)})


# ════════════════════════════════════════════════
# DASHBOARD
# ════════════════════════════════════════════════

@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(
    request: Request,
    range: str | None = None,
    start: str | None = None,
    end: str | None = None,
    driver: str | None = None,
    sort: str = "date",
    dir: str = "desc",
    notice: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    c = ctx(request)
    state = _filter_state(request, range, start, end, driver)
    drivers = await repository.list_drivers(db, c.company_id) if c.is_admin else []

    sales = await repository.list_sales(
        db, c.company_id, user_id=state.driver,
        start=state.date_range.start, end=state.date_range.end,
    )
    totals = grand_totals(sales, await _driver_commission(db, c))

    return _render(request, "dashboard.html", {
        "filters": state,
        "drivers": drivers,
        "driver_count": len(drivers),
        "totals": totals,
        "platforms": platform_summary(sales),
        "sales": _sort_sales(sales, sort, dir),
        "sort": sort,
        "dir": dir,
        "error": NOTICES.get(notice or ""),
    })


@app.get("/api/summary")
async def api_summary(
    request: Request,
    view: str = "dashboard",
    range: str | None = None,
    start: str | None = None,
    end: str | None = None,
    driver: str | None = None,
    seq: int | None = None,
    page: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Aggregates for the filter bar. Each call gets a ticket; a call that is no
    longer the latest for its channel answers ``stale`` instead of data.

    A page load that numbers its own requests sends ``page`` (any token unique
    to that load) with ``seq``, so a reload or a second tab starts its own
    counter. Without ``page`` the client's ``seq`` is ignored and the server
    numbers the calls for this user and view.
    """
    c = ctx(request)
    if page:
        channel = f"{c.user_id}:{view}:{page[:64]}"
        ticket = sequencer.issue(channel, seq)
    else:
        channel = f"{c.user_id}:{view}"
        ticket = sequencer.issue(channel)
    state = _filter_state(request, range, start, end, driver)

    sales = await repository.list_sales(
        db, c.company_id, user_id=state.driver,
        start=state.date_range.start, end=state.date_range.end,
    )
    if not sequencer.is_current(channel, ticket):
        return JSONResponse({"stale": True, "seq": ticket, "latest": sequencer.latest(channel)})

    totals = grand_totals(sales, await _driver_commission(db, c))
    daily = daily_series(sales)
    monthly = monthly_series(sales)
    return JSONResponse({
        "stale": False,
        "seq": ticket,
        "filters": state.query(),
        "currency": c.settings.currency,
        "totals": {"total": totals.total, "card": totals.card, "cash": totals.cash, "commission": totals.commission},
        "platforms": [
            {"name": name, "total": p.total, "card": p.card, "cash": p.cash}
            for name, p in platform_summary(sales).items()
        ],
        "daily": [{"date": p.key, "total": p.total, "drivers": p.by_driver} for p in daily],
        "monthly": [{"month": p.key, "label": p.label, "total": p.total, "drivers": p.by_driver} for p in monthly],
        "drivers": series_drivers(daily),
    })


# ════════════════════════════════════════════════
# SALE FORM
# ════════════════════════════════════════════════

def _sale_form_values(sale=None) -> dict:
    if sale is None:
        return {"date": today_in().isoformat(), "platform": "", "card_payments": "", "cash_payments": "",
                "total_sale": "", "notes": "", "driver_id": ""}
    return {
        "date": sale.date.isoformat(),
        "platform": sale.platform,
        "card_payments": f"{float(sale.card_payments or 0):.2f}",
        "cash_payments": f"{float(sale.cash_payments or 0):.2f}",
        "total_sale": f"{float(sale.total_sale or 0):.2f}",
        "notes": sale.notes or "",
        "driver_id": str(sale.user_id),
    }


def _parse_sale(form: dict, allowed_platforms: list[str]) -> SaleIn:
    data = SaleIn(
        date=parse_date(form.get("date")) or form.get("date") or None,
        platform=form.get("platform", ""),
        card_payments=form.get("card_payments", ""),
        cash_payments=form.get("cash_payments", ""),
        total_sale=form.get("total_sale", ""),
        notes=form.get("notes", ""),
    )
    if data.platform not in allowed_platforms:
        raise RepositoryError("Please select a platform")
    return data


@app.get("/sales", response_class=HTMLResponse)
async def sale_new(request: Request, saved: int = 0, db: AsyncSession = Depends(get_db)):
    c = ctx(request)
    drivers = await repository.list_drivers(db, c.company_id) if c.is_admin else []
    return _render(request, "sale_form.html", {
        "sale": None, "drivers": drivers, "form": _sale_form_values(),
        "platforms": c.platforms, "error": "",
        "success": "Sales data submitted successfully!" if saved else "",
    })


@app.post("/sales")
async def sale_create(
    request: Request,
    date: str = Form(""),
    platform: str = Form(""),
    card_payments: str = Form(""),
    cash_payments: str = Form(""),
    total_sale: str = Form(""),
    notes: str = Form(""),
    driver_id: str = Form(""),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    c = ctx(request)
    form = {"date": date, "platform": platform, "card_payments": card_payments,
            "cash_payments": cash_payments, "total_sale": total_sale, "notes": notes, "driver_id": driver_id}
    drivers = await repository.list_drivers(db, c.company_id) if c.is_admin else []

    def _fail(msg: str):
        return _render(request, "sale_form.html", {
            "sale": None, "drivers": drivers, "form": form,
            "platforms": c.platforms, "error": msg, "success": "",
        }, status_code=400)

    if c.is_admin:
        owner_id = int(driver_id) if driver_id.isdigit() else None
        if owner_id is None or owner_id not in {d.id for d in drivers}:
            return _fail("Please select a driver")
    else:
        owner_id = c.user_id

    try:
        data = _parse_sale(form, c.platforms)
        await repository.create_sale(db, owner_id, c.company_id, data, c.user_id, c.user_name)
    except ValidationError as e:
        return _fail(first_error(e))
    except RepositoryError as e:
        return _fail(str(e))
    return RedirectResponse(url="/sales?saved=1", status_code=303)


async def _editable_sale(request: Request, db: AsyncSession, sale_id: int):
    c = ctx(request)
    sale = await repository.get_sale(db, sale_id, c.company_id)
    if sale is None or (c.is_driver and sale.user_id != c.user_id):
        raise HTTPException(status_code=404, detail="Sale not found")
    return sale


@app.get("/sales/{sale_id}/edit", response_class=HTMLResponse)
async def sale_edit(sale_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    c = ctx(request)
    sale = await _editable_sale(request, db, sale_id)
    owner = await repository.get_user(db, sale.user_id, c.company_id)
    return _render(request, "sale_form.html", {
        "sale": sale, "owner": owner, "drivers": [], "form": _sale_form_values(sale),
        "platforms": _platforms_for(c, sale.platform), "error": "", "success": "",
    })


def _platforms_for(c: AppContext, current: str) -> list[str]:
    # A sale keeps its platform even after the company disabled it
    platforms = list(c.platforms)
    if current and current not in platforms:
        platforms.append(current)
    return platforms


@app.post("/sales/{sale_id}/edit")
async def sale_update(
    sale_id: int,
    request: Request,
    date: str = Form(""),
    platform: str = Form(""),
    card_payments: str = Form(""),
    cash_payments: str = Form(""),
    total_sale: str = Form(""),
    notes: str = Form(""),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    c = ctx(request)
    sale = await _editable_sale(request, db, sale_id)
    platforms = _platforms_for(c, sale.platform)
    form = {"date": date, "platform": platform, "card_payments": card_payments,
            "cash_payments": cash_payments, "total_sale": total_sale, "notes": notes,
            "driver_id": str(sale.user_id)}
    try:
        data = _parse_sale(form, platforms)
        await repository.update_sale(db, sale, data, c.user_id, c.user_name)
    except (ValidationError, RepositoryError) as e:
        owner = await repository.get_user(db, sale.user_id, c.company_id)
        return _render(request, "sale_form.html", {
            "sale": sale, "owner": owner, "drivers": [], "form": form, "platforms": platforms,
            "error": first_error(e) if isinstance(e, ValidationError) else str(e), "success": "",
        }, status_code=400)
    return RedirectResponse(url="/dashboard", status_code=303)


@app.post("/sales/{sale_id}/delete")
async def sale_delete(
    sale_id: int,
    request: Request,
    next: str = Form(""),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    sale = await _editable_sale(request, db, sale_id)
    target = _safe_next(next)
    try:
        await repository.delete_sale(db, sale)
    except repository.RepositoryError:
        # Sale stays listed; the page says so once and nothing is retried
        sep = "&" if "?" in target else "?"
        target = f"{target}{sep}notice=delete_failed"
    return RedirectResponse(url=target, status_code=303)


# ════════════════════════════════════════════════
# REPORTS
# ════════════════════════════════════════════════

@app.get("/reports", response_class=HTMLResponse)
async def reports(
    request: Request,
    range: str | None = None,
    start: str | None = None,
    end: str | None = None,
    driver: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    c = ctx(request)
    state = _filter_state(request, range, start, end, driver)
    drivers = await repository.list_drivers(db, c.company_id) if c.is_admin else []
    sales = await repository.list_sales(
        db, c.company_id, user_id=state.driver,
        start=state.date_range.start, end=state.date_range.end,
    )
    daily = daily_series(sales)
    monthly = monthly_series(sales)
    return _render(request, "reports.html", {
        "filters": state,
        "drivers": drivers,
        "totals": grand_totals(sales),
        "platforms": platform_summary(sales),
        "daily": daily,
        "monthly": monthly,
        "series_drivers": series_drivers(monthly),
        "by_date": sales_by_date_and_driver(sales),
        "daily_chart": [{"date": p.label, "total": p.total, "drivers": p.by_driver} for p in daily],
        "export_query": urllib.parse.urlencode(state.query()),
    })


@app.get("/reports/export")
async def export_csv(
    request: Request,
    range: str | None = None,
    start: str | None = None,
    end: str | None = None,
    driver: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    c = ctx(request)
    state = _filter_state(request, range, start, end, driver)
    sales = await repository.list_sales(
        db, c.company_id, user_id=state.driver,
        start=state.date_range.start, end=state.date_range.end,
    )
    out = io.StringIO(); w = csv.writer(out)
    w.writerow(["Date", "Driver", "Platform", "Card", "Cash", "Total", "Notes", "Last Modified By", "Updated At"])
    for s in sales:
        w.writerow([s.date.isoformat(), s.driver_name, s.platform,
                    f"{s.card_payments:.2f}", f"{s.cash_payments:.2f}", f"{s.total_sale:.2f}",
                    s.notes, s.last_modified_by_name, s.updated_at.isoformat() if s.updated_at else ""])
    out.seek(0)
    fname = f"sales-{state.date_range.start.isoformat()}-{state.date_range.end.isoformat()}.csv"
    return StreamingResponse(iter([out.getvalue()]), media_type="text/csv",
                             headers={"Content-Disposition": f"attachment; filename={fname}"})


# ════════════════════════════════════════════════
# DRIVERS (admin)
# ════════════════════════════════════════════════

@app.get("/drivers", response_class=HTMLResponse)
async def drivers_page(request: Request, db: AsyncSession = Depends(get_db)):
    c = ctx(request)
    return _render(request, "drivers.html", {
        "drivers": await repository.list_drivers(db, c.company_id),
        "form": {"name": "", "email": "", "commission": "0"},
        "error": "", "success": "",
    })


@app.post("/drivers")
async def driver_create(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    commission: str = Form("0"),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    c = ctx(request)
    error, success = "", ""
    form = {"name": name, "email": email, "commission": commission}
    try:
        data = DriverIn(name=name, email=email, password=password, commission=commission)
        await repository.create_driver(db, c.company_id, c.user_id, data)
        success = "Driver added successfully!"
        form = {"name": "", "email": "", "commission": "0"}
    except ValidationError as e:
        error = first_error(e)
    except RepositoryError as e:
        error = str(e)
    return _render(request, "drivers.html", {
        "drivers": await repository.list_drivers(db, c.company_id),
        "form": form, "error": error, "success": success,
    }, status_code=400 if error else 200)


async def _driver_profile(request: Request, db: AsyncSession, driver, error: str = "", success: str = "", status_code: int = 200):
    c = ctx(request)
    sales = await repository.list_sales(db, c.company_id, user_id=driver.id)
    # Commission is recomputed from the driver's current percentage, not stored per sale
    rows = [(s, commission_for(s.total_sale, driver.commission)) for s in sales]
    return _render(request, "driver_profile.html", {
        "driver": driver,
        "rows": rows,
        "totals": grand_totals(sales, driver.commission),
        "error": error, "success": success,
    }, status_code=status_code)


@app.get("/drivers/{driver_id}", response_class=HTMLResponse)
async def driver_profile(driver_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    c = ctx(request)
    driver = await repository.get_user(db, driver_id, c.company_id)
    if driver is None or driver.role != "driver":
        raise HTTPException(status_code=404, detail="Driver not found")
    return await _driver_profile(request, db, driver)


@app.post("/drivers/{driver_id}")
async def driver_update(
    driver_id: int,
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    commission: str = Form("0"),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    c = ctx(request)
    driver = await repository.get_user(db, driver_id, c.company_id)
    if driver is None or driver.role != "driver":
        raise HTTPException(status_code=404, detail="Driver not found")
    try:
        data = DriverUpdate(name=name, email=email, commission=commission)
        driver = await repository.update_driver(db, c.company_id, driver_id, data)
    except ValidationError as e:
        return await _driver_profile(request, db, driver, error=first_error(e), status_code=400)
    except RepositoryError as e:
        return await _driver_profile(request, db, driver, error=str(e), status_code=400)
    return await _driver_profile(request, db, driver, success="Profile updated successfully")


# ════════════════════════════════════════════════
# SETTINGS (admin)
# ════════════════════════════════════════════════

@app.get("/settings", response_class=HTMLResponse)
async def settings_page(request: Request, db: AsyncSession = Depends(get_db)):
    c = ctx(request)
    company = await repository.get_company(db, c.company_id)
    return _render(request, "settings.html", {
        "company": company, "settings": c.settings, "error": "", "success": "",
    })


@app.post("/settings")
async def settings_save(
    request: Request,
    name: str = Form(""),
    address: str = Form(""),
    phone: str = Form(""),
    email: str = Form(""),
    website: str = Form(""),
    currency: str = Form("USD"),
    enabled_platforms: list[str] = Form([]),
    custom_platforms: list[str] = Form([]),
    new_platform: str = Form(""),
    remove_platform: str = Form(""),
    csrf_token: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    _require_csrf(request, csrf_token)
    c = ctx(request)
    company = await repository.get_company(db, c.company_id)
    try:
        submitted = SettingsIn(currency=currency, enabled_platforms=enabled_platforms,
                               custom_platforms=custom_platforms)
        company_in = CompanyIn(name=name, address=address, phone=phone, email=email, website=website)
    except ValidationError as e:
        return _render(request, "settings.html", {
            "company": company, "settings": c.settings, "error": first_error(e), "success": "",
        }, status_code=400)

    wanted = CompanySettings(
        currency=submitted.currency,
        enabled_platforms=tuple(submitted.enabled_platforms),
        custom_platforms=tuple(submitted.custom_platforms),
    )
    if new_platform.strip():
        wanted = wanted.add_custom(new_platform)
    if remove_platform.strip():
        wanted = wanted.remove_custom(remove_platform)

    saved = await repository.update_settings(db, c.company_id, c.role, wanted)
    request.state.ctx = c.with_settings(saved)
    try:
        company = await repository.update_company(db, c.company_id, company_in)
    except RepositoryError as e:
        return _render(request, "settings.html", {
            "company": company, "settings": saved, "error": str(e), "success": "",
        }, status_code=400)
    return _render(request, "settings.html", {
        "company": company, "settings": saved, "error": "", "success": "Settings saved successfully",
    })
