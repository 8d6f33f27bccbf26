"""
auth.py: identity provider client for Driver Sales.

Strategy:
  - Supabase Auth (GoTrue) owns every password. We talk to its REST API
    with a shared httpx.AsyncClient: password grant to sign in, refresh
    grant to keep a session alive, sign-up when an admin creates a driver.
  - The provider session is reduced to a small credential dict and kept in
    the browser by the session store (see session_store.py). Nothing about
    passwords or tokens is persisted server-side.
  - A stored credential is mapped to our `users` row through `auth_id`.

Serverless optimizations applied:
  - Module-level httpx.AsyncClient with keep-alive (skips DNS + TCP + TLS
    per provider call on warm invocations).
  - In-memory resolution cache (TTL=30s): access token -> user identity,
    so most requests skip the users lookup entirely.
"""

import logging
import os
import time
from datetime import datetime, timezone

import httpx

logger = logging.getLogger("auth")

# ── Supabase config ────────────────────────────────────────────────────────────
SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
SUPABASE_AUTH_URL = f"{SUPABASE_URL}/auth/v1" if SUPABASE_URL else ""
SUPABASE_ENABLED = bool(SUPABASE_URL and SUPABASE_ANON_KEY)

# Refresh a little before the provider's expiry so in-flight requests don't race it
EXPIRY_LEEWAY_SECONDS = 60

# ── Shared HTTP client (module-level, reused across warm invocations) ─────────
_http_client: httpx.AsyncClient | None = None

def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=10,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
    return _http_client

async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None

# ── In-memory resolution cache ─────────────────────────────────────────────────
# Every authenticated request needs (user_id, company_id, role, name, admin_id)
# for its access token. Caching that for 30s cuts the users lookup on most
# requests; a deleted driver keeps access for at most 30 more seconds.
_IDENTITY_CACHE: dict[str, tuple[tuple, float]] = {}
_IDENTITY_CACHE_TTL = 30.0  # seconds

def cache_get(token: str) -> tuple | None:
    entry = _IDENTITY_CACHE.get(token)
    if entry and time.monotonic() < entry[1]:
        return entry[0]
    if entry:
        del _IDENTITY_CACHE[token]
    return None

def cache_set(token: str, identity: tuple) -> None:
    if len(_IDENTITY_CACHE) > 500:
        cutoff = time.monotonic()
        expired = [k for k, v in _IDENTITY_CACHE.items() if v[1] < cutoff]
        for k in expired:
            del _IDENTITY_CACHE[k]
    _IDENTITY_CACHE[token] = (identity, time.monotonic() + _IDENTITY_CACHE_TTL)

def cache_delete(token: str | None) -> None:
    if token:
        _IDENTITY_CACHE.pop(token, None)

def cache_clear() -> None:
    _IDENTITY_CACHE.clear()

# ── Supabase Auth helpers ──────────────────────────────────────────────────────
def _supabase_headers(access_token: str | None = None) -> dict:
    headers = {"apikey": SUPABASE_ANON_KEY, "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers

def _error_message(r: httpx.Response, default: str) -> str:
    try:
        data = r.json()
    except ValueError:
        return default
    if not isinstance(data, dict):
        return default
    return data.get("error_description") or data.get("msg") or data.get("message") or data.get("error") or default

async def sign_in(email: str, password: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Sign-in is not configured"}
    try:
        r = await _get_http_client().post(
            f"{SUPABASE_AUTH_URL}/token?grant_type=password",
            headers=_supabase_headers(),
            json={"email": email, "password": password},
        )
    except httpx.HTTPError as e:
        logger.warning(f"sign-in request failed: {e}")
        return {"error": friendly_error("")}
    if r.status_code != 200:
        return {"error": friendly_error(_error_message(r, "Invalid credentials"))}
    return r.json()

async def refresh_session(refresh_token: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Sign-in is not configured"}
    try:
        r = await _get_http_client().post(
            f"{SUPABASE_AUTH_URL}/token?grant_type=refresh_token",
            headers=_supabase_headers(),
            json={"refresh_token": refresh_token},
        )
    except httpx.HTTPError as e:
        logger.warning(f"token refresh request failed: {e}")
        return {"error": "Session refresh failed"}
    if r.status_code != 200:
        return {"error": _error_message(r, "Session refresh failed")}
    return r.json()

async def sign_up(email: str, password: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Sign-up is not configured"}
    try:
        r = await _get_http_client().post(
            f"{SUPABASE_AUTH_URL}/signup",
            headers=_supabase_headers(),
            json={"email": email, "password": password},
        )
    except httpx.HTTPError as e:
        logger.warning(f"sign-up request failed: {e}")
        return {"error": friendly_error("")}
    if r.status_code not in (200, 201):
        return {"error": friendly_error(_error_message(r, "Sign-up failed"))}
    data = r.json()
    # With email confirmation on, GoTrue returns the user itself; otherwise a session
    user = data.get("user") if "user" in data else data
    if not user or not user.get("id"):
        return {"error": "Failed to create auth user"}
    return user

async def sign_out(access_token: str | None) -> None:
    """Revoke the provider session. Best effort: the local credential is dropped regardless."""
    if not (SUPABASE_ENABLED and access_token):
        return
    try:
        await _get_http_client().post(
            f"{SUPABASE_AUTH_URL}/logout",
            headers=_supabase_headers(access_token),
        )
    except httpx.HTTPError as e:
        logger.warning(f"sign-out request failed: {e}")

async def get_auth_user(access_token: str) -> dict | None:
    if not SUPABASE_ENABLED:
        return None
    try:
        r = await _get_http_client().get(
            f"{SUPABASE_AUTH_URL}/user",
            headers=_supabase_headers(access_token),
        )
    except httpx.HTTPError as e:
        logger.warning(f"user lookup failed: {e}")
        return None
    return r.json() if r.status_code == 200 else None

async def delete_auth_user(auth_id: str) -> bool:
    """Remove a provider user (admin API). Needs the service role key."""
    if not (SUPABASE_ENABLED and SUPABASE_SERVICE_ROLE_KEY):
        logger.warning(f"Cannot remove auth user {auth_id}: no service role key configured")
        return False
    try:
        r = await _get_http_client().delete(
            f"{SUPABASE_AUTH_URL}/admin/users/{auth_id}",
            headers={"apikey": SUPABASE_SERVICE_ROLE_KEY, "Authorization": f"Bearer {SUPABASE_SERVICE_ROLE_KEY}"},
        )
    except httpx.HTTPError as e:
        logger.warning(f"auth user removal failed: {e}")
        return False
    return r.status_code in (200, 204)

def friendly_error(msg: str) -> str:
    m = (msg or "").lower()
    if "invalid login" in m or "invalid credentials" in m or "invalid grant" in m or "email not confirmed" in m:
        return "Invalid email or password"
    if "user not found" in m:
        return "No account found with that email address."
    if "email already" in m or "already registered" in m or "already exists" in m:
        return "An account with this email already exists."
    if "password should be" in m or "password must" in m:
        return "Password must be at least 6 characters long"
    if "rate limit" in m or "too many" in m:
        return "Too many attempts. Please wait a few minutes and try again."
    return "Authentication failed. Please try again."

# ── Stored credential ─────────────────────────────────────────────────────────
def credential_from_session(data: dict) -> dict:
    """The part of a provider session worth keeping in the browser."""
    user = data.get("user") or {}
    expires_at = data.get("expires_at")
    if not expires_at and data.get("expires_in"):
        expires_at = int(time.time()) + int(data["expires_in"])
    return {
        "access_token": data.get("access_token", ""),
        "refresh_token": data.get("refresh_token", ""),
        "expires_at": int(expires_at or 0),
        "auth_id": user.get("id", ""),
        "email": (user.get("email") or "").lower(),
    }

def credential_expired(credential: dict, now: datetime | None = None) -> bool:
    now_ts = (now or datetime.now(timezone.utc)).timestamp()
    try:
        expires_at = float(credential.get("expires_at") or 0)
    except (TypeError, ValueError):
        return True
    return expires_at - EXPIRY_LEEWAY_SECONDS <= now_ts

def credential_usable(credential: dict | None) -> bool:
    return bool(credential and credential.get("access_token") and credential.get("auth_id"))
