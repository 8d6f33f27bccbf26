"""Durable storage for the signed-in user's credential.

The credential is the identity provider's session, reduced to an opaque
JSON-serializable dict (tokens, expiry, provider user id). It lives under
one fixed key in a client-side key-value store: the browser's cookie jar
when serving requests, a plain dict in tests.
"""

import base64
import json
import logging
import os
from collections.abc import MutableMapping
from typing import Any, Iterator

from fastapi import Request

logger = logging.getLogger("session_store")

SESSION_KEY = "driver-sales-session"
SESSION_MAX_AGE = 60 * 60 * 24 * 30  # 30 days; the provider's refresh token decides the real lifetime


class SessionStore:
    def __init__(self, storage: MutableMapping, key: str = SESSION_KEY):
        self.storage = storage
        self.key = key

    def save(self, credential: dict | None) -> None:
        if credential is not None:
            self.storage[self.key] = json.dumps(credential, separators=(",", ":"))
        else:
            self.storage.pop(self.key, None)

    def load(self) -> dict | None:
        raw = self.storage.get(self.key)
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable stored session: {e}")
            self.storage.pop(self.key, None)
            return None
        if not isinstance(value, dict):
            logger.warning("Discarding stored session that is not an object")
            self.storage.pop(self.key, None)
            return None
        return value


class CookieStorage(MutableMapping):
    """Cookie jar of one request/response cycle, seen as a key-value store.

    Reads come from the request; writes are remembered and copied onto the
    outgoing response by ``apply``. Values are base64url-wrapped on the wire
    so JSON survives cookie quoting; a value that does not unwrap is handed
    back raw.
    """

    def __init__(self, request: Request):
        self._values: dict[str, str] = dict(request.cookies)
        self._pending: dict[str, str | None] = {}

    def __getitem__(self, key: str) -> str:
        raw = self._values[key]
        try:
            padded = raw + "=" * (-len(raw) % 4)
            return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (ValueError, UnicodeError):
            return raw

    def __setitem__(self, key: str, value: str) -> None:
        wire = base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")
        self._values[key] = wire
        self._pending[key] = wire

    def __delitem__(self, key: str) -> None:
        del self._values[key]
        self._pending[key] = None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    def apply(self, response: Any) -> None:
        is_secure = not os.environ.get("DATABASE_URL", "sqlite").startswith("sqlite")
        for key, value in self._pending.items():
            if value is None:
                response.delete_cookie(key)
            else:
                response.set_cookie(
                    key, value,
                    httponly=True,
                    samesite="lax",
                    secure=is_secure,
                    max_age=SESSION_MAX_AGE,
                )
        self._pending.clear()
