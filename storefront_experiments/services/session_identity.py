"""Session identity: a durable per-visitor id that keeps variant assignment sticky.

The id is created once and reused through whatever ``SessionStore`` the caller
provides. Without a store every call yields a fresh transient id.
"""

from typing import Dict, Optional, Protocol

from fastapi import Request, Response

from storefront_experiments.core.ids import generate_id
from storefront_experiments.core.settings import config_settings

SESSION_STORAGE_KEY = config_settings.SESSION_COOKIE_NAME


class SessionStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemorySessionStore:
    """Process-local store, used where no client storage exists (and in tests)."""

    def __init__(self):
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class CookieSessionStore:
    """Reads the id from the request cookies and writes new ids back on the response."""

    def __init__(
        self,
        request: Request,
        response: Response,
        max_age: int = config_settings.SESSION_COOKIE_MAX_AGE,
    ):
        self.request = request
        self.response = response
        self.max_age = max_age
        self._written: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._written.get(key) or self.request.cookies.get(key)

    def set(self, key: str, value: str) -> None:
        self._written[key] = value
        self.response.set_cookie(
            key, value, max_age=self.max_age, httponly=True, samesite="lax"
        )


def generate_session_id() -> str:
    return generate_id("session")


def get_or_create_session_id(store: Optional[SessionStore] = None) -> str:
    if store is None:
        return generate_session_id()

    session_id = store.get(SESSION_STORAGE_KEY)
    if not session_id:
        session_id = generate_session_id()
        store.set(SESSION_STORAGE_KEY, session_id)

    return session_id
