"""Authentication against the N-central REST API.

N-central issues short-lived access tokens in exchange for a long-lived API
user JWT. ``AuthManager`` performs that exchange, hands out a valid access
token to every request and refreshes it transparently when it is about to
expire. Once the refresh token itself has expired the session is dead and
``TokenExpiredError`` tells the caller to authenticate again.

Locking
-------
``TokenStore`` protects the ``AuthState`` with a read/write lock. The decision
in ``get_token()`` (return cached token, refresh, or fail) is made while the
read lock is held, and the lock is released before any network call. Storing
the refreshed token needs the write lock, so a reader that kept its read lock
across the refresh would wait on itself forever.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import enum
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

from . import endpoints as ep
from .exceptions import (
    AuthenticationError,
    InvalidResponseError,
    RateLimitedError,
    RequestFailedError,
    ServerError,
    TokenExpiredError,
)
from .models import AuthState, token_lifetime

if TYPE_CHECKING:
    from .rate_limiter import ConcurrencyLimiter

logger: logging.Logger = logging.getLogger(__name__)

# Retry-After reported when the authenticate endpoint itself throttles
AUTH_RATE_LIMIT_RETRY_AFTER = 60


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class ReadWriteLock:
    """Asyncio lock allowing many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def reading(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def writing(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


class TokenStore:
    """Holds the current ``AuthState`` under mutual exclusion."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._state: AuthState | None = None

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AuthState | None]:
        """Yield the live state while holding the read lock."""
        async with self._lock.reading():
            yield self._state

    async def get(self) -> AuthState | None:
        """Return a copy of the current state."""
        async with self._lock.reading():
            return dataclasses.replace(self._state) if self._state else None

    async def set(self, state: AuthState | None) -> None:
        async with self._lock.writing():
            self._state = state

    async def update_access(self, token: str, expires_at: dt.datetime) -> bool:
        """Replace the access token in place; False when there is no session any more."""
        async with self._lock.writing():
            if self._state is None:
                return False
            self._state.access_token = token
            self._state.access_expires_at = expires_at
            return True

    async def clear(self) -> None:
        await self.set(None)


class _Action(enum.Enum):
    RETURN_TOKEN = enum.auto()
    REFRESH = enum.auto()
    NOT_AUTHENTICATED = enum.auto()
    TOKEN_EXPIRED = enum.auto()


class AuthManager:
    """Exchanges the API credential for tokens and keeps the access token fresh."""

    _http: httpx.AsyncClient
    _store: TokenStore
    _limiter: ConcurrencyLimiter | None
    _clock: Callable[[], dt.datetime]

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        store: TokenStore | None = None,
        limiter: ConcurrencyLimiter | None = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            http: HTTP client with ``base_url`` set to the server
            store: Token store (a fresh one by default)
            limiter: Optional concurrency limiter applied to auth calls
            clock: Source of the current UTC time
        """
        self._http = http
        self._store = store or TokenStore()
        self._limiter = limiter
        self._clock = clock

    @property
    def store(self) -> TokenStore:
        return self._store

    async def _post(self, path: str, bearer: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {bearer}"}
        try:
            if self._limiter is None:
                return await self._http.post(path, headers=headers)
            async with self._limiter.acquire(path):
                return await self._http.post(path, headers=headers)
        except httpx.HTTPError as e:
            msg = f"HTTP request to {path} failed: {e}"
            raise RequestFailedError(msg) from e

    async def authenticate(self, credential: str) -> None:
        """Exchange the API credential (JWT) for access and refresh tokens.

        Raises:
            AuthenticationError: On 401/403
            RateLimitedError: On 429
            ServerError: On any other non-2xx status
            InvalidResponseError: If the body is not the expected JSON
        """
        response = await self._post(ep.AUTH_AUTHENTICATE, credential.strip())

        if not response.is_success:
            status = response.status_code
            if status in (401, 403):
                raise AuthenticationError(response.text or f"HTTP {status}")
            if status == 429:
                raise RateLimitedError(AUTH_RATE_LIMIT_RETRY_AFTER)
            raise ServerError(status, response.text)

        logger.debug(f"Auth response received, length: {len(response.content)}")
        try:
            payload: Any = response.json()
            state = AuthState.from_response(payload, now=self._clock())
        except ValueError as e:
            msg = f"JSON parse error: {e}. Body length: {len(response.content)}"
            raise InvalidResponseError(msg) from e
        except (KeyError, TypeError) as e:
            msg = f"Authentication response is missing tokens: {e}"
            raise InvalidResponseError(msg) from e

        await self._store.set(state)
        logger.info("Authenticated successfully")

    async def get_token(self) -> str:
        """Return a valid access token, refreshing it when it is about to expire.

        Raises:
            AuthenticationError: If ``authenticate()`` has not succeeded
            TokenExpiredError: If the refresh token has expired
        """
        now = self._clock()
        async with self._store.read() as state:
            if state is None:
                action, token = _Action.NOT_AUTHENTICATED, ""
            elif state.is_refresh_expired(now):
                action, token = _Action.TOKEN_EXPIRED, ""
            elif state.is_access_expired(now):
                action, token = _Action.REFRESH, state.refresh_token
            else:
                action, token = _Action.RETURN_TOKEN, state.access_token
        # Read lock released: refreshing takes the write lock

        if action is _Action.RETURN_TOKEN:
            return token
        if action is _Action.REFRESH:
            return await self._refresh(token)
        if action is _Action.TOKEN_EXPIRED:
            raise TokenExpiredError
        msg = "Not authenticated"
        raise AuthenticationError(msg)

    async def _refresh(self, refresh_token: str) -> str:
        logger.debug("Access token expired, refreshing")
        response = await self._post(ep.AUTH_REFRESH, refresh_token)

        if not response.is_success:
            status = response.status_code
            if status in (401, 403):
                raise TokenExpiredError
            raise ServerError(status, response.text)

        try:
            access = response.json()["tokens"]["access"]
            token = str(access["token"])
            lifetime = token_lifetime(access)
        except ValueError as e:
            msg = f"Failed to parse refresh response: {e}"
            raise InvalidResponseError(msg) from e
        except (KeyError, TypeError) as e:
            msg = f"Refresh response is missing the access token: {e}"
            raise InvalidResponseError(msg) from e

        expires_at = self._clock() + dt.timedelta(seconds=lifetime)
        if not await self._store.update_access(token, expires_at):
            logger.debug("Session was cleared while refreshing; discarding refreshed token")
        return token

    async def is_authenticated(self) -> bool:
        async with self._store.read() as state:
            return state is not None and not state.is_refresh_expired(self._clock())

    async def state(self) -> AuthState | None:
        """Copy of the current session, for diagnostics."""
        return await self._store.get()

    async def logout(self) -> None:
        await self._store.clear()
