"""Per-endpoint concurrency limiting for the N-central REST API.

N-central publishes its limits as a maximum number of concurrent requests per
endpoint rather than a request rate. Each endpoint pattern therefore gets an
``asyncio.Semaphore`` sized to its limit, and every call holds a permit for the
duration of its HTTP round trip:

    >>> limiter = ConcurrencyLimiter()
    >>> async with limiter.acquire("/api/devices/12345"):
    ...     response = await http.get(url)

Paths are resolved to a pattern by exact match first, then by replacing
numeric segments with ``{id}``, and finally fall back to the default bound.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import MappingProxyType

from . import endpoints as ep

logger: logging.Logger = logging.getLogger(__name__)

ID_PLACEHOLDER = "{id}"

_HIGH = 50
_LOW = 5

_DEFAULT_ENDPOINT_LIMITS: dict[str, int] = {
    # Auth and health: high concurrency allowed
    ep.AUTH_AUTHENTICATE: _HIGH,
    ep.AUTH_REFRESH: _HIGH,
    ep.AUTH_VALIDATE: _HIGH,
    ep.HEALTH: _HIGH,
    ep.SERVER_INFO: _HIGH,
    # Bulk listing
    ep.SERVICE_ORGS: _LOW,
    ep.CUSTOMERS: _LOW,
    ep.SITES: _LOW,
    ep.DEVICES: _LOW,
    ep.ORG_UNITS: _LOW,
    ep.USERS: _LOW,
    ep.DEVICE_FILTERS: _LOW,
    # Single resources
    "/api/devices/{id}": _HIGH,
    "/api/devices/{id}/assets": _HIGH,
    # Per org unit / per device
    "/api/devices/{id}/custom-properties": _LOW,
    "/api/org-units/{id}/custom-properties": _LOW,
    "/api/org-units/{id}/access-groups": _LOW,
    "/api/org-units/{id}/user-roles": _LOW,
    "/api/org-units/{id}/devices": _LOW,
    "/api/org-units/{id}/active-issues": 3,
}


def normalize_path(path: str) -> str:
    """Replace every integer path segment with ``{id}``.

    >>> normalize_path("/api/devices/12345/custom-properties")
    '/api/devices/{id}/custom-properties'
    """
    parts = path.split("/")
    return "/".join(ID_PLACEHOLDER if _is_int(part) else part for part in parts)


# Signed 64-bit integer in ASCII digits; no whitespace or underscores
_INT_SEGMENT = re.compile(r"[+-]?[0-9]+")
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1


def _is_int(segment: str) -> bool:
    if not _INT_SEGMENT.fullmatch(segment):
        return False
    return _INT64_MIN <= int(segment) <= _INT64_MAX


@dataclass(frozen=True)
class EndpointLimits:
    """Concurrency bound per normalized endpoint pattern."""

    default: int = _LOW
    endpoints: Mapping[str, int] = field(default_factory=lambda: dict(_DEFAULT_ENDPOINT_LIMITS))

    def __post_init__(self) -> None:
        if self.default < 1:
            msg = f"default limit must be >= 1, got {self.default}"
            raise ValueError(msg)
        for pattern, limit in self.endpoints.items():
            if limit < 1:
                msg = f"limit for {pattern} must be >= 1, got {limit}"
                raise ValueError(msg)
        # Freeze the mapping so the limits cannot change under a live limiter
        object.__setattr__(self, "endpoints", MappingProxyType(dict(self.endpoints)))


class ConcurrencyLimiter:
    """Hands out scoped permits bounding concurrent calls per endpoint class."""

    _limits: EndpointLimits
    _semaphores: dict[str, asyncio.Semaphore]
    _default_semaphore: asyncio.Semaphore
    _held: dict[str, int]

    def __init__(self, limits: EndpointLimits | None = None) -> None:
        self._limits = limits or EndpointLimits()
        self._semaphores = {pattern: asyncio.Semaphore(limit) for pattern, limit in self._limits.endpoints.items()}
        self._default_semaphore = asyncio.Semaphore(self._limits.default)
        self._held = {}

    @property
    def limits(self) -> EndpointLimits:
        return self._limits

    def resolve(self, path: str) -> str | None:
        """Return the configured pattern governing ``path``, or None for the default pool."""
        if path in self._limits.endpoints:
            return path
        normalized = normalize_path(path)
        if normalized in self._limits.endpoints:
            return normalized
        return None

    def get_limit(self, path: str) -> int:
        pattern = self.resolve(path)
        return self._limits.default if pattern is None else self._limits.endpoints[pattern]

    def in_flight(self, path: str) -> int:
        """Number of permits currently held in the pool governing ``path``."""
        return self._held.get(self.resolve(path) or "", 0)

    @asynccontextmanager
    async def acquire(self, path: str) -> AsyncIterator[None]:
        """Hold a permit for ``path`` for the duration of the ``async with`` block.

        Waiting for a permit can be cancelled; a cancelled waiter never holds a permit.
        """
        pattern = self.resolve(path)
        semaphore = self._default_semaphore if pattern is None else self._semaphores[pattern]
        key = pattern or ""

        await semaphore.acquire()
        self._held[key] = self._held.get(key, 0) + 1
        try:
            yield
        finally:
            self._held[key] -= 1
            semaphore.release()
