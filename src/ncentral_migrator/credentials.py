"""Storage of server credentials (API user JWTs) per connection profile."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Protocol

from . import utils
from .exceptions import CredentialError, InvalidPassPathError

logger: logging.Logger = logging.getLogger(__name__)

PASS_PREFIX = "ncentral-migrator"

# Delay before reading a freshly stored secret back
VERIFY_DELAY = 0.05

_PROFILE_KEY = re.compile(r"[A-Za-z0-9_.-]+")


class CredentialStore(Protocol):
    """Secret storage keyed by profile."""

    async def store(self, profile_key: str, secret: str) -> None: ...

    async def get(self, profile_key: str) -> str | None: ...

    async def delete(self, profile_key: str) -> None: ...


class PassCredentialStore:
    """Credential store backed by the ``pass`` password manager.

    Secrets live at ``ncentral-migrator/<profile_key>``. The ``pass`` calls are
    blocking subprocesses and run in a worker thread.
    """

    def __init__(
        self,
        prefix: str = PASS_PREFIX,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._prefix = prefix
        self._sleep = sleep

    def pass_path(self, profile_key: str) -> str:
        if not _PROFILE_KEY.fullmatch(profile_key):
            msg = f"Invalid profile key: {profile_key!r}"
            raise CredentialError(msg)
        return f"{self._prefix}/{profile_key}"

    async def store(self, profile_key: str, secret: str) -> None:
        """Save the secret and read it back to make sure it was persisted."""
        path = self.pass_path(profile_key)
        await asyncio.to_thread(utils.insert_pass_value, path, secret)
        await self._sleep(VERIFY_DELAY)
        stored = await self.get(profile_key)
        if stored != secret.strip():
            msg = f"Credential for profile '{profile_key}' could not be verified after saving"
            raise CredentialError(msg)
        logger.info(f"Stored credential for profile '{profile_key}'")

    async def get(self, profile_key: str) -> str | None:
        path = self.pass_path(profile_key)
        try:
            return await asyncio.to_thread(utils.get_pass_value, path)
        except InvalidPassPathError:
            return None

    async def delete(self, profile_key: str) -> None:
        await asyncio.to_thread(utils.remove_pass_value, self.pass_path(profile_key))
        logger.info(f"Deleted credential for profile '{profile_key}'")
