"""
Configuration from the environment and the ``pass`` password store.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Literal

from . import utils
from .client import DEFAULT_MAX_RETRIES, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT
from .exceptions import PassError

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

Role = Literal["source", "dest"]

_FQDN_ENV_VARS: Final[dict[str, str]] = {"source": "NC_SOURCE_FQDN", "dest": "NC_DEST_FQDN"}
_JWT_ENV_VARS: Final[dict[str, str]] = {"source": "NC_SOURCE_JWT", "dest": "NC_DEST_JWT"}  # noqa: S105
_DEFAULT_JWT_PASS_PATHS: Final[dict[str, str]] = {
    "source": "ncentral-migrator/source",
    "dest": "ncentral-migrator/dest",
}
_DEST_USERNAME_ENV_VAR: Final[str] = "NC_DEST_USERNAME"


def _env_number(
    env: Mapping[str, str], name: str, default: float, kind: type[int] | type[float], *, minimum: float
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = kind(raw.strip())
    except ValueError as e:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from e
    if value < minimum:
        msg = f"{name} must be >= {minimum}, got {raw!r}"
        raise ValueError(msg)
    return value


@dataclass(frozen=True)
class Settings:
    """HTTP behaviour shared by every client of a run."""

    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Read NC_TIMEOUT, NC_MAX_RETRIES and NC_PAGE_SIZE.

        Raises:
            ValueError: If a variable is set but not a valid number
        """
        env = os.environ if env is None else env
        return cls(
            timeout=float(_env_number(env, "NC_TIMEOUT", DEFAULT_TIMEOUT, float, minimum=1)),
            max_retries=int(_env_number(env, "NC_MAX_RETRIES", DEFAULT_MAX_RETRIES, int, minimum=0)),
            page_size=int(_env_number(env, "NC_PAGE_SIZE", DEFAULT_PAGE_SIZE, int, minimum=1)),
        )


def get_server(role: Role, explicit: str | None = None, env: Mapping[str, str] | None = None) -> str | None:
    """Server FQDN from the command line or NC_SOURCE_FQDN / NC_DEST_FQDN."""
    if explicit:
        return explicit
    env = os.environ if env is None else env
    return env.get(_FQDN_ENV_VARS[role]) or None


def get_jwt(role: Role, pass_path: str | None = None, env: Mapping[str, str] | None = None) -> str | None:
    """Get the API user JWT from pass path, env var, or default pass location."""
    # Try pass path first
    if pass_path:
        return utils.get_pass_value(pass_path)

    # Try environment variable
    env = os.environ if env is None else env
    token = env.get(_JWT_ENV_VARS[role])
    if token:
        return token

    # Try default pass path
    try:
        return utils.get_pass_value(_DEFAULT_JWT_PASS_PATHS[role])
    except PassError:
        logger.warning(f"No {role} JWT specified nor found")
        return None


def get_dest_username(explicit: str | None = None, env: Mapping[str, str] | None = None) -> str | None:
    """API username of the destination, needed for SOAP authentication."""
    if explicit:
        return explicit
    env = os.environ if env is None else env
    return env.get(_DEST_USERNAME_ENV_VAR) or None
