"""
Utility functions for the N-central migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess
from urllib.parse import urlsplit

from .exceptions import InvalidPassPathError, PassError, PassphraseRequiredError


def setup_logging(*, verbose: bool = False) -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler("migration.log", mode="a")],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def normalize_server_url(fqdn: str) -> str:
    """Turn a host name or URL into ``https://<host>``.

    >>> normalize_server_url("ncentral.example.com/")
    'https://ncentral.example.com'
    """
    value = fqdn.strip()
    if not value:
        msg = "Server address is empty"
        raise ValueError(msg)
    if "://" not in value:
        value = f"https://{value}"
    host = urlsplit(value).netloc
    if not host:
        msg = f"Invalid server address: {fqdn}"
        raise ValueError(msg)
    return f"https://{host}"


def _validate_pass_path(pass_path: str) -> None:
    """Validate the pass path format."""
    if not re.fullmatch(r"(?:[A-Za-z0-9_.-]+)(?:/[A-Za-z0-9_.-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise InvalidPassPathError(msg)


def _pass_failure(action: str, pass_path: str, e: subprocess.CalledProcessError) -> str:
    return (
        f"Failed to {action} pass entry '{pass_path}'.\n"
        f"Output: {(e.stdout or '').strip()}\n"
        f"Error: {(e.stderr or '').strip()}\n"
        f"Return code: {e.returncode}"
    )


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", "show", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr:
            return _get_pass_value_with_passphrase(pass_path)
        raise PassError(_pass_failure("read", pass_path, e)) from e

    return result.stdout.strip()


def _get_pass_value_with_passphrase(pass_path: str) -> str:
    # Fails in non-interactive sessions (e.g. pytest)
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e

    env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    try:
        result = subprocess.run(  # noqa: S603
            ["pass", "show", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
        )
    except subprocess.CalledProcessError as e:
        raise PassphraseRequiredError(_pass_failure("read (with passphrase)", pass_path, e)) from e
    return result.stdout.strip()


def insert_pass_value(pass_path: str, value: str) -> None:
    """Store ``value`` at ``pass_path``, replacing any existing entry."""
    _validate_pass_path(pass_path)
    try:
        subprocess.run(  # noqa: S603
            ["pass", "insert", "--multiline", "--force", pass_path],
            input=value,
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        raise PassError(_pass_failure("write", pass_path, e)) from e


def remove_pass_value(pass_path: str) -> None:
    """Delete the entry at ``pass_path``; a missing entry is not an error."""
    _validate_pass_path(pass_path)
    try:
        subprocess.run(  # noqa: S603
            ["pass", "rm", "--force", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        if "is not in the password store" in (e.stderr or "").lower():
            return
        raise PassError(_pass_failure("delete", pass_path, e)) from e
