"""
Tests for configuration from the environment and pass.
"""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest

from ncentral_migrator import config
from ncentral_migrator.exceptions import InvalidPassPathError
from ncentral_migrator.utils import normalize_server_url, setup_logging


@pytest.mark.unit
class TestSettings:
    """Test numeric settings from the environment."""

    def test_defaults(self) -> None:
        """An empty environment gives the built-in defaults."""
        settings = config.Settings.from_env({})

        assert (settings.timeout, settings.max_retries, settings.page_size) == (60.0, 3, 100)

    def test_overrides(self) -> None:
        """Variables override the defaults."""
        settings = config.Settings.from_env({"NC_TIMEOUT": "15", "NC_MAX_RETRIES": "0", "NC_PAGE_SIZE": " 50 "})

        assert (settings.timeout, settings.max_retries, settings.page_size) == (15.0, 0, 50)

    @pytest.mark.parametrize(
        ("env", "name"),
        [({"NC_TIMEOUT": "soon"}, "NC_TIMEOUT"), ({"NC_PAGE_SIZE": "0"}, "NC_PAGE_SIZE")],
    )
    def test_invalid_values_name_the_variable(self, env: dict[str, str], name: str) -> None:
        """Errors mention the offending variable."""
        with pytest.raises(ValueError, match=name):
            config.Settings.from_env(env)


@pytest.mark.unit
class TestCredentials:
    """Test server and JWT resolution."""

    def test_server_from_env(self) -> None:
        """The explicit value wins over the environment."""
        env = {"NC_DEST_FQDN": "dest.example.com"}

        assert config.get_server("dest", None, env) == "dest.example.com"
        assert config.get_server("dest", "other.example.com", env) == "other.example.com"
        assert config.get_server("source", None, env) is None

    def test_jwt_from_pass_path_first(self) -> None:
        """An explicit pass path is read even when the env var is set."""
        with patch("ncentral_migrator.config.utils.get_pass_value", return_value="from-pass") as mock_get:
            assert config.get_jwt("source", "team/source-jwt", {"NC_SOURCE_JWT": "from-env"}) == "from-pass"
            mock_get.assert_called_once_with("team/source-jwt")

    def test_jwt_from_env(self) -> None:
        """The env var is used when no pass path is given."""
        with patch("ncentral_migrator.config.utils.get_pass_value") as mock_get:
            assert config.get_jwt("dest", None, {"NC_DEST_JWT": "from-env"}) == "from-env"
            mock_get.assert_not_called()

    def test_jwt_default_pass_path(self) -> None:
        """Without path or env var the default pass entry is tried."""
        with patch("ncentral_migrator.config.utils.get_pass_value", return_value="default") as mock_get:
            assert config.get_jwt("dest", None, {}) == "default"
            mock_get.assert_called_once_with("ncentral-migrator/dest")

    def test_jwt_not_found(self, caplog: pytest.LogCaptureFixture) -> None:
        """A missing default entry gives None and a warning."""
        with (
            patch("ncentral_migrator.config.utils.get_pass_value", side_effect=InvalidPassPathError("missing")),
            caplog.at_level(logging.WARNING),
        ):
            assert config.get_jwt("source", None, {}) is None
        assert "No source JWT" in caplog.text

    def test_dest_username(self) -> None:
        """The username falls back to NC_DEST_USERNAME."""
        assert config.get_dest_username(None, {"NC_DEST_USERNAME": "api@example.com"}) == "api@example.com"
        assert config.get_dest_username(None, {}) is None


@pytest.mark.unit
class TestUtils:
    """Test small helpers."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("nc.example.com", "https://nc.example.com"),
            ("  nc.example.com/  ", "https://nc.example.com"),
            ("http://nc.example.com/api", "https://nc.example.com"),
            ("https://nc.example.com:8443", "https://nc.example.com:8443"),
        ],
    )
    def test_normalize_server_url(self, value: str, expected: str) -> None:
        """Any host form becomes an https base URL."""
        assert normalize_server_url(value) == expected

    def test_normalize_rejects_empty(self) -> None:
        """An empty address is an error."""
        with pytest.raises(ValueError, match="empty"):
            normalize_server_url("   ")

    def test_setup_logging_levels(self, tmp_path: object, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verbose logging enables DEBUG and adds the file handler."""
        monkeypatch.chdir(tmp_path)  # type: ignore[arg-type]
        root_logger = logging.getLogger()
        original_handlers = root_logger.handlers[:]
        original_level = root_logger.level
        root_logger.handlers.clear()

        try:
            setup_logging(verbose=True)
            assert root_logger.level == logging.DEBUG
            assert any(isinstance(h, logging.FileHandler) for h in root_logger.handlers)
            assert logging.getLogger("httpx").level == logging.DEBUG
        finally:
            for h in root_logger.handlers:
                h.close()
            root_logger.handlers = original_handlers
            root_logger.setLevel(original_level)
            logging.getLogger("httpx").setLevel(logging.NOTSET)
