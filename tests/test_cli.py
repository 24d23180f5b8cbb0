"""
Tests for CLI module.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ncentral_migrator.cli import (
    _EXPORT_KINDS,
    _MIGRATION_PHASES,
    _connect,
    _load_permissions,
    _print_migration_report,
    _selected_kinds,
    main,
    parse_arguments,
    run,
)
from ncentral_migrator.exceptions import MigrationError
from ncentral_migrator.migrator import EntityStats, IdMapping, MigrationResult, MigrationStats
from ncentral_migrator.session import ConnectionResult


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove server and credential variables of the developer environment."""
    for name in ("NC_SOURCE_FQDN", "NC_DEST_FQDN", "NC_SOURCE_JWT", "NC_DEST_JWT", "NC_DEST_USERNAME"):
        monkeypatch.delenv(name, raising=False)


def session_mock() -> MagicMock:
    session = MagicMock()
    ok = ConnectionResult(success=True, message="Connection successful")
    session.connect_source = AsyncMock(return_value=ok)
    session.connect_destination = AsyncMock(return_value=ok)
    session.connect_with_profile = AsyncMock(return_value=ok)
    session.test_connection = AsyncMock(return_value=ok)
    return session


@pytest.mark.unit
class TestParseArguments:
    """Test the command line layout."""

    def test_migrate_options(self) -> None:
        """Source and destination options get their own prefixes."""
        args = parse_arguments(
            [
                "migrate",
                "--source",
                "old.example.com",
                "--source-jwt-pass",
                "team/old",
                "--dest",
                "new.example.com",
                "--dest-profile",
                "prod",
                "--source-so",
                "50",
                "--dest-so",
                "60",
                "--users",
            ]
        )

        assert args.command == "migrate"
        assert (args.source_server, args.source_jwt_pass) == ("old.example.com", "team/old")
        assert (args.dest_server, args.dest_profile) == ("new.example.com", "prod")
        assert (args.source_so, args.dest_so) == (50, 60)
        assert args.users is True
        assert args.customers is False

    def test_export_defaults(self) -> None:
        """Export writes CSV to nc_export unless told otherwise."""
        args = parse_arguments(["export", "--server", "nc.example.com", "--service-org", "50"])

        assert (args.output, args.format) == ("nc_export", "csv")
        assert args.source_server == "nc.example.com"
        assert args.verbose is False

    def test_command_required(self) -> None:
        """Running without a command is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            parse_arguments([])
        assert exc_info.value.code == 2

    def test_selected_kinds(self) -> None:
        """Nothing selected means everything; --all selects everything too."""
        none_selected = parse_arguments(["migrate", "--source-so", "1", "--dest-so", "2"])
        some_selected = parse_arguments(["migrate", "--source-so", "1", "--dest-so", "2", "--org-properties"])
        all_selected = parse_arguments(["export", "--service-org", "1", "--all"])

        assert all(_selected_kinds(none_selected, _MIGRATION_PHASES).values())
        assert [k for k, v in _selected_kinds(some_selected, _MIGRATION_PHASES).items() if v] == ["org_properties"]
        assert all(_selected_kinds(all_selected, _EXPORT_KINDS).values())


@pytest.mark.unit
@pytest.mark.usefixtures("clean_env")
class TestConnect:
    """Test how the CLI resolves servers and credentials."""

    @pytest.mark.asyncio
    async def test_missing_server(self) -> None:
        """Without --server or NC_SOURCE_FQDN nothing is attempted."""
        session = session_mock()
        args = parse_arguments(["test", "--jwt", "x"])

        result = await _connect(session, args, "source")

        assert result.success is False
        assert result.message == "No source server given"
        session.connect_source.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_jwt(self) -> None:
        """A --jwt value is used as is."""
        session = session_mock()
        args = parse_arguments(["test", "--server", "nc.example.com", "--jwt", "token"])

        await _connect(session, args, "source")

        session.connect_source.assert_awaited_once_with("nc.example.com", "token")

    @pytest.mark.asyncio
    async def test_keep_false_only_tests(self) -> None:
        """The test command does not keep the connection."""
        session = session_mock()
        args = parse_arguments(["test", "--server", "nc.example.com", "--jwt", "token"])

        await _connect(session, args, "source", keep=False)

        session.test_connection.assert_awaited_once_with("nc.example.com", "token")
        session.connect_source.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_profile_with_env_username(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A destination profile uses the username from the environment."""
        monkeypatch.setenv("NC_DEST_FQDN", "new.example.com")
        monkeypatch.setenv("NC_DEST_USERNAME", "api@example.com")
        session = session_mock()
        args = parse_arguments(["migrate", "--dest-profile", "prod", "--source-so", "1", "--dest-so", "2"])

        await _connect(session, args, "dest")

        session.connect_with_profile.assert_awaited_once_with(
            "prod", "new.example.com", destination=True, username="api@example.com"
        )

    @pytest.mark.asyncio
    async def test_no_jwt_found(self) -> None:
        """A missing JWT is reported without connecting."""
        session = session_mock()
        args = parse_arguments(["test", "--server", "nc.example.com"])

        with patch("ncentral_migrator.cli.config.get_jwt", return_value=None):
            result = await _connect(session, args, "source")

        assert result.message == "No source JWT specified nor found"
        session.connect_source.assert_not_awaited()


@pytest.mark.unit
class TestMain:
    """Test exit codes of the entry point."""

    @pytest.mark.parametrize(("outcome", "code"), [(True, 0), (False, 1)])
    def test_exit_code_follows_result(self, outcome: bool, code: int) -> None:  # noqa: FBT001
        """A successful run exits 0, an unsuccessful one 1."""
        with (
            patch("ncentral_migrator.cli.setup_logging"),
            patch("ncentral_migrator.cli.run", new=AsyncMock(return_value=outcome)),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(["test", "--server", "nc.example.com"])
        assert exc_info.value.code == code

    def test_errors_exit_with_1(self, caplog: pytest.LogCaptureFixture) -> None:
        """Migration errors are logged and exit 1."""
        with (
            patch("ncentral_migrator.cli.setup_logging"),
            patch("ncentral_migrator.cli.run", new=AsyncMock(side_effect=MigrationError("Not connected"))),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(["export", "--service-org", "50"])
        assert exc_info.value.code == 1
        assert "Export failed" in caplog.text

    def test_verbose_flag(self) -> None:
        """-v turns on debug logging."""
        with (
            patch("ncentral_migrator.cli.setup_logging") as mock_setup,
            patch("ncentral_migrator.cli.run", new=AsyncMock(return_value=True)),
        ):
            with pytest.raises(SystemExit):
                main(["-v", "test"])
        mock_setup.assert_called_once_with(verbose=True)


@pytest.mark.unit
class TestCredentialCommand:
    """Test saving and deleting profile credentials."""

    @pytest.mark.asyncio
    async def test_store_prompts_for_secret(self, capsys: pytest.CaptureFixture[str]) -> None:
        """The JWT is read without echo and saved under the profile."""
        args = argparse.Namespace(command="credential", action="store", profile="prod")
        with (
            patch("ncentral_migrator.cli.PassCredentialStore") as mock_store_cls,
            patch("ncentral_migrator.cli.getpass.getpass", return_value="secret-jwt"),
        ):
            mock_store_cls.return_value.store = AsyncMock()
            assert await run(args) is True

        mock_store_cls.return_value.store.assert_awaited_once_with("prod", "secret-jwt")
        assert "Saved credential for profile 'prod'" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        """delete removes the profile entry."""
        args = argparse.Namespace(command="credential", action="delete", profile="prod")
        with patch("ncentral_migrator.cli.PassCredentialStore") as mock_store_cls:
            mock_store_cls.return_value.delete = AsyncMock()
            assert await run(args) is True

        mock_store_cls.return_value.delete.assert_awaited_once_with("prod")


@pytest.mark.unit
class TestPrintMigrationReport:
    """Test the migration summary."""

    def test_report_lists_failed_users(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Users that need manual creation and errors are printed."""
        stats = MigrationStats(customers=EntityStats(created=2, matched=1))
        stats.failed_users["alice"] = "Username already in use"
        stats.errors.append("Site HQ: HTTP 500")
        result = MigrationResult(success=False, cancelled=False, stats=stats, mapping=IdMapping())

        _print_migration_report(result)
        out = capsys.readouterr().out

        assert "Status: FAILED" in out
        assert "Customers: created=2 matched=1 skipped=0 failed=0" in out
        assert "Users to create manually:" in out
        assert "alice: Username already in use" in out
        assert "Site HQ: HTTP 500" in out


@pytest.mark.unit
class TestLoadPermissions:
    """Test the role permission table selection."""

    def test_bundled_table_warns_for_role_migration(self, caplog: pytest.LogCaptureFixture) -> None:
        """Migrating roles without --permissions-csv is flagged."""
        args = parse_arguments(["migrate", "--source-so", "1", "--dest-so", "2", "--user-roles"])

        with caplog.at_level(logging.WARNING, logger="ncentral_migrator.cli"):
            assert _load_permissions(args) is None

        assert "bundled minimal permission table" in caplog.text

    def test_no_warning_without_role_phase(self, caplog: pytest.LogCaptureFixture) -> None:
        """Phases that create no roles do not need the table."""
        args = parse_arguments(["migrate", "--source-so", "1", "--dest-so", "2", "--users"])

        with caplog.at_level(logging.WARNING, logger="ncentral_migrator.cli"):
            assert _load_permissions(args) is None

        assert caplog.records == []

    def test_table_from_file(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """A given table is loaded and nothing is warned about."""
        table = tmp_path / "permissions.csv"
        table.write_text("permissionName,permissionId\nUSERS_MANAGE,2100\n", encoding="utf-8")
        args = parse_arguments(
            ["migrate", "--source-so", "1", "--dest-so", "2", "--permissions-csv", str(table)]
        )

        with caplog.at_level(logging.WARNING, logger="ncentral_migrator.cli"):
            permissions = _load_permissions(args)

        assert permissions is not None
        assert permissions.get("users_manage") == 2100
        assert caplog.records == []
