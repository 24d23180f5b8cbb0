"""
Command-line interface for the N-central migration tool.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import signal
import sys
from pathlib import Path

from . import config
from .credentials import PassCredentialStore
from .exceptions import MigrationError
from .export import WRITERS, ExportOptions, ExportResult
from .migrator import MigrationOptions, MigrationResult
from .permissions import PermissionLookup
from .session import ConnectionResult, MigrationSession
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)

_EXPORT_KINDS: tuple[str, ...] = (
    "service_orgs",
    "customers",
    "sites",
    "devices",
    "access_groups",
    "user_roles",
    "org_properties",
    "users",
)
_MIGRATION_PHASES: tuple[str, ...] = ("customers", "user_roles", "access_groups", "users", "org_properties")


def _add_server_arguments(parser: argparse.ArgumentParser, role: config.Role, prefix: str | None = None) -> None:
    """Server and credential options; ``prefix`` names them ``--<prefix>``, ``--<prefix>-jwt`` and so on."""
    opt = f"--{prefix}-" if prefix else "--"
    env_var = "NC_SOURCE_FQDN" if role == "source" else "NC_DEST_FQDN"
    _ = parser.add_argument(
        f"--{prefix}" if prefix else "--server", dest=f"{role}_server", help=f"Server FQDN (default: ${env_var})"
    )
    _ = parser.add_argument(f"{opt}jwt", dest=f"{role}_jwt", help="API user JWT (prefer the pass path or env var)")
    _ = parser.add_argument(
        f"{opt}jwt-pass",
        dest=f"{role}_jwt_pass",
        help=f"Path of the JWT in pass utility (default: ncentral-migrator/{role})",
    )
    _ = parser.add_argument(f"{opt}profile", dest=f"{role}_profile", help="Use the JWT saved for this profile")


def _add_kind_flags(parser: argparse.ArgumentParser, kinds: tuple[str, ...]) -> None:
    _ = parser.add_argument("--all", action="store_true", help="Select everything")
    for kind in kinds:
        _ = parser.add_argument(f"--{kind.replace('_', '-')}", dest=kind, action="store_true")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ncentral-migrator", description="Export and migrate N-central service organizations"
    )
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    test = subparsers.add_parser("test", help="Check that a server accepts the API user JWT")
    _add_server_arguments(test, "source")

    export = subparsers.add_parser("export", help="Export a service org hierarchy to CSV/JSON files")
    _add_server_arguments(export, "source")
    _ = export.add_argument("--service-org", type=int, required=True, help="Source service org ID")
    _ = export.add_argument("--output", default="nc_export", help="Output directory (default: nc_export)")
    _ = export.add_argument(
        "--format", default="csv", help=f"Comma-separated formats: {', '.join(WRITERS)} (default: csv)"
    )
    _add_kind_flags(export, _EXPORT_KINDS)

    migrate = subparsers.add_parser("migrate", help="Migrate a service org from a source to a destination server")
    _add_server_arguments(migrate, "source", "source")
    _add_server_arguments(migrate, "dest", "dest")
    _ = migrate.add_argument("--source-so", type=int, required=True, help="Source service org ID")
    _ = migrate.add_argument("--dest-so", type=int, required=True, help="Destination service org ID")
    _ = migrate.add_argument(
        "--dest-username", help="Destination API username for SOAP calls (default: $NC_DEST_USERNAME)"
    )
    _ = migrate.add_argument("--permissions-csv", type=Path, help="permissionName,permissionId table for roles")
    _add_kind_flags(migrate, _MIGRATION_PHASES)

    credential = subparsers.add_parser("credential", help="Manage JWTs saved per profile in pass")
    _ = credential.add_argument("action", choices=["store", "delete"])
    _ = credential.add_argument("profile", help="Profile name")

    return parser.parse_args(argv)


def _selected_kinds(args: argparse.Namespace, kinds: tuple[str, ...]) -> dict[str, bool]:
    selected = {kind: bool(args.all or getattr(args, kind, False)) for kind in kinds}
    if not any(selected.values()):
        # Nothing picked means everything
        return dict.fromkeys(kinds, True)
    return selected


async def _connect(
    session: MigrationSession, args: argparse.Namespace, role: config.Role, *, keep: bool = True
) -> ConnectionResult:
    server = config.get_server(role, getattr(args, f"{role}_server"))
    if not server:
        return ConnectionResult(success=False, message=f"No {role} server given")

    destination = role == "dest"
    username = config.get_dest_username(getattr(args, "dest_username", None)) if destination else None
    profile: str | None = getattr(args, f"{role}_profile")
    if profile:
        return await session.connect_with_profile(profile, server, destination=destination, username=username)

    jwt: str | None = getattr(args, f"{role}_jwt") or config.get_jwt(role, getattr(args, f"{role}_jwt_pass"))
    if not jwt:
        return ConnectionResult(success=False, message=f"No {role} JWT specified nor found")
    if not keep:
        return await session.test_connection(server, jwt)
    if destination:
        return await session.connect_destination(server, jwt, username)
    return await session.connect_source(server, jwt)


def _print_connection(label: str, result: ConnectionResult) -> None:
    status = "OK" if result.success else "FAILED"
    print(f"{label}: {status} - {result.message}")
    if result.server_url:
        print(f"  Server:  {result.server_url} (version: {result.server_version or 'unknown'})")
    if result.service_org_id is not None:
        print(f"  Service org: {result.service_org_name} (ID: {result.service_org_id})")


def _print_export_report(result: ExportResult) -> None:
    print("\n=== Export Report ===")
    print(f"Status: {'CANCELLED' if result.cancelled else 'PASSED' if result.success else 'FAILED'}")
    print(result.message)
    for path in result.files_created:
        print(f"  {path}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    for error in result.errors:
        print(f"  error: {error}")


def _print_migration_report(result: MigrationResult) -> None:
    stats = result.stats
    print("\n=== Migration Report ===")
    print(f"Status: {'CANCELLED' if result.cancelled else 'PASSED' if result.success else 'FAILED'}")
    for label, entity in (
        ("Customers", stats.customers),
        ("Sites", stats.sites),
        ("User roles", stats.user_roles),
        ("Access groups", stats.access_groups),
        ("Users", stats.users),
        ("Org properties", stats.org_properties),
    ):
        print(
            f"  {label}: created={entity.created} matched={entity.matched} "
            f"skipped={entity.skipped} failed={entity.failed}"
        )
    if stats.failed_users:
        print("Users to create manually:")
        for login, reason in stats.failed_users.items():
            print(f"  {login}: {reason}")
    if stats.errors:
        print("Errors:")
        for error in stats.errors:
            print(f"  - {error}")


async def _run_test(session: MigrationSession, args: argparse.Namespace) -> bool:
    result = await _connect(session, args, "source", keep=False)
    _print_connection("Connection", result)
    return result.success


async def _run_export(session: MigrationSession, args: argparse.Namespace) -> bool:
    connected = await _connect(session, args, "source")
    _print_connection("Source", connected)
    if not connected.success:
        return False
    options = ExportOptions(**_selected_kinds(args, _EXPORT_KINDS))
    formats = [f for f in args.format.split(",") if f.strip()]
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    result = await session.start_export(output_dir, options, formats, args.service_org)
    _print_export_report(result)
    return result.success


async def _run_migrate(session: MigrationSession, args: argparse.Namespace) -> bool:
    source = await _connect(session, args, "source")
    _print_connection("Source", source)
    dest = await _connect(session, args, "dest")
    _print_connection("Destination", dest)
    if not (source.success and dest.success):
        return False
    options = MigrationOptions(**_selected_kinds(args, _MIGRATION_PHASES))
    result = await session.start_migration(options, args.source_so, args.dest_so)
    _print_migration_report(result)
    return result.success


async def _run_credential(store: PassCredentialStore, args: argparse.Namespace) -> bool:
    if args.action == "store":
        secret = getpass.getpass(f"JWT for profile '{args.profile}': ")
        await store.store(args.profile, secret)
        print(f"Saved credential for profile '{args.profile}'")
    else:
        await store.delete(args.profile)
        print(f"Deleted credential for profile '{args.profile}'")
    return True


def _load_permissions(args: argparse.Namespace) -> PermissionLookup | None:
    """Permission table from --permissions-csv; None selects the bundled one."""
    permissions_csv: Path | None = getattr(args, "permissions_csv", None)
    if permissions_csv is not None:
        return PermissionLookup.from_file(permissions_csv)
    if args.command == "migrate" and _selected_kinds(args, _MIGRATION_PHASES)["user_roles"]:
        logger.warning(
            "No --permissions-csv given: user roles are created from the bundled minimal permission table "
            "and most will only get the active issues view permission"
        )
    return None


async def run(args: argparse.Namespace) -> bool:
    """Execute the selected command; True on success."""
    store = PassCredentialStore()
    if args.command == "credential":
        return await _run_credential(store, args)

    permissions = _load_permissions(args)

    async with MigrationSession(
        settings=config.Settings.from_env(), credentials=store, permissions=permissions
    ) as session:
        # Ctrl-C stops the run after the entity in progress
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, session.cancel)

        if args.command == "test":
            return await _run_test(session, args)
        if args.command == "export":
            return await _run_export(session, args)
        return await _run_migrate(session, args)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        success = asyncio.run(run(args))
    except (MigrationError, ValueError, OSError):
        logger.exception(f"{args.command.capitalize()} failed")
        sys.exit(1)

    sys.exit(0 if success else 1)
