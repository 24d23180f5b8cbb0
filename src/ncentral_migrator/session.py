"""
Connection and run management for one source/destination pair.

``MigrationSession`` is the entry point for user interfaces: it connects to the
servers, owns the clients for the lifetime of the session, and starts exports
and migrations with a shared event bus and cancellation flag.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from .client import ApiClient
from .config import Settings
from .events import CancelToken, EventBus
from .exceptions import CredentialError, MigrationError
from .export import ExportOptions, ExportResult, Exporter, writers_for
from .migrator import MigrationOptions, MigrationResult, Migrator
from .soap_client import SoapClient
from .utils import normalize_server_url

if TYPE_CHECKING:
    from .credentials import CredentialStore
    from .permissions import PermissionLookup

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class ConnectionResult:
    """Outcome of a connection attempt."""

    success: bool
    message: str
    server_url: str | None = None
    server_version: str | None = None
    service_org_id: int | None = None
    service_org_name: str | None = None


class MigrationSession:
    """Holds the source and destination connections of a session.

    Usage:
        async with MigrationSession() as session:
            await session.connect_source("source.example.com", source_jwt)
            await session.connect_destination("dest.example.com", dest_jwt, username="api@example.com")
            result = await session.start_migration(MigrationOptions.all(), 50, 50)
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        events: EventBus | None = None,
        credentials: CredentialStore | None = None,
        permissions: PermissionLookup | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the session.

        Args:
            settings: HTTP settings for every client
            events: Event bus shared by all runs of the session
            credentials: Store used by ``connect_with_profile``
            permissions: Permission table for role creation (bundled by default)
            transport: HTTP transport for every client (tests inject a mock)
            sleep: Coroutine used for retry back-off
        """
        self.settings = settings or Settings()
        self.events = events or EventBus()
        self.cancel_token = CancelToken()
        self._credentials = credentials
        self._permissions = permissions
        self._transport = transport
        self._sleep = sleep
        self._source: ApiClient | None = None
        self._dest: ApiClient | None = None
        self._dest_soap: SoapClient | None = None

    async def __aenter__(self) -> MigrationSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def source(self) -> ApiClient | None:
        return self._source

    @property
    def destination(self) -> ApiClient | None:
        return self._dest

    @property
    def destination_soap(self) -> SoapClient | None:
        return self._dest_soap

    # ==================== Connections ====================

    def _new_client(self, base_url: str) -> ApiClient:
        return ApiClient(
            base_url,
            transport=self._transport,
            max_retries=self.settings.max_retries,
            page_size=self.settings.page_size,
            timeout=self.settings.timeout,
            sleep=self._sleep,
        )

    async def _establish(self, fqdn: str, credential: str) -> tuple[ApiClient | None, ConnectionResult]:
        """Authenticate and describe the server; the client is None on failure."""
        try:
            base_url = normalize_server_url(fqdn)
        except ValueError as e:
            return None, ConnectionResult(success=False, message=str(e))

        client = self._new_client(base_url)
        try:
            await client.authenticate(credential)
        except MigrationError as e:
            await client.aclose()
            return None, ConnectionResult(
                success=False, message=f"Authentication failed: {e}", server_url=base_url
            )

        result = ConnectionResult(success=True, message="Connection successful", server_url=base_url)
        try:
            info = await client.get_server_info()
            result.server_version = info.version
        except MigrationError as e:
            logger.warning(f"Could not get server version: {e}")

        try:
            orgs = await client.get_service_orgs()
        except MigrationError as e:
            logger.warning(f"Could not list service orgs: {e}")
            orgs = []
        if orgs:
            result.service_org_id = orgs[0].so_id
            result.service_org_name = orgs[0].so_name

        logger.info(f"Connected to {base_url} (version: {result.server_version or 'unknown'})")
        return client, result

    async def test_connection(self, fqdn: str, credential: str) -> ConnectionResult:
        """Check that the server accepts the credential, without keeping the connection."""
        client, result = await self._establish(fqdn, credential)
        if client is not None:
            await client.aclose()
        return result

    async def connect_source(self, fqdn: str, credential: str) -> ConnectionResult:
        client, result = await self._establish(fqdn, credential)
        if client is not None:
            if self._source is not None:
                await self._source.aclose()
            self._source = client
        return result

    async def connect_destination(self, fqdn: str, credential: str, username: str | None = None) -> ConnectionResult:
        """Connect the destination REST client and create its SOAP client."""
        client, result = await self._establish(fqdn, credential)
        if client is None:
            return result

        await self._close_destination()
        self._dest = client
        self._dest_soap = SoapClient(
            client.base_url,
            credential,
            username=username,
            transport=self._transport,
            timeout=self.settings.timeout,
        )
        if username is None:
            logger.warning("No destination API username given; SOAP user creation may fail")
        result.message = "Destination connection successful"
        return result

    async def connect_with_profile(
        self,
        profile_key: str,
        fqdn: str,
        *,
        destination: bool = False,
        username: str | None = None,
    ) -> ConnectionResult:
        """Connect with a credential saved in the credential store."""
        if self._credentials is None:
            return ConnectionResult(success=False, message="No credential store configured")
        try:
            credential = await self._credentials.get(profile_key)
        except CredentialError as e:
            return ConnectionResult(success=False, message=f"Failed to retrieve credentials: {e}")
        if credential is None:
            return ConnectionResult(success=False, message="No saved credentials for this profile")
        if destination:
            return await self.connect_destination(fqdn, credential, username)
        return await self.connect_source(fqdn, credential)

    async def _close_destination(self) -> None:
        if self._dest is not None:
            await self._dest.aclose()
        if self._dest_soap is not None:
            await self._dest_soap.aclose()
        self._dest = None
        self._dest_soap = None

    async def disconnect(self) -> None:
        if self._source is not None:
            await self._source.aclose()
        self._source = None
        await self._close_destination()

    async def aclose(self) -> None:
        await self.disconnect()

    # ==================== Runs ====================

    def cancel(self) -> None:
        """Ask the running export or migration to stop after the current entity."""
        logger.info("Cancellation requested")
        self.cancel_token.cancel()

    async def start_export(
        self,
        output_dir: str | Path,
        options: ExportOptions,
        formats: list[str],
        source_service_org_id: int,
    ) -> ExportResult:
        """Export the source hierarchy below a service org.

        Raises:
            MigrationError: If no source is connected
            ValueError: On an unknown format name
        """
        if self._source is None:
            msg = "Not connected"
            raise MigrationError(msg)
        self.cancel_token.reset()
        exporter = Exporter(self._source, writers_for(formats), events=self.events, cancel=self.cancel_token)
        return await exporter.export(Path(output_dir), options, source_service_org_id)

    async def start_migration(self, options: MigrationOptions, source_so_id: int, dest_so_id: int) -> MigrationResult:
        """Migrate from the source to the destination service org.

        Raises:
            MigrationError: If a server is not connected or a required list cannot be fetched
        """
        if self._source is None or self._dest is None:
            msg = "Both source and destination must be connected"
            raise MigrationError(msg)
        self.cancel_token.reset()
        migrator = Migrator(
            self._source,
            self._dest,
            soap=self._dest_soap,
            events=self.events,
            cancel=self.cancel_token,
            permissions=self._permissions,
        )
        return await migrator.migrate(options, source_so_id, dest_so_id)
