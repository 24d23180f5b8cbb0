"""Migration engine that copies a service organization between two servers.

The Migrator class is the central coordinator for migration. It:
1. Matches existing destination entities by name
2. Creates what is missing, through REST with a SOAP fallback
3. Builds the source -> destination id mapping used by later phases
4. Reports progress and collects per-entity failures

Migration Flow
--------------
Five phases run in order; each can be switched off independently. A phase
that runs after a disabled one re-derives what it needs from the current
destination state, so a partial run can be resumed phase by phase.

Phase 1: Customers & Sites
    - Fetch source and destination customers, match by lowercase name
    - Create unmatched customers, at most ``customer_concurrency`` at a time
    - Map the root service org, then every matched or created customer
    - Fetch sites, match by (customer name, site name)
    - Create unmatched sites under their mapped destination customer

Phase 2: User Roles
    - Match roles by lowercase name
    - Create unmatched roles, translating permission names to ids
    - Record role name -> destination id, which users are mapped through

Phase 3: Access Groups
    - Match groups by lowercase name
    - Create unmatched groups with the full destination customer and user
      id lists (membership is set at creation, not added incrementally)

Phase 4: Users
    - Skip logins that already exist on the destination
    - Translate role ids through role names
    - Create through the SOAP API; the REST API cannot create users

Phase 5: Org Properties
    - Push each source property value to the mapped destination org unit

Id Mapping
----------
Numeric ids are not stable across servers, so entities are matched by name
and the ``IdMapping`` translates source ids to destination ids:

    customers   {source customer id: destination customer id}
    sites       {source site id: destination site id}
    org_units   every org-unit kind, including the root service org
    role_names  {lowercase role name: destination role id}
    user_logins {lowercase login: destination user id}

Entries are only added once the call that matched or created the entity has
returned.

Error Handling
--------------
- Per-entity failures: logged, counted in ``MigrationStats`` and left out of
  the mapping; dependent entities are skipped with their own reason
- Failure to fetch a list a phase cannot work without: ``MigrationError``,
  which aborts the run
- Cancellation: polled between entities; the run stops scheduling work and
  returns a result marked ``cancelled``
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from .events import CancelToken, EventBus
from .exceptions import MigrationError, SoapError
from .fallback import create_with_fallback
from .permissions import PermissionLookup
from .soap_client import UserAddInfo

if TYPE_CHECKING:
    from .models import Customer, OrgProperty, Site, User, UserRole
    from .protocols import DestinationApi, SoapProvisioner, SourceApi

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_CONCURRENCY = 2

_T = TypeVar("_T")

# (lowercase customer name, lowercase site name); "" for sites directly under the service org
SiteKey = tuple[str, str]


@dataclass
class MigrationOptions:
    """Which phases to run."""

    customers: bool = False
    user_roles: bool = False
    access_groups: bool = False
    users: bool = False
    org_properties: bool = False

    @classmethod
    def all(cls) -> MigrationOptions:
        return cls(customers=True, user_roles=True, access_groups=True, users=True, org_properties=True)

    def any_enabled(self) -> bool:
        return self.customers or self.user_roles or self.access_groups or self.users or self.org_properties


@dataclass
class IdMapping:
    """Source -> destination translation built during one run."""

    customers: dict[int, int] = field(default_factory=dict)
    sites: dict[int, int] = field(default_factory=dict)
    roles: dict[int, int] = field(default_factory=dict)
    access_groups: dict[int, int] = field(default_factory=dict)
    role_names: dict[str, int] = field(default_factory=dict)
    user_logins: dict[str, int] = field(default_factory=dict)
    org_units: dict[int, int] = field(default_factory=dict)


@dataclass
class EntityStats:
    """Outcome counters for one entity kind."""

    created: int = 0
    matched: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class MigrationStats:
    """Statistics collected during migration."""

    customers: EntityStats = field(default_factory=EntityStats)
    sites: EntityStats = field(default_factory=EntityStats)
    user_roles: EntityStats = field(default_factory=EntityStats)
    access_groups: EntityStats = field(default_factory=EntityStats)
    users: EntityStats = field(default_factory=EntityStats)
    # created = synced
    org_properties: EntityStats = field(default_factory=EntityStats)
    # login -> reason
    failed_users: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def failed_total(self) -> int:
        return sum(
            s.failed
            for s in (self.customers, self.sites, self.user_roles, self.access_groups, self.users, self.org_properties)
        )


@dataclass
class MigrationResult:
    """Result of a migration run."""

    success: bool
    cancelled: bool
    stats: MigrationStats
    mapping: IdMapping


class MigrationCancelledError(MigrationError):
    """Raised inside a phase when the run was cancelled."""


@dataclass
class _Run:
    source_so_id: int
    dest_so_id: int
    mapping: IdMapping = field(default_factory=IdMapping)
    stats: MigrationStats = field(default_factory=MigrationStats)


class Migrator:
    """Migrates one service organization from a source to a destination server.

    Usage:
        migrator = Migrator(source_client, dest_client, soap=dest_soap)
        result = await migrator.migrate(MigrationOptions.all(), source_so_id=50, dest_so_id=50)

    The migrator keeps no state between runs; the mapping of each run is
    returned in its MigrationResult.
    """

    _source: SourceApi
    _dest: DestinationApi
    _soap: SoapProvisioner | None
    _events: EventBus
    _cancel: CancelToken
    _permissions: PermissionLookup | None
    _customer_concurrency: int

    def __init__(
        self,
        source: SourceApi,
        dest: DestinationApi,
        *,
        soap: SoapProvisioner | None = None,
        events: EventBus | None = None,
        cancel: CancelToken | None = None,
        permissions: PermissionLookup | None = None,
        customer_concurrency: int = DEFAULT_CUSTOMER_CONCURRENCY,
    ) -> None:
        """Initialize the migrator.

        Args:
            source: Server to migrate from
            dest: Server to migrate to
            soap: SOAP client of the destination; without it users cannot be
                created and REST failures have no fallback
            events: Progress and log event bus
            cancel: Cancellation flag polled between entities
            permissions: Permission name -> id table (the bundled one by default)
            customer_concurrency: Maximum concurrent customer creations
        """
        if customer_concurrency < 1:
            msg = f"customer_concurrency must be >= 1, got {customer_concurrency}"
            raise ValueError(msg)
        self._source = source
        self._dest = dest
        self._soap = soap
        self._events = events or EventBus()
        self._cancel = cancel or CancelToken()
        self._permissions = permissions
        self._customer_concurrency = customer_concurrency

    async def migrate(self, options: MigrationOptions, source_so_id: int, dest_so_id: int) -> MigrationResult:
        """Execute the enabled phases.

        Returns:
            MigrationResult with statistics and mappings. ``success`` is False
            when the run was cancelled or any entity failed.

        Raises:
            MigrationError: If a list a phase depends on cannot be fetched
        """
        run = _Run(source_so_id=source_so_id, dest_so_id=dest_so_id)
        self._progress("Migration", "Starting migration engine...", 0.0)
        logger.info(f"Starting migration: source service org {source_so_id} -> destination {dest_so_id}")

        phases: list[tuple[bool, Callable[[_Run], Awaitable[None]]]] = [
            (options.customers, self._migrate_customers_and_sites),
            (options.user_roles, self._migrate_user_roles),
            (options.access_groups, self._migrate_access_groups),
            (options.users, self._migrate_users),
            (options.org_properties, self._migrate_org_properties),
        ]
        cancelled = False
        try:
            for enabled, phase in phases:
                if enabled:
                    self._check_cancelled()
                    await phase(run)
        except MigrationCancelledError:
            cancelled = True

        stats = run.stats
        if cancelled:
            self._warn(run, "Migration cancelled by user")
            self._progress("Cancelled", "Migration cancelled", self._last_percent())
        else:
            self._progress("Complete", "Migration finished", 100.0)

        logger.info(
            f"Migration finished: {stats.customers.created} customers, {stats.sites.created} sites, "
            f"{stats.user_roles.created} roles, {stats.access_groups.created} access groups, "
            f"{stats.users.created} users created; {stats.org_properties.created} properties synced; "
            f"{stats.failed_total} failures"
        )
        return MigrationResult(
            success=not cancelled and stats.failed_total == 0,
            cancelled=cancelled,
            stats=stats,
            mapping=run.mapping,
        )

    # ==================== Helpers ====================

    def _progress(self, phase: str, message: str, percent: float, current: int = 0, total: int = 0) -> None:
        self._events.progress(phase, message, percent, current, total)

    def _last_percent(self) -> float:
        last = self._events.last_progress
        return last.percent if last else 0.0

    def _warn(self, run: _Run, message: str) -> None:
        run.stats.warnings.append(message)
        self._events.log("warn", message, logger)

    def _error(self, run: _Run, message: str) -> None:
        run.stats.errors.append(message)
        self._events.log("error", message, logger)

    def _check_cancelled(self) -> None:
        if self._cancel.cancelled:
            msg = "Migration cancelled"
            raise MigrationCancelledError(msg)

    @staticmethod
    async def _fetch(description: str, call: Awaitable[_T]) -> _T:
        """Await a list fetch the phase cannot do without."""
        try:
            return await call
        except MigrationError as e:
            msg = f"Failed to fetch {description}: {e}"
            raise MigrationError(msg) from e

    async def _fetch_optional(self, run: _Run, description: str, call: Awaitable[list[_T]]) -> list[_T]:
        """Await a list fetch whose failure only degrades the phase."""
        try:
            return await call
        except MigrationError as e:
            self._warn(run, f"Failed to fetch {description}, continuing without it: {e}")
            return []

    def _soap_attempt(self, call: Callable[[SoapProvisioner], Awaitable[_T]]) -> Callable[[], Awaitable[_T]] | None:
        soap = self._soap
        if soap is None:
            return None
        return lambda: call(soap)

    # ==================== Phase 1: Customers & Sites ====================

    async def _migrate_customers_and_sites(self, run: _Run) -> None:
        mapping = run.mapping

        self._progress("Customers", "Fetching source customers...", 10.0)
        source_customers = await self._fetch(
            "source customers", self._source.get_customers_by_service_org(run.source_so_id)
        )
        self._progress("Customers", "Fetching destination customers...", 15.0)
        dest_customers = await self._fetch(
            "destination customers", self._dest.get_customers_by_service_org(run.dest_so_id)
        )

        # Root service org first: sites directly under it resolve through org_units
        mapping.org_units[run.source_so_id] = run.dest_so_id

        dest_by_name = {c.customer_name.lower(): c.customer_id for c in dest_customers}
        results = await self._create_customers(run, source_customers, dest_by_name)
        for source_id, dest_id in results:
            mapping.customers[source_id] = dest_id
            mapping.org_units[source_id] = dest_id

        self._check_cancelled()
        await self._migrate_sites(run, source_customers, dest_customers)

        logger.info(
            f"Org unit mapping: {len(mapping.customers)} customers, {len(mapping.sites)} sites, "
            f"{len(mapping.org_units)} total org units"
        )

    async def _create_customers(
        self,
        run: _Run,
        source_customers: list[Customer],
        dest_by_name: dict[str, int],
    ) -> list[tuple[int, int]]:
        """Match or create every source customer; returns (source id, destination id) pairs."""
        total = len(source_customers)
        semaphore = asyncio.Semaphore(self._customer_concurrency)
        completed = 0

        async def worker(customer: Customer) -> tuple[int, int] | None:
            nonlocal completed
            async with semaphore:
                if self._cancel.cancelled:
                    return None
                dest_id = await self._match_or_create_customer(run, customer, dest_by_name)
            # Incremented once per finished worker, so percentages only grow
            completed += 1
            self._progress(
                "Customers",
                f"Processed customer: {customer.customer_name}",
                15.0 + completed / total * 15.0,
                completed,
                total,
            )
            return None if dest_id is None else (customer.customer_id, dest_id)

        results = await asyncio.gather(*(worker(c) for c in source_customers))
        return [r for r in results if r is not None]

    async def _match_or_create_customer(
        self,
        run: _Run,
        customer: Customer,
        dest_by_name: dict[str, int],
    ) -> int | None:
        name = customer.customer_name
        existing = dest_by_name.get(name.lower())
        if existing is not None:
            logger.info(f"Customer '{name}' already exists on destination (ID: {existing})")
            run.stats.customers.matched += 1
            return existing

        payload: dict[str, Any] = {
            "customerName": name,
            "parentId": run.dest_so_id,
            "externalId": customer.external_id,
            "contactFirstName": customer.contact_first_name,
            "contactLastName": customer.contact_last_name,
            "contactEmail": customer.contact_email,
        }
        try:
            dest_id = await create_with_fallback(
                f"customer '{name}'",
                lambda: self._dest.create_customer(run.dest_so_id, payload),
                self._soap_attempt(lambda soap: soap.customer_add(name, run.dest_so_id, customer.soap_settings())),
            )
        except MigrationError as e:
            run.stats.customers.failed += 1
            self._error(run, f"Failed to create customer '{name}': {e}")
            return None

        run.stats.customers.created += 1
        logger.info(f"Created customer '{name}' (ID: {dest_id})")
        return dest_id

    async def _migrate_sites(self, run: _Run, source_customers: list[Customer], dest_customers: list[Customer]) -> None:
        mapping = run.mapping

        self._progress("Sites", "Fetching source sites...", 30.0)
        source_sites = await self._fetch("source sites", self._source.get_sites())
        dest_sites = await self._fetch("destination sites", self._dest.get_sites())

        source_names = {c.customer_id: c.customer_name for c in source_customers}
        source_names[run.source_so_id] = ""
        dest_names = {c.customer_id: c.customer_name for c in dest_customers}
        dest_names[run.dest_so_id] = ""

        # Two distinct destination sites with the same key collapse into one entry
        dest_lookup: dict[SiteKey, int] = {}
        for site in dest_sites:
            key = self._site_key(site, dest_names)
            if key is not None:
                dest_lookup[key] = site.site_id

        hierarchy_sites = [s for s in source_sites if s.parent_id in source_names]
        total = len(hierarchy_sites)
        for index, site in enumerate(hierarchy_sites, start=1):
            self._check_cancelled()
            key = self._site_key(site, source_names)
            if key is None:
                continue
            customer_label = key[0] or "(service org)"

            existing = dest_lookup.get(key)
            if existing is not None:
                mapping.sites[site.site_id] = existing
                mapping.org_units[site.site_id] = existing
                run.stats.sites.matched += 1
                logger.debug(f"Site '{site.site_name}' under '{customer_label}' mapped to dest ID {existing}")
            else:
                dest_id = await self._create_site(run, site, customer_label)
                if dest_id is not None:
                    mapping.sites[site.site_id] = dest_id
                    mapping.org_units[site.site_id] = dest_id
                    dest_lookup[key] = dest_id

            self._progress("Sites", f"Processed site: {site.site_name}", 30.0 + index / total * 5.0, index, total)

    @staticmethod
    def _site_key(site: Site, parent_names: dict[int, str]) -> SiteKey | None:
        if site.parent_id is None:
            return None
        parent_name = parent_names.get(site.parent_id)
        if parent_name is None:
            return None
        return (parent_name.lower(), site.site_name.lower())

    async def _create_site(self, run: _Run, site: Site, customer_label: str) -> int | None:
        name = site.site_name
        parent_dest_id = run.mapping.org_units.get(site.parent_id) if site.parent_id is not None else None
        if parent_dest_id is None:
            run.stats.sites.skipped += 1
            self._warn(
                run,
                f"Site '{name}' under customer '{customer_label}' skipped - parent customer not mapped to destination",
            )
            return None

        logger.info(f"Creating site '{name}' under '{customer_label}' (dest parent ID: {parent_dest_id})...")
        payload: dict[str, Any] = {"siteName": name, **site.contact_payload()}
        try:
            dest_id = await create_with_fallback(
                f"site '{name}'",
                lambda: self._dest.create_site(parent_dest_id, payload),
                self._soap_attempt(lambda soap: soap.customer_add(name, parent_dest_id, site.soap_settings())),
            )
        except MigrationError as e:
            run.stats.sites.failed += 1
            self._error(run, f"Failed to create site '{name}': {e}")
            return None

        run.stats.sites.created += 1
        logger.info(f"Created site '{name}' (ID: {dest_id})")
        return dest_id

    # ==================== Phase 2: User Roles ====================

    async def _migrate_user_roles(self, run: _Run) -> None:
        mapping = run.mapping

        self._progress("Roles", "Loading permission mappings...", 36.0)
        permissions = self._permissions if self._permissions is not None else PermissionLookup.bundled()
        if permissions.is_empty():
            self._warn(run, "No permission mappings loaded - roles will be created with minimal permissions")

        self._progress("Roles", "Fetching source roles...", 38.0)
        source_roles = await self._fetch("source roles", self._source.get_user_roles(run.source_so_id))
        self._progress("Roles", "Fetching destination roles...", 40.0)
        dest_roles = await self._fetch("destination roles", self._dest.get_user_roles(run.dest_so_id))

        dest_by_name = {r.role_name.lower(): r.role_id for r in dest_roles if r.role_name}

        total = len(source_roles)
        for index, role in enumerate(source_roles, start=1):
            self._check_cancelled()
            role_name = role.role_name or "Unknown Role"
            existing = dest_by_name.get(role_name.lower())
            if existing is not None:
                logger.debug(f"Role '{role_name}' already exists in destination (ID: {existing})")
                run.stats.user_roles.matched += 1
                dest_id: int | None = existing
            else:
                dest_id = await self._create_role(run, role, role_name, permissions)
            if dest_id is not None:
                mapping.roles[role.role_id] = dest_id
                mapping.role_names[role_name.lower()] = dest_id
                dest_by_name[role_name.lower()] = dest_id
            self._progress("Roles", f"Processed role: {role_name}", 40.0 + index / total * 8.0, index, total)

    async def _create_role(
        self,
        run: _Run,
        role: UserRole,
        role_name: str,
        permissions: PermissionLookup,
    ) -> int | None:
        permission_ids = permissions.role_permission_ids(role.permissions)
        description = role.description or "Migrated role"
        payload = {
            "roleName": role_name,
            "description": description,
            "permissionIds": permission_ids,
            "userIds": [],
        }
        logger.info(f"Creating role '{role_name}' with {len(permission_ids)} permissions...")
        try:
            dest_id = await create_with_fallback(
                f"role '{role_name}'",
                lambda: self._dest.create_user_role(run.dest_so_id, payload),
                self._soap_attempt(
                    lambda soap: soap.user_role_add(run.dest_so_id, role_name, description, permission_ids)
                ),
            )
        except MigrationError as e:
            run.stats.user_roles.failed += 1
            self._error(run, f"Failed to create role '{role_name}': {e}")
            return None

        run.stats.user_roles.created += 1
        logger.info(f"Created role '{role_name}' (source ID: {role.role_id} -> dest ID: {dest_id})")
        return dest_id

    # ==================== Phase 3: Access Groups ====================

    async def _migrate_access_groups(self, run: _Run) -> None:
        mapping = run.mapping

        self._progress("Access Groups", "Fetching source access groups...", 50.0)
        source_groups = await self._fetch("source access groups", self._source.get_access_groups(run.source_so_id))
        self._progress("Access Groups", "Fetching destination access groups...", 55.0)
        dest_groups = await self._fetch("destination access groups", self._dest.get_access_groups(run.dest_so_id))

        self._progress("Access Groups", "Fetching destination customer IDs...", 58.0)
        dest_customers = await self._fetch_optional(
            run, "destination customers", self._dest.get_customers_by_service_org(run.dest_so_id)
        )
        self._progress("Access Groups", "Fetching destination user IDs...", 59.0)
        dest_users = await self._fetch_optional(
            run, "destination users", self._dest.get_users_by_org_unit(run.dest_so_id)
        )

        customer_ids = [c.customer_id for c in dest_customers]
        user_ids = [u.user_id for u in dest_users]
        logger.info(
            f"Found {len(customer_ids)} destination customers and {len(user_ids)} users for access group creation"
        )

        dest_by_name = {g.group_name.lower(): g.group_id for g in dest_groups if g.group_name}

        total = len(source_groups)
        for index, group in enumerate(source_groups, start=1):
            self._check_cancelled()
            name = group.group_name or "Unknown Group"
            existing = dest_by_name.get(name.lower())
            if existing is not None:
                logger.debug(f"Access group '{name}' already exists in destination (ID: {existing})")
                run.stats.access_groups.matched += 1
                mapping.access_groups[group.group_id] = existing
            elif not customer_ids:
                run.stats.access_groups.skipped += 1
                self._warn(run, f"Cannot create access group '{name}': no customers exist in destination")
            else:
                dest_id = await self._create_access_group(
                    run, group.group_type, name, group.description, customer_ids, user_ids
                )
                if dest_id is not None:
                    mapping.access_groups[group.group_id] = dest_id
                    dest_by_name[name.lower()] = dest_id
            self._progress(
                "Access Groups", f"Processed access group: {name}", 59.0 + index / total * 10.0, index, total
            )

    async def _create_access_group(
        self,
        run: _Run,
        group_type: str | None,
        name: str,
        description: str | None,
        customer_ids: list[int],
        user_ids: list[int],
    ) -> int | None:
        group_type = group_type or "ORG_UNIT"
        description = description or ""
        payload = {
            "groupName": name,
            "groupDescription": description,
            "orgUnitIds": [str(i) for i in customer_ids],
            "userIds": [str(i) for i in user_ids],
            "autoIncludeNewOrgUnits": "true",
        }
        logger.info(
            f"Creating access group '{name}' (type: {group_type}) with {len(customer_ids)} org units "
            f"and {len(user_ids)} users..."
        )

        if group_type.upper() == "DEVICE":
            rest = functools.partial(self._dest.create_device_access_group, run.dest_so_id, payload)
        else:
            rest = functools.partial(self._dest.create_org_unit_access_group, run.dest_so_id, payload)
        try:
            dest_id = await create_with_fallback(
                f"access group '{name}'",
                rest,
                self._soap_attempt(
                    lambda soap: soap.access_group_add(
                        run.dest_so_id,
                        name,
                        description,
                        group_type=group_type,
                        org_unit_ids=customer_ids,
                        user_ids=user_ids,
                    )
                ),
            )
        except MigrationError as e:
            run.stats.access_groups.failed += 1
            self._error(run, f"Failed to create access group '{name}': {e}")
            return None

        run.stats.access_groups.created += 1
        logger.info(f"Created access group '{name}' (ID: {dest_id})")
        return dest_id

    # ==================== Phase 4: Users ====================

    async def _migrate_users(self, run: _Run) -> None:
        mapping = run.mapping

        self._progress("Users", "Fetching source users and roles...", 70.0)
        source_users = await self._fetch("source users", self._source.get_users_by_org_unit(run.source_so_id))
        source_roles = await self._fetch_optional(run, "source roles", self._source.get_user_roles(run.source_so_id))
        role_id_to_name = {r.role_id: r.role_name.lower() for r in source_roles if r.role_name}

        if not mapping.role_names:
            logger.info("Role names map is empty - fetching destination roles to populate it")
            dest_roles = await self._fetch_optional(run, "destination roles", self._dest.get_user_roles(run.dest_so_id))
            for role in dest_roles:
                if role.role_name:
                    mapping.role_names[role.role_name.lower()] = role.role_id

        self._progress("Users", "Fetching destination users...", 75.0)
        dest_users = await self._fetch("destination users", self._dest.get_users_by_org_unit(run.dest_so_id))
        dest_by_login = {u.login_name.lower(): u.user_id for u in dest_users}

        total = len(source_users)
        for index, user in enumerate(source_users):
            self._check_cancelled()
            self._progress(
                "Users", f"Migrating user: {user.login_name}", 75.0 + index / total * 15.0, index + 1, total
            )

            existing = dest_by_login.get(user.login_name.lower())
            if existing is not None:
                logger.info(f"User '{user.login_name}' already exists on destination")
                run.stats.users.matched += 1
                mapping.user_logins[user.login_name.lower()] = existing
                continue

            role_ids = self._map_user_roles(user, role_id_to_name, mapping.role_names)
            dest_id = await self._create_user(run, user, role_ids)
            if dest_id is not None:
                mapping.user_logins[user.login_name.lower()] = dest_id

    @staticmethod
    def _map_user_roles(user: User, role_id_to_name: dict[int, str], role_names: dict[str, int]) -> list[int]:
        """Source role ids -> destination role ids, through role names."""
        mapped: list[int] = []
        for source_role_id in user.role_ids:
            name = role_id_to_name.get(source_role_id)
            dest_role_id = role_names.get(name) if name is not None else None
            if dest_role_id is None:
                logger.warning(
                    f"Could not map source role ID {source_role_id} to destination for user '{user.login_name}'"
                )
            else:
                mapped.append(dest_role_id)
        return mapped

    def _user_parent_id(self, run: _Run, user: User) -> int:
        org_units = run.mapping.org_units
        for source_ou in (user.org_unit_id, user.service_org_id):
            if source_ou is not None and source_ou in org_units:
                return org_units[source_ou]
        return run.dest_so_id

    def _fail_user(self, run: _Run, login: str, reason: str) -> None:
        run.stats.users.failed += 1
        run.stats.failed_users[login] = reason
        self._error(run, f"User '{login}' not migrated: {reason}")

    async def _create_user(self, run: _Run, user: User, role_ids: list[int]) -> int | None:
        login = user.login_name
        if self._soap is None:
            self._fail_user(run, login, "SOAP client not configured; create the user manually")
            return None

        info = UserAddInfo(
            # The login is the email address when no separate email is set
            email=user.email or login,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
            customer_id=self._user_parent_id(run, user),
            is_enabled=True,
            role_ids=role_ids,
        )
        logger.info(f"Creating user '{login}' via SOAP API at customerID {info.customer_id}...")
        try:
            dest_id = await self._soap.user_add(login, info)
        except SoapError as e:
            self._fail_user(run, login, str(e))
            return None
        if dest_id <= 0:
            self._fail_user(run, login, f"userAdd returned ID {dest_id}; the user may already exist elsewhere")
            return None

        run.stats.users.created += 1
        logger.info(f"Created user '{login}' (ID: {dest_id})")
        return dest_id

    # ==================== Phase 5: Org Properties ====================

    async def _migrate_org_properties(self, run: _Run) -> None:
        self._progress("Properties", "Migrating org custom properties...", 90.0)
        source_props = await self._fetch("source properties", self._source.get_org_properties(run.source_so_id))

        # Destination property definitions per destination org unit
        dest_props: dict[int, dict[str, int]] = {}

        total = len(source_props)
        for index, prop in enumerate(source_props, start=1):
            self._check_cancelled()
            await self._sync_property(run, prop, dest_props)
            percent = 90.0 + index / total * 9.0
            self._progress("Properties", f"Processed property: {prop.label or prop.property_id}", percent, index, total)

        stats = run.stats.org_properties
        logger.info(f"Org properties: {stats.created} synced, {stats.skipped} skipped, {stats.failed} failed")

    async def _sync_property(self, run: _Run, prop: OrgProperty, dest_props: dict[int, dict[str, int]]) -> None:
        stats = run.stats.org_properties
        label = prop.label or str(prop.property_id)
        source_ou = prop.org_unit_id

        if source_ou is None or source_ou == run.source_so_id:
            stats.skipped += 1
            logger.debug(f"Property '{label}' belongs to the service org, skipped")
            return
        dest_ou = run.mapping.org_units.get(source_ou)
        if dest_ou is None:
            stats.skipped += 1
            logger.debug(f"Property '{label}' of org unit {source_ou} skipped - org unit not mapped")
            return

        property_id = await self._dest_property_id(run, prop, dest_ou, dest_props)
        if property_id is None:
            return
        value = prop.value or ""
        try:
            await create_with_fallback(
                f"property '{label}' on org unit {dest_ou}",
                lambda: self._dest.set_org_property(dest_ou, property_id, value),
                self._soap_attempt(lambda soap: soap.organization_property_modify(dest_ou, property_id, value)),
            )
        except MigrationError as e:
            stats.failed += 1
            self._error(run, f"Failed to sync property '{label}' to org unit {dest_ou}: {e}")
            return
        stats.created += 1

    async def _dest_property_id(
        self,
        run: _Run,
        prop: OrgProperty,
        dest_ou: int,
        dest_props: dict[int, dict[str, int]],
    ) -> int | None:
        """Destination property id with the same label; the source id when the label is unknown."""
        if prop.label is None:
            return prop.property_id
        if dest_ou not in dest_props:
            try:
                props = await self._dest.get_org_properties(dest_ou)
            except MigrationError as e:
                run.stats.org_properties.failed += 1
                self._error(run, f"Failed to fetch destination properties of org unit {dest_ou}: {e}")
                return None
            dest_props[dest_ou] = {p.label.lower(): p.property_id for p in props if p.label}

        property_id = dest_props[dest_ou].get(prop.label.lower())
        if property_id is None:
            run.stats.org_properties.failed += 1
            self._error(run, f"No property labelled '{prop.label}' on destination org unit {dest_ou}")
        return property_id
