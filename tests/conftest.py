"""
Pytest fixtures: in-memory stand-ins for the source and destination servers
used by the migration and export tests.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

from ncentral_migrator.exceptions import ServerError, SoapFaultError
from ncentral_migrator.models import AccessGroup, Customer, OrgProperty, Site, User, UserRole

if TYPE_CHECKING:
    from ncentral_migrator.soap_client import UserAddInfo


# ==================== In-memory servers ====================


class FakeServer:
    """In-memory N-central server implementing the source and destination API.

    Created entities become visible to later reads, so a second run against
    the same instance sees the result of the first. Names listed in
    ``fail_names`` make the matching creation call fail with a server error.
    """

    def __init__(
        self,
        so_id: int,
        *,
        customers: list[Customer] | None = None,
        sites: list[Site] | None = None,
        roles: list[UserRole] | None = None,
        groups: list[AccessGroup] | None = None,
        users: list[User] | None = None,
        properties: list[OrgProperty] | None = None,
        next_id: int = 100,
        fail_names: set[str] | None = None,
    ) -> None:
        self.so_id = so_id
        self.customers = list(customers or [])
        self.sites = list(sites or [])
        self.roles = list(roles or [])
        self.groups = list(groups or [])
        self.users = list(users or [])
        self.properties = list(properties or [])
        self.fail_names = fail_names or set()
        self.property_values: dict[tuple[int, int], str] = {}
        self.created: list[tuple[str, int, dict[str, Any]]] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.active = 0
        self.max_active = 0
        self._next_id = next_id

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def _check_fetch(self, name: str) -> None:
        if name in self.fetch_errors:
            raise self.fetch_errors[name]

    async def _create(self, kind: str, parent_id: int, payload: dict[str, Any], name: str) -> int:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            # Let other creations interleave
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            if name in self.fail_names:
                raise ServerError(500, f"cannot create {name}")
            self.created.append((kind, parent_id, payload))
            return self._new_id()
        finally:
            self.active -= 1

    # Reads

    async def get_customers_by_service_org(self, so_id: int) -> list[Customer]:
        self._check_fetch("customers")
        return [c for c in self.customers if c.parent_id == so_id]

    async def get_sites(self) -> list[Site]:
        self._check_fetch("sites")
        return list(self.sites)

    async def get_user_roles(self, org_unit_id: int) -> list[UserRole]:
        self._check_fetch("roles")
        return list(self.roles)

    async def get_access_groups(self, org_unit_id: int) -> list[AccessGroup]:
        self._check_fetch("groups")
        return list(self.groups)

    async def get_users_by_org_unit(self, org_unit_id: int) -> list[User]:
        self._check_fetch("users")
        return list(self.users)

    async def get_org_properties(self, org_unit_id: int) -> list[OrgProperty]:
        self._check_fetch("properties")
        if org_unit_id == self.so_id:
            return list(self.properties)
        return [p for p in self.properties if p.org_unit_id == org_unit_id]

    # Creation

    async def create_customer(self, service_org_id: int, customer: dict[str, Any]) -> int:
        name = customer["customerName"]
        new_id = await self._create("customer", service_org_id, customer, name)
        self.customers.append(Customer(customer_id=new_id, customer_name=name, parent_id=service_org_id))
        return new_id

    async def create_site(self, customer_id: int, site: dict[str, Any]) -> int:
        name = site["siteName"]
        new_id = await self._create("site", customer_id, site, name)
        self.sites.append(Site(site_id=new_id, site_name=name, parent_id=customer_id))
        return new_id

    async def create_user_role(self, org_unit_id: int, role: dict[str, Any]) -> int:
        name = role["roleName"]
        new_id = await self._create("role", org_unit_id, role, name)
        self.roles.append(UserRole(role_id=new_id, role_name=name))
        return new_id

    async def create_org_unit_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int:
        name = group["groupName"]
        new_id = await self._create("org_unit_group", org_unit_id, group, name)
        self.groups.append(AccessGroup(group_id=new_id, group_name=name, group_type="ORG_UNIT"))
        return new_id

    async def create_device_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int:
        name = group["groupName"]
        new_id = await self._create("device_group", org_unit_id, group, name)
        self.groups.append(AccessGroup(group_id=new_id, group_name=name, group_type="DEVICE"))
        return new_id

    async def set_org_property(self, org_unit_id: int, property_id: int, value: str) -> None:
        await self._create("property", org_unit_id, {"propertyId": property_id, "value": value}, str(property_id))
        self.property_values[(org_unit_id, property_id)] = value


class FakeSoap:
    """In-memory SOAP provisioner; logins in ``fail_logins`` are rejected with a fault."""

    def __init__(self, *, next_id: int = 900, fail_logins: set[str] | None = None) -> None:
        self.fail_logins = fail_logins or set()
        self.calls: list[tuple[str, Any]] = []
        self._next_id = next_id

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    async def user_add(self, username: str, info: UserAddInfo) -> int:
        self.calls.append(("user_add", (username, info)))
        if username in self.fail_logins:
            raise SoapFaultError("Client", "Username already in use")
        return self._new_id()

    async def customer_add(self, name: str, parent_id: int, contact: dict[str, str | None] | None = None) -> int:
        self.calls.append(("customer_add", (name, parent_id)))
        return self._new_id()

    async def user_role_add(self, customer_id: int, name: str, description: str, permission_ids: list[int]) -> int:
        self.calls.append(("user_role_add", (customer_id, name, permission_ids)))
        return self._new_id()

    async def access_group_add(
        self,
        customer_id: int,
        name: str,
        description: str,
        *,
        group_type: str,
        org_unit_ids: list[int],
        user_ids: list[int],
    ) -> int:
        self.calls.append(("access_group_add", (customer_id, name, group_type)))
        return self._new_id()

    async def organization_property_modify(self, org_unit_id: int, property_id: int, value: str) -> None:
        self.calls.append(("organization_property_modify", (org_unit_id, property_id, value)))


SOURCE_SO = 50
DEST_SO = 60


@pytest.fixture
def source_server() -> FakeServer:
    """Source with customer Acme (1) and its site HQ (10)."""
    return FakeServer(
        SOURCE_SO,
        customers=[Customer(customer_id=1, customer_name="Acme", parent_id=SOURCE_SO)],
        sites=[Site(site_id=10, site_name="HQ", parent_id=1)],
    )


@pytest.fixture
def dest_server() -> FakeServer:
    """Empty destination whose first created entity gets id 100."""
    return FakeServer(DEST_SO, next_id=100)


@pytest.fixture
def fake_soap() -> FakeSoap:
    return FakeSoap()


@pytest.fixture
def make_server() -> type[FakeServer]:
    """The FakeServer class, for tests that build their own server contents."""
    return FakeServer


@pytest.fixture
def make_soap() -> type[FakeSoap]:
    return FakeSoap
