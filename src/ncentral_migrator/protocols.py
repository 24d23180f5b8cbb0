"""Protocols defining what the migration engine needs from each server.

The migration engine talks to three collaborators:

1. SourceApi: read access to the server being migrated from
2. DestinationApi: read and create access to the server being migrated to
3. SoapProvisioner: the destination's SOAP API, for users and as a fallback

``ApiClient`` and ``SoapClient`` are the production implementations. The
protocols let the engine be tested against in-memory fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import AccessGroup, Customer, OrgProperty, Site, User, UserRole
    from .soap_client import UserAddInfo


class SourceApi(Protocol):
    """Read operations used on both servers.

    All list operations return every item, following pagination.
    """

    async def get_customers_by_service_org(self, so_id: int) -> list[Customer]: ...

    async def get_sites(self) -> list[Site]:
        """All sites visible to the API user, across service orgs."""
        ...

    async def get_user_roles(self, org_unit_id: int) -> list[UserRole]: ...

    async def get_access_groups(self, org_unit_id: int) -> list[AccessGroup]: ...

    async def get_users_by_org_unit(self, org_unit_id: int) -> list[User]: ...

    async def get_org_properties(self, org_unit_id: int) -> list[OrgProperty]: ...


class DestinationApi(SourceApi, Protocol):
    """Creation operations on the destination server.

    Each ``create_*`` returns the id of the created entity and raises an
    ``ApiError`` when the server refuses or returns no id.
    """

    async def create_customer(self, service_org_id: int, customer: dict[str, Any]) -> int: ...

    async def create_site(self, customer_id: int, site: dict[str, Any]) -> int: ...

    async def create_user_role(self, org_unit_id: int, role: dict[str, Any]) -> int: ...

    async def create_org_unit_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int: ...

    async def create_device_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int: ...

    async def set_org_property(self, org_unit_id: int, property_id: int, value: str) -> None: ...


class SoapProvisioner(Protocol):
    """SOAP operations of the destination server; errors are ``SoapError``."""

    async def user_add(self, username: str, info: UserAddInfo) -> int: ...

    async def customer_add(self, name: str, parent_id: int, contact: dict[str, str | None] | None = None) -> int: ...

    async def user_role_add(self, customer_id: int, name: str, description: str, permission_ids: list[int]) -> int: ...

    async def access_group_add(
        self,
        customer_id: int,
        name: str,
        description: str,
        *,
        group_type: str,
        org_unit_ids: list[int],
        user_ids: list[int],
    ) -> int: ...

    async def organization_property_modify(self, org_unit_id: int, property_id: int, value: str) -> None: ...
