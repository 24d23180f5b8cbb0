"""REST API paths of the N-central server."""

from __future__ import annotations

from typing import Final

AUTH_AUTHENTICATE: Final[str] = "/api/auth/authenticate"
AUTH_REFRESH: Final[str] = "/api/auth/refresh"
AUTH_VALIDATE: Final[str] = "/api/auth/validate"

SERVER_INFO: Final[str] = "/api/server-info"
HEALTH: Final[str] = "/api/health"

SERVICE_ORGS: Final[str] = "/api/service-orgs"
CUSTOMERS: Final[str] = "/api/customers"
SITES: Final[str] = "/api/sites"
DEVICES: Final[str] = "/api/devices"
ORG_UNITS: Final[str] = "/api/org-units"
USERS: Final[str] = "/api/users"
DEVICE_FILTERS: Final[str] = "/api/device-filters"


def service_org(so_id: int) -> str:
    return f"{SERVICE_ORGS}/{so_id}"


def service_org_customers(so_id: int) -> str:
    return f"{SERVICE_ORGS}/{so_id}/customers"


def customer_sites(customer_id: int) -> str:
    return f"{CUSTOMERS}/{customer_id}/sites"


def org_unit_access_groups(org_unit_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/access-groups"


def device_access_groups_create(org_unit_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/device-access-groups"


def org_unit_user_roles(org_unit_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/user-roles"


def org_unit_custom_properties(org_unit_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/custom-properties"


def org_unit_custom_property(org_unit_id: int, property_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/custom-properties/{property_id}"


def org_unit_users(org_unit_id: int) -> str:
    return f"{ORG_UNITS}/{org_unit_id}/users"
