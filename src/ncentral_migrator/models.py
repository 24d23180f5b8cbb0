"""Data models for entities exchanged with the N-central REST API.

The REST payloads use camelCase keys and are not always consistent: numeric
identifiers sometimes arrive as strings, and the link to a parent org unit is
carried under several historical field names. The ``from_api`` constructors
normalize these quirks so the rest of the tool works with plain Python types.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, ClassVar

# Access tokens are treated as expired this long before their real expiry
ACCESS_EXPIRY_MARGIN: dt.timedelta = dt.timedelta(seconds=30)

_DEFAULT_TOKEN_LIFETIME = 3600

# Parent-link aliases, in priority order
_PARENT_ID_KEYS: tuple[str, ...] = (
    "parentId",
    "customerId",
    "customerid",
    "orgUnitId",
    "orgunitid",
    "serviceOrgId",
    "serviceOrgid",
    "serviceorgid",
)


def as_int(value: Any) -> int | None:  # noqa: ANN401 - raw JSON value
    """Convert a JSON number or numeric string to int; None for missing/empty values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            return None
    return None


def _require_int(payload: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = as_int(payload.get(key))
        if value is not None:
            return value
    msg = f"Missing numeric field {' / '.join(keys)} in payload"
    raise ValueError(msg)


def _opt_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def _int_list(value: Any) -> list[int]:  # noqa: ANN401 - raw JSON value
    if not isinstance(value, list):
        return []
    return [i for i in (as_int(v) for v in value) if i is not None]


def resolve_parent_id(payload: dict[str, Any], keys: tuple[str, ...] = _PARENT_ID_KEYS) -> int | None:
    """Return the first parent org-unit id found under any known alias."""
    for key in keys:
        value = as_int(payload.get(key))
        if value is not None:
            return value
    return None


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class AuthState:
    """Tokens of an authenticated session and their expiry instants."""

    access_token: str
    refresh_token: str
    access_expires_at: dt.datetime
    refresh_expires_at: dt.datetime

    @classmethod
    def from_response(cls, payload: dict[str, Any], now: dt.datetime | None = None) -> AuthState:
        """Build the state from an ``/api/auth/authenticate`` response body.

        Raises:
            KeyError, TypeError: If the tokens are missing from the payload
        """
        now = now or _utcnow()
        tokens = payload["tokens"]
        access = tokens["access"]
        refresh = tokens["refresh"]
        return cls(
            access_token=str(access["token"]),
            refresh_token=str(refresh["token"]),
            access_expires_at=now + dt.timedelta(seconds=token_lifetime(access)),
            refresh_expires_at=now + dt.timedelta(seconds=token_lifetime(refresh)),
        )

    def is_access_expired(self, now: dt.datetime | None = None) -> bool:
        now = now or _utcnow()
        return now >= self.access_expires_at - ACCESS_EXPIRY_MARGIN

    def is_refresh_expired(self, now: dt.datetime | None = None) -> bool:
        now = now or _utcnow()
        return now >= self.refresh_expires_at


def token_lifetime(token_info: dict[str, Any]) -> int:
    """Lifetime of a token in seconds; the server may omit it."""
    seconds = as_int(token_info.get("expiresInSeconds"))
    return _DEFAULT_TOKEN_LIFETIME if seconds is None else seconds


@dataclass
class PageInfo:
    """Pagination metadata of a list response."""

    page_number: int | None
    page_size: int | None
    total_pages: int | None
    total_items: int | None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> PageInfo | None:
        total_pages = as_int(payload.get("totalPages"))
        if total_pages is None:
            return None
        return cls(
            page_number=as_int(payload.get("pageNumber")),
            page_size=as_int(payload.get("pageSize")),
            total_pages=total_pages,
            total_items=as_int(payload.get("totalItems")),
        )


@dataclass
class ServerInfo:
    """Subset of ``/api/server-info`` used to report the server version."""

    raw: dict[str, Any] = field(default_factory=dict)

    # Version fields in the order they are preferred
    VERSION_KEYS: ClassVar[tuple[str, ...]] = (
        "ncentral",
        "productVersion",
        "ncentralVersion",
        "version",
        "build",
        "apiVersion",
        "api_version",
    )

    @property
    def version(self) -> str | None:
        return _opt_str(self.raw, *self.VERSION_KEYS)


@dataclass
class _OrgUnitFields:
    """Contact and address fields shared by all org-unit kinds."""

    external_id: str | None = None
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    street1: str | None = None
    street2: str | None = None
    city: str | None = None
    state_prov: str | None = None
    country: str | None = None
    postal_code: str | None = None

    _FIELD_KEYS: ClassVar[dict[str, str]] = {
        "external_id": "externalId",
        "contact_first_name": "contactFirstName",
        "contact_last_name": "contactLastName",
        "contact_email": "contactEmail",
        "contact_phone": "contactPhone",
        "street1": "street1",
        "street2": "street2",
        "city": "city",
        "state_prov": "stateProv",
        "country": "country",
        "postal_code": "postalCode",
    }

    # EI2 customerAdd setting keys
    _SOAP_KEYS: ClassVar[dict[str, str]] = {
        "external_id": "externalid",
        "contact_first_name": "firstname",
        "contact_last_name": "lastname",
        "contact_email": "email",
        "contact_phone": "phone",
        "street1": "street1",
        "street2": "street2",
        "city": "city",
        "state_prov": "stateprov",
        "country": "country",
        "postal_code": "postalcode",
    }

    @classmethod
    def _contact_kwargs(cls, payload: dict[str, Any]) -> dict[str, str | None]:
        return {attr: _opt_str(payload, key) for attr, key in cls._FIELD_KEYS.items()}

    def contact_payload(self) -> dict[str, str | None]:
        """Contact/address fields in REST (camelCase) form."""
        return {key: getattr(self, attr) for attr, key in self._FIELD_KEYS.items()}

    def soap_settings(self) -> dict[str, str | None]:
        """Contact/address fields keyed as ``customerAdd`` settings."""
        return {key: getattr(self, attr) for attr, key in self._SOAP_KEYS.items()}


@dataclass
class ServiceOrg(_OrgUnitFields):
    so_id: int = 0
    so_name: str = ""
    parent_id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ServiceOrg:
        return cls(
            so_id=_require_int(payload, "soId", "id", "orgUnitId"),
            so_name=_opt_str(payload, "soName", "name") or "",
            parent_id=resolve_parent_id(payload, ("parentId",)),
            **cls._contact_kwargs(payload),
        )


@dataclass
class Customer(_OrgUnitFields):
    customer_id: int = 0
    customer_name: str = ""
    parent_id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Customer:
        return cls(
            customer_id=_require_int(payload, "customerId", "id", "orgUnitId"),
            customer_name=_opt_str(payload, "customerName", "name") or "",
            parent_id=resolve_parent_id(payload, ("parentId", "serviceOrgId", "serviceOrgid", "serviceorgid")),
            **cls._contact_kwargs(payload),
        )


@dataclass
class Site(_OrgUnitFields):
    site_id: int = 0
    site_name: str = ""
    parent_id: int | None = None
    service_org_id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Site:
        return cls(
            site_id=_require_int(payload, "siteId", "id"),
            site_name=_opt_str(payload, "siteName", "name") or "",
            parent_id=resolve_parent_id(payload),
            service_org_id=resolve_parent_id(payload, ("serviceOrgId", "serviceOrgid", "serviceorgid")),
            **cls._contact_kwargs(payload),
        )


def _permission_names(value: Any) -> list[str]:  # noqa: ANN401 - raw JSON value
    names: list[str] = []
    if not isinstance(value, list):
        return names
    for item in value:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict):
            name = _opt_str(item, "name", "permissionName")
            if name:
                names.append(name)
    return names


@dataclass
class UserRole:
    role_id: int
    role_name: str | None = None
    description: str | None = None
    permissions: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> UserRole:
        return cls(
            role_id=_require_int(payload, "roleId", "userRoleId", "id"),
            role_name=_opt_str(payload, "roleName", "name"),
            description=_opt_str(payload, "roleDescription", "description"),
            permissions=_permission_names(payload.get("permissions") or payload.get("permissionNames")),
        )


@dataclass
class AccessGroup:
    group_id: int
    group_name: str | None = None
    group_type: str | None = None
    description: str | None = None
    org_unit_id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> AccessGroup:
        return cls(
            group_id=_require_int(payload, "groupId", "accessGroupId", "id"),
            group_name=_opt_str(payload, "groupName", "name"),
            group_type=_opt_str(payload, "groupType", "type"),
            description=_opt_str(payload, "groupDescription", "description"),
            org_unit_id=as_int(payload.get("orgUnitId")),
        )

    @property
    def is_device_group(self) -> bool:
        return (self.group_type or "").upper() == "DEVICE"


@dataclass
class User:
    user_id: int
    login_name: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    is_enabled: bool = True
    role_ids: list[int] = field(default_factory=list)
    access_group_ids: list[int] = field(default_factory=list)
    org_unit_id: int | None = None
    service_org_id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> User:
        enabled = payload.get("isEnabled")
        return cls(
            user_id=_require_int(payload, "userId", "id"),
            login_name=_opt_str(payload, "userName", "loginName") or "",
            first_name=_opt_str(payload, "firstName"),
            last_name=_opt_str(payload, "lastName"),
            email=_opt_str(payload, "email"),
            is_enabled=True if enabled is None else bool(enabled),
            role_ids=_int_list(payload.get("roleIds")),
            access_group_ids=_int_list(payload.get("accessGroupIds")),
            org_unit_id=as_int(payload.get("orgUnitId")),
            service_org_id=resolve_parent_id(payload, ("serviceOrgId", "serviceOrgid", "serviceorgid")),
        )


@dataclass
class OrgProperty:
    property_id: int
    org_unit_id: int | None = None
    label: str | None = None
    value: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> OrgProperty:
        return cls(
            property_id=_require_int(payload, "propertyId", "id"),
            org_unit_id=as_int(payload.get("orgUnitId")),
            label=_opt_str(payload, "label", "name"),
            value=_opt_str(payload, "value"),
        )


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress event broadcast to observers."""

    phase: str
    message: str
    percent: float
    current: int = 0
    total: int = 0


@dataclass(frozen=True)
class LogMessage:
    """Structured log event broadcast to observers."""

    level: str
    message: str
