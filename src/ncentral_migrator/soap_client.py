"""
N-central EI2 SOAP API client.

The REST API has no user-creation endpoint, so users are created through the
legacy SOAP API. The same client serves as a fallback when REST creation of a
customer, site, role, access group or property value fails.

Requests are fixed-shape envelopes built from string templates, and responses
are read by looking up a handful of known tag names. The response shapes are
small and fixed, so no XML object model is involved.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Final
from xml.sax.saxutils import escape

import httpx

from .exceptions import SoapFaultError, SoapHttpError, SoapParseError

logger: logging.Logger = logging.getLogger(__name__)

SOAP_ENDPOINT: Final[str] = "/dms2/services2/ServerEI2"

# Namespace prefixes seen in EI2 responses
_PREFIXES: Final[tuple[str, ...]] = ("", "ns1:", "ns2:", "ei2:", "soap:", "soapenv:", "S:")
_FAULT_TAG = re.compile(r"<(?:[\w-]+:)?Fault[\s>]")

_ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"
                  xmlns:ei2="http://ei2.nobj.nable.com/">
   <soapenv:Header/>
   <soapenv:Body>
      <ei2:{operation}>
         <ei2:username>{username}</ei2:username>
         <ei2:password>{password}</ei2:password>
         {body}
      </ei2:{operation}>
   </soapenv:Body>
</soapenv:Envelope>"""

_SETTING = """<ei2:settings>
            <ei2:key>{key}</ei2:key>
            <ei2:value>{value}</ei2:value>
         </ei2:settings>"""

_ORG_PROPERTY = """<ei2:organizationProperties>
            <ei2:customerId>{org_unit_id}</ei2:customerId>
            <ei2:properties>
               <ei2:propertyId>{property_id}</ei2:propertyId>
               <ei2:value>{value}</ei2:value>
            </ei2:properties>
         </ei2:organizationProperties>"""

# Character classes of the placeholder password
_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_LOWER = "abcdefghijklmnopqrstuvwxyz"
_DIGITS = "0123456789"
_SPECIAL = "!@#$%^&*()_+-=[]{}|;:,.<>?"

# Numerical Recipes LCG parameters
_LCG_A = 1664525
_LCG_C = 1013904223
_LCG_M = 2**32


def xml_escape(value: str) -> str:
    """Escape the five XML special characters."""
    return escape(value, {'"': "&quot;", "'": "&apos;"})


def extract_xml_value(xml: str, tag: str) -> str | None:
    """Return the text of the first ``tag`` element, trying each known namespace prefix."""
    for prefix in _PREFIXES:
        open_tag = f"<{prefix}{tag}>"
        close_tag = f"</{prefix}{tag}>"
        start = xml.find(open_tag)
        if start == -1:
            continue
        value_start = start + len(open_tag)
        end = xml.find(close_tag, value_start)
        if end != -1:
            return xml[value_start:end]
    return None


def parse_soap_fault(body: str) -> SoapFaultError | None:
    """Return the fault carried by ``body``, or None when there is none."""
    if extract_xml_value(body, "faultcode") is None and not _FAULT_TAG.search(body):
        return None
    code = extract_xml_value(body, "faultcode") or "Unknown"
    message = extract_xml_value(body, "faultstring") or "Unknown error"
    return SoapFaultError(code.strip(), message.strip())


def parse_return_id(body: str, operation: str) -> int:
    """Parse the numeric return value of an ``*Add`` operation.

    Raises:
        SoapParseError: If no return tag is present or it is not an integer
    """
    for tag in ("return", f"{operation}Return"):
        value = extract_xml_value(body, tag)
        if value is None:
            continue
        try:
            return int(value.strip())
        except ValueError as e:
            msg = f"Failed to parse {operation} return value {value!r}: {e}"
            raise SoapParseError(msg) from e
    msg = f"Could not find the return value in the {operation} response"
    raise SoapParseError(msg)


def generate_strong_password(seed: int | None = None) -> str:
    """Generate a 12-character placeholder password with upper, lower, digit and special characters.

    Uses a time-seeded linear congruential generator. The value is not
    cryptographically strong; accounts created with it must change their
    password at first login.
    """
    state = time.time_ns() if seed is None else seed

    def next_rand() -> int:
        nonlocal state
        state = (_LCG_A * state + _LCG_C) % _LCG_M
        return state

    chars = [
        _UPPER[next_rand() % len(_UPPER)],
        _LOWER[next_rand() % len(_LOWER)],
        _DIGITS[next_rand() % len(_DIGITS)],
        _SPECIAL[next_rand() % len(_SPECIAL)],
    ]
    pool = _UPPER + _LOWER + _DIGITS + _SPECIAL
    chars.extend(pool[next_rand() % len(pool)] for _ in range(8))

    for i in range(len(chars)):
        j = next_rand() % len(chars)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


def _settings_xml(settings: list[tuple[str, str]]) -> str:
    return "\n         ".join(_SETTING.format(key=xml_escape(k), value=xml_escape(v)) for k, v in settings)


def _join_ids(ids: list[int]) -> str:
    return ",".join(str(i) for i in ids)


@dataclass
class UserAddInfo:
    """Settings of a user created through ``userAdd``."""

    email: str
    first_name: str
    last_name: str
    customer_id: int
    is_enabled: bool = True
    phone: str | None = None
    department: str | None = None
    location: str | None = None
    role_ids: list[int] = field(default_factory=list)
    access_group_ids: list[int] = field(default_factory=list)


class SoapClient:
    """Client for the EI2 SOAP operations the REST API lacks."""

    base_url: str
    _credential: str
    _username: str | None
    _http: httpx.AsyncClient
    _owns_http: bool

    def __init__(
        self,
        base_url: str,
        credential: str,
        *,
        username: str | None = None,
        http: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server base URL
            credential: API user JWT, sent as the SOAP password
            username: API user login; without it only bearer authentication is attempted
            http: Pre-built HTTP client
            transport: Transport for the created HTTP client (tests inject a mock)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._credential = credential.strip()
        self._username = username
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def endpoint_url(self) -> str:
        return f"{self.base_url}{SOAP_ENDPOINT}"

    def set_username(self, username: str) -> None:
        self._username = username

    def build_envelope(self, operation: str, body: str) -> str:
        """Wrap an operation body in the EI2 envelope with the API credentials."""
        if self._username is None:
            logger.warning(f"No API username configured for SOAP authentication - {operation} may fail")
        return _ENVELOPE.format(
            operation=operation,
            username=xml_escape(self._username or ""),
            password=xml_escape(self._credential),
            body=body,
        )

    async def _call(self, operation: str, body: str) -> str:
        """POST an operation and return the response body after fault checks."""
        envelope = self.build_envelope(operation, body)
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": '""'}
        # Bearer header only when there is no API username to put in the envelope
        if self._username is None:
            headers["Authorization"] = f"Bearer {self._credential}"

        logger.debug(f"SOAP {operation} request to {self.endpoint_url}")
        try:
            response = await self._http.post(self.endpoint_url, content=envelope.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            msg = f"SOAP {operation} request failed: {e}"
            raise SoapHttpError(msg) from e

        text = response.text
        logger.debug(f"SOAP {operation} response status: {response.status_code}")

        fault = parse_soap_fault(text)
        if fault is not None:
            raise fault
        if not response.is_success:
            msg = f"HTTP {response.status_code}: {text[:200]}"
            raise SoapHttpError(msg)
        return text

    async def _add(self, operation: str, settings: list[tuple[str, str]], body_prefix: str = "") -> int:
        body = body_prefix + _settings_xml(settings)
        response = await self._call(operation, body)
        return parse_return_id(response, operation)

    async def user_add(self, username: str, info: UserAddInfo) -> int:
        """Create a user and return the new user id.

        A random placeholder password is set and a password change is forced at
        next login. A non-positive id means the server did not create the user.
        """
        settings: list[tuple[str, str]] = [
            ("email", info.email),
            ("password", generate_strong_password()),
            ("customerID", str(info.customer_id)),
            ("firstname", info.first_name),
            ("lastname", info.last_name),
            ("username", username),
            ("status", "enabled" if info.is_enabled else "disabled"),
        ]
        if info.phone:
            settings.append(("phone", info.phone))
        if info.department:
            settings.append(("department", info.department))
        if info.location:
            settings.append(("location", info.location))
        if info.role_ids:
            settings.append(("userroleID", _join_ids(info.role_ids)))
        else:
            logger.warning(f"SOAP userAdd: no role ids provided for user '{username}'")
        if info.access_group_ids:
            settings.append(("accessgroupids", _join_ids(info.access_group_ids)))
        settings.append(("mustchangepassword", "true"))

        # The envelope carries the generated password: only identifying data is logged
        logger.info(f"SOAP userAdd: username='{username}', email='{info.email}', customerID={info.customer_id}")
        user_id = await self._add("userAdd", settings)
        if user_id <= 0:
            logger.warning(f"userAdd returned ID {user_id} for '{username}' - the user may already exist")
        return user_id

    async def customer_add(
        self,
        name: str,
        parent_id: int,
        contact: dict[str, str | None] | None = None,
    ) -> int:
        """Create a customer (parent is a service org) or a site (parent is a customer)."""
        settings: list[tuple[str, str]] = [("customername", name), ("parentid", str(parent_id))]
        for key, value in (contact or {}).items():
            if value:
                settings.append((key.lower(), value))
        return await self._add("customerAdd", settings)

    async def user_role_add(
        self,
        customer_id: int,
        name: str,
        description: str,
        permission_ids: list[int],
    ) -> int:
        settings = [
            ("customerID", str(customer_id)),
            ("userrolename", name),
            ("description", description),
            ("permissionIDs", _join_ids(permission_ids)),
        ]
        return await self._add("userRoleAdd", settings)

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
        settings = [
            ("customerID", str(customer_id)),
            ("groupname", name),
            ("groupdescription", description),
            ("grouptype", group_type),
            ("orgunitids", _join_ids(org_unit_ids)),
            ("userids", _join_ids(user_ids)),
            ("autoincludenewcustomers", "true"),
        ]
        return await self._add("accessGroupAdd", settings)

    async def organization_property_modify(self, org_unit_id: int, property_id: int, value: str) -> None:
        """Set an org-unit custom property value. The operation returns no value."""
        body = _ORG_PROPERTY.format(
            org_unit_id=org_unit_id,
            property_id=property_id,
            value=xml_escape(value),
        )
        await self._call("organizationPropertyModify", body)
