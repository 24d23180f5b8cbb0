"""
Async REST client for the N-central API.

Every call goes through the same pipeline: acquire a concurrency permit for
the target path, obtain a valid access token, issue the request and classify
the response. Throttled requests (HTTP 429) are retried after the server's
``Retry-After`` delay; every other failure is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Final, TypeVar

import httpx

from . import endpoints as ep
from .auth import AuthManager
from .exceptions import (
    AuthenticationError,
    InvalidResponseError,
    NotFoundError,
    RateLimitedError,
    RequestFailedError,
    ServerError,
)
from .models import (
    AccessGroup,
    Customer,
    OrgProperty,
    ServerInfo,
    ServiceOrg,
    Site,
    User,
    UserRole,
    as_int,
)
from .rate_limiter import ConcurrencyLimiter

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_RETRY_AFTER: Final[int] = 5
DEFAULT_PAGE_SIZE: Final[int] = 100
DEFAULT_TIMEOUT: Final[float] = 60.0

ProgressCallback = Callable[[int, int | None], None]
_ModelT = TypeVar("_ModelT")


def parse_retry_after(value: str | None, default: int = DEFAULT_RETRY_AFTER) -> int:
    """Seconds to wait from a ``Retry-After`` header (HTTP dates fall back to the default)."""
    if value is None:
        return default
    try:
        seconds = int(value.strip())
    except ValueError:
        return default
    return max(seconds, 0)


def extract_id(payload: Any, *keys: str) -> int:  # noqa: ANN401 - decoded JSON
    """Pull the id of a created entity from a creation response.

    Tries the kind-specific keys first, then ``id``, both at the top level and
    inside a ``data`` wrapper.

    Raises:
        InvalidResponseError: If no positive numeric id is present
    """
    candidates: list[dict[str, Any]] = []
    if isinstance(payload, dict):
        candidates.append(payload)
        if isinstance(payload.get("data"), dict):
            candidates.append(payload["data"])
    for candidate in candidates:
        for key in (*keys, "id"):
            value = as_int(candidate.get(key))
            if value is not None and value > 0:
                return value
    msg = f"No {' / '.join((*keys, 'id'))} in response: {str(payload)[:200]}"
    raise InvalidResponseError(msg)


def _unwrap(payload: Any) -> Any:  # noqa: ANN401 - decoded JSON
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


class ApiClient:
    """N-central REST API client with rate limiting, pagination and token refresh.

    Usage:
        async with ApiClient("https://ncentral.example.com") as client:
            await client.authenticate(jwt)
            customers = await client.get_customers_by_service_org(50)
    """

    base_url: str
    _http: httpx.AsyncClient
    _owns_http: bool
    _auth: AuthManager
    _limiter: ConcurrencyLimiter
    _max_retries: int
    _page_size: int
    _sleep: Callable[[float], Awaitable[None]]

    def __init__(
        self,
        base_url: str,
        *,
        http: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: ConcurrencyLimiter | None = None,
        auth: AuthManager | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server base URL (e.g. "https://ncentral.example.com")
            http: Pre-built HTTP client; one is created when omitted
            transport: Transport for the created HTTP client (tests inject a mock)
            limiter: Concurrency limiter; one client lifetime shares one limiter
            auth: Auth manager; created on top of the HTTP client when omitted
            max_retries: Retries of a throttled request before giving up
            page_size: Items requested per page by list operations
            timeout: Request timeout in seconds
            sleep: Coroutine used for retry back-off
        """
        self.base_url = base_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._limiter = limiter or ConcurrencyLimiter()
        self._auth = auth or AuthManager(self._http, limiter=self._limiter)
        self._max_retries = max_retries
        self._page_size = page_size
        self._sleep = sleep

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def auth(self) -> AuthManager:
        return self._auth

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    async def authenticate(self, credential: str) -> None:
        await self._auth.authenticate(credential)

    async def is_authenticated(self) -> bool:
        return await self._auth.is_authenticated()

    # ==================== Request pipeline ====================

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,  # noqa: ANN401 - any JSON-serializable body
    ) -> Any:  # noqa: ANN401 - decoded JSON
        """Issue an authenticated request and return the decoded JSON body.

        Raises:
            RateLimitedError: If the server still throttles after all retries
            AuthenticationError: On 401/403
            NotFoundError: On 404
            ServerError: On any other non-2xx status
            InvalidResponseError: If a 2xx body is not valid JSON
            RequestFailedError: If the request could not be sent
        """
        retries = 0
        while True:
            async with self._limiter.acquire(path):
                token = await self._auth.get_token()
                try:
                    response = await self._http.request(
                        method,
                        path,
                        params=params,
                        json=json,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                except httpx.HTTPError as e:
                    msg = f"{method} {path} failed: {e}"
                    raise RequestFailedError(msg) from e

            # Permit released before sleeping so throttled calls do not hold capacity
            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retries >= self._max_retries:
                    raise RateLimitedError(retry_after)
                retries += 1
                logger.warning(
                    f"Rate limited on {method} {path}, retrying after {retry_after} seconds "
                    f"(attempt {retries}/{self._max_retries})"
                )
                await self._sleep(retry_after)
                continue

            return self._decode(method, path, response)

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Any:  # noqa: ANN401 - decoded JSON
        status = response.status_code
        if not response.is_success:
            body = response.text
            if status in (401, 403):
                raise AuthenticationError(body or f"HTTP {status}")
            if status == 404:
                raise NotFoundError(path)
            raise ServerError(status, body)

        if not response.content.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"JSON parse error for {method} {path}: {e}. Body: {response.text[:1000]}")
            msg = f"Failed to parse response: {e}"
            raise InvalidResponseError(msg) from e

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:  # noqa: ANN401
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any) -> Any:  # noqa: ANN401
        return await self.request("POST", path, json=body)

    async def put(self, path: str, body: Any) -> Any:  # noqa: ANN401
        return await self.request("PUT", path, json=body)

    async def get_all_pages(
        self,
        path: str,
        page_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a list endpoint.

        Stops at the server-declared last page, at an empty page, or at a page
        shorter than ``page_size``; pagination metadata is not always present.
        """
        page_size = page_size or self._page_size
        items: list[dict[str, Any]] = []
        page = 1

        while True:
            response = await self.get(path, params={"pageNumber": page, "pageSize": page_size})
            if not isinstance(response, dict):
                msg = f"Expected a paginated object from {path}, got {type(response).__name__}"
                raise InvalidResponseError(msg)
            data = response.get("data") or []
            if not isinstance(data, list):
                msg = f"Expected a list under 'data' from {path}"
                raise InvalidResponseError(msg)

            total_pages = as_int(response.get("totalPages"))
            count = len(data)
            logger.debug(f"Fetching {path}: page {page} got {count} items (total pages: {total_pages})")
            items.extend(data)

            if on_progress is not None:
                on_progress(page, total_pages)

            if total_pages is not None and page >= total_pages:
                break
            if count == 0:
                break
            if count < page_size:
                logger.debug(f"Received partial page ({count} < {page_size}), assuming end of data")
                break
            page += 1

        return items

    async def _get_models(self, path: str, model: Callable[[dict[str, Any]], _ModelT]) -> list[_ModelT]:
        raw_items = await self.get_all_pages(path)
        try:
            return [model(item) for item in raw_items]
        except (ValueError, TypeError, AttributeError) as e:
            msg = f"Unexpected item shape from {path}: {e}"
            raise InvalidResponseError(msg) from e

    # ==================== Read operations ====================

    async def get_server_info(self) -> ServerInfo:
        payload = _unwrap(await self.get(ep.SERVER_INFO))
        return ServerInfo(raw=payload if isinstance(payload, dict) else {})

    async def get_service_orgs(self) -> list[ServiceOrg]:
        return await self._get_models(ep.SERVICE_ORGS, ServiceOrg.from_api)

    async def get_service_org(self, so_id: int) -> ServiceOrg:
        payload = _unwrap(await self.get(ep.service_org(so_id)))
        try:
            return ServiceOrg.from_api(payload)
        except (ValueError, TypeError, AttributeError) as e:
            msg = f"Unexpected service org payload for {so_id}: {e}"
            raise InvalidResponseError(msg) from e

    async def get_customers(self) -> list[Customer]:
        return await self._get_models(ep.CUSTOMERS, Customer.from_api)

    async def get_customers_by_service_org(self, so_id: int) -> list[Customer]:
        return await self._get_models(ep.service_org_customers(so_id), Customer.from_api)

    async def get_sites(self) -> list[Site]:
        """All sites visible to the API user; the API offers no per-service-org listing."""
        return await self._get_models(ep.SITES, Site.from_api)

    async def get_devices(self) -> list[dict[str, Any]]:
        return await self.get_all_pages(ep.DEVICES)

    async def get_users(self) -> list[User]:
        return await self._get_models(ep.USERS, User.from_api)

    async def get_users_by_org_unit(self, org_unit_id: int) -> list[User]:
        return await self._get_models(ep.org_unit_users(org_unit_id), User.from_api)

    async def get_access_groups(self, org_unit_id: int) -> list[AccessGroup]:
        return await self._get_models(ep.org_unit_access_groups(org_unit_id), AccessGroup.from_api)

    async def get_user_roles(self, org_unit_id: int) -> list[UserRole]:
        return await self._get_models(ep.org_unit_user_roles(org_unit_id), UserRole.from_api)

    async def get_org_properties(self, org_unit_id: int) -> list[OrgProperty]:
        return await self._get_models(ep.org_unit_custom_properties(org_unit_id), OrgProperty.from_api)

    # ==================== Creation operations ====================

    async def create_customer(self, service_org_id: int, customer: dict[str, Any]) -> int:
        """Create a customer under a service org and return its id."""
        response = await self.post(ep.service_org_customers(service_org_id), customer)
        return extract_id(response, "customerId", "orgUnitId")

    async def create_site(self, customer_id: int, site: dict[str, Any]) -> int:
        """Create a site under a customer and return its id."""
        response = await self.post(ep.customer_sites(customer_id), site)
        return extract_id(response, "siteId", "orgUnitId")

    async def create_user_role(self, org_unit_id: int, role: dict[str, Any]) -> int:
        response = await self.post(ep.org_unit_user_roles(org_unit_id), role)
        return extract_id(response, "roleId", "userRoleId")

    async def create_org_unit_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int:
        # Same path as the GET listing
        response = await self.post(ep.org_unit_access_groups(org_unit_id), group)
        return extract_id(response, "groupId", "accessGroupId")

    async def create_device_access_group(self, org_unit_id: int, group: dict[str, Any]) -> int:
        response = await self.post(ep.device_access_groups_create(org_unit_id), group)
        return extract_id(response, "groupId", "accessGroupId")

    async def set_org_property(self, org_unit_id: int, property_id: int, value: str) -> None:
        """Set the value of an org-unit custom property."""
        await self.put(ep.org_unit_custom_property(org_unit_id, property_id), {"value": value})
