"""Companies House company search, used as an external registry index.

Endpoint: GET {base_url}/search/companies?q=<name>&items_per_page=<n>
Authentication is HTTP basic with the API key as username and an empty
password. The API answers 429 when the key is rate limited.
"""

import asyncio
from typing import Any, Awaitable, Callable

import httpx

from ..config import Settings
from ..errors import SourceError, TransientSourceError
from ..logging import get_context_logger
from ..models.base import SourceRegistry
from ..resolution.normalize import clean_company_number, normalize_postcode
from ..resolution.resolver import RegistryEntry
from .http import RequestThrottle, RetryConfig, with_retry

logger = get_context_logger(__name__, registry="companies_house")


class CompaniesHouseIndex:
    """Searches the Companies House register by company name."""

    source_registry = SourceRegistry.COMPANIES_HOUSE

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.company-information.service.gov.uk",
        timeout_ms: int = 10_000,
        rate_limit_delay_ms: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(api_key, ""),
            timeout=httpx.Timeout(timeout_ms / 1000.0),
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._throttle = RequestThrottle(rate_limit_delay_ms, sleep=sleep)
        self._retry = RetryConfig(max_retries=1, base_delay=1.0)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "CompaniesHouseIndex":
        return cls(
            api_key=settings.companies_house_api_key,
            base_url=settings.companies_house_base_url,
            timeout_ms=settings.companies_house_timeout_ms,
            transport=transport,
        )

    async def search(self, name: str, limit: int = 3) -> list[RegistryEntry]:
        """Search companies by name.

        Raises:
            SourceError: If the search fails (TransientSourceError when
                rate limited or unavailable after one retry)
        """
        payload = await with_retry(
            lambda: self._search_once(name, limit),
            self._retry,
            logger=logger,
            sleep=self._sleep,
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return []
        entries = []
        for item in items[:limit]:
            entry = self.parse_item(item)
            if entry is not None:
                entries.append(entry)
        return entries

    async def _search_once(self, name: str, limit: int) -> Any:
        await self._throttle.wait()
        try:
            response = await self._client.get(
                "/search/companies", params={"q": name, "items_per_page": limit}
            )
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"Companies House timeout: {e!r}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"Companies House transport error: {e!r}") from e

        if response.status_code == 429:
            raise TransientSourceError("Companies House rate limit exceeded", status_code=429)
        if response.status_code >= 500:
            raise TransientSourceError(
                f"Companies House HTTP {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise SourceError(f"Companies House HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise SourceError("Companies House returned malformed JSON") from e

    @staticmethod
    def parse_item(item: Any) -> RegistryEntry | None:
        if not isinstance(item, dict):
            return None
        number = clean_company_number(item.get("company_number"))
        title = (item.get("title") or "").strip()
        if not number or not title:
            return None
        address = item.get("address") if isinstance(item.get("address"), dict) else {}
        return RegistryEntry(
            company_number=number,
            name=title,
            status=item.get("company_status"),
            company_type=item.get("company_type"),
            address=item.get("address_snippet"),
            postcode=normalize_postcode(address.get("postal_code")),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
