"""Source adapter contract.

Every source connector implements :class:`SourceAdapter` so the pipeline
can drive cursor-paginated and range+detail sources the same way:

    handle = await adapter.initialize(config)      # ConfigurationError
    await adapter.validate_connection(handle)      # SourceConnectionError
    async for page in adapter.stream_pages(handle):
        ...

Streams are lazy async generators: nothing is fetched until the consumer
asks for the next page, and each call starts a fresh pass over the source.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from pydantic import BaseModel, Field, ValidationError

from ..config import Settings, get_settings
from ..errors import ConfigurationError, SourceConnectionError, SourceError
from ..logging import LoggerAdapter, get_context_logger
from ..models.base import CursorMode, FetchStrategy, RecordType
from ..models.records import ItemError, NormalizedRecord, SourcePage
from .http import SourceHttpClient
from .transform import DEFAULT_FIELD_MAP, RecordTransformer, flatten_item


class Credentials(BaseModel):
    """Source credentials. An API key is sent as a bearer token."""

    api_key: str | None = Field(default=None, repr=False)
    username: str | None = None
    password: str | None = Field(default=None, repr=False)


class SourceConfig(BaseModel):
    """Configuration for one source instance."""

    source: str = Field(..., min_length=1, description="Source identifier, e.g. 'hse'")
    strategy: FetchStrategy
    record_type: RecordType = RecordType.CASE

    endpoint: str
    credentials: Credentials = Field(default_factory=Credentials)
    container: str | None = Field(default=None, description="Table/collection identifier")
    view: str | None = None
    fields: list[str] | None = None
    sort: list[dict[str, str]] | None = None

    page_size: int = Field(default=100, ge=1, le=1000)
    rate_limit_delay_ms: int = Field(default=200, ge=0)
    timeout_ms: int = Field(default=30_000, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1_000, ge=0)
    max_records: int | None = Field(default=None, ge=1)

    # Cursor pagination
    cursor_mode: CursorMode = CursorMode.TOKEN
    start_page: int = Field(default=1, ge=1)
    max_pages: int | None = Field(default=None, ge=1)

    # Range fetch + per-item detail
    date_from: date | None = None
    date_to: date | None = None
    action_types: list[str] = Field(default_factory=list)
    detail_endpoint: str | None = Field(
        default=None, description="Detail URL template containing '{id}'"
    )

    id_field: str = "id"
    field_map: dict[str, str] = Field(default_factory=dict)

    # Early stopping
    consecutive_existing_threshold: int | None = Field(default=None, ge=1)
    max_consecutive_page_failures: int | None = Field(default=3, ge=1)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceConfig":
        """Parse raw configuration, raising ConfigurationError on failure."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid source configuration: {e}") from e

    def range_params(self) -> dict[str, Any]:
        """Fetch-range parameters recorded on the session (no credentials)."""
        params: dict[str, Any] = {
            "record_type": self.record_type.value,
            "page_size": self.page_size,
            "max_records": self.max_records,
        }
        if self.strategy == FetchStrategy.CURSOR:
            params.update(
                cursor_mode=self.cursor_mode.value,
                start_page=self.start_page,
                max_pages=self.max_pages,
            )
        else:
            params.update(
                date_from=self.date_from.isoformat() if self.date_from else None,
                date_to=self.date_to.isoformat() if self.date_to else None,
                action_types=list(self.action_types),
            )
        return params


@dataclass
class AdapterHandle:
    """State for one initialized adapter pass."""

    config: SourceConfig
    client: SourceHttpClient
    transformer: RecordTransformer
    logger: LoggerAdapter
    cache: dict[str, Any] = field(default_factory=dict)

    def bind(self, **context: Any) -> None:
        """Add context (such as ``session_id``) to the handle's log lines."""
        self.logger = get_context_logger(self.logger.logger.name, **{**self.logger.extra, **context})

    async def close(self) -> None:
        await self.client.aclose()


class SourceAdapter(ABC):
    """Abstract base class for source adapters.

    Provides common functionality:
    - Config validation and HTTP client construction
    - Rate limiting and retry (via SourceHttpClient)
    - Record-level streaming on top of page streaming
    """

    strategy: FetchStrategy

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the adapter.

        Args:
            settings: Application settings (defaults to the cached settings)
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Awaitable sleep used for throttling and retry delays
            clock: Monotonic clock used by the throttle
        """
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    async def initialize(self, config: SourceConfig) -> AdapterHandle:
        """Validate ``config`` and prepare a handle for streaming.

        Raises:
            ConfigurationError: If the configuration is unusable
        """
        if config.strategy != self.strategy:
            raise ConfigurationError(
                f"{type(self).__name__} cannot run strategy {config.strategy.value}"
            )
        if not config.endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(f"Endpoint must be an http(s) URL: {config.endpoint!r}")
        unknown = sorted(set(config.field_map) - set(DEFAULT_FIELD_MAP))
        if unknown:
            raise ConfigurationError(f"Unknown field_map targets: {', '.join(unknown)}")
        self.validate_config(config)

        transformer = RecordTransformer(config)
        client = SourceHttpClient(
            config,
            user_agent=self.settings.adapter_user_agent,
            transport=self._transport,
            sleep=self._sleep,
            clock=self._clock,
        )
        logger = get_context_logger(f"eris.ingestion.{config.source}", source=config.source)
        return AdapterHandle(config=config, client=client, transformer=transformer, logger=logger)

    def validate_config(self, config: SourceConfig) -> None:
        """Strategy-specific checks. Raise ConfigurationError on failure."""

    @abstractmethod
    def stream_pages(self, handle: AdapterHandle) -> AsyncIterator[SourcePage]:
        """Stream the source page by page (or batch by batch).

        Non-fatal page failures are yielded as pages carrying ``failure``;
        fatal errors raise UnrecoverableSourceError.
        """
        ...

    async def stream_records(self, handle: AdapterHandle) -> AsyncIterator[NormalizedRecord]:
        """Stream normalized records, skipping failed pages and items."""
        async for page in self.stream_pages(handle):
            for record in page.records:
                yield record

    @abstractmethod
    async def probe(self, handle: AdapterHandle) -> None:
        """Issue the cheapest request that proves the source answers."""
        ...

    async def validate_connection(self, handle: AdapterHandle) -> None:
        """Check the source is reachable.

        Raises:
            SourceConnectionError: If the probe request fails
        """
        try:
            await self.probe(handle)
        except SourceError as e:
            raise SourceConnectionError(
                f"Cannot reach {handle.config.source} at {handle.config.endpoint}: {e}"
            ) from e

    async def get_total_count(self, handle: AdapterHandle) -> int | None:
        """Best-effort total record count; None when the source cannot say."""
        return None

    def build_page(
        self, handle: AdapterHandle, items: list[Any], number: int
    ) -> SourcePage:
        """Normalize raw items, turning bad items into item-level errors."""
        page = SourcePage(number=number)
        for index, raw in enumerate(items):
            fallback_id = f"page-{number}-item-{index}"
            if not isinstance(raw, dict):
                page.item_errors.append(
                    ItemError(source_record_id=fallback_id, error="item is not an object")
                )
                continue
            item = flatten_item(raw, handle.config.id_field)
            try:
                page.records.append(handle.transformer.to_record(item, number))
            except ValueError as e:
                page.item_errors.append(
                    ItemError(
                        source_record_id=handle.transformer.item_id(item) or fallback_id,
                        error=f"invalid item: {e}",
                    )
                )
        return page


def cap_records(records: list[NormalizedRecord], emitted: int, max_records: int | None) -> list[NormalizedRecord]:
    """Trim a page so that no more than ``max_records`` are emitted overall."""
    if max_records is None:
        return records
    return records[: max(max_records - emitted, 0)]
