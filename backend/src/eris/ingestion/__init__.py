"""Source adapters and the ingestion pipeline for ERIS."""

import httpx

from ..config import Settings
from ..errors import ConfigurationError
from ..models.base import FetchStrategy
from .base import AdapterHandle, Credentials, SourceAdapter, SourceConfig
from .cursor import CursorPaginatedAdapter
from .range_detail import RangeDetailAdapter

ADAPTERS: dict[FetchStrategy, type[SourceAdapter]] = {
    FetchStrategy.CURSOR: CursorPaginatedAdapter,
    FetchStrategy.RANGE_DETAIL: RangeDetailAdapter,
}


def build_adapter(
    config: SourceConfig,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SourceAdapter:
    """Instantiate the adapter for ``config.strategy``.

    Raises:
        ConfigurationError: If no adapter implements the strategy
    """
    adapter_cls = ADAPTERS.get(config.strategy)
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported fetch strategy: {config.strategy}")
    return adapter_cls(settings=settings, transport=transport)


__all__ = [
    "ADAPTERS",
    "AdapterHandle",
    "Credentials",
    "CursorPaginatedAdapter",
    "RangeDetailAdapter",
    "SourceAdapter",
    "SourceConfig",
    "build_adapter",
]
