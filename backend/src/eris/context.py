"""Pipeline context shared by the ingestion service and the CLI."""

from dataclasses import dataclass

from .config import Settings, get_settings
from .db import Database
from .ingestion.companies_house import CompaniesHouseIndex
from .ingestion.events import ProgressEventBus
from .resolution.resolver import RegistryIndex


@dataclass
class PipelineContext:
    """Everything a pipeline run needs, passed explicitly."""

    database: Database
    events: ProgressEventBus
    settings: Settings
    registry_index: RegistryIndex | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PipelineContext":
        settings = settings or get_settings()
        registry_index = None
        if settings.companies_house_available:
            registry_index = CompaniesHouseIndex.from_settings(settings)
        return cls(
            database=Database.from_settings(settings),
            events=ProgressEventBus(queue_size=settings.event_queue_size),
            settings=settings,
            registry_index=registry_index,
        )

    async def close(self) -> None:
        aclose = getattr(self.registry_index, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.database.dispose()
