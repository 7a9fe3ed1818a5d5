"""Shared pytest fixtures for ERIS tests.

Provides:
- Settings pointing at a throwaway SQLite database
- A Database with all tables created
- Event bus and pipeline context
- Fake HTTP sources served through httpx.MockTransport
"""

from typing import Any

import httpx
import pytest
import pytest_asyncio

from eris.config import Settings
from eris.context import PipelineContext
from eris.db import Database
from eris.ingestion.events import ProgressEventBus
from eris.models.base import SourceRegistry
from eris.resolution.resolver import RegistryEntry


# =========================
# Settings / Database
# =========================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings backed by a file SQLite database in tmp_path."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'eris.db'}",
        log_format="text",
        companies_house_enabled=False,
    )


@pytest_asyncio.fixture
async def database(settings):
    """Database with every table created; disposed after the test."""
    db = Database.from_settings(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def events() -> ProgressEventBus:
    return ProgressEventBus(queue_size=100)


@pytest_asyncio.fixture
async def context(database, events, settings) -> PipelineContext:
    return PipelineContext(database=database, events=events, settings=settings)


# =========================
# Fake sources
# =========================


def _word(seed: int, length: int = 7) -> str:
    """Deterministic pseudo-random word, so generated names never fuzzy-match."""
    value = (seed * 2654435761) % 2**31
    letters = []
    for _ in range(length):
        value = (value * 1103515245 + 12345) % 2**31
        letters.append("abcdefghijklmnopqrstuvwxyz"[(value >> 16) % 26])
    return "".join(letters).capitalize()


def make_item(index: int, **overrides: Any) -> dict[str, Any]:
    """One raw enforcement item with a unique id and offender name."""
    item = {
        "id": f"HSE-{index:04d}",
        "offender_name": f"{_word(index)} {_word(index + 7919)} Ltd",
        "offender_address": f"{index} Industrial Estate, Leeds LS{index % 20 + 1} 1AA",
        "action_date": "2024-03-01",
        "fine": "£1,000.00",
        "costs": "250",
        "result": "Guilty",
        "description": "Failure to ensure safety of employees",
        "legislation": "Health and Safety at Work etc. Act 1974",
    }
    item.update(overrides)
    return item


class FakeCursorSource:
    """A cursor-paginated JSON API served from in-memory pages.

    ``mode`` is "page" (``page=N``) or "token" (``offset=pN`` tokens).
    Probe requests (``pageSize=1``) are recorded separately from page
    fetches.
    """

    def __init__(self, pages: list[list[dict[str, Any]]], mode: str = "page"):
        self.pages = pages
        self.mode = mode
        self.requests: list[httpx.Request] = []
        self.statuses: dict[int, int] = {}
        self.malformed: set[int] = set()

    def page_number(self, request: httpx.Request) -> int:
        params = request.url.params
        if self.mode == "page":
            return int(params.get("page", "1"))
        offset = params.get("offset")
        return int(offset[1:]) if offset else 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        number = self.page_number(request)
        if number in self.statuses:
            return httpx.Response(self.statuses[number], json={"error": "unavailable"})
        if number in self.malformed:
            return httpx.Response(
                200, content=b"{not json", headers={"content-type": "application/json"}
            )

        items = self.pages[number - 1] if 0 < number <= len(self.pages) else []
        size = int(request.url.params.get("pageSize", "100"))
        body: dict[str, Any] = {
            "records": items[:size],
            "total": sum(len(page) for page in self.pages),
        }
        if self.mode == "token" and number < len(self.pages):
            body["offset"] = f"p{number + 1}"
        return httpx.Response(200, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def fetched_pages(self) -> list[int]:
        """Page numbers requested by page fetches (not probes), in order."""
        return [
            self.page_number(r) for r in self.requests if r.url.params.get("pageSize") != "1"
        ]


class FakeRegistryIndex:
    """External registry returning canned entries."""

    def __init__(self, entries: list[RegistryEntry] | None = None, error: Exception | None = None):
        self.source_registry = SourceRegistry.COMPANIES_HOUSE
        self.entries = entries or []
        self.error = error
        self.queries: list[str] = []

    async def search(self, name: str, limit: int = 3) -> list[RegistryEntry]:
        self.queries.append(name)
        if self.error is not None:
            raise self.error
        return self.entries[:limit]


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def cursor_source():
    """Factory for FakeCursorSource instances."""
    return FakeCursorSource


@pytest.fixture
def registry_index():
    """Factory for FakeRegistryIndex instances."""
    return FakeRegistryIndex


@pytest.fixture
def cursor_config():
    """Factory for cursor source config dicts."""

    def build(**overrides: Any) -> dict[str, Any]:
        config = {
            "source": "hse",
            "strategy": "cursor",
            "endpoint": "https://api.example.test/v0/app",
            "container": "cases",
            "cursor_mode": "page",
            "page_size": 20,
            "rate_limit_delay_ms": 0,
            "retry_attempts": 1,
            "retry_delay_ms": 0,
        }
        config.update(overrides)
        return config

    return build

