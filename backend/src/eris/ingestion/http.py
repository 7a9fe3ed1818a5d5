"""HTTP plumbing shared by source adapters: throttling and retry."""

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from pydantic import BaseModel

from ..errors import PageFetchFailed, TransientSourceError, UnrecoverableSourceError
from ..logging import get_context_logger

if TYPE_CHECKING:
    from .base import SourceConfig

logger = get_context_logger(__name__)


class RetryConfig(BaseModel):
    """Configuration for retry behavior.

    The default is a fixed delay between attempts; set
    ``exponential_base`` above 1 for backoff.
    """

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 1.0


async def with_retry(
    func: Callable[[], Awaitable[Any]],
    config: RetryConfig | None = None,
    logger=None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
):
    """Execute ``func`` retrying only on TransientSourceError.

    Args:
        func: Async function to execute
        config: Retry configuration
        logger: Optional logger for retry messages
        sleep: Awaitable sleep used between attempts

    Returns:
        Function result

    Raises:
        TransientSourceError: If all retries are exhausted
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except TransientSourceError as e:
            if attempt >= config.max_retries:
                raise
            delay = min(
                config.base_delay * (config.exponential_base ** attempt),
                config.max_delay,
            )
            if logger:
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s"
                )
            await sleep(delay)


class RequestThrottle:
    """Enforces a minimum interval between outbound requests."""

    def __init__(
        self,
        min_interval_ms: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval_ms / 1000.0
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        """Block until the next request may be sent."""
        async with self._lock:
            if self._last is not None and self.min_interval > 0:
                remaining = self.min_interval - (self._clock() - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last = self._clock()


class SourceHttpClient:
    """Rate-limited, retrying JSON client for one adapter instance."""

    def __init__(
        self,
        config: "SourceConfig",
        user_agent: str,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        headers = {"User-Agent": user_agent, "Accept": "application/json"}
        auth = None
        credentials = config.credentials
        if credentials.api_key:
            headers["Authorization"] = f"Bearer {credentials.api_key}"
        elif credentials.username:
            auth = httpx.BasicAuth(credentials.username, credentials.password or "")

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_ms / 1000.0),
            headers=headers,
            auth=auth,
            follow_redirects=True,
            transport=transport,
        )
        self.throttle = RequestThrottle(config.rate_limit_delay_ms, sleep=sleep, clock=clock)
        self.retry = RetryConfig(
            max_retries=config.retry_attempts,
            base_delay=config.retry_delay_ms / 1000.0,
        )
        self._sleep = sleep
        self._logger = get_context_logger(__name__, source=config.source)
        self.request_count = 0

    async def get_json(
        self, url: str, params: dict[str, Any] | None = None, page: int = 0
    ) -> Any:
        """GET ``url`` and decode its JSON body.

        Raises:
            PageFetchFailed: Transient errors persisted past the retry budget
            UnrecoverableSourceError: Non-retryable status or malformed body
        """
        try:
            return await with_retry(
                lambda: self._get_once(url, params, page),
                self.retry,
                logger=self._logger,
                sleep=self._sleep,
            )
        except TransientSourceError as e:
            raise PageFetchFailed(page, e) from e

    async def _get_once(self, url: str, params: dict[str, Any] | None, page: int) -> Any:
        await self.throttle.wait()
        self.request_count += 1
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"timeout fetching {url}: {e!r}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"transport error fetching {url}: {e!r}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientSourceError(f"HTTP {status} from {url}", status_code=status)
        if status >= 400:
            raise UnrecoverableSourceError(page, f"HTTP {status} from {url}")

        try:
            return response.json()
        except ValueError as e:
            raise UnrecoverableSourceError(page, f"malformed JSON from {url}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
