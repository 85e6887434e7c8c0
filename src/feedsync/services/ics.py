"""ICS feed service over HTTP."""

from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential
)

from .base import BaseFeedService, normalize_feed_url
from ..config import Settings
from ..errors import FeedFetchError
from ..ics_parser import IcsParser


class IcsFeedService(BaseFeedService):
    """Fetch published ICS feeds with httpx.

    Transport failures are retried with exponential backoff; HTTP error
    statuses are not, since a 4xx/5xx from a feed host is rarely transient
    within one request.
    """

    provider = 'ics'

    def __init__(
        self,
        settings: Settings,
        parser: Optional[IcsParser] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        wait=None
    ):
        super().__init__(settings, parser)
        self._transport = transport
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout_seconds),
            headers={
                'User-Agent': self.settings.user_agent,
                'Accept': 'text/calendar, text/plain;q=0.9, */*;q=0.8',
            },
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch_text(self, url: str) -> str:
        http_url = normalize_feed_url(url)
        self.logger.info(f"Fetching feed: {http_url}")

        try:
            async with self._client() as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.settings.fetch_retry_attempts),
                    wait=self._wait,
                    retry=retry_if_exception_type(httpx.TransportError),
                ):
                    with attempt:
                        response = await client.get(http_url)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise FeedFetchError(
                f"Failed to fetch feed after {self.settings.fetch_retry_attempts} attempts: {cause}"
            ) from cause
        except httpx.HTTPError as e:
            raise FeedFetchError(f"Failed to fetch feed: {e}") from e

        if response.status_code >= 400:
            raise FeedFetchError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code
            )

        self.logger.debug(f"Feed fetched, length: {len(response.text)}")
        return response.text
