"""Base feed service interface with async support."""

from abc import ABC, abstractmethod
from typing import List, Optional
import logging

from ..config import Settings
from ..ics_parser import IcsParser
from ..models import ParsedEvent

logger = logging.getLogger(__name__)


def normalize_feed_url(url: str) -> str:
    """Rewrite ``webcal://`` subscription links to ``https://``."""
    url = url.strip()
    if url.lower().startswith('webcal://'):
        return 'https://' + url[len('webcal://'):]
    return url


class BaseFeedService(ABC):
    """Abstract base class for calendar feed providers."""

    provider = 'base'

    def __init__(self, settings: Settings, parser: Optional[IcsParser] = None):
        """Initialize feed service.

        Args:
            settings: Application settings
            parser: Parser used on fetched documents
        """
        self.settings = settings
        self.parser = parser or IcsParser(settings.sync_config)
        self.logger = logger.getChild(self.provider)

    @abstractmethod
    async def fetch_text(self, url: str) -> str:
        """Retrieve the raw feed document.

        Args:
            url: Feed URL as stored on the calendar

        Returns:
            Document body

        Raises:
            FeedFetchError: If the feed cannot be retrieved
        """
        pass

    async def fetch_events(self, url: str) -> List[ParsedEvent]:
        """Fetch and parse a feed.

        Raises:
            FeedFetchError: If the feed cannot be retrieved
            ParseError: If the document is not valid iCalendar
        """
        text = await self.fetch_text(url)
        return self.parser.parse(text)
