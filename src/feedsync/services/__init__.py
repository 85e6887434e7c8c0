"""Calendar feed service interfaces and implementations."""

from .base import BaseFeedService, normalize_feed_url
from .ics import IcsFeedService

__all__ = [
    'BaseFeedService',
    'IcsFeedService',
    'normalize_feed_url',
]
