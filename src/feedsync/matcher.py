"""Tiered matching of fetched feed events against stored rows."""

import logging
import re
import unicodedata
from datetime import datetime
from typing import Iterable, Optional, Sequence, Set

from .models import FuzzyMode, MatchMethod, MatchResult, ParsedEvent, StoredEvent, SyncConfiguration

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r'[\W_]+', re.UNICODE)

TITLE_WEIGHT = 0.7
LOCATION_WEIGHT = 0.3


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip diacritics and replace punctuation with spaces."""
    if not value:
        return ''
    decomposed = unicodedata.normalize('NFKD', value.lower())
    stripped = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_WORD.sub(' ', stripped).strip()


def tokenize(value: Optional[str]) -> Set[str]:
    """Normalized tokens longer than two characters."""
    return {token for token in normalize_text(value).split() if len(token) > 2}


def token_overlap(left: Optional[str], right: Optional[str]) -> float:
    """Jaccard similarity of the two token sets; 0.0 when either is empty."""
    left_tokens = tokenize(left)
    right_tokens = tokenize(right)
    if not left_tokens or not right_tokens:
        return 0.0
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


def parse_local_datetime(date_string: Optional[str], time_string: Optional[str]) -> Optional[datetime]:
    """Naive wall-clock datetime from stored date and time strings."""
    if not date_string:
        return None
    try:
        return datetime.strptime(f"{date_string} {time_string or '00:00:00'}", '%Y-%m-%d %H:%M:%S')
    except ValueError:
        return None


class EventMatcher:
    """Match a fetched event to at most one stored row.

    Tiers are evaluated in order and the first hit wins:

    1. provider UID (primary UID or any recorded alias, same RECURRENCE-ID)
    2. identical title and start
    3. fuzzy title/location overlap within the start time tolerance
    """

    def __init__(self, config: Optional[SyncConfiguration] = None):
        self.config = config or SyncConfiguration()
        self.logger = logger.getChild('matcher')

    def match(self, event: ParsedEvent, candidates: Sequence[StoredEvent]) -> Optional[MatchResult]:
        """Find the stored row for a fetched event.

        Args:
            event: Event from the current feed
            candidates: Stored rows not yet claimed in this pass

        Returns:
            Match result, or None when the event is new
        """
        row = self._match_uid(event, candidates)
        if row is not None:
            return MatchResult(row=row, method=MatchMethod.PROVIDER_UID)

        event_start = parse_local_datetime(event.start_date, event.start_time)

        row = self._match_exact(event, event_start, candidates)
        if row is not None:
            return MatchResult(row=row, method=MatchMethod.EXACT)

        return self._match_fuzzy(event, event_start, candidates)

    def _match_uid(self, event: ParsedEvent, candidates: Iterable[StoredEvent]) -> Optional[StoredEvent]:
        if event.uid_is_synthetic:
            return None
        for row in candidates:
            if row.has_uid(event.uid) and row.recurrence_id == event.recurrence_id:
                return row
        return None

    def _match_exact(
        self,
        event: ParsedEvent,
        event_start: Optional[datetime],
        candidates: Iterable[StoredEvent]
    ) -> Optional[StoredEvent]:
        if event_start is None:
            return None
        for row in candidates:
            if row.title == event.summary and parse_local_datetime(row.start_date, row.start_time) == event_start:
                return row
        return None

    def _match_fuzzy(
        self,
        event: ParsedEvent,
        event_start: Optional[datetime],
        candidates: Iterable[StoredEvent]
    ) -> Optional[MatchResult]:
        if event_start is None:
            return None

        tolerance = self.config.time_tolerance_seconds
        best: Optional[StoredEvent] = None
        best_score = 0.0

        for row in candidates:
            row_start = parse_local_datetime(row.start_date, row.start_time)
            if row_start is None or abs((row_start - event_start).total_seconds()) > tolerance:
                continue

            title_score = token_overlap(event.summary, row.title)
            if self.config.fuzzy_mode == FuzzyMode.STRICT and title_score < self.config.title_overlap_floor:
                continue

            location_score = 0.0
            if event.location and row.location:
                location_score = token_overlap(event.location, row.location)

            score = TITLE_WEIGHT * title_score + LOCATION_WEIGHT * location_score
            if score >= self.config.fuzzy_threshold and score > best_score:
                best = row
                best_score = score

        if best is None:
            return None
        self.logger.debug(f"Fuzzy match '{event.summary}' -> '{best.title}' (score {best_score:.2f})")
        return MatchResult(row=best, method=MatchMethod.FUZZY, score=best_score)


def match_event(
    event: ParsedEvent,
    candidates: Sequence[StoredEvent],
    config: Optional[SyncConfiguration] = None
) -> Optional[StoredEvent]:
    """Return the matched stored row, or None for a new event."""
    result = EventMatcher(config).match(event, candidates)
    return result.row if result else None
