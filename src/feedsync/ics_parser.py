"""ICS document parsing into normalized feed events."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional, Tuple
from uuid import uuid4

from icalendar import Calendar
import pytz

from .errors import ParseError
from .models import ParsedEvent, SyncConfiguration

logger = logging.getLogger(__name__)


class IcsParser:
    """Parse ICS text into ``ParsedEvent`` objects in the target timezone."""

    def __init__(self, config: Optional[SyncConfiguration] = None):
        self.config = config or SyncConfiguration()
        self.tz = self.config.tz
        self.logger = logger.getChild('parser')

    def parse(self, ics_text: str) -> List[ParsedEvent]:
        """Parse a whole ICS document.

        Malformed optional properties are dropped per event; a structurally
        invalid document fails as a whole.

        Args:
            ics_text: Raw ICS document

        Returns:
            Parsed events in feed order

        Raises:
            ParseError: If the document is not a readable VCALENDAR
        """
        if not ics_text or 'BEGIN:VCALENDAR' not in ics_text.upper():
            raise ParseError("Document is not an iCalendar feed (missing BEGIN:VCALENDAR)")

        try:
            calendar = Calendar.from_ical(ics_text)
        except (ValueError, IndexError, KeyError) as e:
            raise ParseError(f"Invalid iCalendar data: {e}") from e

        calendar_method = calendar.get('METHOD')
        events = []
        for component in calendar.walk('VEVENT'):
            event = self._parse_component(component, calendar_method)
            if event is not None:
                events.append(event)

        self.logger.info(f"Parsed {len(events)} events from feed")
        return events

    def _parse_component(self, component, calendar_method) -> Optional[ParsedEvent]:
        uid = str(component.get('UID', '')).strip()
        uid_is_synthetic = not uid
        if uid_is_synthetic:
            uid = f"event-{uuid4()}"

        summary = str(component.get('SUMMARY', '')).strip() or self.config.no_title_placeholder

        dtstart = component.get('DTSTART')
        if dtstart is None:
            self.logger.warning(f"Skipping event without DTSTART: {summary}")
            return None

        try:
            start_value = dtstart.dt
            end_value = self._end_value(component, start_value)
            start, start_date, start_time, is_all_day = self._normalize(start_value)
            end, end_date, end_time, _ = self._normalize(end_value)
        except (ValueError, TypeError, AttributeError, OverflowError) as e:
            self.logger.warning(f"Skipping event with unreadable dates: {summary}: {e}")
            return None

        method = component.get('METHOD') or calendar_method
        status = component.get('STATUS')

        return ParsedEvent(
            uid=uid,
            uid_is_synthetic=uid_is_synthetic,
            recurrence_id=self._recurrence_id(component),
            summary=summary,
            description=str(component.get('DESCRIPTION', '')),
            location=str(component.get('LOCATION', '')),
            start=start,
            end=end,
            start_date=start_date,
            start_time=start_time,
            end_date=end_date,
            end_time=end_time,
            is_all_day=is_all_day,
            timezone=self._timezone_name(dtstart),
            categories=self._categories(component, summary),
            last_modified=self._last_modified(component, summary),
            status=str(status).upper() if status else None,
            method=str(method).upper() if method else None,
        )

    def _end_value(self, component, start_value):
        """DTEND, else DTSTART + DURATION, else one day for all-day or zero length."""
        dtend = component.get('DTEND')
        if dtend is not None:
            return dtend.dt
        duration = component.get('DURATION')
        if duration is not None:
            return start_value + duration.dt
        if not isinstance(start_value, datetime):
            return start_value + timedelta(days=1)
        return start_value

    def _normalize(self, value) -> Tuple[datetime, str, str, bool]:
        """Project a DTSTART/DTEND value into the target timezone.

        Dates are all-day and keep their calendar day at midnight. Floating
        and UTC times are read as UTC; zoned times are converted.
        """
        if not isinstance(value, datetime):
            if not isinstance(value, date):
                raise TypeError(f"Unsupported date value: {value!r}")
            local = self.tz.localize(datetime.combine(value, time.min))
            return local, value.strftime('%Y-%m-%d'), '00:00:00', True

        if value.tzinfo is None:
            value = pytz.UTC.localize(value)
        local = value.astimezone(self.tz)
        return local, local.strftime('%Y-%m-%d'), local.strftime('%H:%M:%S'), False

    def _timezone_name(self, prop) -> Optional[str]:
        tzid = prop.params.get('TZID') if hasattr(prop, 'params') else None
        if tzid:
            return str(tzid)
        value = prop.dt
        if isinstance(value, datetime) and value.tzinfo is not None:
            return getattr(value.tzinfo, 'zone', None) or str(value.tzinfo)
        return None

    def _recurrence_id(self, component) -> Optional[str]:
        prop = component.get('RECURRENCE-ID')
        if prop is None:
            return None
        try:
            return prop.to_ical().decode('utf-8')
        except (AttributeError, ValueError):
            return str(prop)

    def _categories(self, component, summary: str) -> List[str]:
        raw = component.get('CATEGORIES')
        if raw is None:
            return []
        items: List[Any] = raw if isinstance(raw, list) else [raw]
        categories = []
        try:
            for item in items:
                values = getattr(item, 'cats', None)
                if values is None:
                    values = str(item).split(',')
                categories.extend(str(value).strip() for value in values if str(value).strip())
        except (AttributeError, TypeError, ValueError) as e:
            self.logger.debug(f"Ignoring malformed CATEGORIES on {summary}: {e}")
            return []
        return categories

    def _last_modified(self, component, summary: str) -> Optional[datetime]:
        prop = component.get('LAST-MODIFIED')
        if prop is None:
            return None
        try:
            value = prop.dt
        except (AttributeError, ValueError):
            self.logger.debug(f"Ignoring malformed LAST-MODIFIED on {summary}")
            return None
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            return pytz.UTC.localize(value)
        return value.astimezone(pytz.UTC)


def parse_ics(ics_text: str, config: Optional[SyncConfiguration] = None) -> List[ParsedEvent]:
    """Parse an ICS document with the given sync configuration."""
    return IcsParser(config).parse(ics_text)
