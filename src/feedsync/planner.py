"""Sync operation planning: fetched events vs stored rows."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

import pytz

from .matcher import EventMatcher, parse_local_datetime
from .models import (
    DeletionReason, ParsedEvent, PlannedOperation, StoredEvent, SyncConfiguration, SyncOperationType,
    SyncPlan
)

logger = logging.getLogger(__name__)


def effective_end(
    date_string: Optional[str],
    time_string: Optional[str],
    is_all_day: bool,
    tz,
    start_date: Optional[str] = None
) -> Optional[datetime]:
    """Aware end instant of a stored event in ``tz``.

    All-day events stored at midnight count as ending at 23:59:59. An
    all-day end date later than ``start_date`` is the exclusive DTEND, so
    the event ends on the day before it.
    """
    exclusive_end = False
    if is_all_day and (not time_string or time_string.startswith('00:00')):
        time_string = '23:59:59'
        exclusive_end = bool(start_date and date_string and date_string > start_date)
    naive = parse_local_datetime(date_string, time_string)
    if naive is None:
        return None
    if exclusive_end:
        naive -= timedelta(days=1)
    return tz.localize(naive)


def is_row_past(row: StoredEvent, now: datetime, tz) -> bool:
    """Whether the row's end (or start when it has none) lies before ``now``."""
    date_string = row.end_date or row.start_date
    time_string = row.end_time or row.start_time or '00:00:00'
    end = effective_end(date_string, time_string, row.is_all_day, tz, start_date=row.start_date)
    if end is None:
        return False
    return end < now


def compute_sync_ops(
    fetched: Sequence[ParsedEvent],
    stored_rows: Sequence[StoredEvent],
    respect_cancellation: Optional[bool] = None,
    config: Optional[SyncConfiguration] = None,
    now: Optional[datetime] = None
) -> SyncPlan:
    """Plan creates, updates, restores and deletions for one sync pass.

    Each stored row is claimed by at most one fetched event, first in feed
    order. Stored rows left unclaimed are soft-deleted once their miss
    count, this pass included, reaches ``max_miss_count`` or ``grace_hours``
    have passed since the row was last seen; before that they get a
    ``MISS`` operation. Rows whose end is already past are never deleted,
    whether cancelled or missing.

    Args:
        fetched: Events parsed from the current feed
        stored_rows: All stored rows of the calendar, deleted ones included
        respect_cancellation: Delete cancelled events; defaults to the config
        config: Sync configuration
        now: Reference instant, defaults to the current time

    Returns:
        Partitioned plan
    """
    config = config or SyncConfiguration()
    if respect_cancellation is None:
        respect_cancellation = config.respect_cancellation
    now = now or datetime.now(pytz.UTC)
    tz = config.tz
    log = logger.getChild('planner')
    matcher = EventMatcher(config)

    plan = SyncPlan()
    claimed = set()

    for event in fetched:
        candidates = [row for row in stored_rows if row.id not in claimed]
        result = matcher.match(event, candidates)

        if result is None:
            if respect_cancellation and event.is_cancelled:
                log.info(f"Skipping cancelled event not in store: {event.summary}")
                continue
            plan.creates.append(PlannedOperation(
                operation=SyncOperationType.CREATE,
                event=event,
                reason='New event not found in database',
            ))
            continue

        row = result.row
        claimed.add(row.id)

        if respect_cancellation and event.is_cancelled:
            if row.deleted:
                log.debug(f"Cancelled event already deleted: {event.summary}")
                continue
            if is_row_past(row, now, tz):
                log.info(f"Skipping delete for past cancelled event: {event.summary}")
                continue
            plan.immediate_deletes.append(PlannedOperation(
                operation=SyncOperationType.IMMEDIATE_DELETE,
                row_id=row.id,
                event=event,
                deleted_reason=DeletionReason.CANCELLED,
                match_method=result.method,
                reason=f"Event cancelled (STATUS:{event.status or 'N/A'}, METHOD:{event.method or 'N/A'})",
            ))
            continue

        if row.deleted:
            if row.deleted_reason == DeletionReason.USER_DELETE.value:
                log.info(f"Skipping restore for user-deleted event: {event.summary}")
                continue
            plan.restores.append(PlannedOperation(
                operation=SyncOperationType.RESTORE,
                row_id=row.id,
                event=event,
                match_method=result.method,
                reason='Event reappeared in feed after soft delete',
            ))
            continue

        plan.updates.append(PlannedOperation(
            operation=SyncOperationType.UPDATE,
            row_id=row.id,
            event=event,
            match_method=result.method,
            reason='Event exists and needs update',
        ))

    for row in stored_rows:
        if row.id in claimed or row.deleted:
            continue

        if is_row_past(row, now, tz):
            log.debug(f"Skipping delete for past event missing from feed: {row.title}")
            continue

        hours_since_update = (now - row.updated_at).total_seconds() / 3600
        miss_count = row.miss_count + 1

        if hours_since_update >= config.grace_hours or miss_count >= config.max_miss_count:
            plan.soft_deletes.append(PlannedOperation(
                operation=SyncOperationType.SOFT_DELETE,
                row_id=row.id,
                title=row.title,
                deleted_reason=DeletionReason.MISSING_FROM_FEED,
                miss_count=miss_count,
                reason=(
                    f"Event missing from feed ({hours_since_update:.1f}h since update, "
                    f"miss_count: {miss_count})"
                ),
            ))
        else:
            plan.misses.append(PlannedOperation(
                operation=SyncOperationType.MISS,
                row_id=row.id,
                title=row.title,
                miss_count=miss_count,
                reason=(
                    f"Missing but within grace period ({hours_since_update:.1f}h, "
                    f"miss_count: {miss_count})"
                ),
            ))

    log.info(f"Planned operations: {plan.counts()}")
    return plan
