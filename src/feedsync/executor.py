"""Application of a sync plan to the database."""

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Optional, Sequence

import pytz

from .category_resolver import DEFAULT_CATEGORY_KEYWORDS, CategoryResolver
from .database import DatabaseManager, EventLocalMetaDB, as_uuid
from .errors import NotFoundError, RowMutationError
from .models import (
    CategoryCandidate, CategoryKeywords, CategoryMappingRecord, ManualOverridePolicy, PlannedOperation,
    SyncAction, SyncConfiguration, SyncPlan, SyncStats
)

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Apply planned operations row by row.

    Every event row commits in its own transaction together with its sync
    log entry, and its category metadata follows in a second one. A failing
    row is recorded in the stats and the remaining rows still run.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Optional[SyncConfiguration] = None,
        keyword_table: Sequence[CategoryKeywords] = DEFAULT_CATEGORY_KEYWORDS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_manager
        self.config = config or SyncConfiguration()
        self.keyword_table = keyword_table
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('executor')

    def execute(
        self,
        plan: SyncPlan,
        calendar_id: Any,
        user_id: str,
        stats: Optional[SyncStats] = None
    ) -> SyncStats:
        """Apply a plan, then backfill missing or Unknown categories.

        Args:
            plan: Operations from ``compute_sync_ops``
            calendar_id: Calendar the plan belongs to
            user_id: Owner whose metadata is written
            stats: Counters to add to; a new object when omitted

        Returns:
            Updated counters, including per-row failures
        """
        stats = stats or SyncStats()
        now = self.clock()
        resolver = self.build_resolver(user_id)

        handlers = (
            (plan.creates, self._apply_create),
            (plan.updates, self._apply_update),
            (plan.restores, self._apply_restore),
            (plan.soft_deletes, self._apply_soft_delete),
            (plan.immediate_deletes, self._apply_immediate_delete),
            (plan.misses, self._apply_miss),
        )
        for operations, handler in handlers:
            for op in operations:
                self._capture(
                    op.display_title, stats, handler, op, calendar_id, user_id, resolver, stats, now
                )

        self.reconcile(calendar_id, user_id, resolver, stats, now)

        self.logger.info(
            f"Applied plan for calendar {calendar_id}: {stats.events_created} created, "
            f"{stats.events_updated} updated, {stats.events_restored} restored, "
            f"{stats.events_soft_deleted} soft-deleted, {stats.events_immediately_deleted} cancelled, "
            f"{stats.events_failed} failed"
        )
        return stats

    def build_resolver(self, user_id: str) -> CategoryResolver:
        """Load the user's categories and mappings, ensuring Unknown exists."""
        with self.db.session_scope() as session:
            unknown = self.db.get_or_create_unknown_category(
                session,
                user_id,
                name=self.config.unknown_category_name,
                color=self.config.unknown_category_color,
                emoji=self.config.unknown_category_emoji,
            )
            categories = [
                CategoryCandidate(id=str(c.id), name=c.name, user_id=c.user_id, is_system=c.is_system)
                for c in self.db.get_categories(session, user_id)
            ]
            mappings = [
                CategoryMappingRecord(
                    external_category=m.external_category,
                    internal_category_id=str(m.internal_category_id),
                )
                for m in self.db.get_category_mappings(session, user_id)
            ]
            unknown_id = str(unknown.id)

        return CategoryResolver(
            categories,
            mappings,
            unknown_id,
            keyword_table=self.keyword_table,
            on_new_mapping=partial(self._persist_mapping, user_id),
        )

    def _persist_mapping(self, user_id: str, mapping: CategoryMappingRecord) -> None:
        with self.db.session_scope() as session:
            self.db.save_category_mapping(
                session, user_id, mapping.external_category, mapping.internal_category_id, self.clock()
            )
        self.logger.info(f"Saved category mapping '{mapping.external_category}' for user {user_id}")

    def _capture(self, title: str, stats: SyncStats, fn: Callable, *args) -> bool:
        """Run one row mutation; record instead of raise on failure."""
        try:
            fn(*args)
            return True
        except Exception as e:
            error = RowMutationError(title, str(e))
            self.logger.error(f"Failed to process event '{error.title}': {error.message}")
            stats.record_failure(error.title, error.message)
            return False

    def _load_row(self, session, op: PlannedOperation):
        row = self.db.get_event(session, op.row_id)
        if row is None:
            raise NotFoundError(f"Event row {op.row_id} no longer exists")
        return row

    # Event operations

    def _apply_create(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        event = op.event
        with self.db.session_scope() as session:
            row = self.db.create_event(session, calendar_id, event, now, provider=self.config.provider)
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.CREATED,
                {'title': event.summary, 'uid': event.uid, 'reason': op.reason},
                now,
            )
            event_id = row.id
        stats.events_created += 1
        self.logger.debug(f"Created event: {event.summary}")

        self._capture(
            event.summary, stats, self._create_metadata, event_id, user_id, event.summary,
            event.categories, resolver, stats, now
        )

    def _refresh_row(self, session, row, op: PlannedOperation, now) -> None:
        event = op.event
        if not event.uid_is_synthetic and event.uid != row.provider_event_uid:
            self.logger.info(
                f"Reassigning UID of '{event.summary}': {row.provider_event_uid} -> {event.uid} "
                f"({op.match_method.value if op.match_method else 'unknown'} match)"
            )
            self.db.add_uid_alias(session, row, event.uid, self.config.provider)
            row.provider_event_uid = event.uid
        self.db.apply_event_fields(row, event, now)

    def _apply_update(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        event = op.event
        with self.db.session_scope() as session:
            row = self._load_row(session, op)
            self._refresh_row(session, row, op, now)
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.UPDATED,
                {
                    'title': event.summary,
                    'reason': op.reason,
                    'matchMethod': op.match_method.value if op.match_method else None,
                },
                now,
            )
            event_id = row.id
        stats.events_updated += 1
        self.logger.debug(f"Updated event: {event.summary}")

        self._capture(
            event.summary, stats, self._refresh_metadata, event_id, user_id, event.summary,
            event.categories, resolver, stats, now
        )

    def _apply_restore(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        event = op.event
        with self.db.session_scope() as session:
            row = self._load_row(session, op)
            self.db.clear_deleted(row)
            self._refresh_row(session, row, op, now)
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.UPDATED,
                {'title': event.summary, 'reason': op.reason, 'restored': True},
                now,
            )
            event_id = row.id
        stats.events_restored += 1
        self.logger.info(f"Restored event: {event.summary}")

        self._capture(
            event.summary, stats, self._refresh_metadata, event_id, user_id, event.summary,
            event.categories, resolver, stats, now
        )

    def _apply_soft_delete(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        with self.db.session_scope() as session:
            row = self._load_row(session, op)
            row.miss_count = op.miss_count if op.miss_count is not None else (row.miss_count or 0) + 1
            self.db.mark_deleted(row, op.deleted_reason, now)
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.DELETED,
                {'title': row.title, 'reason': op.reason, 'softDelete': True, 'missCount': row.miss_count},
                now,
            )
        stats.events_soft_deleted += 1
        self.logger.info(f"Soft-deleted event: {op.display_title} ({op.reason})")

    def _apply_immediate_delete(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        with self.db.session_scope() as session:
            row = self._load_row(session, op)
            self.db.mark_deleted(row, op.deleted_reason, now)
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.DELETED,
                {'title': row.title, 'reason': op.reason, 'cancelled': True},
                now,
            )
        stats.events_immediately_deleted += 1
        self.logger.info(f"Deleted cancelled event: {op.display_title}")

    def _apply_miss(self, op: PlannedOperation, calendar_id, user_id, resolver, stats, now) -> None:
        with self.db.session_scope() as session:
            row = self._load_row(session, op)
            # updated_at stays put so the grace period counts from the last sighting
            row.miss_count = (row.miss_count or 0) + 1
            self.db.log_sync_action(
                session, row.id, calendar_id, user_id, SyncAction.UPDATED,
                {'title': row.title, 'reason': op.reason, 'missed': True, 'missCount': row.miss_count},
                now,
            )
        stats.events_missed += 1
        self.logger.debug(f"Event missing from feed: {op.display_title} ({op.reason})")

    # Category metadata

    def _manual_protected(self, meta: EventLocalMetaDB, now: datetime) -> bool:
        if not meta.manually_set_category:
            return False
        if self.config.manual_override_policy == ManualOverridePolicy.PRESERVE_ALWAYS:
            return True
        changed_at = meta.category_updated_at or meta.updated_at
        if changed_at is None:
            return True
        return now - changed_at < timedelta(minutes=self.config.manual_override_window_minutes)

    def _create_metadata(self, event_id, user_id, title, categories, resolver, stats, now) -> None:
        resolution = resolver.resolve(title, categories)
        with self.db.session_scope() as session:
            self.db.create_local_meta(session, event_id, user_id, resolution.category_id, now)
        stats.metadata_created += 1

    def _refresh_metadata(self, event_id, user_id, title, categories, resolver, stats, now) -> None:
        with self.db.session_scope() as session:
            outcome = self._refresh_meta_row(session, event_id, user_id, title, categories, resolver, now)
        if outcome:
            setattr(stats, outcome, getattr(stats, outcome) + 1)

    def _refresh_meta_row(self, session, event_id, user_id, title, categories, resolver, now) -> Optional[str]:
        """Update one metadata row; returns the stats counter to bump, if any."""
        meta = self.db.get_local_meta(session, event_id, user_id)

        if meta is None:
            resolution = resolver.resolve(title, categories)
            self.db.create_local_meta(session, event_id, user_id, resolution.category_id, now)
            return 'metadata_created'

        if meta.manually_set_category:
            if self._manual_protected(meta, now):
                return 'metadata_preserved'
            # Manual choice older than the window
            resolution = resolver.resolve(title, categories)
            if resolver.is_unknown(resolution.category_id) or resolution.category_id == str(meta.category_id):
                return 'metadata_preserved'
            self._assign(meta, resolution.category_id, now)
            meta.manually_set_category = False
            self.logger.info(f"Manual category expired, re-classified: {title}")
            return 'metadata_auto_updated'

        if not resolver.is_unknown(meta.category_id):
            return 'metadata_already_resolved'

        resolution = resolver.resolve(title, categories)
        if resolver.is_unknown(resolution.category_id):
            return None
        self._assign(meta, resolution.category_id, now)
        return 'metadata_auto_updated'

    def _assign(self, meta: EventLocalMetaDB, category_id, now: datetime) -> None:
        meta.category_id = as_uuid(category_id)
        meta.category_updated_at = now
        meta.updated_at = now

    def reconcile(self, calendar_id, user_id: str, resolver: CategoryResolver, stats: SyncStats, now) -> None:
        """Give active events without metadata, or still on Unknown, another pass."""
        with self.db.session_scope() as session:
            rows = self.db.get_events(session, calendar_id, include_deleted=False)
            metas = self.db.get_local_meta_for_calendar(session, calendar_id, user_id)
            pending = []
            for row in rows:
                meta = metas.get(row.id)
                if meta is not None and (meta.manually_set_category or not resolver.is_unknown(meta.category_id)):
                    continue
                categories = (row.raw_payload or {}).get('categories') or []
                pending.append((row.id, row.title, categories))

        if pending:
            self.logger.info(f"Reconciling categories for {len(pending)} events")
        for event_id, title, categories in pending:
            self._capture(title, stats, self._backfill, event_id, user_id, title, categories, resolver, stats, now)

    def _backfill(self, event_id, user_id, title, categories, resolver, stats, now) -> None:
        outcome = None
        with self.db.session_scope() as session:
            meta = self.db.get_local_meta(session, event_id, user_id)
            if meta is None:
                resolution = resolver.resolve(title, categories)
                self.db.create_local_meta(session, event_id, user_id, resolution.category_id, now)
                outcome = 'metadata_created_during_backfill'
            elif not meta.manually_set_category and resolver.is_unknown(meta.category_id):
                resolution = resolver.resolve(title, categories)
                if not resolver.is_unknown(resolution.category_id):
                    self._assign(meta, resolution.category_id, now)
                    outcome = 'metadata_backfilled'
        if outcome:
            setattr(stats, outcome, getattr(stats, outcome) + 1)
