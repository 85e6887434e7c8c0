"""Tests for applying sync plans to the database."""

from datetime import timedelta
from uuid import uuid4

import pytest

from feedsync.executor import SyncExecutor
from feedsync.models import (
    DeletionReason, ManualOverridePolicy, PlannedOperation, SyncConfiguration, SyncOperationType, SyncPlan
)
from feedsync.planner import compute_sync_ops

from conftest import NOW, USER


@pytest.fixture
def executor(db_manager, clock):
    return SyncExecutor(db_manager, SyncConfiguration(), clock=clock)


@pytest.fixture
def categories(db_manager):
    with db_manager.session_scope() as session:
        kamp = db_manager.create_category(session, 'Kamp', is_system=True)
        traening = db_manager.create_category(session, 'Træning', is_system=True)
        return {'kamp': kamp.id, 'traening': traening.id}


def stored_rows(db_manager, calendar_id):
    with db_manager.session_scope() as session:
        return [db_manager.to_stored_event(row) for row in db_manager.get_events(session, calendar_id)]


def run_pass(executor, db_manager, calendar_id, events, config=None):
    plan = compute_sync_ops(
        events, stored_rows(db_manager, calendar_id), config=config or executor.config, now=executor.clock()
    )
    return executor.execute(plan, calendar_id, USER)


def only_row(db_manager, calendar_id):
    with db_manager.session_scope() as session:
        rows = db_manager.get_events(session, calendar_id)
        assert len(rows) == 1
        return rows[0]


def meta_for(db_manager, event_id):
    with db_manager.session_scope() as session:
        return db_manager.get_local_meta(session, event_id, USER)


class TestCreate:
    """Tests for inserting new events."""

    def test_create_writes_row_metadata_and_log(self, executor, db_manager, calendar_id, categories, make_event):
        stats = run_pass(executor, db_manager, calendar_id, [make_event()])

        assert stats.events_created == 1
        assert stats.metadata_created == 1
        assert stats.events_failed == 0

        row = only_row(db_manager, calendar_id)
        assert row.provider_event_uid == 'A1'
        assert row.start_time == '11:00:00'
        assert {alias.provider_uid for alias in row.aliases} == {'A1'}

        meta = meta_for(db_manager, row.id)
        assert meta.category_id == categories['traening']
        assert not meta.manually_set_category

        with db_manager.session_scope() as session:
            log = db_manager.get_sync_log(session, calendar_id)
        assert [entry.action for entry in log] == ['created']

    def test_unresolved_category_uses_unknown(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event(summary='Frokost')])

        row = only_row(db_manager, calendar_id)
        with db_manager.session_scope() as session:
            unknown = db_manager.get_or_create_unknown_category(session, USER)
        assert meta_for(db_manager, row.id).category_id == unknown.id
        assert unknown.is_system

    def test_feed_category_mapping_is_persisted(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event(summary='Frokost', categories='Kamp')])

        with db_manager.session_scope() as session:
            mappings = db_manager.get_category_mappings(session, USER)
        assert [(m.external_category, m.internal_category_id) for m in mappings] == [
            ('Kamp', categories['kamp'])
        ]


class TestUpdate:
    """Tests for refreshing matched events."""

    def test_second_pass_updates_without_creating(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        stats = run_pass(executor, db_manager, calendar_id, [make_event(location='Hall 2')])

        assert stats.events_created == 0
        assert stats.events_updated == 1
        assert stats.metadata_already_resolved == 1
        assert only_row(db_manager, calendar_id).location == 'Hall 2'

    def test_manual_category_preserved(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        row = only_row(db_manager, calendar_id)
        with db_manager.session_scope() as session:
            db_manager.set_manual_category(session, row.id, USER, categories['kamp'], NOW)

        stats = run_pass(executor, db_manager, calendar_id, [make_event()])

        assert stats.metadata_preserved == 1
        meta = meta_for(db_manager, row.id)
        assert meta.category_id == categories['kamp']
        assert meta.manually_set_category

    def test_expired_manual_category_reclassified(
        self, db_manager, calendar_id, categories, clock, make_event
    ):
        config = SyncConfiguration(
            manual_override_policy=ManualOverridePolicy.TIME_WINDOWED, manual_override_window_minutes=60
        )
        executor = SyncExecutor(db_manager, config, clock=clock)
        run_pass(executor, db_manager, calendar_id, [make_event()])
        row = only_row(db_manager, calendar_id)
        with db_manager.session_scope() as session:
            db_manager.set_manual_category(session, row.id, USER, categories['kamp'], NOW)

        clock.advance(hours=2)
        stats = run_pass(executor, db_manager, calendar_id, [make_event()])

        assert stats.metadata_auto_updated == 1
        meta = meta_for(db_manager, row.id)
        assert meta.category_id == categories['traening']
        assert not meta.manually_set_category

    def test_unknown_category_resolved_later(self, executor, db_manager, calendar_id, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        with db_manager.session_scope() as session:
            traening = db_manager.create_category(session, 'Træning', is_system=True)

        stats = run_pass(executor, db_manager, calendar_id, [make_event()])

        assert stats.metadata_auto_updated == 1
        row = only_row(db_manager, calendar_id)
        assert meta_for(db_manager, row.id).category_id == traening.id

    def test_changed_uid_is_reassigned_and_aliased(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event(uid='A1')])

        stats = run_pass(executor, db_manager, calendar_id, [make_event(uid='A2')])

        assert stats.events_updated == 1
        row = only_row(db_manager, calendar_id)
        assert row.provider_event_uid == 'A2'
        assert {alias.provider_uid for alias in row.aliases} == {'A1', 'A2'}

        # The old UID still finds the row
        stats = run_pass(executor, db_manager, calendar_id, [make_event(uid='A1', summary='Renamed')])
        assert stats.events_created == 0
        assert only_row(db_manager, calendar_id).title == 'Renamed'


class TestDeletion:
    """Tests for misses, soft deletes and cancellations."""

    def test_miss_keeps_updated_at(self, executor, db_manager, calendar_id, categories, clock, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        clock.advance(hours=1)

        stats = run_pass(executor, db_manager, calendar_id, [])

        assert stats.events_missed == 1
        row = only_row(db_manager, calendar_id)
        assert row.miss_count == 1
        assert row.updated_at == NOW
        assert not row.deleted

    def test_reappearing_event_resets_miss_count(
        self, executor, db_manager, calendar_id, categories, clock, make_event
    ):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        clock.advance(hours=1)
        run_pass(executor, db_manager, calendar_id, [])
        clock.advance(hours=1)

        run_pass(executor, db_manager, calendar_id, [make_event()])

        assert only_row(db_manager, calendar_id).miss_count == 0

    def test_soft_delete_after_repeated_misses(
        self, executor, db_manager, calendar_id, categories, clock, make_event
    ):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        for _ in range(3):
            clock.advance(hours=1)
            stats = run_pass(executor, db_manager, calendar_id, [])

        assert stats.events_soft_deleted == 1
        row = only_row(db_manager, calendar_id)
        assert row.deleted
        assert row.deleted_at_reason == DeletionReason.MISSING_FROM_FEED.value
        assert row.miss_count == 3

    def test_cancelled_event_deleted(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])

        stats = run_pass(executor, db_manager, calendar_id, [make_event(status='CANCELLED')])

        assert stats.events_immediately_deleted == 1
        row = only_row(db_manager, calendar_id)
        assert row.deleted
        assert row.deleted_at_reason == DeletionReason.CANCELLED.value

    def test_restore_clears_deletion(self, executor, db_manager, calendar_id, categories, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        run_pass(executor, db_manager, calendar_id, [make_event(status='CANCELLED')])

        stats = run_pass(executor, db_manager, calendar_id, [make_event()])

        assert stats.events_restored == 1
        row = only_row(db_manager, calendar_id)
        assert not row.deleted
        assert row.deleted_at is None
        assert row.deleted_at_reason is None


class TestFailuresAndReconcile:
    """Tests for per-row failure isolation and the metadata backfill."""

    def test_failed_row_does_not_abort_pass(self, executor, db_manager, calendar_id, categories, make_event):
        plan = SyncPlan(
            creates=[PlannedOperation(operation=SyncOperationType.CREATE, event=make_event())],
            updates=[PlannedOperation(
                operation=SyncOperationType.UPDATE, row_id=str(uuid4()), event=make_event(uid='GONE', summary='Gone'),
            )],
        )

        stats = executor.execute(plan, calendar_id, USER)

        assert stats.events_created == 1
        assert stats.events_updated == 0
        assert stats.events_failed == 1
        assert stats.failed_events[0].title == 'Gone'
        assert 'no longer exists' in stats.failed_events[0].error

    def test_backfill_creates_missing_metadata(self, executor, db_manager, calendar_id, categories, make_event):
        with db_manager.session_scope() as session:
            db_manager.create_event(session, calendar_id, make_event(), NOW)

        stats = executor.execute(SyncPlan(), calendar_id, USER)

        assert stats.metadata_created_during_backfill == 1
        row = only_row(db_manager, calendar_id)
        assert meta_for(db_manager, row.id).category_id == categories['traening']

    def test_backfill_resolves_unknown(self, executor, db_manager, calendar_id, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        with db_manager.session_scope() as session:
            db_manager.create_category(session, 'Træning', user_id=USER)

        stats = executor.execute(SyncPlan(), calendar_id, USER)

        assert stats.metadata_backfilled == 1

    def test_backfill_skips_deleted_rows(self, executor, db_manager, calendar_id, categories, make_event):
        with db_manager.session_scope() as session:
            row = db_manager.create_event(session, calendar_id, make_event(), NOW)
            db_manager.mark_deleted(row, DeletionReason.USER_DELETE, NOW)

        stats = executor.execute(SyncPlan(), calendar_id, USER)

        assert stats.metadata_created_during_backfill == 0

    def test_repeated_pass_with_clock_advancing(self, executor, db_manager, calendar_id, categories, clock, make_event):
        run_pass(executor, db_manager, calendar_id, [make_event()])
        clock.advance(minutes=30)

        run_pass(executor, db_manager, calendar_id, [make_event()])

        assert only_row(db_manager, calendar_id).updated_at == NOW + timedelta(minutes=30)
