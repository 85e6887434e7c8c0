"""Database models and operations for feed synchronization state."""

import hashlib
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, JSON,
    ForeignKey, Index, UniqueConstraint, or_, update
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import DeletionReason, ParsedEvent, StoredEvent, SyncAction

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def as_uuid(value: Any) -> Optional[UUID]:
    """Coerce an identifier to UUID, or None when it is not one."""
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and loaded back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value
        return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


class ExternalCalendarDB(Base):
    """A user's subscription to one ICS feed."""

    __tablename__ = 'external_calendars'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    ics_url = Column(String(2000), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_interval_minutes = Column(Integer, nullable=True)
    last_fetched = Column(UTCDateTime(), nullable=True)
    event_count = Column(Integer, nullable=False, default=0)

    # Advisory lock lease
    sync_lock_token = Column(String(64), nullable=True)
    sync_lock_expires_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_external_calendar_user_enabled', 'user_id', 'enabled'),
    )


class ExternalEventDB(Base):
    """Canonical stored representation of one feed-sourced event."""

    __tablename__ = 'events_external'

    id = Column(GUID(), primary_key=True, default=uuid4)
    provider = Column(String(50), nullable=False, default='ics')
    provider_event_uid = Column(String(1000), nullable=False)
    recurrence_id = Column(String(100), nullable=True)
    provider_calendar_id = Column(GUID(), ForeignKey('external_calendars.id'), nullable=False)

    title = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1000), nullable=True)
    start_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    start_time = Column(String(8), nullable=False)  # HH:MM:SS
    end_date = Column(String(10), nullable=True)
    end_time = Column(String(8), nullable=True)
    is_all_day = Column(Boolean, nullable=False, default=False)

    external_last_modified = Column(UTCDateTime(), nullable=True)
    fetched_at = Column(UTCDateTime(), nullable=True)
    raw_payload = Column(JSON, nullable=True)

    miss_count = Column(Integer, nullable=False, default=0)
    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(UTCDateTime(), nullable=True)
    deleted_at_reason = Column(String(50), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    aliases = relationship("ExternalEventMappingDB", back_populates="event", lazy="selectin")

    __table_args__ = (
        Index('idx_event_external_calendar', 'provider_calendar_id'),
        Index('idx_event_external_calendar_deleted', 'provider_calendar_id', 'deleted'),
        Index('idx_event_external_uid', 'provider_event_uid'),
    )


class ExternalEventMappingDB(Base):
    """Every provider UID an external event has been matched under."""

    __tablename__ = 'external_event_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    external_event_id = Column(GUID(), ForeignKey('events_external.id'), nullable=False)
    provider = Column(String(50), nullable=False, default='ics')
    provider_uid = Column(String(1000), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    event = relationship("ExternalEventDB", back_populates="aliases")

    __table_args__ = (
        UniqueConstraint('external_event_id', 'provider_uid', name='uq_external_event_alias'),
        Index('idx_external_event_alias_uid', 'provider_uid'),
    )


class EventLocalMetaDB(Base):
    """Per-user annotation of an external event."""

    __tablename__ = 'events_local_meta'

    id = Column(GUID(), primary_key=True, default=uuid4)
    external_event_id = Column(GUID(), ForeignKey('events_external.id'), nullable=False)
    user_id = Column(String(255), nullable=False)
    category_id = Column(GUID(), ForeignKey('activity_categories.id'), nullable=True)
    manually_set_category = Column(Boolean, nullable=False, default=False)
    category_updated_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('external_event_id', 'user_id', name='uq_event_local_meta_user'),
        Index('idx_event_local_meta_user', 'user_id'),
    )


class ActivityCategoryDB(Base):
    """Internal activity category; ``user_id`` is NULL for system categories."""

    __tablename__ = 'activity_categories'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    color = Column(String(20), nullable=True)
    emoji = Column(String(20), nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)


class CategoryMappingDB(Base):
    """External category string -> internal category, per user."""

    __tablename__ = 'category_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    external_category = Column(String(255), nullable=False)
    internal_category_id = Column(GUID(), ForeignKey('activity_categories.id'), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'external_category', name='uq_category_mapping_user_external'),
    )


class EventSyncLogDB(Base):
    """Append-only audit record of one mutation."""

    __tablename__ = 'event_sync_log'

    id = Column(GUID(), primary_key=True, default=uuid4)
    # No foreign key: log rows outlive purged events
    external_event_id = Column(GUID(), nullable=True)
    calendar_id = Column(GUID(), nullable=False)
    user_id = Column(String(255), nullable=False)
    action = Column(String(20), nullable=False)
    details = Column(JSON, nullable=True)
    timestamp = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_event_sync_log_calendar', 'calendar_id', 'timestamp'),
    )


class AccessTokenDB(Base):
    """Bearer credential, stored as a SHA-256 hash."""

    __tablename__ = 'access_tokens'

    id = Column(GUID(), primary_key=True, default=uuid4)
    token_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False, index=True)
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


class DatabaseManager:
    """Persistence collaborator for the sync engine.

    Methods add and flush; committing is left to ``session_scope``.
    """

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Calendars

    def create_calendar(
        self,
        session: Session,
        user_id: str,
        name: str,
        ics_url: str,
        sync_interval_minutes: Optional[int] = None,
        auto_sync_enabled: bool = True
    ) -> ExternalCalendarDB:
        """Register a feed subscription for a user."""
        calendar = ExternalCalendarDB(
            user_id=user_id,
            name=name,
            ics_url=ics_url,
            sync_interval_minutes=sync_interval_minutes,
            auto_sync_enabled=auto_sync_enabled,
        )
        session.add(calendar)
        session.flush()
        return calendar

    def get_calendar(
        self,
        session: Session,
        calendar_id: Any,
        user_id: Optional[str] = None
    ) -> Optional[ExternalCalendarDB]:
        """Get calendar by id, optionally restricted to its owner.

        Args:
            session: Database session
            calendar_id: Calendar id (UUID or its string form)
            user_id: Owning user; when given, other users' calendars are not returned

        Returns:
            Calendar or None if not found
        """
        key = as_uuid(calendar_id)
        if key is None:
            return None
        query = session.query(ExternalCalendarDB).filter(ExternalCalendarDB.id == key)
        if user_id is not None:
            query = query.filter(ExternalCalendarDB.user_id == user_id)
        return query.first()

    def list_calendars(self, session: Session, user_id: str) -> List[ExternalCalendarDB]:
        return (
            session.query(ExternalCalendarDB)
            .filter(ExternalCalendarDB.user_id == user_id)
            .order_by(ExternalCalendarDB.created_at)
            .all()
        )

    def get_due_calendars(
        self,
        session: Session,
        user_id: str,
        now: datetime,
        default_interval_minutes: int = 60
    ) -> List[ExternalCalendarDB]:
        """Enabled, auto-sync calendars never fetched or past their interval."""
        candidates = (
            session.query(ExternalCalendarDB)
            .filter(
                ExternalCalendarDB.user_id == user_id,
                ExternalCalendarDB.enabled.is_(True),
                ExternalCalendarDB.auto_sync_enabled.is_(True),
            )
            .order_by(ExternalCalendarDB.created_at)
            .all()
        )
        due = []
        for calendar in candidates:
            if calendar.last_fetched is None:
                due.append(calendar)
                continue
            interval = calendar.sync_interval_minutes or default_interval_minutes
            if now - calendar.last_fetched >= timedelta(minutes=interval):
                due.append(calendar)
        return due

    def record_calendar_sync(
        self,
        session: Session,
        calendar_id: Any,
        fetched_at: datetime,
        event_count: int
    ) -> None:
        calendar = self.get_calendar(session, calendar_id)
        if calendar is None:
            return
        calendar.last_fetched = fetched_at
        calendar.event_count = event_count
        calendar.updated_at = fetched_at
        session.flush()

    def acquire_sync_lock(
        self,
        session: Session,
        calendar_id: Any,
        now: datetime,
        ttl_seconds: int
    ) -> Optional[str]:
        """Take the calendar's sync lease with a conditional UPDATE.

        Returns:
            Lease token, or None when another holder's lease is still live
        """
        token = secrets.token_hex(16)
        result = session.execute(
            update(ExternalCalendarDB)
            .where(
                ExternalCalendarDB.id == as_uuid(calendar_id),
                or_(
                    ExternalCalendarDB.sync_lock_token.is_(None),
                    ExternalCalendarDB.sync_lock_expires_at < now,
                ),
            )
            .values(
                sync_lock_token=token,
                sync_lock_expires_at=now + timedelta(seconds=ttl_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return token

    def release_sync_lock(self, session: Session, calendar_id: Any, token: str) -> None:
        session.execute(
            update(ExternalCalendarDB)
            .where(
                ExternalCalendarDB.id == as_uuid(calendar_id),
                ExternalCalendarDB.sync_lock_token == token,
            )
            .values(sync_lock_token=None, sync_lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )

    # Events

    def get_events(
        self,
        session: Session,
        calendar_id: Any,
        include_deleted: bool = True
    ) -> List[ExternalEventDB]:
        query = session.query(ExternalEventDB).filter(
            ExternalEventDB.provider_calendar_id == as_uuid(calendar_id)
        )
        if not include_deleted:
            query = query.filter(ExternalEventDB.deleted.is_(False))
        return query.order_by(ExternalEventDB.created_at).all()

    def get_event(self, session: Session, event_id: Any) -> Optional[ExternalEventDB]:
        key = as_uuid(event_id)
        if key is None:
            return None
        return session.get(ExternalEventDB, key)

    def to_stored_event(self, row: ExternalEventDB) -> StoredEvent:
        """Snapshot a row for the planner."""
        return StoredEvent(
            id=str(row.id),
            provider_event_uid=row.provider_event_uid,
            known_uids={alias.provider_uid for alias in row.aliases},
            recurrence_id=row.recurrence_id,
            title=row.title,
            location=row.location,
            start_date=row.start_date,
            start_time=row.start_time,
            end_date=row.end_date,
            end_time=row.end_time,
            is_all_day=row.is_all_day,
            miss_count=row.miss_count or 0,
            deleted=row.deleted,
            deleted_reason=row.deleted_at_reason,
            updated_at=row.updated_at,
        )

    def create_event(
        self,
        session: Session,
        calendar_id: Any,
        event: ParsedEvent,
        now: datetime,
        provider: str = 'ics'
    ) -> ExternalEventDB:
        """Insert an event row from a parsed feed event."""
        row = ExternalEventDB(
            provider=provider,
            provider_event_uid=event.uid,
            provider_calendar_id=as_uuid(calendar_id),
            miss_count=0,
            deleted=False,
            created_at=now,
        )
        self.apply_event_fields(row, event, now)
        session.add(row)
        session.flush()
        if not event.uid_is_synthetic:
            self.add_uid_alias(session, row, event.uid, provider)
        return row

    def apply_event_fields(self, row: ExternalEventDB, event: ParsedEvent, now: datetime) -> None:
        """Copy feed fields onto a row and mark it seen."""
        row.title = event.summary
        row.description = event.description
        row.location = event.location
        row.recurrence_id = event.recurrence_id
        row.start_date = event.start_date
        row.start_time = event.start_time
        row.end_date = event.end_date
        row.end_time = event.end_time
        row.is_all_day = event.is_all_day
        row.external_last_modified = event.last_modified
        row.raw_payload = event.raw_payload()
        row.fetched_at = now
        row.updated_at = now
        row.miss_count = 0

    def add_uid_alias(
        self,
        session: Session,
        row: ExternalEventDB,
        uid: str,
        provider: str = 'ics'
    ) -> bool:
        """Record a UID the row was matched under; False if already known."""
        if any(alias.provider_uid == uid for alias in row.aliases):
            return False
        alias = ExternalEventMappingDB(external_event_id=row.id, provider=provider, provider_uid=uid)
        session.add(alias)
        row.aliases.append(alias)
        session.flush()
        return True

    def mark_deleted(
        self,
        row: ExternalEventDB,
        reason: DeletionReason,
        now: datetime
    ) -> None:
        row.deleted = True
        row.deleted_at = now
        row.deleted_at_reason = reason.value
        row.updated_at = now

    def clear_deleted(self, row: ExternalEventDB) -> None:
        row.deleted = False
        row.deleted_at = None
        row.deleted_at_reason = None

    def purge_deleted_events(
        self,
        session: Session,
        calendar_id: Any,
        older_than: datetime
    ) -> int:
        """Physically remove soft-deleted rows deleted before ``older_than``.

        Metadata and UID aliases go with their event; the sync log is kept.
        """
        rows = (
            session.query(ExternalEventDB)
            .filter(
                ExternalEventDB.provider_calendar_id == as_uuid(calendar_id),
                ExternalEventDB.deleted.is_(True),
                ExternalEventDB.deleted_at < older_than,
            )
            .all()
        )
        ids = [row.id for row in rows]
        if not ids:
            return 0
        session.query(EventLocalMetaDB).filter(
            EventLocalMetaDB.external_event_id.in_(ids)
        ).delete(synchronize_session=False)
        session.query(ExternalEventMappingDB).filter(
            ExternalEventMappingDB.external_event_id.in_(ids)
        ).delete(synchronize_session=False)
        session.query(ExternalEventDB).filter(
            ExternalEventDB.id.in_(ids)
        ).delete(synchronize_session=False)
        return len(ids)

    # Local metadata

    def get_local_meta(
        self,
        session: Session,
        event_id: Any,
        user_id: str
    ) -> Optional[EventLocalMetaDB]:
        return (
            session.query(EventLocalMetaDB)
            .filter(
                EventLocalMetaDB.external_event_id == as_uuid(event_id),
                EventLocalMetaDB.user_id == user_id,
            )
            .first()
        )

    def get_local_meta_for_calendar(
        self,
        session: Session,
        calendar_id: Any,
        user_id: str
    ) -> Dict[UUID, EventLocalMetaDB]:
        rows = (
            session.query(EventLocalMetaDB)
            .join(ExternalEventDB, ExternalEventDB.id == EventLocalMetaDB.external_event_id)
            .filter(
                ExternalEventDB.provider_calendar_id == as_uuid(calendar_id),
                EventLocalMetaDB.user_id == user_id,
            )
            .all()
        )
        return {row.external_event_id: row for row in rows}

    def create_local_meta(
        self,
        session: Session,
        event_id: Any,
        user_id: str,
        category_id: Any,
        now: datetime
    ) -> EventLocalMetaDB:
        """Insert metadata; automated inserts are never manual."""
        meta = EventLocalMetaDB(
            external_event_id=as_uuid(event_id),
            user_id=user_id,
            category_id=as_uuid(category_id),
            manually_set_category=False,
            category_updated_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(meta)
        session.flush()
        return meta

    def set_manual_category(
        self,
        session: Session,
        event_id: Any,
        user_id: str,
        category_id: Any,
        now: datetime
    ) -> EventLocalMetaDB:
        """User-initiated category choice; protected from the sync."""
        meta = self.get_local_meta(session, event_id, user_id)
        if meta is None:
            meta = self.create_local_meta(session, event_id, user_id, category_id, now)
        meta.category_id = as_uuid(category_id)
        meta.manually_set_category = True
        meta.category_updated_at = now
        meta.updated_at = now
        session.flush()
        return meta

    # Categories

    def create_category(
        self,
        session: Session,
        name: str,
        user_id: Optional[str] = None,
        is_system: bool = False,
        color: Optional[str] = None,
        emoji: Optional[str] = None
    ) -> ActivityCategoryDB:
        category = ActivityCategoryDB(
            name=name, user_id=user_id, is_system=is_system, color=color, emoji=emoji
        )
        session.add(category)
        session.flush()
        return category

    def get_categories(self, session: Session, user_id: str) -> List[ActivityCategoryDB]:
        """The user's own categories plus system categories."""
        return (
            session.query(ActivityCategoryDB)
            .filter(or_(ActivityCategoryDB.user_id == user_id, ActivityCategoryDB.is_system.is_(True)))
            .order_by(ActivityCategoryDB.created_at)
            .all()
        )

    def get_or_create_unknown_category(
        self,
        session: Session,
        user_id: str,
        name: str = 'Ukendt',
        color: Optional[str] = None,
        emoji: Optional[str] = None
    ) -> ActivityCategoryDB:
        """Find the fallback category by case-insensitive name prefix.

        System rows win over per-user duplicates, oldest first. When none
        exists a single system-wide row is created.
        """
        existing = (
            session.query(ActivityCategoryDB)
            .filter(
                ActivityCategoryDB.name.ilike(f"{name}%"),
                or_(ActivityCategoryDB.user_id == user_id, ActivityCategoryDB.is_system.is_(True)),
            )
            .order_by(ActivityCategoryDB.is_system.desc(), ActivityCategoryDB.created_at.asc())
            .first()
        )
        if existing is not None:
            return existing
        return self.create_category(session, name, user_id=None, is_system=True, color=color, emoji=emoji)

    # Category mappings

    def get_category_mappings(self, session: Session, user_id: str) -> List[CategoryMappingDB]:
        return (
            session.query(CategoryMappingDB)
            .filter(CategoryMappingDB.user_id == user_id)
            .all()
        )

    def save_category_mapping(
        self,
        session: Session,
        user_id: str,
        external_category: str,
        internal_category_id: Any,
        now: Optional[datetime] = None
    ) -> CategoryMappingDB:
        """Insert or update the mapping for an external category string."""
        now = now or utcnow()
        mapping = (
            session.query(CategoryMappingDB)
            .filter(
                CategoryMappingDB.user_id == user_id,
                CategoryMappingDB.external_category == external_category,
            )
            .first()
        )
        if mapping is None:
            mapping = CategoryMappingDB(
                user_id=user_id,
                external_category=external_category,
                internal_category_id=as_uuid(internal_category_id),
                created_at=now,
                updated_at=now,
            )
            session.add(mapping)
        else:
            mapping.internal_category_id = as_uuid(internal_category_id)
            mapping.updated_at = now
        session.flush()
        return mapping

    # Audit log

    def log_sync_action(
        self,
        session: Session,
        event_id: Any,
        calendar_id: Any,
        user_id: str,
        action: SyncAction,
        details: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> EventSyncLogDB:
        entry = EventSyncLogDB(
            external_event_id=as_uuid(event_id),
            calendar_id=as_uuid(calendar_id),
            user_id=user_id,
            action=action.value,
            details=details,
            timestamp=now or utcnow(),
        )
        session.add(entry)
        session.flush()
        return entry

    def get_sync_log(
        self,
        session: Session,
        calendar_id: Any,
        limit: int = 50
    ) -> List[EventSyncLogDB]:
        return (
            session.query(EventSyncLogDB)
            .filter(EventSyncLogDB.calendar_id == as_uuid(calendar_id))
            .order_by(EventSyncLogDB.timestamp.desc())
            .limit(limit)
            .all()
        )

    # Access tokens

    def create_access_token(self, session: Session, user_id: str) -> str:
        """Issue a bearer token; only its hash is stored."""
        token = secrets.token_urlsafe(32)
        session.add(AccessTokenDB(token_hash=hash_token(token), user_id=user_id))
        session.flush()
        return token

    def resolve_access_token(self, session: Session, token: str) -> Optional[str]:
        record = (
            session.query(AccessTokenDB)
            .filter(AccessTokenDB.token_hash == hash_token(token), AccessTokenDB.revoked.is_(False))
            .first()
        )
        return record.user_id if record else None

    def revoke_access_token(self, session: Session, token: str) -> bool:
        record = (
            session.query(AccessTokenDB)
            .filter(AccessTokenDB.token_hash == hash_token(token))
            .first()
        )
        if record is None:
            return False
        record.revoked = True
        session.flush()
        return True
