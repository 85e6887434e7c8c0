"""Data models for feed synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, validator
from pydantic.alias_generators import to_camel
import pytz


class MatchMethod(str, Enum):
    """Tier of the matcher that produced a match."""

    PROVIDER_UID = "provider_uid"
    EXACT = "exact"
    FUZZY = "fuzzy"


class FuzzyMode(str, Enum):
    """How the fuzzy tier accepts a candidate."""

    STRICT = "strict"  # Title overlap must clear the floor on its own
    COMPOSITE = "composite"  # Composite score alone decides


class ManualOverridePolicy(str, Enum):
    """How long a manual category choice is protected from the sync."""

    PRESERVE_ALWAYS = "preserve_always"
    TIME_WINDOWED = "time_windowed"


class SyncOperationType(str, Enum):
    """Planned operation types."""

    CREATE = "create"
    UPDATE = "update"
    RESTORE = "restore"
    SOFT_DELETE = "soft_delete"
    IMMEDIATE_DELETE = "immediate_delete"
    MISS = "miss"


class SyncAction(str, Enum):
    """Actions written to the sync log."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class DeletionReason(str, Enum):
    """Values stored in ``deleted_at_reason``."""

    USER_DELETE = "user-delete"
    MISSING_FROM_FEED = "missing-from-feed"
    CANCELLED = "cancelled"


class ResolutionReason(str, Enum):
    """Which resolver step produced a category."""

    EXTERNAL_MAPPING = "external-mapping"
    EXTERNAL_NAME_EXACT = "external-name-exact"
    EXTERNAL_NAME_PARTIAL = "external-name-partial"
    KEYWORD_MATCH = "keyword-match"
    NAME_MATCH = "name-match"
    UNKNOWN = "unknown"


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    target_timezone: str = Field("Europe/Copenhagen", description="IANA zone event times are normalized to")
    grace_hours: float = Field(6, ge=0)
    max_miss_count: int = Field(3, ge=1)
    fuzzy_threshold: float = Field(0.65, ge=0, le=1)
    title_overlap_floor: float = Field(0.6, ge=0, le=1)
    time_tolerance_seconds: int = Field(300, ge=0)
    fuzzy_mode: FuzzyMode = Field(FuzzyMode.STRICT)
    respect_cancellation: bool = Field(True, description="Delete events marked STATUS:CANCELLED / METHOD:CANCEL")
    manual_override_policy: ManualOverridePolicy = Field(ManualOverridePolicy.PRESERVE_ALWAYS)
    manual_override_window_minutes: int = Field(60, ge=0)
    unknown_category_name: str = Field("Ukendt", min_length=1)
    unknown_category_color: str = Field("#9E9E9E")
    unknown_category_emoji: str = Field("❓")
    no_title_placeholder: str = Field("No title")
    default_sync_interval_minutes: int = Field(60, ge=1)
    provider: str = Field("ics")

    @validator('target_timezone')
    def validate_timezone(cls, v):
        """Ensure the target timezone is known to pytz."""
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tz(self):
        """Target timezone as a tzinfo."""
        return pytz.timezone(self.target_timezone)


class ParsedEvent(BaseModel):
    """One VEVENT normalized to the target timezone."""

    uid: str = Field(..., description="Feed UID, or a per-parse synthetic value when absent")
    uid_is_synthetic: bool = Field(False)
    recurrence_id: Optional[str] = Field(None, description="RECURRENCE-ID of an overridden instance")
    summary: str = Field(..., description="Event title")
    description: str = Field("")
    location: str = Field("")
    start: datetime = Field(..., description="Start instant in the target timezone")
    end: datetime = Field(..., description="End instant in the target timezone")
    start_date: str = Field(..., description="YYYY-MM-DD in the target timezone")
    start_time: str = Field(..., description="HH:MM:SS in the target timezone")
    end_date: str
    end_time: str
    is_all_day: bool = Field(False)
    timezone: Optional[str] = Field(None, description="Zone the feed declared for DTSTART")
    categories: List[str] = Field(default_factory=list)
    last_modified: Optional[datetime] = Field(None)
    status: Optional[str] = Field(None)
    method: Optional[str] = Field(None)

    @validator('start', 'end', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def is_cancelled(self) -> bool:
        """STATUS:CANCELLED or METHOD:CANCEL."""
        status = (self.status or '').upper()
        method = (self.method or '').upper()
        return status == 'CANCELLED' or method == 'CANCEL'

    def raw_payload(self) -> Dict[str, Any]:
        """Opaque payload persisted alongside the event row."""
        return {
            'categories': list(self.categories),
            'timezone': self.timezone,
            'status': self.status,
            'method': self.method,
        }


class StoredEvent(BaseModel):
    """Snapshot of a persisted external event, as seen by the planner."""

    id: str
    provider_event_uid: str
    known_uids: Set[str] = Field(default_factory=set, description="Every UID this row was matched under")
    recurrence_id: Optional[str] = None
    title: str
    location: Optional[str] = None
    start_date: str
    start_time: str
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    is_all_day: bool = False
    miss_count: int = 0
    deleted: bool = False
    deleted_reason: Optional[str] = None
    updated_at: datetime

    @validator('updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    def has_uid(self, uid: str) -> bool:
        return uid == self.provider_event_uid or uid in self.known_uids


class MatchResult(BaseModel):
    """Outcome of matching one fetched event against stored rows."""

    row: StoredEvent
    method: MatchMethod
    score: float = 1.0


class PlannedOperation(BaseModel):
    """One entry of a sync plan."""

    operation: SyncOperationType
    row_id: Optional[str] = None
    event: Optional[ParsedEvent] = None
    reason: str = ""
    deleted_reason: Optional[DeletionReason] = None
    match_method: Optional[MatchMethod] = None
    title: Optional[str] = None
    miss_count: Optional[int] = None

    @property
    def display_title(self) -> str:
        if self.event is not None:
            return self.event.summary
        return self.title or self.row_id or ""


class SyncPlan(BaseModel):
    """Partitioned result of ``compute_sync_ops``."""

    creates: List[PlannedOperation] = Field(default_factory=list)
    updates: List[PlannedOperation] = Field(default_factory=list)
    restores: List[PlannedOperation] = Field(default_factory=list)
    soft_deletes: List[PlannedOperation] = Field(default_factory=list)
    immediate_deletes: List[PlannedOperation] = Field(default_factory=list)
    misses: List[PlannedOperation] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            'creates': len(self.creates),
            'updates': len(self.updates),
            'restores': len(self.restores),
            'soft_deletes': len(self.soft_deletes),
            'immediate_deletes': len(self.immediate_deletes),
            'misses': len(self.misses),
        }

    def operations(self) -> List[PlannedOperation]:
        """All operations in execution order."""
        return (
            self.creates + self.updates + self.restores
            + self.soft_deletes + self.immediate_deletes + self.misses
        )


class CategoryCandidate(BaseModel):
    """An internal activity category the resolver may pick."""

    id: str
    name: str
    user_id: Optional[str] = None
    is_system: bool = False


class CategoryMappingRecord(BaseModel):
    """Persisted external category string -> internal category id."""

    external_category: str
    internal_category_id: str


class CategoryKeywords(BaseModel):
    """One row of the keyword heuristic table."""

    model_config = ConfigDict(frozen=True)

    category_name: str
    keywords: Tuple[str, ...]
    priority: int


class CategoryResolution(BaseModel):
    """Result of resolving a category for one event."""

    category_id: str
    reason: ResolutionReason
    confidence: int = 0
    matched_value: Optional[str] = None
    new_mapping: Optional[CategoryMappingRecord] = None


class FailedEvent(BaseModel):
    """A row whose mutation failed during execution."""

    title: str
    error: str


class SyncStats(BaseModel):
    """Counters produced by one sync; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_count: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_restored: int = 0
    events_soft_deleted: int = 0
    events_immediately_deleted: int = 0
    events_missed: int = 0
    metadata_created: int = 0
    metadata_preserved: int = 0
    metadata_already_resolved: int = 0
    metadata_auto_updated: int = 0
    metadata_backfilled: int = 0
    metadata_created_during_backfill: int = 0
    events_failed: int = 0
    failed_events: List[FailedEvent] = Field(default_factory=list)

    def record_failure(self, title: str, error: str) -> None:
        self.events_failed += 1
        self.failed_events.append(FailedEvent(title=title, error=error))

    @property
    def message(self) -> str:
        message = (
            f"Successfully synced {self.event_count} events. "
            f"{self.events_created} created, {self.events_updated} updated, "
            f"{self.events_restored} restored, {self.events_soft_deleted} soft-deleted, "
            f"{self.events_immediately_deleted} cancelled. "
            f"{self.metadata_preserved} manually set categories preserved."
        )
        if self.events_failed:
            message += f" WARNING: {self.events_failed} events failed to process."
        return message

    def to_response(self) -> Dict[str, Any]:
        """Success payload for the HTTP boundary."""
        payload = {'success': True}
        payload.update(self.model_dump(by_alias=True))
        payload['message'] = self.message
        return payload


class CalendarSyncResult(BaseModel):
    """Per-calendar outcome of an auto-sync run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    calendar_id: str
    calendar_name: str
    success: bool
    event_count: Optional[int] = None
    error: Optional[str] = None
