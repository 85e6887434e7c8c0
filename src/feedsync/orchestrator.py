"""Request-scoped sync orchestration."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytz

from .category_resolver import DEFAULT_CATEGORY_KEYWORDS
from .config import Settings
from .database import DatabaseManager
from .errors import AuthError, InvalidRequestError, NotFoundError, SyncError, SyncInProgressError
from .executor import SyncExecutor
from .models import CalendarSyncResult, CategoryKeywords, SyncPlan, SyncStats
from .planner import compute_sync_ops
from .services import BaseFeedService, IcsFeedService

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Stages of one sync invocation."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CALENDAR_LOADED = "calendar_loaded"
    FEED_FETCHED = "feed_fetched"
    PLAN_COMPUTED = "plan_computed"
    EXECUTED = "executed"
    RESPONSE_RETURNED = "response_returned"


def error_response(error: Exception) -> Dict[str, Any]:
    return {'success': False, 'error': str(error)}


class SyncOrchestrator:
    """Authenticate, load, fetch, plan and execute one calendar sync.

    Every failure before execution aborts with no rows touched. The
    ``handle_*`` entry points never raise; they answer with
    ``{'success': False, 'error': ...}`` instead.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        feed_service: Optional[BaseFeedService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        keyword_table: Sequence[CategoryKeywords] = DEFAULT_CATEGORY_KEYWORDS
    ):
        """Initialize orchestrator.

        Args:
            settings: Application settings
            db_manager: Persistence collaborator; built from settings when omitted
            feed_service: Feed provider; an ``IcsFeedService`` when omitted
            clock: Source of the current time
            keyword_table: Keyword heuristics for category resolution
        """
        self.settings = settings
        self.config = settings.sync_config
        self.db = db_manager or DatabaseManager(settings)
        self.feed_service = feed_service or IcsFeedService(settings)
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.executor = SyncExecutor(self.db, self.config, keyword_table=keyword_table, clock=self.clock)
        self.logger = logger.getChild('orchestrator')

    def _transition(self, state: SyncState, calendar_id: Any = None) -> None:
        suffix = f" (calendar {calendar_id})" if calendar_id else ""
        self.logger.debug(f"Sync state -> {state.value}{suffix}")

    # Authentication

    def authenticate(self, authorization: Optional[str]) -> str:
        """Resolve a bearer ``Authorization`` header to a user id.

        Raises:
            AuthError: If the header is missing or the token is unknown
        """
        if not authorization:
            raise AuthError("No authorization header")
        token = authorization.strip()
        if token.lower().startswith('bearer '):
            token = token[len('bearer '):].strip()
        if not token:
            raise AuthError("Unauthorized")

        with self.db.session_scope() as session:
            user_id = self.db.resolve_access_token(session, token)
        if user_id is None:
            raise AuthError("Unauthorized")
        return user_id

    # Sync

    def _load_calendar(self, user_id: str, calendar_id: Any) -> Tuple[Any, str, str]:
        with self.db.session_scope() as session:
            calendar = self.db.get_calendar(session, calendar_id, user_id=user_id)
            if calendar is None or not calendar.enabled:
                raise NotFoundError("Calendar not found")
            return calendar.id, calendar.name, calendar.ics_url

    async def preview_calendar(self, user_id: str, calendar_id: Any) -> SyncPlan:
        """Compute the plan for a calendar without applying it."""
        key, name, url = self._load_calendar(user_id, calendar_id)
        events = await self.feed_service.fetch_events(url)
        with self.db.session_scope() as session:
            rows = [self.db.to_stored_event(row) for row in self.db.get_events(session, key)]
        return compute_sync_ops(events, rows, config=self.config, now=self.clock())

    async def sync_calendar(self, user_id: str, calendar_id: Any) -> SyncStats:
        """Run one full sync of a calendar owned by ``user_id``.

        Raises:
            NotFoundError: If the calendar is missing, disabled or not the user's
            FeedFetchError: If the feed cannot be retrieved
            ParseError: If the feed is not valid iCalendar
            SyncInProgressError: If another sync of the calendar holds the lock
        """
        key, name, url = self._load_calendar(user_id, calendar_id)
        self._transition(SyncState.CALENDAR_LOADED, key)
        self.logger.info(f"Syncing calendar '{name}' ({key}) for user {user_id}")

        events = await self.feed_service.fetch_events(url)
        self._transition(SyncState.FEED_FETCHED, key)

        now = self.clock()
        with self.db.session_scope() as session:
            lock_token = self.db.acquire_sync_lock(session, key, now, self.settings.sync_lock_ttl_seconds)
        if lock_token is None:
            raise SyncInProgressError(f"Calendar {key} is already being synced")

        try:
            with self.db.session_scope() as session:
                rows = [self.db.to_stored_event(row) for row in self.db.get_events(session, key)]

            plan = compute_sync_ops(events, rows, config=self.config, now=now)
            self._transition(SyncState.PLAN_COMPUTED, key)

            stats = self.executor.execute(plan, key, user_id, SyncStats(event_count=len(events)))
            self._transition(SyncState.EXECUTED, key)

            with self.db.session_scope() as session:
                self.db.record_calendar_sync(session, key, self.clock(), len(events))
        finally:
            with self.db.session_scope() as session:
                self.db.release_sync_lock(session, key, lock_token)

        self.logger.info(f"Sync of '{name}' finished: {stats.message}")
        return stats

    async def handle_sync_request(
        self,
        authorization: Optional[str],
        payload: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """HTTP-facing sync: ``{calendarId}`` in, stats or error out."""
        self._transition(SyncState.UNAUTHENTICATED)
        try:
            user_id = self.authenticate(authorization)
            self._transition(SyncState.AUTHENTICATED)

            calendar_id = payload.get('calendarId') if isinstance(payload, dict) else None
            if not calendar_id:
                raise InvalidRequestError("calendarId is required")

            stats = await self.sync_calendar(user_id, calendar_id)
            response = stats.to_response()
        except SyncError as e:
            self.logger.warning(f"Sync failed: {e}")
            response = error_response(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error during sync: {e}")
            response = error_response(e)

        self._transition(SyncState.RESPONSE_RETURNED)
        return response

    # Auto-sync

    async def auto_sync(self, user_id: str) -> Dict[str, Any]:
        """Sync every enabled, auto-sync calendar of the user that is due."""
        now = self.clock()
        with self.db.session_scope() as session:
            due = [
                (calendar.id, calendar.name)
                for calendar in self.db.get_due_calendars(
                    session, user_id, now, self.config.default_sync_interval_minutes
                )
            ]

        if not due:
            return {
                'success': True,
                'message': 'No calendars to sync',
                'syncedCount': 0,
                'failedCount': 0,
                'results': [],
            }

        self.logger.info(f"{len(due)} calendars need syncing for user {user_id}")
        results: List[CalendarSyncResult] = []
        for calendar_id, name in due:
            try:
                stats = await self.sync_calendar(user_id, calendar_id)
                results.append(CalendarSyncResult(
                    calendar_id=str(calendar_id), calendar_name=name, success=True,
                    event_count=stats.event_count,
                ))
            except SyncError as e:
                self.logger.error(f"Error syncing {name}: {e}")
                results.append(CalendarSyncResult(
                    calendar_id=str(calendar_id), calendar_name=name, success=False, error=str(e)
                ))
            except Exception as e:
                self.logger.exception(f"Unexpected error syncing {name}: {e}")
                results.append(CalendarSyncResult(
                    calendar_id=str(calendar_id), calendar_name=name, success=False, error=str(e)
                ))

        synced = sum(1 for result in results if result.success)
        failed = len(results) - synced
        self.logger.info(f"Auto-sync complete: {synced} successful, {failed} failed")
        return {
            'success': True,
            'message': f"Auto-sync complete: {synced} calendars synced",
            'syncedCount': synced,
            'failedCount': failed,
            'results': [result.model_dump(by_alias=True, exclude_none=True) for result in results],
        }

    async def handle_auto_sync_request(self, authorization: Optional[str]) -> Dict[str, Any]:
        """HTTP-facing auto-sync; never raises."""
        try:
            user_id = self.authenticate(authorization)
            return await self.auto_sync(user_id)
        except SyncError as e:
            self.logger.warning(f"Auto-sync failed: {e}")
            return error_response(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error during auto-sync: {e}")
            return error_response(e)
