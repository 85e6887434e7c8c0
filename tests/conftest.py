from datetime import datetime, timedelta

import httpx
import pytest
import pytz
from pydantic_settings import SettingsConfigDict
from tenacity import wait_none

from feedsync.config import Settings
from feedsync.database import DatabaseManager
from feedsync.ics_parser import IcsParser
from feedsync.models import StoredEvent
from feedsync.orchestrator import SyncOrchestrator
from feedsync.services import IcsFeedService

COPENHAGEN = pytz.timezone('Europe/Copenhagen')
NOW = datetime(2024, 2, 28, 12, 0, tzinfo=pytz.UTC)
USER = 'user-1'


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def build_ics(*vevents, method=None):
    lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//feedsync tests//EN']
    if method:
        lines.append(f'METHOD:{method}')
    for vevent in vevents:
        lines.append(vevent.strip())
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'


def vevent(uid='A1', summary='Training', start='20240301T100000Z', end='20240301T113000Z', **extra):
    lines = ['BEGIN:VEVENT']
    if uid:
        lines.append(f'UID:{uid}')
    lines.append(f'SUMMARY:{summary}')
    lines.append(f'DTSTART:{start}' if ':' not in start and ';' not in start else f'DTSTART{start}')
    if end:
        lines.append(f'DTEND:{end}' if ':' not in end and ';' not in end else f'DTEND{end}')
    for key, value in extra.items():
        lines.append(f"{key.replace('_', '-').upper()}:{value}")
    lines.append('END:VEVENT')
    return '\r\n'.join(lines)


@pytest.fixture
def settings(tmp_path):
    return TestSettings(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db'
    )


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def feed():
    """Mutable feed served by a mock HTTP transport."""
    state = {'body': build_ics(vevent()), 'status': 200, 'requests': []}

    def handler(request):
        state['requests'].append(request)
        return httpx.Response(state['status'], text=state['body'])

    state['transport'] = httpx.MockTransport(handler)
    return state


@pytest.fixture
def feed_service(settings, feed):
    return IcsFeedService(settings, transport=feed['transport'], wait=wait_none())


@pytest.fixture
def orchestrator(settings, db_manager, feed_service, clock):
    return SyncOrchestrator(settings, db_manager=db_manager, feed_service=feed_service, clock=clock)


@pytest.fixture
def calendar_id(db_manager):
    with db_manager.session_scope() as session:
        calendar = db_manager.create_calendar(session, USER, 'Team', 'webcal://example.com/team.ics')
        return calendar.id


@pytest.fixture
def token(db_manager):
    with db_manager.session_scope() as session:
        return db_manager.create_access_token(session, USER)


@pytest.fixture
def make_event():
    parser = IcsParser()

    def factory(uid='A1', summary='Training', start='20240301T100000Z', end='20240301T113000Z', **extra):
        return parser.parse(build_ics(vevent(uid, summary, start, end, **extra)))[0]

    return factory


@pytest.fixture
def make_stored():
    def factory(**overrides):
        values = dict(
            id='row-1',
            provider_event_uid='A1',
            known_uids={'A1'},
            title='Training',
            location='',
            start_date='2024-03-01',
            start_time='11:00:00',
            end_date='2024-03-01',
            end_time='12:30:00',
            updated_at=NOW,
        )
        values.update(overrides)
        return StoredEvent(**values)

    return factory


@pytest.fixture
def ics():
    return build_ics


@pytest.fixture
def vevent_text():
    return vevent
