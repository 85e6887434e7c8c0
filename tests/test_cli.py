"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from feedsync.cli import cli
from feedsync.database import DatabaseManager

from conftest import TestSettings


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env(tmp_path):
    return {'DATA_DIR': str(tmp_path), 'DATABASE_URL': f'sqlite:///{tmp_path}/cli.db'}


def test_init_db(runner, env):
    result = runner.invoke(cli, ['init-db'], env=env)

    assert result.exit_code == 0
    assert 'Database ready' in result.output


def test_add_and_list_calendars(runner, env, tmp_path):
    result = runner.invoke(
        cli, ['calendars', 'add', '-u', 'user-1', '-n', 'Team', '--url', 'webcal://example.com/t.ics'], env=env
    )
    assert result.exit_code == 0

    manager = DatabaseManager(TestSettings(data_dir=str(tmp_path), database_url=env['DATABASE_URL']))
    with manager.session_scope() as session:
        calendars = manager.list_calendars(session, 'user-1')
    assert [calendar.name for calendar in calendars] == ['Team']

    result = runner.invoke(cli, ['calendars', 'list', '-u', 'user-1'], env=env)
    assert result.exit_code == 0
    assert 'Team' in result.output


def test_disable_unknown_calendar(runner, env):
    result = runner.invoke(cli, ['calendars', 'disable', 'missing', '-u', 'user-1'], env=env)

    assert result.exit_code == 1
    assert 'not found' in result.output


def test_create_token(runner, env, tmp_path):
    result = runner.invoke(cli, ['tokens', 'create', '-u', 'user-1'], env=env)

    assert result.exit_code == 0
    assert 'only its hash is stored' in result.output


def test_purge_without_rows(runner, env):
    result = runner.invoke(
        cli, ['purge', '-c', '00000000-0000-0000-0000-000000000000', '-d', '30', '--yes'], env=env
    )

    assert result.exit_code == 0
    assert 'Purged 0 events' in result.output


def test_config_create(runner, env, tmp_path):
    path = tmp_path / 'example.env'

    result = runner.invoke(cli, ['config', 'create', '--path', str(path)], env=env)

    assert result.exit_code == 0
    assert 'SYNC_CONFIG__MAX_MISS_COUNT=3' in path.read_text()


def test_serve_uses_configured_origins(runner, env, monkeypatch):
    """The served app is built from the loaded settings."""
    import uvicorn

    served = {}
    monkeypatch.setattr(uvicorn, 'run', lambda app, **kwargs: served.update(app=app, **kwargs))
    env = dict(env, CORS_ALLOW_ORIGINS='["https://app.example"]')

    result = runner.invoke(cli, ['serve', '--port', '9000'], env=env)

    assert result.exit_code == 0
    assert served['port'] == 9000
    assert served['app'].state.settings.cors_allow_origins == ['https://app.example']
