"""
Tests for connection state, statistics and the engine registry.
"""
import asyncio

import pytest
import storedproc
from sqlalchemy.pool import NullPool
from storedproc.connection import ConnectionState, ConnectionWrapper
from storedproc.connection import create_url_from_options, dispose_all_engines
from storedproc.connection import get_engine_for_options
from storedproc.exceptions import ConnectionFailure, OperationCancelled
from storedproc.options import DatabaseOptions
from tests.fixtures.fakes import FakeCursor, FakeEngine


@pytest.fixture
def pg_options():
    return DatabaseOptions(drivername='postgresql', hostname='db', username='app',
                           password='secret', database='sales', port=5432,
                           default_schema='dbo', command_timeout=45)


class TestConnectionWrapper:

    def test_starts_closed(self, make_connection):
        cn = make_connection()
        assert cn.state is ConnectionState.CLOSED
        assert cn.dialect == 'postgresql'
        assert cn.engine.connects == 0

    def test_open_configures_driver(self, make_connection):
        cn = make_connection()
        cn.open()
        assert cn.state is ConnectionState.OPEN
        assert cn.engine.raw.autocommit is True
        assert cn.dbapi_connection is cn.engine.raw

    def test_open_and_close_are_idempotent(self, make_connection):
        cn = make_connection()
        cn.open()
        cn.open()
        assert cn.engine.connects == 1

        cn.close()
        cn.close()
        assert cn.state is ConnectionState.CLOSED
        assert cn.engine.connections[0].closed
        assert cn.engine.connections[0].commits == 1

    def test_reopen(self, make_connection):
        cn = make_connection()
        cn.open()
        cn.close()
        cn.open()
        assert cn.state is ConnectionState.OPEN
        assert cn.engine.connects == 2

    def test_dbapi_connection_requires_open(self, make_connection):
        with pytest.raises(ConnectionFailure):
            make_connection().dbapi_connection

    def test_context_manager_closes(self, make_connection):
        cn = make_connection()
        with cn:
            cn.open()
        assert cn.state is ConnectionState.CLOSED

    def test_addcall_tracks_statistics(self, make_connection):
        cn = make_connection()
        cn.open()
        cn.load_stored_proc('Touch').execute_non_query()
        cn.addcall(0.5)
        assert cn.calls == 2
        assert cn.time >= 0.5

    def test_options_supply_schema_and_timeout(self, pg_options):
        cn = ConnectionWrapper(FakeEngine(FakeCursor()), pg_options)
        assert cn.default_schema == 'dbo'
        assert cn.command_timeout == 45
        assert cn.load_stored_proc('GetUsers', prepend_default_schema=True).text == 'dbo.GetUsers'

    def test_defaults_without_options(self, make_connection):
        cn = make_connection()
        assert cn.default_schema is None
        assert cn.command_timeout == 30
        assert cn.create_command().timeout == 30

    def test_is_pooled(self, make_connection):
        cn = make_connection()
        assert cn.is_pooled
        cn.engine.pool = NullPool(creator=lambda: None)
        assert not cn.is_pooled

    def test_open_async(self, make_connection):
        cn = make_connection()
        asyncio.run(cn.open_async())
        assert cn.state is ConnectionState.OPEN

    def test_open_async_cancelled(self, make_connection):
        cn = make_connection()

        async def run():
            cancel = asyncio.Event()
            cancel.set()
            await cn.open_async(cancel)

        with pytest.raises(OperationCancelled):
            asyncio.run(run())
        assert cn.state is ConnectionState.CLOSED


class TestEngineRegistry:

    def test_url_from_options(self, pg_options):
        url = create_url_from_options(pg_options)
        assert url.drivername == 'postgresql+psycopg'
        assert url.host == 'db'
        assert url.database == 'sales'

    def test_engine_is_reused(self, pg_options, mocker):
        factory = mocker.Mock(side_effect=lambda url, **kw: mocker.Mock())
        first = get_engine_for_options(pg_options, engine_factory=factory)
        second = get_engine_for_options(pg_options, engine_factory=factory)

        assert first is second
        factory.assert_called_once()
        assert factory.call_args.kwargs['poolclass'] is NullPool

    def test_pool_settings(self, pg_options, mocker):
        factory = mocker.Mock()
        get_engine_for_options(pg_options, use_pool=True, pool_size=8,
                               pool_recycle=60, pool_timeout=5, engine_factory=factory)

        kwargs = factory.call_args.kwargs
        assert 'poolclass' not in kwargs
        assert kwargs['pool_size'] == 8
        assert kwargs['pool_recycle'] == 60
        assert kwargs['pool_timeout'] == 5

    def test_dispose_all(self, pg_options, mocker):
        engine = mocker.Mock()
        get_engine_for_options(pg_options, engine_factory=lambda url, **kw: engine)
        dispose_all_engines()
        engine.dispose.assert_called_once()

        other = mocker.Mock()
        assert get_engine_for_options(pg_options, engine_factory=lambda url, **kw: other) is other


def test_connect_returns_open_connection(pg_options, mocker):
    engine = FakeEngine(FakeCursor())
    get_engine = mocker.patch('storedproc.connection.get_engine_for_options', return_value=engine)

    cn = storedproc.connect(pg_options)

    assert isinstance(cn, ConnectionWrapper)
    assert cn.state is ConnectionState.OPEN
    assert cn.options is pg_options
    assert get_engine.call_args.kwargs['use_pool'] is False
    cn.close()


if __name__ == '__main__':
    __import__('pytest').main([__file__])
