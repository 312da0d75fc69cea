"""
Database connection handling with SQLAlchemy.

This module provides:
1. The `connect()` function for creating new database connections
2. The `ConnectionWrapper` class, an open/closed connection that
   creates stored procedure commands
3. Engine creation and management through a thread-safe registry

SQLAlchemy is used for engine creation and pooling only. Commands run
directly on the raw DBAPI connection so that drivers' multiple result
sets and cancellation stay reachable.
"""
import asyncio
import atexit
import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import fields
from typing import Any, Self

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from storedproc.command import Command, load_stored_proc
from storedproc.exceptions import ConnectionFailure
from storedproc.options import DatabaseOptions
from storedproc.strategy import get_db_strategy, get_strategy
from storedproc.utils import ensure_commit, get_dialect_name, run_cancellable

from libb import load_options

__all__ = [
    'ConnectionState',
    'ConnectionWrapper',
    'connect',
    'configure_connection',
    'create_url_from_options',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()


class ConnectionState(enum.Enum):
    CLOSED = 'closed'
    OPEN = 'open'


def create_url_from_options(options: DatabaseOptions) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    return get_strategy(options.drivername).build_connection_url(options)


def get_engine_for_options(options: DatabaseOptions, use_pool: bool = False,
                           pool_size: int = 5, pool_recycle: int = 300,
                           pool_timeout: int = 30,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.
    """
    key = f'{str(options)}_{use_pool}_{pool_size}_{pool_recycle}_{pool_timeout}'

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        url = create_url_from_options(options)

        engine_kwargs: dict[str, Any] = {'echo': False}
        engine_kwargs.update(get_strategy(options.drivername).get_engine_kwargs(options))

        if not use_pool:
            engine_kwargs['poolclass'] = NullPool
        else:
            engine_kwargs['pool_size'] = pool_size
            engine_kwargs['pool_recycle'] = pool_recycle
            engine_kwargs['pool_timeout'] = pool_timeout
            engine_kwargs['max_overflow'] = 10
            engine_kwargs['pool_pre_ping'] = True
            engine_kwargs['pool_reset_on_return'] = 'rollback'

        engine_kwargs.update(kwargs)

        engine = engine_factory(url, **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')

        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in list(_engine_registry.values()):
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


def configure_connection(sa_connection: sa.engine.Connection) -> None:
    """Configure a SQLAlchemy connection with database-specific settings.
    """
    strategy = get_db_strategy(sa_connection)
    strategy.configure_connection(sa_connection.connection)


class ConnectionWrapper:
    """A connection that can be opened and closed around procedure calls.

    The wrapper holds a SQLAlchemy engine and, while open, one SQLAlchemy
    connection checked out from it. It also:
    1. Tracks call counts and execution time
    2. Supplies the default schema and command timeout from its options
    3. Creates Command objects bound to itself
    4. Supports the context manager protocol (closes on exit)
    """

    def __init__(self, engine: Engine, options: DatabaseOptions | None = None) -> None:
        """Initialize a closed connection wrapper
        """
        self.engine = engine
        self.options = options
        self.sa_connection: sa.engine.Connection | None = None
        self.calls = 0
        self.time = 0

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        """Close the connection when exiting the context manager
        """
        try:
            self.close()
            logger.debug('Closed connection via context manager')
        except Exception as e:
            logger.debug(f'Error closing connection in __exit__: {e}')

    def __repr__(self) -> str:
        return f'ConnectionWrapper(dialect={self.dialect!r}, state={self.state.value})'

    @property
    def state(self) -> ConnectionState:
        """Current state, OPEN while a SQLAlchemy connection is checked out."""
        if self.sa_connection is None or self.sa_connection.closed:
            return ConnectionState.CLOSED
        return ConnectionState.OPEN

    @property
    def dialect(self) -> str:
        """Return the dialect name ('postgresql' or 'mssql')."""
        return get_dialect_name(self.engine)

    @property
    def dbapi_connection(self) -> Any:
        """The raw driver connection of the open SQLAlchemy connection.

        Raises
            ConnectionFailure: If the connection is closed
        """
        if self.state is ConnectionState.CLOSED:
            raise ConnectionFailure('Connection is closed; open it before executing')
        return self.sa_connection.connection.driver_connection

    @property
    def default_schema(self) -> str | None:
        """Schema prepended to procedure names on request."""
        return getattr(self.options, 'default_schema', None)

    @property
    def command_timeout(self) -> int:
        """Default per-command timeout in seconds."""
        return getattr(self.options, 'command_timeout', 30)

    @property
    def is_pooled(self) -> bool:
        """Check if this connection is using SQLAlchemy's connection pooling
        """
        return not isinstance(self.engine.pool, NullPool)

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def open(self) -> None:
        """Check out a connection from the engine. No-op when already open.
        """
        if self.state is ConnectionState.OPEN:
            return
        self.sa_connection = self.engine.connect()
        configure_connection(self.sa_connection)
        logger.debug(f'Opened {self.dialect} connection')

    async def open_async(self, cancel: asyncio.Event | None = None) -> None:
        """Open the connection in a worker thread.

        When ``cancel`` is set, OperationCancelled is raised once the pending
        open has settled; the connection may then be open and should be closed
        by whoever manages it.
        """
        await run_cancellable(self.open, cancel=cancel)

    def close(self) -> None:
        """Return the connection to the engine. No-op when already closed.
        """
        if self.state is ConnectionState.CLOSED:
            return
        sa_connection, self.sa_connection = self.sa_connection, None
        ensure_commit(sa_connection)
        sa_connection.close()
        logger.debug(f'Connection closed: {self.calls} calls in {self.time:.2f}s (avg: {self.time/max(1,self.calls):.3f}s per call)')

    def create_command(self) -> Command:
        """Create an unprepared command bound to this connection."""
        return Command(self, timeout=self.command_timeout)

    def load_stored_proc(self, name: str, prepend_default_schema: bool = False,
                         timeout: int | None = None) -> Command:
        """Create a command that calls the stored procedure ``name``.
        """
        return load_stored_proc(self, name, prepend_default_schema, timeout)


@load_options(cls=DatabaseOptions)
def connect(options: DatabaseOptions | dict[str, Any] | str,
            config: Any | None = None, **kw: Any) -> ConnectionWrapper:
    """Connect to a database using SQLAlchemy for connection management

    Args:
        options: Can be:
                - DatabaseOptions object
                - String path to configuration
                - Dictionary of options
                - Options specified as keyword arguments
        config: Configuration object (for loading from config files)
        **kw: Additional keyword arguments to override options

    Returns
        An open ConnectionWrapper
    """
    if isinstance(options, DatabaseOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    else:
        options_func = load_options(cls=DatabaseOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    engine = get_engine_for_options(options, use_pool=options.use_pool,
                                    pool_size=options.pool_max_connections,
                                    pool_recycle=options.pool_max_idle_time,
                                    pool_timeout=options.pool_wait_timeout)

    cn = ConnectionWrapper(engine, options)
    cn.open()
    return cn
