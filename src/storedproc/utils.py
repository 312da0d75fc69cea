"""Low-level helpers with no internal dependencies beyond exceptions.

These utilities work with any connection type (ConnectionWrapper,
SQLAlchemy connections, raw DBAPI connections).
"""
import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from storedproc.exceptions import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')


def get_dialect_name(obj: Any) -> str:
    """Get dialect name for a database connection or engine.
    """
    if hasattr(obj, 'dialect'):
        dialect = obj.dialect
        if isinstance(dialect, str):
            return dialect.lower()
        return str(dialect.name).lower()

    if hasattr(obj, 'engine') and hasattr(obj.engine, 'dialect'):
        return str(obj.engine.dialect.name).lower()

    type_name = f'{type(obj).__module__}.{type(obj).__name__}'
    if 'psycopg' in type_name:
        return 'postgresql'
    if 'pyodbc' in type_name:
        return 'mssql'

    raise AttributeError(f'Cannot determine dialect for {type(obj)}')


def get_raw_connection(connection: Any) -> Any:
    """Extract the raw DBAPI connection from a wrapper."""
    raw_conn = connection
    if hasattr(connection, 'driver_connection'):
        raw_conn = connection.driver_connection
    return raw_conn


def ensure_commit(connection: Any) -> None:
    """Force a commit on any database connection if it's not in auto-commit mode.

    Works safely even if the connection is already in auto-commit mode.
    """
    if hasattr(connection, 'commit'):
        try:
            connection.commit()
            return
        except Exception as e:
            logger.debug(f'Could not commit transaction: {e}')

    if hasattr(connection, 'driver_connection') and hasattr(connection.driver_connection, 'commit'):
        try:
            connection.driver_connection.commit()
        except Exception as e:
            logger.debug(f'Could not commit driver_connection transaction: {e}')


async def _settle(work: asyncio.Future, on_cancel: Callable[[], Any] | None) -> None:
    """Interrupt an abandoned worker call and wait until its thread is done.
    """
    if on_cancel is not None:
        try:
            on_cancel()
        except Exception as e:
            logger.warning(f'Cancel hook failed: {e}')
    try:
        await work
    except Exception as e:
        logger.debug(f'Cancelled call finished with {e!r}')


async def run_cancellable(func: Callable[..., T], *args: Any,
                          cancel: asyncio.Event | None = None,
                          on_cancel: Callable[[], Any] | None = None) -> T:
    """Run a blocking call in a worker thread and await it.

    When ``cancel`` is set before the call completes, ``on_cancel`` is invoked
    (typically a driver-level statement cancel), the worker thread is allowed
    to finish so the connection is not used concurrently, and
    OperationCancelled is raised. Task cancellation follows the same path and
    re-raises asyncio.CancelledError.
    """
    name = getattr(func, '__qualname__', repr(func))
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f'{name} cancelled before it started')

    work = asyncio.ensure_future(asyncio.to_thread(func, *args))
    waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    try:
        pending = {work} if waiter is None else {work, waiter}
        done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _settle(work, on_cancel)
        raise
    finally:
        if waiter is not None and not waiter.done():
            waiter.cancel()

    if work in done:
        return work.result()

    logger.debug(f'Cancelling {name}')
    await _settle(work, on_cancel)
    raise OperationCancelled(f'{name} was cancelled')
