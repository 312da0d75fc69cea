"""
Execution of prepared stored procedure commands.

Each function consumes one Command: it opens the connection when asked
to manage it, runs the call, and always disposes the command afterward.
A managed connection is closed on every exit path. Failures from open,
execute, or the result handler propagate unchanged; a failure during
cleanup is logged and never replaces them.

    def handle(results):
        users = results.read_to_list(User)
        results.next_result()
        total = results.read_to_value(int)

    cmd = cn.load_stored_proc('GetUsersByStatus').with_param('status', 'active')
    execute_stored_proc(cmd, handle)
"""
import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from storedproc.command import Command, CommandBehavior
from storedproc.connection import ConnectionState, ConnectionWrapper
from storedproc.exceptions import ValidationError
from storedproc.mapper import ResultMapper
from storedproc.utils import run_cancellable

__all__ = [
    'execute_stored_proc',
    'execute_stored_proc_async',
    'execute_non_query',
    'execute_non_query_async',
]

logger = logging.getLogger(__name__)

ResultHandler = Callable[[ResultMapper], Any]


def _closes_connection(behavior: CommandBehavior, manage_connection: bool) -> bool:
    return manage_connection or bool(behavior & CommandBehavior.CLOSE_CONNECTION)


@contextmanager
def _execution_scope(command: Command, close_connection: bool) -> Iterator[ConnectionWrapper]:
    """Dispose the command and optionally close its connection on exit.
    """
    cn = command.connection
    try:
        yield cn
    except BaseException:
        command.dispose()
        if close_connection:
            try:
                cn.close()
            except Exception as e:
                logger.warning(f'Error closing connection after failed call: {e}')
        raise
    command.dispose()
    if close_connection:
        cn.close()


def _require_handler(handle_results: ResultHandler | None) -> None:
    if handle_results is None:
        raise ValidationError('handle_results is required')


def execute_stored_proc(command: Command, handle_results: ResultHandler,
                        behavior: CommandBehavior = CommandBehavior.DEFAULT,
                        manage_connection: bool = True) -> None:
    """Execute ``command`` and pass its results to ``handle_results``.

    ``handle_results`` receives a ResultMapper and must consume everything it
    needs before returning; the cursor is closed afterward. Output parameter
    values are read once the handler returns.

    Args:
        command: Prepared command; disposed when the call finishes
        handle_results: Callback invoked once with the ResultMapper
        behavior: CommandBehavior flags for reading the results
        manage_connection: Open the connection if closed, and close it on exit

    Raises
        ValidationError: If ``handle_results`` is None
    """
    _require_handler(handle_results)
    logger.debug(f'Executing {command!r}')
    with _execution_scope(command, _closes_connection(behavior, manage_connection)) as cn:
        if manage_connection and cn.state is ConnectionState.CLOSED:
            cn.open()
        cursor = command.execute_reader()
        handle_results(ResultMapper(cursor, behavior, command.is_output_result))
        command.read_output_parameters()


async def execute_stored_proc_async(command: Command, handle_results: ResultHandler,
                                    behavior: CommandBehavior = CommandBehavior.DEFAULT,
                                    cancel: asyncio.Event | None = None,
                                    manage_connection: bool = True) -> None:
    """Asynchronous `execute_stored_proc`.

    Opening and executing run in a worker thread. Setting ``cancel`` during
    either step sends a driver cancel for a running call and raises
    OperationCancelled after the same cleanup. The handler itself runs
    synchronously on the event loop and is not affected by ``cancel``.
    """
    _require_handler(handle_results)
    logger.debug(f'Executing {command!r} (async)')
    with _execution_scope(command, _closes_connection(behavior, manage_connection)) as cn:
        if manage_connection and cn.state is ConnectionState.CLOSED:
            await cn.open_async(cancel)
        cursor = await run_cancellable(command.execute_reader, cancel=cancel,
                                       on_cancel=command.cancel)
        handle_results(ResultMapper(cursor, behavior, command.is_output_result))
        await run_cancellable(command.read_output_parameters, cancel=cancel,
                              on_cancel=command.cancel)


def execute_non_query(command: Command,
                      behavior: CommandBehavior = CommandBehavior.DEFAULT,
                      manage_connection: bool = True) -> int:
    """Execute ``command`` and return the number of affected rows.

    Returns the driver's row count, which is -1 when the driver does not
    report one. Both opening and closing the connection are gated on
    ``manage_connection``.
    """
    rows_affected = -1
    logger.debug(f'Executing non-query {command!r}')
    with _execution_scope(command, _closes_connection(behavior, manage_connection)) as cn:
        if manage_connection and cn.state is ConnectionState.CLOSED:
            cn.open()
        rows_affected = command.execute_non_query()
    return rows_affected


async def execute_non_query_async(command: Command,
                                  behavior: CommandBehavior = CommandBehavior.DEFAULT,
                                  cancel: asyncio.Event | None = None,
                                  manage_connection: bool = True) -> int:
    """Asynchronous `execute_non_query`, cancellable during open and execute.
    """
    rows_affected = -1
    logger.debug(f'Executing non-query {command!r} (async)')
    with _execution_scope(command, _closes_connection(behavior, manage_connection)) as cn:
        if manage_connection and cn.state is ConnectionState.CLOSED:
            await cn.open_async(cancel)
        rows_affected = await run_cancellable(command.execute_non_query, cancel=cancel,
                                              on_cancel=command.cancel)
    return rows_affected
