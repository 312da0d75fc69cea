"""
Stored procedure commands and their parameters.

A Command is created from a connection, prepared as a stored procedure
call with `load_stored_proc`, given parameters with `with_param`, and then
handed to one of the executor functions, which run it exactly once and
dispose it.

    cmd = load_stored_proc(cn, 'GetUsersByStatus', prepend_default_schema=True)
    cmd.with_param('status', 'active').with_param('limit', 10)
"""
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any, Self

from storedproc.exceptions import CommandStateError, ValidationError
from storedproc.strategy import get_db_strategy
from storedproc.types import DBNull

if TYPE_CHECKING:
    from storedproc.connection import ConnectionWrapper

__all__ = [
    'Command',
    'CommandBehavior',
    'CommandType',
    'Parameter',
    'ParameterDirection',
    'load_stored_proc',
    'with_param',
]

logger = logging.getLogger(__name__)

_NOVALUE = object()


class CommandType(enum.Enum):
    TEXT = 'text'
    STORED_PROCEDURE = 'stored_procedure'


class ParameterDirection(enum.Enum):
    INPUT = 'input'
    OUTPUT = 'output'
    INPUT_OUTPUT = 'input_output'
    RETURN_VALUE = 'return_value'


class CommandBehavior(enum.IntFlag):
    """Flags describing how a row-returning command's results are consumed.
    """
    DEFAULT = 0
    SINGLE_RESULT = 1
    SINGLE_ROW = 8
    CLOSE_CONNECTION = 32


@dataclass
class Parameter:
    """A named procedure parameter.

    ``value`` is None until set; DBNull binds an explicit SQL NULL.
    ``db_type`` is provider specific: a type name for PostgreSQL (rendered
    as a cast), a pyodbc SQL type constant for SQL Server.
    """
    name: str
    value: Any = None
    direction: ParameterDirection = ParameterDirection.INPUT
    db_type: Any = None
    size: int | None = None
    precision: int | None = None
    scale: int | None = None

    @property
    def is_input(self) -> bool:
        return self.direction in {ParameterDirection.INPUT, ParameterDirection.INPUT_OUTPUT}

    @property
    def is_output(self) -> bool:
        """True for parameters whose value the call sends back."""
        return self.direction is not ParameterDirection.INPUT

    @property
    def is_return_value(self) -> bool:
        return self.direction is ParameterDirection.RETURN_VALUE


def dumpsql(func):
    """Decorator for logging procedure calls and their parameters."""
    @wraps(func)
    def wrapper(self, cursor: Any, sql: str, args: Any):
        start = time.time()
        logger.debug(f'SQL:\n{sql}\nargs: {args}')
        try:
            return func(self, cursor, sql, args)
        except Exception:
            logger.error(f'Error with procedure call:\nSQL:\n{sql}\nargs: {args}')
            raise
        finally:
            elapsed = time.time() - start
            self.connection.addcall(elapsed)
            logger.debug(f'Call time: {elapsed:.4f}s')
    return wrapper


class Command:
    """A single-use stored procedure call bound to a connection.

    The command owns the DBAPI cursor it executes on. Disposing the command
    closes that cursor; a disposed command cannot be executed again.
    """

    def __init__(self, connection: 'ConnectionWrapper', text: str = '',
                 command_type: CommandType = CommandType.TEXT,
                 timeout: int = 30) -> None:
        self.connection = connection
        self.text = text
        self.command_type = command_type
        self.timeout = timeout
        self.parameters: list[Parameter] = []
        self.disposed = False
        self._cursor = None
        self._outputs: list[Parameter] = []

    def __repr__(self) -> str:
        return (f'Command(text={self.text!r}, type={self.command_type.name}, '
                f'parameters={len(self.parameters)})')

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.dispose()

    @property
    def is_prepared(self) -> bool:
        """True once the command targets a named stored procedure."""
        return bool(self.text) and self.command_type is CommandType.STORED_PROCEDURE

    def create_parameter(self) -> Parameter:
        """Create an unattached, unnamed parameter."""
        return Parameter(name='')

    def with_param(self, name: str, value: Any = _NOVALUE, *,
                   configure: Callable[[Parameter], Any] | None = None) -> Self:
        """Fluent form of `with_param`."""
        return with_param(self, name, value, configure=configure)

    def _start(self, returns_rows: bool) -> Any:
        """Render the call, open a cursor on the connection, and run it."""
        if self.disposed:
            raise CommandStateError(f'{self!r} has already been executed and disposed')
        if not self.is_prepared:
            raise CommandStateError('Call load_stored_proc before executing the command')
        if self._cursor is not None:
            raise CommandStateError(f'{self!r} has already been executed')

        strategy = get_db_strategy(self.connection)
        sql, args = strategy.build_call(self.text, self.parameters, returns_rows)
        self._outputs = strategy.output_parameters(self.parameters, returns_rows)

        raw_conn = self.connection.dbapi_connection
        cursor = raw_conn.cursor()
        self._cursor = cursor
        strategy.apply_timeout(raw_conn, cursor, self.timeout)
        strategy.bind_input_sizes(cursor, self.parameters)
        self._run(cursor, sql, args)
        return cursor

    @dumpsql
    def _run(self, cursor: Any, sql: str, args: Any) -> None:
        cursor.execute(sql, args)

    def execute_reader(self) -> Any:
        """Execute the call and return the DBAPI cursor positioned on its first result set.
        """
        return self._start(returns_rows=True)

    def execute_non_query(self) -> int:
        """Execute the call and return the driver's affected-row count.
        """
        cursor = self._start(returns_rows=False)
        rowcount = cursor.rowcount
        self.read_output_parameters()
        return rowcount

    def is_output_result(self, cursor: Any) -> bool:
        """Check whether ``cursor`` is on the row carrying output values."""
        if not self._outputs:
            return False
        return get_db_strategy(self.connection).is_output_result(cursor)

    def read_output_parameters(self) -> None:
        """Copy the values sent back by the call into its output parameters.

        Runs after the last result set the caller wants; any result sets
        still ahead of the output values are skipped.
        """
        if not self._outputs or self._cursor is None:
            return
        values = get_db_strategy(self.connection).read_outputs(self._cursor)
        for param in self._outputs:
            key = param.name.lstrip('@').lower()
            if key in values:
                param.value = values[key]
        logger.debug(f'Read {len(values)} output values for {self.text}')

    def cancel(self) -> None:
        """Ask the server to abandon the running call, if there is one."""
        if self._cursor is None or self.disposed:
            return
        strategy = get_db_strategy(self.connection)
        strategy.cancel(self.connection.dbapi_connection, self._cursor)

    def dispose(self) -> None:
        """Close the command's cursor and mark the command as used.

        Safe to call more than once.
        """
        if self.disposed:
            return
        self.disposed = True
        cursor, self._cursor = self._cursor, None
        if cursor is not None:
            try:
                cursor.close()
            except Exception as e:
                logger.warning(f'Error closing cursor for {self!r}: {e}')


def load_stored_proc(cn: 'ConnectionWrapper', name: str, prepend_default_schema: bool,
                     timeout: int | None = None) -> Command:
    """Create a command that calls the stored procedure ``name``.

    When ``prepend_default_schema`` is set and the connection has a non-blank
    default schema, the procedure name is qualified as ``schema.name``.
    ``timeout`` defaults to the connection's configured command timeout.
    No I/O is performed.
    """
    command = cn.create_command()
    command.timeout = timeout if timeout is not None else cn.command_timeout
    if prepend_default_schema:
        schema = cn.default_schema
        if schema and schema.strip():
            name = f'{schema}.{name}'
    command.text = name
    command.command_type = CommandType.STORED_PROCEDURE
    logger.debug(f'Prepared stored procedure {name} (timeout={command.timeout}s)')
    return command


def with_param(command: Command, name: str, value: Any = _NOVALUE, *,
               configure: Callable[[Parameter], Any] | None = None) -> Command:
    """Attach a parameter to a prepared command and return the command.

    Three call shapes are supported:

    - ``with_param(cmd, 'status', 'active')`` binds a value; None binds NULL.
    - ``with_param(cmd, 'total', configure=fn)`` declares a parameter with no
      value, for output-only or type-only declarations.
    - ``with_param(cmd, 'status', Parameter(...))`` attaches a prebuilt
      parameter verbatim; ``name`` is not applied to it.

    ``configure`` is called with the new parameter before it is attached,
    so it can set the direction, type, size, or precision. It must be passed
    by keyword.

    Raises
        CommandStateError: If ``command`` was not prepared with load_stored_proc
        ValidationError: If the value is callable, or a prebuilt parameter is
            combined with ``configure``
    """
    if not command.is_prepared:
        raise CommandStateError('Call load_stored_proc before using with_param')
    if callable(value):
        raise ValidationError(f'Value for {name} is callable; pass it as configure=')

    if isinstance(value, Parameter):
        if configure is not None:
            raise ValidationError(f'configure cannot be applied to the prebuilt parameter {value.name}')
        command.parameters.append(value)
        return command

    param = command.create_parameter()
    param.name = name
    if value is not _NOVALUE:
        param.value = DBNull if value is None else value
    if configure is not None:
        configure(param)
    command.parameters.append(param)
    return command
