"""
SQL Server-specific strategy implementation.

Calls are rendered as ``EXEC name @p = ?, ...`` and executed through
pyodbc. Output parameters travel through declared variables. Row-returning
calls switch ``NOCOUNT`` on so that row-count messages do not show up as
empty result sets ahead of the real ones.
"""
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from storedproc.exceptions import QueryError
from storedproc.strategy.base import DatabaseStrategy, register_strategy
from storedproc.types import TypeConverter, columns_from_cursor_description
from storedproc.utils import get_raw_connection

if TYPE_CHECKING:
    from storedproc.command import Parameter
    from storedproc.options import DatabaseOptions

logger = logging.getLogger(__name__)

# ODBC SQL type codes (the pyodbc.SQL_* constants) and their T-SQL names
_ODBC_TYPE_NAMES = {
    1: 'char',
    2: 'numeric',
    3: 'decimal',
    4: 'int',
    5: 'smallint',
    6: 'float',
    7: 'real',
    8: 'float',
    12: 'varchar',
    91: 'date',
    92: 'time',
    93: 'datetime2',
    -2: 'binary',
    -3: 'varbinary',
    -5: 'bigint',
    -6: 'tinyint',
    -7: 'bit',
    -8: 'nchar',
    -9: 'nvarchar',
    -11: 'uniqueidentifier',
}
_VARIABLE_TYPES = {'varchar', 'nvarchar', 'varbinary'}
_FIXED_TYPES = {'char', 'nchar', 'binary'}
_SCALED_TYPES = {'decimal', 'numeric'}


@register_strategy('mssql')
class SQLServerStrategy(DatabaseStrategy):
    """SQL Server-specific operations"""

    @property
    def dialect_name(self) -> str:
        return 'mssql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQL Server over pyodbc."""
        query = {'driver': options.driver}
        if options.appname:
            query['APP'] = options.appname

        return sa.URL.create(
            drivername='mssql+pyodbc',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Pass the login timeout through to pyodbc."""
        if options.timeout:
            return {'connect_args': {'timeout': options.timeout}}
        return {}

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for SQL Server connections."""
        return ['hostname', 'username', 'password', 'database', 'driver']

    def configure_connection(self, conn: Any) -> None:
        """Run SQL Server connections in autocommit mode."""
        raw_conn = get_raw_connection(conn)
        raw_conn.autocommit = True

    def build_call(self, target: str, parameters: Sequence['Parameter'],
                   returns_rows: bool) -> tuple[str, list[Any]]:
        """Render ``EXEC target @p = ?, ...`` with positional values.

        Output parameters are passed as ``OUTPUT`` variables declared ahead
        of the call, and a return-value parameter receives ``EXEC @rv =``.
        Their values are selected afterwards as a final one-row result set
        whose columns are named ``@name``.
        """
        declares = []
        outputs = []
        return_value = None
        for param in parameters:
            if not param.is_output:
                continue
            name = self.parameter_name(param.name)
            declare = f'@__{name} {self._declared_type(param)}'
            if param.is_input:
                declare = f'{declare} = ?'
            declares.append(declare)
            outputs.append(f'@__{name} AS [@{name}]')
            if param.is_return_value:
                return_value = name

        args = []
        for param in parameters:
            if param.is_return_value:
                continue
            name = self.parameter_name(param.name)
            if param.is_output:
                args.append(f'@{name} = @__{name} OUTPUT')
            else:
                args.append(f'@{name} = ?')

        sql = f'EXEC {target}'
        if return_value is not None:
            sql = f'EXEC @__{return_value} = {target}'
        if args:
            sql = f"{sql} {', '.join(args)}"
        if declares:
            sql = f"DECLARE {', '.join(declares)}; {sql}; SELECT {', '.join(outputs)}"
        if returns_rows:
            sql = f'SET NOCOUNT ON; {sql}'
        params = [TypeConverter.convert_value(p.value) for p in self._placeholders(parameters)]
        return sql, params

    def _placeholders(self, parameters: Sequence['Parameter']) -> list['Parameter']:
        """Parameters in the order their ``?`` markers appear in the call."""
        initialized = [p for p in parameters if p.is_output and p.is_input]
        plain = [p for p in parameters if not p.is_output]
        return initialized + plain

    def _declared_type(self, param: 'Parameter') -> str:
        """SQL type of the variable that carries an output value."""
        if param.is_return_value and param.db_type is None:
            return 'int'
        if param.db_type is None:
            return 'sql_variant'
        if isinstance(param.db_type, str):
            return self.type_name(param.db_type)
        type_name = _ODBC_TYPE_NAMES.get(param.db_type)
        if type_name is None:
            raise QueryError(f'No declared type for SQL type {param.db_type!r}; '
                             f'pass the type name as db_type')
        if type_name in _VARIABLE_TYPES:
            return f"{type_name}({param.size or 'max'})"
        if type_name in _FIXED_TYPES:
            return f'{type_name}({param.size or 1})'
        if type_name in _SCALED_TYPES:
            return f'{type_name}({param.precision or 18}, {param.scale or 0})'
        return type_name

    def is_output_result(self, cursor: Any) -> bool:
        """The output row is the result set whose columns are all ``@name``."""
        columns = columns_from_cursor_description(cursor)
        return bool(columns) and all(c.name.startswith('@') for c in columns)

    def read_outputs(self, cursor: Any) -> dict[str, Any]:
        """Skip any remaining procedure results, then read the output row."""
        while not self.is_output_result(cursor):
            if not cursor.nextset():
                logger.warning('Output parameter values were not returned')
                return {}
        return super().read_outputs(cursor)

    def apply_timeout(self, raw_conn: Any, cursor: Any, seconds: int) -> None:
        """Set the pyodbc query timeout on the connection; 0 means none."""
        raw_conn.timeout = int(seconds)

    def bind_input_sizes(self, cursor: Any, parameters: Sequence['Parameter']) -> None:
        """Forward ``db_type``/``size``/``precision``/``scale`` to pyodbc.

        ``db_type`` is a pyodbc SQL type constant such as ``pyodbc.SQL_DECIMAL``.
        Parameters with no type constant are left for the driver to infer.
        """
        placeholders = self._placeholders(parameters)
        if not any(isinstance(p.db_type, int) for p in placeholders):
            return
        sizes = []
        for param in placeholders:
            if not isinstance(param.db_type, int):
                sizes.append(None)
            else:
                sizes.append((param.db_type, param.size or param.precision or 0,
                              param.scale or 0))
        logger.debug(f'Binding input sizes: {sizes}')
        cursor.setinputsizes(sizes)
