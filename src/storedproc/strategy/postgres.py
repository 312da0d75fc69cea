"""
PostgreSQL-specific strategy implementation.

PostgreSQL has no result-set-returning procedures; row-returning routines
are set-returning functions, called with ``select * from name(...)``.
Routines that return nothing are called with ``call name(...)``. Both use
named notation (``p => value``) so attachment order does not have to match
the routine signature.
"""
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from storedproc.strategy.base import DatabaseStrategy, register_strategy
from storedproc.types import TypeConverter
from storedproc.utils import get_raw_connection

if TYPE_CHECKING:
    from storedproc.command import Parameter
    from storedproc.options import DatabaseOptions

logger = logging.getLogger(__name__)


@register_strategy('postgresql')
class PostgresStrategy(DatabaseStrategy):
    """PostgreSQL-specific operations.
    """

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for PostgreSQL."""
        return 'postgresql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for PostgreSQL."""
        query = {}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)
        if options.appname:
            query['application_name'] = options.appname

        return sa.URL.create(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port,
            database=options.database,
            query=query,
        )

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for PostgreSQL connections."""
        return ['hostname', 'username', 'password', 'database', 'port']

    def configure_connection(self, conn: Any) -> None:
        """Configure connection settings for PostgreSQL.
        """
        raw_conn = get_raw_connection(conn)
        raw_conn.autocommit = True

    def build_call(self, target: str, parameters: Sequence['Parameter'],
                   returns_rows: bool) -> tuple[str, dict[str, Any]]:
        """Render ``select * from target(...)`` or ``call target(...)``.

        Set-returning functions report OUT arguments as result columns, so
        only input arguments are passed to them. ``call`` takes OUT arguments
        as NULL and returns their values as a single row. Return-value
        parameters have no PostgreSQL counterpart and are not rendered.
        """
        args = []
        params = {}
        for param in parameters:
            if param.is_return_value or (returns_rows and not param.is_input):
                continue
            name = self.parameter_name(param.name)
            if param.is_input:
                placeholder = f'%({name})s'
                params[name] = TypeConverter.convert_value(param.value)
            else:
                placeholder = 'NULL'
            if param.db_type is not None:
                placeholder = f'{placeholder}::{self.type_name(param.db_type)}'
            args.append(f'{name} => {placeholder}')

        verb = 'select * from' if returns_rows else 'call'
        return f"{verb} {target}({', '.join(args)})", params

    def output_parameters(self, parameters: Sequence['Parameter'],
                          returns_rows: bool) -> list['Parameter']:
        """Return the OUT and INOUT parameters filled in by ``call``.
        """
        if returns_rows:
            return []
        return [p for p in parameters if p.is_output and not p.is_return_value]

    def apply_timeout(self, raw_conn: Any, cursor: Any, seconds: int) -> None:
        """Set ``statement_timeout`` for the session (milliseconds).

        Zero is sent too, so a command never inherits an earlier timeout.
        """
        cursor.execute(f'set statement_timeout = {int(seconds) * 1000}')

    def cancel(self, raw_conn: Any, cursor: Any) -> None:
        """Send a cancel request for the connection's running statement.
        """
        logger.debug('Sending PostgreSQL cancel request')
        raw_conn.cancel()
