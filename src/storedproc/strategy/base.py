"""
Base strategy interface for dialect-specific procedure calls.

Defines the abstract base class that all database-specific strategy
implementations must inherit from. A strategy knows how to build the
engine URL for a dialect, how to render a stored procedure call with
its bound parameters, and how to apply command timeouts and cancellation
on the raw DBAPI objects.
"""
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from storedproc.exceptions import QueryError
from storedproc.types import columns_from_cursor_description

if TYPE_CHECKING:
    from storedproc.command import Parameter
    from storedproc.options import DatabaseOptions

# Registry of dialect name -> strategy class
_STRATEGY_REGISTRY: dict[str, type['DatabaseStrategy']] = {}

_PARAMETER_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#]*$')
_TYPE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_ ,.()\[\]]*$')


def register_strategy(dialect: str):
    """Decorator to register a strategy class for a dialect.

    Usage:
        @register_strategy('postgresql')
        class PostgresStrategy(DatabaseStrategy):
            ...
    """
    def decorator(cls: type['DatabaseStrategy']) -> type['DatabaseStrategy']:
        _STRATEGY_REGISTRY[dialect] = cls
        return cls
    return decorator


class DatabaseStrategy(ABC):
    """Base class for database-specific operations.
    """

    @property
    @abstractmethod
    def dialect_name(self) -> str:
        """Return the dialect identifier."""

    @abstractmethod
    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for this dialect.

        Args:
            options: Connection options

        Returns
            sa.URL: URL passed to ``sqlalchemy.create_engine``
        """

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return extra ``create_engine`` kwargs for this dialect."""
        return {}

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return option fields that must be set for this dialect."""
        return []

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        """Validate options for this dialect.

        Args:
            options: DatabaseOptions to validate

        Raises
            ValueError: If any required field is None or 0
        """
        for field in cls.get_required_options():
            if not getattr(options, field):
                raise ValueError(f'field {field} cannot be None or 0')

    @abstractmethod
    def configure_connection(self, conn: Any) -> None:
        """Configure a freshly opened raw DBAPI connection.

        Args:
            conn: Database connection to configure with database-specific settings
        """

    @abstractmethod
    def build_call(self, target: str, parameters: Sequence['Parameter'],
                   returns_rows: bool) -> tuple[str, Any]:
        """Render a stored procedure call.

        Args:
            target: Procedure name, optionally schema-qualified
            parameters: All parameters of the command, in attachment order
            returns_rows: True when the caller reads result sets

        Returns
            tuple: SQL text and the driver parameter structure
        """

    @abstractmethod
    def apply_timeout(self, raw_conn: Any, cursor: Any, seconds: int) -> None:
        """Apply a per-command timeout before the call executes.

        Args:
            raw_conn: The raw DBAPI connection
            cursor: The DBAPI cursor the call will run on
            seconds: Timeout in seconds, 0 clears any earlier timeout
        """

    def bind_input_sizes(self, cursor: Any, parameters: Sequence['Parameter']) -> None:
        """Pass provider-specific parameter types to the cursor.

        ``parameters`` are all parameters of the command, as passed to
        `build_call`. The default implementation does nothing.
        """

    def output_parameters(self, parameters: Sequence['Parameter'],
                          returns_rows: bool) -> list['Parameter']:
        """Return the parameters whose values the call sends back.
        """
        return [p for p in parameters if p.is_output]

    def is_output_result(self, cursor: Any) -> bool:
        """Check whether the cursor is positioned on the output-value row.

        The default implementation never reports one, so every result set
        belongs to the procedure.
        """
        return False

    def read_outputs(self, cursor: Any) -> dict[str, Any]:
        """Read output values from the current result set.

        Returns
            dict: Values keyed by lowercase parameter name, without ``@``
        """
        columns = columns_from_cursor_description(cursor)
        if not columns:
            return {}
        row = cursor.fetchone()
        if row is None:
            return {}
        return {c.name.lstrip('@').lower(): row[c.ordinal] for c in columns}

    def cancel(self, raw_conn: Any, cursor: Any) -> None:
        """Ask the server to abandon the statement running on ``cursor``.

        The default implementation uses the DBAPI cursor's ``cancel``
        where the driver provides one.
        """
        if hasattr(cursor, 'cancel'):
            cursor.cancel()

    def parameter_name(self, name: str) -> str:
        """Return a parameter name that is safe to splice into SQL text.

        Raises
            QueryError: If the name is not a plain identifier
        """
        name = name.lstrip('@')
        if not _PARAMETER_NAME.match(name):
            raise QueryError(f'Invalid parameter name: {name!r}')
        return name

    def type_name(self, db_type: Any) -> str:
        """Return a textual type name that is safe to splice into SQL text.
        """
        db_type = str(db_type)
        if not _TYPE_NAME.match(db_type):
            raise QueryError(f'Invalid parameter type: {db_type!r}')
        return db_type
