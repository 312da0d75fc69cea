"""
Exception classes for stored procedure execution.

Driver errors raised while opening a connection, executing a call, or
reading results are never wrapped: they reach the caller unchanged. The
tuples at the bottom group them for ``except`` clauses.
"""
import psycopg
import sqlalchemy.exc


class DatabaseError(Exception):
    """Base class for all storedproc errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or configuring a database connection.
    """


class QueryError(DatabaseError):
    """Error rendering a procedure call for the active dialect.
    """


class TypeConversionError(DatabaseError):
    """Error converting a result value to the requested Python type.
    """


class ValidationError(DatabaseError):
    """Error in caller-supplied arguments.
    """


class CommandStateError(DatabaseError):
    """Command used out of order: not prepared, or already executed.
    """


class OperationCancelled(DatabaseError):
    """An asynchronous operation was cancelled through its cancel signal.
    """


DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlalchemy.exc.OperationalError,
    sqlalchemy.exc.InterfaceError,
    ConnectionFailure,
    )

ProgrammingError = (
    psycopg.ProgrammingError,
    psycopg.DatabaseError,
    sqlalchemy.exc.ProgrammingError,
    sqlalchemy.exc.DBAPIError,
    QueryError,
    )

OperationalError = (
    psycopg.OperationalError,
    sqlalchemy.exc.OperationalError,
    )
