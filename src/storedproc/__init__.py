"""
Stored procedure execution with typed result mapping.

Prepare a call, attach parameters, execute it, and map the rows it returns
onto records or scalar values:

    cn = storedproc.connect('postgresql', config=config)
    cmd = storedproc.load_stored_proc(cn, 'GetUsersByStatus', True)
    cmd.with_param('status', 'active')

    users = []
    storedproc.execute_stored_proc(cmd, lambda r: users.extend(r.read_to_list(User)))

The module functions and the ConnectionWrapper/Command methods are
interchangeable.
"""
__version__ = '0.1.0'

from storedproc.command import Command, CommandBehavior, CommandType
from storedproc.command import Parameter, ParameterDirection
from storedproc.command import load_stored_proc, with_param
from storedproc.connection import ConnectionState, ConnectionWrapper, connect
from storedproc.exceptions import CommandStateError, ConnectionFailure
from storedproc.exceptions import DatabaseError, DbConnectionError
from storedproc.exceptions import OperationalError, OperationCancelled
from storedproc.exceptions import ProgrammingError, QueryError
from storedproc.exceptions import TypeConversionError, ValidationError
from storedproc.executor import execute_non_query, execute_non_query_async
from storedproc.executor import execute_stored_proc, execute_stored_proc_async
from storedproc.mapper import ResultMapper
from storedproc.options import DatabaseOptions
from storedproc.types import Column, DBNull

__all__ = [
    'connect',
    'ConnectionWrapper',
    'ConnectionState',
    'DatabaseOptions',
    'Command',
    'CommandType',
    'CommandBehavior',
    'Parameter',
    'ParameterDirection',
    'DBNull',
    'Column',
    'ResultMapper',
    'load_stored_proc',
    'with_param',
    'execute_stored_proc',
    'execute_stored_proc_async',
    'execute_non_query',
    'execute_non_query_async',
    'DatabaseError',
    'ConnectionFailure',
    'QueryError',
    'ValidationError',
    'CommandStateError',
    'OperationCancelled',
    'TypeConversionError',
    'DbConnectionError',
    'ProgrammingError',
    'OperationalError',
]
