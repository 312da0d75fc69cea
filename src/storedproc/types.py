"""
Type handling for procedure parameters and mapped results.

This module provides:
- DBNull: explicit null-marker stored on parameters
- TypeConverter: Convert Python values to database-compatible formats
- Column: Column metadata from cursor descriptions
- record_fields: Cached field discovery for target record types
- coerce_value: Convert a raw result value to a requested Python type
"""
import dataclasses
import datetime
import decimal
import logging
import math
import types
import typing
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Self

import dateutil.parser
import numpy as np
import pandas as pd
from storedproc.exceptions import TypeConversionError

logger = logging.getLogger(__name__)


class _DBNullType:
    """Singleton null-marker bound as SQL NULL."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'DBNull'

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_DBNullType, ())


DBNull = _DBNullType()


# Type Converter - Handles Python -> Database value conversion

class TypeConverter:
    """Conversion of parameter values to driver-friendly Python types.

    Handles the DBNull marker plus NumPy and Pandas scalars, which the
    drivers do not adapt on their own.
    """

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Convert a single parameter value.
        """
        if value is None or value is DBNull:
            return None

        if isinstance(value, np.datetime64):
            if np.isnat(value):
                return None
            return pd.Timestamp(value).to_pydatetime()

        if isinstance(value, np.generic):
            value = value.item()

        if isinstance(value, float) and math.isnan(value):
            return None

        if value is pd.NA or value is pd.NaT:
            return None

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        return value


class Column:
    """Metadata for one result column, taken from a DBAPI cursor description.
    """

    def __init__(self, name: str, type_code: Any = None, display_size: int | None = None,
                 internal_size: int | None = None, precision: int | None = None,
                 scale: int | None = None, null_ok: bool | None = None,
                 ordinal: int = 0) -> None:
        self.name = name
        self.type_code = type_code
        self.display_size = display_size
        self.internal_size = internal_size
        self.precision = precision
        self.scale = scale
        self.null_ok = null_ok
        self.ordinal = ordinal

    @classmethod
    def from_cursor_description(cls, description_item: Any, ordinal: int) -> Self:
        """Build a Column from one PEP-249 description entry.

        Both psycopg Column objects and plain 7-tuples index the same way.
        """
        items = tuple(description_item) + (None,) * 7
        return cls(items[0], type_code=items[1], display_size=items[2],
                   internal_size=items[3], precision=items[4], scale=items[5],
                   null_ok=items[6], ordinal=ordinal)

    def __repr__(self) -> str:
        return f'Column(name={self.name!r}, ordinal={self.ordinal}, type_code={self.type_code!r})'

    @staticmethod
    def get_names(columns: list[Self]) -> list[str]:
        return [c.name for c in columns]


def columns_from_cursor_description(cursor: Any) -> list[Column]:
    """Return Column metadata for the cursor's current result set.
    """
    if cursor.description is None:
        return []
    return [Column.from_cursor_description(item, i)
            for i, item in enumerate(cursor.description)]


# Record field discovery

_ZERO_VALUES: dict[type, Callable[[], Any]] = {
    int: int,
    float: float,
    str: str,
    bool: bool,
    bytes: bytes,
    decimal.Decimal: decimal.Decimal,
}


@dataclasses.dataclass(frozen=True)
class RecordField:
    """A settable field of a target record type.

    ``default`` produces the value the field holds when its column is
    missing or NULL.
    """
    name: str
    annotation: Any
    nullable: bool
    init: bool
    default: Callable[[], Any]


def _is_nullable(annotation: Any) -> bool:
    """Check whether an annotation admits None."""
    if annotation is Any or annotation is None or annotation is type(None):
        return True
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        return type(None) in typing.get_args(annotation)
    return False


def _zero_factory(annotation: Any, nullable: bool) -> Callable[[], Any]:
    if nullable:
        return lambda: None
    base = typing.get_origin(annotation) or annotation
    return _ZERO_VALUES.get(base, lambda: None)


def _constant(value: Any) -> Callable[[], Any]:
    return lambda: value


def _dataclass_fields(cls: type, hints: dict[str, Any]) -> list[RecordField]:
    result = []
    for field in dataclasses.fields(cls):
        annotation = hints.get(field.name, field.type)
        nullable = _is_nullable(annotation)
        if field.default is not dataclasses.MISSING:
            default = _constant(field.default)
        elif field.default_factory is not dataclasses.MISSING:
            default = field.default_factory
        else:
            default = _zero_factory(annotation, nullable)
        result.append(RecordField(field.name, annotation, nullable, field.init, default))
    return result


def _annotated_fields(cls: type, hints: dict[str, Any]) -> list[RecordField]:
    result = []
    for name, annotation in hints.items():
        if name.startswith('_') or typing.get_origin(annotation) is typing.ClassVar:
            continue
        nullable = _is_nullable(annotation)
        if hasattr(cls, name):
            default = _constant(getattr(cls, name))
        else:
            default = _zero_factory(annotation, nullable)
        result.append(RecordField(name, annotation, nullable, False, default))
    return result


@lru_cache(maxsize=256)
def record_fields(cls: type) -> dict[str, RecordField]:
    """Discover the settable fields of a record type, keyed by lowercase name.

    Dataclasses contribute their declared fields. Other classes contribute
    their public annotated attributes and must be constructible without
    arguments. The result is computed once per class.
    """
    try:
        hints = typing.get_type_hints(cls)
    except (NameError, TypeError) as e:
        logger.debug(f'Falling back to raw annotations for {cls.__name__}: {e}')
        hints = dict(getattr(cls, '__annotations__', {}))

    if dataclasses.is_dataclass(cls):
        fields = _dataclass_fields(cls, hints)
    else:
        fields = _annotated_fields(cls, hints)

    mapping = {f.name.lower(): f for f in fields}
    logger.debug(f'Discovered {len(mapping)} fields on {cls.__name__}')
    return mapping


# Result value coercion

_TRUE_STRINGS = {'1', 'true', 't', 'yes', 'y'}
_FALSE_STRINGS = {'0', 'false', 'f', 'no', 'n', ''}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f'not a boolean string: {value!r}')
    return bool(value)


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    if isinstance(value, str):
        return dateutil.parser.parse(value)
    raise ValueError(f'cannot interpret {type(value).__name__} as datetime')


def _to_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        return dateutil.parser.parse(value).date()
    raise ValueError(f'cannot interpret {type(value).__name__} as date')


def _to_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.datetime):
        return value.time()
    if isinstance(value, datetime.time):
        return value
    if isinstance(value, str):
        return dateutil.parser.parse(value).time()
    raise ValueError(f'cannot interpret {type(value).__name__} as time')


def _to_decimal(value: Any) -> decimal.Decimal:
    if isinstance(value, float):
        return decimal.Decimal(str(value))
    return decimal.Decimal(value)


_COERCIONS: dict[type, Callable[[Any], Any]] = {
    bool: _to_bool,
    datetime.datetime: _to_datetime,
    datetime.date: _to_date,
    datetime.time: _to_time,
    decimal.Decimal: _to_decimal,
}


def coerce_value(value: Any, cls: type) -> Any:
    """Convert a non-NULL result value to ``cls``.

    Raises
        TypeConversionError: If the value cannot be represented as ``cls``
    """
    if type(value) is cls:
        return value
    convert = _COERCIONS.get(cls, cls)
    try:
        return convert(value)
    except (TypeError, ValueError, ArithmeticError, OverflowError) as e:
        raise TypeConversionError(
            f'Cannot convert {type(value).__name__} value {value!r} to {cls.__name__}') from e
