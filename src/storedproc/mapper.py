"""
Mapping of procedure result sets onto Python records and values.

A ResultMapper wraps the live DBAPI cursor of one execution. Each read
consumes rows of the current result set; `next_result` moves on to the
next one. Nothing can be read twice.
"""
import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterator, Mapping
from typing import Any, TypeVar

import pandas as pd
from storedproc.command import CommandBehavior
from storedproc.types import Column, RecordField, coerce_value
from storedproc.types import columns_from_cursor_description, record_fields
from storedproc.utils import run_cancellable

from libb import attrdict

__all__ = ['ResultMapper']

logger = logging.getLogger(__name__)

T = TypeVar('T')

FETCH_SIZE = 5000


def _iter_rows(cursor: Any, size: int = FETCH_SIZE) -> Iterator[tuple]:
    """Iterate through the current result set in chunks."""
    while True:
        chunk = cursor.fetchmany(size)
        if not chunk:
            break
        yield from chunk


def _match_columns(columns: list[Column],
                   fields: dict[str, RecordField]) -> list[tuple[int, RecordField]]:
    """Pair result columns with record fields by case-insensitive name.

    Columns without a field are dropped. When two columns share a name, the
    first one wins.
    """
    matched: dict[str, tuple[int, RecordField]] = {}
    for column in columns:
        key = column.name.lower()
        if key in fields and key not in matched:
            matched[key] = (column.ordinal, fields[key])
    return list(matched.values())


class ResultMapper:
    """Reads the result sets of one procedure execution.

    Only valid inside the ``handle_results`` callback passed to the
    executor; the cursor is closed once the callback returns.

    ``is_output_result`` recognizes the trailing row of output parameter
    values, which is not shown as a result set.
    """

    def __init__(self, cursor: Any, behavior: CommandBehavior = CommandBehavior.DEFAULT,
                 is_output_result: Callable[[Any], bool] | None = None) -> None:
        self._cursor = cursor
        self._behavior = behavior
        self._is_output_result = is_output_result
        self._pending_advance: bool | None = None

    def _has_rows(self) -> bool:
        """True when the cursor is on a procedure result set."""
        self._pending_advance = None
        if self._cursor.description is None:
            return False
        return not self._at_outputs()

    def _at_outputs(self) -> bool:
        return self._is_output_result is not None and self._is_output_result(self._cursor)

    @property
    def columns(self) -> list[Column]:
        """Column metadata of the current result set."""
        if self._at_outputs():
            return []
        return columns_from_cursor_description(self._cursor)

    def _rows(self) -> Iterator[tuple]:
        if not self._has_rows():
            return
        if self._behavior & CommandBehavior.SINGLE_ROW:
            row = self._cursor.fetchone()
            if row is not None:
                yield row
            return
        yield from _iter_rows(self._cursor)

    def read_to_list(self, cls: type[T] = attrdict) -> list[T]:
        """Materialize the current result set as a list of ``cls`` instances.

        Columns are matched to the fields of ``cls`` by case-insensitive
        name; unmatched columns and unmatched fields are ignored. A NULL
        value sets nullable fields to None and leaves other fields at their
        default. Mapping types such as dict or attrdict receive every column.
        """
        if not self._has_rows():
            return []
        columns = self.columns
        if not columns:
            return []

        if issubclass(cls, Mapping):
            names = Column.get_names(columns)
            result = [cls(zip(names, row)) for row in self._rows()]
            logger.debug(f'Mapped {len(result)} rows to {cls.__name__}')
            return result

        fields = record_fields(cls)
        matched = _match_columns(columns, fields)
        is_dataclass = dataclasses.is_dataclass(cls)

        result = []
        for row in self._rows():
            values = {f.name: f.default() for f in fields.values()}
            for ordinal, field in matched:
                raw = row[ordinal]
                if raw is not None:
                    values[field.name] = raw
                elif field.nullable:
                    values[field.name] = None
            result.append(_instantiate(cls, fields, values, is_dataclass))

        logger.debug(f'Mapped {len(result)} rows to {cls.__name__} '
                     f'({len(matched)} of {len(columns)} columns matched)')
        return result

    def read_to_value(self, cls: type[T] | None = None) -> T | None:
        """Return column 0 of the first row, coerced to ``cls``.

        Returns None when the result set is empty or the value is NULL.
        Rows after the first are not read.
        """
        if not self._has_rows():
            return None
        row = self._cursor.fetchone()
        if row is None:
            return None
        value = row[0]
        if value is None or cls is None:
            return value
        return coerce_value(value, cls)

    def read_to_frame(self) -> pd.DataFrame:
        """Materialize the current result set as a pandas DataFrame.

        Column names are preserved for empty results.
        """
        names = Column.get_names(self.columns)
        rows = [tuple(row) for row in self._rows()]
        if not rows:
            return pd.DataFrame(columns=names)
        return pd.DataFrame.from_records(rows, columns=names)

    def next_result(self) -> bool:
        """Advance to the next result set. Returns False when there is none.

        An advance that completed after its async caller was cancelled is
        reported here instead of advancing again.
        """
        if self._pending_advance is not None:
            advanced, self._pending_advance = self._pending_advance, None
            return advanced
        return self._advance()

    def _advance(self) -> bool:
        if self._behavior & CommandBehavior.SINGLE_RESULT:
            return False
        if not hasattr(self._cursor, 'nextset') or self._at_outputs():
            return False
        if not self._cursor.nextset():
            return False
        return not self._at_outputs()

    def _advance_and_hold(self) -> bool:
        self._pending_advance = self._advance()
        return self._pending_advance

    async def next_result_async(self, cancel: asyncio.Event | None = None) -> bool:
        """Advance to the next result set without blocking the event loop.

        Setting ``cancel`` raises OperationCancelled once the pending
        advance has settled. If the advance went through anyway, the next
        `next_result` or `next_result_async` call returns its outcome
        without moving the cursor, so a retry lands on the same result set.
        Reading rows first discards that outcome.
        """
        if self._pending_advance is not None:
            return self.next_result()
        advanced = await run_cancellable(self._advance_and_hold, cancel=cancel)
        self._pending_advance = None
        return advanced


def _instantiate(cls: type[T], fields: dict[str, RecordField], values: dict[str, Any],
                 is_dataclass: bool) -> T:
    if is_dataclass:
        init_values = {}
        late_values = {}
        for field in fields.values():
            target = init_values if field.init else late_values
            target[field.name] = values[field.name]
        obj = cls(**init_values)
        for name, value in late_values.items():
            setattr(obj, name, value)
        return obj

    obj = cls()
    for name, value in values.items():
        setattr(obj, name, value)
    return obj
