"""
Tests for record field discovery, value coercion and parameter conversion.
"""
import datetime
import decimal
from dataclasses import dataclass, field
from typing import ClassVar, Optional

import numpy as np
import pandas as pd
import pytest
from storedproc.exceptions import TypeConversionError
from storedproc.types import Column, DBNull, TypeConverter, coerce_value
from storedproc.types import columns_from_cursor_description, record_fields


@dataclass
class Order:
    id: int
    total: decimal.Decimal
    note: str | None
    tags: list = field(default_factory=list)
    status: str = 'new'
    shipped: Optional[datetime.date] = None


class Plain:
    kind: ClassVar[str] = 'plain'
    code: str
    qty: int = 5
    comment: str | None
    _hidden: int = 0


def test_dataclass_fields():
    """Dataclass fields are keyed by lowercase name with defaults"""
    fields = record_fields(Order)

    assert list(fields) == ['id', 'total', 'note', 'tags', 'status', 'shipped']
    assert fields['id'].default() == 0
    assert fields['total'].default() == decimal.Decimal(0)
    assert fields['note'].nullable
    assert fields['note'].default() is None
    assert fields['tags'].default() == []
    assert fields['tags'].default() is not fields['tags'].default()
    assert fields['status'].default() == 'new'
    assert fields['shipped'].nullable
    assert not fields['id'].nullable


def test_plain_class_fields():
    """Plain classes expose public annotated attributes"""
    fields = record_fields(Plain)

    assert set(fields) == {'code', 'qty', 'comment'}
    assert fields['code'].default() == ''
    assert fields['qty'].default() == 5
    assert fields['comment'].default() is None
    assert not fields['code'].init


def test_record_fields_cached():
    """Discovery runs once per class"""
    assert record_fields(Order) is record_fields(Order)


def test_mixed_case_field_names():
    """Field keys are lowercase but keep the attribute name"""
    @dataclass
    class Mixed:
        UserId: int = 0

    assert record_fields(Mixed)['userid'].name == 'UserId'


@pytest.mark.parametrize(('value', 'cls', 'expected'), [
    (5, int, 5),
    (decimal.Decimal('7'), int, 7),
    (3, float, 3.0),
    (1.1, decimal.Decimal, decimal.Decimal('1.1')),
    (4, decimal.Decimal, decimal.Decimal(4)),
    (1, bool, True),
    ('false', bool, False),
    ('Y', bool, True),
    ('2024-03-01', datetime.date, datetime.date(2024, 3, 1)),
    (datetime.datetime(2024, 3, 1, 12, 30), datetime.date, datetime.date(2024, 3, 1)),
    (datetime.date(2024, 3, 1), datetime.datetime, datetime.datetime(2024, 3, 1)),
    ('2024-03-01 08:15:00', datetime.datetime, datetime.datetime(2024, 3, 1, 8, 15)),
    ('08:15', datetime.time, datetime.time(8, 15)),
    (42, str, '42'),
])
def test_coerce_value(value, cls, expected):
    """Values are converted to the requested type"""
    result = coerce_value(value, cls)
    assert result == expected
    assert type(result) is cls


@pytest.mark.parametrize(('value', 'cls'), [
    ('abc', int),
    ('maybe', bool),
    ('not a date', datetime.date),
    (object(), datetime.datetime),
    ('x', decimal.Decimal),
])
def test_coerce_value_errors(value, cls):
    """Unconvertible values raise TypeConversionError"""
    with pytest.raises(TypeConversionError):
        coerce_value(value, cls)


@pytest.mark.parametrize(('value', 'expected'), [
    (None, None),
    (DBNull, None),
    (np.int32(4), 4),
    (np.float64(2.5), 2.5),
    (float('nan'), None),
    (pd.NA, None),
    (pd.NaT, None),
    (np.datetime64('NaT'), None),
    (pd.Timestamp('2024-01-02 03:04:05'), datetime.datetime(2024, 1, 2, 3, 4, 5)),
    (np.datetime64('2024-01-02T03:04:05'), datetime.datetime(2024, 1, 2, 3, 4, 5)),
    ('text', 'text'),
])
def test_convert_value(value, expected):
    """Parameter values become plain Python values"""
    assert TypeConverter.convert_value(value) == expected


def test_dbnull_marker():
    """DBNull is a falsy singleton"""
    assert not DBNull
    assert repr(DBNull) == 'DBNull'
    assert type(DBNull)() is DBNull


def test_columns_from_description():
    """Columns carry names and ordinals from the cursor description"""
    class Cursor:
        description = [('id', 23, None, 4, None, None, False), ('Name', 25, None, -1, None, None, True)]

    columns = columns_from_cursor_description(Cursor())
    assert Column.get_names(columns) == ['id', 'Name']
    assert [c.ordinal for c in columns] == [0, 1]
    assert columns[0].type_code == 23
    assert columns[1].null_ok is True
    assert columns[0].internal_size == 4


def test_columns_without_result():
    """No description means no columns"""
    class Cursor:
        description = None

    assert columns_from_cursor_description(Cursor()) == []


if __name__ == '__main__':
    __import__('pytest').main([__file__])
