import pathlib
import site

import pytest
from storedproc.connection import dispose_all_engines
from storedproc.types import record_fields

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear field-discovery and engine caches around each test."""
    record_fields.cache_clear()
    yield
    record_fields.cache_clear()
    dispose_all_engines()


pytest_plugins = [
    'tests.fixtures.fakes',
    'tests.fixtures.postgres',
]
