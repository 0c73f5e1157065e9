import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock


# --- MOCKS ---
@pytest.fixture
def mock_store():
    """ClickHouseStore double that accepts every insert"""
    store = AsyncMock()
    store.insert.side_effect = lambda table, rows, column_names: len(rows)
    store.query.return_value = []
    return store


# --- TIME BUCKETS ---
@pytest.fixture
def t0():
    return datetime(2025, 9, 27, 21, 31, tzinfo=timezone.utc)


@pytest.fixture
def t1(t0):
    return t0 + timedelta(minutes=1)


@pytest.fixture
def t2(t0):
    return t0 + timedelta(minutes=2)


@pytest.fixture
def inserted_rows():
    """All rows appended to a table across every insert call"""
    def collect(store, table):
        rows = []
        for call in store.insert.await_args_list:
            if call.args[0] == table:
                rows.extend(call.args[1])
        return rows
    return collect
