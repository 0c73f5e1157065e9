from datetime import datetime, timedelta, timezone

import pytest

from dex_indexer.pricing.change import change_pct_for_minutes

NOW = datetime(2025, 9, 27, 22, 0, tzinfo=timezone.utc)


def closes(last, prev):
    """query side_effect: latest close first, then the close at the cutoff"""
    answers = iter([
        [] if last is None else [{"close": last}],
        [] if prev is None else [{"close": prev}],
    ])

    async def query(sql, parameters=None):
        return next(answers)
    return query


@pytest.mark.asyncio
async def test_percent_change(mock_store):
    mock_store.query.side_effect = closes(12.0, 10.0)
    assert await change_pct_for_minutes(mock_store, 1, 60, now=NOW) == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_negative_change(mock_store):
    mock_store.query.side_effect = closes(7.5, 10.0)
    assert await change_pct_for_minutes(mock_store, "1", "30", now=NOW) == pytest.approx(-25.0)


@pytest.mark.asyncio
async def test_prev_lookup_uses_window_cutoff(mock_store):
    mock_store.query.side_effect = closes(12.0, 10.0)
    await change_pct_for_minutes(mock_store, 4, 5, now=NOW)

    _, params = mock_store.query.await_args_list[1].args
    assert params == {"pool_id": 4, "cutoff": int((NOW - timedelta(minutes=5)).timestamp())}


@pytest.mark.asyncio
async def test_no_candle_before_window_is_none(mock_store):
    mock_store.query.side_effect = closes(12.0, None)
    assert await change_pct_for_minutes(mock_store, 1, 60, now=NOW) is None


@pytest.mark.asyncio
async def test_non_positive_prev_is_none(mock_store):
    mock_store.query.side_effect = closes(12.0, 0)
    assert await change_pct_for_minutes(mock_store, 1, 60, now=NOW) is None


@pytest.mark.asyncio
async def test_no_candles_at_all_is_none(mock_store):
    mock_store.query.side_effect = closes(None, None)
    assert await change_pct_for_minutes(mock_store, 1, 60, now=NOW) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("pool_id", [None, "", "undefined", "abc"])
async def test_bad_pool_id_is_none(mock_store, pool_id):
    assert await change_pct_for_minutes(mock_store, pool_id, 60) is None
    mock_store.query.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes", [None, 0, -5, "abc", float("nan")])
async def test_bad_window_is_none(mock_store, minutes):
    assert await change_pct_for_minutes(mock_store, 1, minutes) is None
    mock_store.query.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes", [10**10, 1e300])
async def test_window_past_datetime_range_is_none(mock_store, minutes):
    assert await change_pct_for_minutes(mock_store, 1, minutes, now=NOW) is None
    mock_store.query.assert_not_awaited()


@pytest.mark.asyncio
async def test_window_reaching_before_epoch_is_none(mock_store):
    sixty_years = 60 * 24 * 365 * 60
    assert await change_pct_for_minutes(mock_store, 1, sixty_years, now=NOW) is None
    mock_store.query.assert_not_awaited()
