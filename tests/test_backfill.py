from datetime import datetime, timezone

from boxoffice.ingest.models import WEEK_SOURCE_ADJUSTED, WEEK_SOURCE_HISTORICAL, WeeklySalesPoint
from boxoffice.logic.backfill import backfill_series, proportional_steps

ADJUSTED_AT = datetime(2025, 10, 14, tzinfo=timezone.utc)


def _series(values):
    return [WeeklySalesPoint("251011A", len(values) - idx, value) for idx, value in enumerate(values)]


def test_flat_curve_absorbs_delta_evenly():
    assert proportional_steps([100] * 5, 100) == [120] * 5


def test_revised_series_sums_to_target():
    values = [7, 13, 29, 51]
    for delta in (1, 17, -33, 250):
        revised = proportional_steps(values, delta)
        assert sum(revised) == sum(values) + delta


def test_negative_delta_never_goes_below_zero():
    revised = proportional_steps([1, 1, 98], -99)
    assert all(value >= 0 for value in revised)
    assert sum(revised) == 1


def test_delta_larger_than_total_clamps_to_zero():
    revised = proportional_steps([10, 20], -500)
    assert revised == [0, 0]


def test_zero_or_empty_series_is_left_alone():
    assert proportional_steps([0, 0, 0], 40) == [0, 0, 0]
    assert proportional_steps([], 40) == []
    assert proportional_steps([5, 5], 0) == [5, 5]


def test_shape_is_preserved():
    revised = proportional_steps([10, 20, 30, 40], 100)
    assert revised == [20, 40, 60, 80]


def test_backfill_series_tags_changed_points():
    series = _series([100, 100, 100, 100, 100])
    result = backfill_series(series, 100, adjustment_id="adj_251011A_20251014", confidence=0.8, adjusted_at=ADJUSTED_AT)
    assert [p.tickets_sold for p in result.points] == [120] * 5
    assert result.applied_delta == 100
    assert result.reshaped
    for point in result.points:
        assert point.data_source == WEEK_SOURCE_ADJUSTED
        assert point.adjustment_id == "adj_251011A_20251014"
        assert point.last_adjusted == ADJUSTED_AT
        assert point.confidence_score == 0.8
    assert [(a.weeks_before, a.old_value, a.new_value) for a in result.weekly_adjustments][0] == (5, 100, 120)
    # inputs untouched
    assert all(p.tickets_sold == 100 and p.data_source == WEEK_SOURCE_HISTORICAL for p in series)


def test_backfill_series_on_empty_curve():
    result = backfill_series([], 300, adjustment_id="adj", confidence=0.8, adjusted_at=ADJUSTED_AT)
    assert result.points == []
    assert result.applied_delta == 0
    assert not result.reshaped
