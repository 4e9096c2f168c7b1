"""Proportional backfill of weekly sales pacing curves.

When a report corrects a performance's known total, the difference is spread
across the existing weekly points in proportion to each week's share of the
series total. The curve keeps its shape, the revised series sums to the old
total plus the delta, and no week goes below zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Sequence

import numpy as np

from boxoffice.ingest.models import WEEK_SOURCE_ADJUSTED, WeekAdjustment, WeeklySalesPoint


@dataclass(slots=True)
class BackfillResult:
    points: list[WeeklySalesPoint]
    weekly_adjustments: list[WeekAdjustment] = field(default_factory=list)
    applied_delta: int = 0

    @property
    def reshaped(self) -> bool:
        return any(item.old_value != item.new_value for item in self.weekly_adjustments)


def proportional_steps(values: Sequence[int], delta: int) -> list[int]:
    """Revised weekly values for ``values`` absorbing ``delta``.

    >>> proportional_steps([100, 100, 100, 100, 100], 100)
    [120, 120, 120, 120, 120]
    """
    current = np.asarray(values, dtype=np.int64)
    total = int(current.sum())
    if current.size == 0 or total <= 0 or delta == 0:
        return [int(v) for v in current]
    shares = current / total
    steps = np.floor(delta * shares + 0.5).astype(np.int64)
    revised = np.maximum(current + steps, 0)
    _settle(revised, shares, max(total + delta, 0))
    return [int(v) for v in revised]


def _settle(revised: np.ndarray, shares: np.ndarray, target: int) -> None:
    # Rounding and clamping can leave the sum a few units off target.
    diff = target - int(revised.sum())
    order = np.argsort(-shares, kind="stable")
    while diff:
        moved = False
        for index in order:
            if diff > 0 and shares[index] > 0:
                revised[index] += 1
                diff -= 1
                moved = True
            elif diff < 0 and revised[index] > 0:
                revised[index] -= 1
                diff += 1
                moved = True
            if not diff:
                break
        if not moved:
            break


def backfill_series(
    series: Sequence[WeeklySalesPoint],
    delta: int,
    *,
    adjustment_id: str,
    confidence: float,
    adjusted_at: datetime,
) -> BackfillResult:
    before = [point.tickets_sold for point in series]
    after = proportional_steps(before, delta)
    points: list[WeeklySalesPoint] = []
    adjustments: list[WeekAdjustment] = []
    for point, old_value, new_value in zip(series, before, after):
        adjustments.append(WeekAdjustment(point.weeks_before, old_value, new_value))
        if new_value == old_value:
            points.append(point)
            continue
        points.append(
            replace(
                point,
                tickets_sold=new_value,
                data_source=WEEK_SOURCE_ADJUSTED,
                adjustment_id=adjustment_id,
                last_adjusted=adjusted_at,
                confidence_score=confidence,
            )
        )
    return BackfillResult(
        points=points,
        weekly_adjustments=adjustments,
        applied_delta=sum(after) - sum(before),
    )
