"""Reconcile parsed report rows against stored sales state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from boxoffice.config import PipelineConfig
from boxoffice.db.store import SnapshotStore
from boxoffice.ingest.models import (
    ParsedPerformance,
    PerformanceEntity,
    SalesSnapshot,
    TrendAdjustment,
    WeeklySalesPoint,
    adjustment_id_for,
    series_for_code,
)
from boxoffice.logic.backfill import BackfillResult, backfill_series
from boxoffice.utils.dates import utc_now

logger = logging.getLogger(__name__)

DECISION_CREATED = "created"
DECISION_BASELINE = "baseline"
DECISION_UPDATED = "updated"


def is_anomalous(ticket_delta: int, prior_total: int, config: PipelineConfig) -> bool:
    """Implausible drops or more-than-multiplier growth in one step."""
    if ticket_delta < config.anomaly_drop_floor:
        return True
    return prior_total > 0 and ticket_delta > prior_total * config.anomaly_growth_multiplier


def is_material(ticket_delta: int, config: PipelineConfig) -> bool:
    return abs(ticket_delta) > config.materiality_threshold


@dataclass(slots=True)
class ReconciliationPlan:
    record: ParsedPerformance
    as_of: date
    snapshot: SalesSnapshot
    decision: str
    entity_stub: PerformanceEntity | None = None
    prior: SalesSnapshot | None = None
    ticket_delta: int = 0
    revenue_delta: int = 0
    anomaly: bool = False
    backfill: BackfillResult | None = None
    adjustment: TrendAdjustment | None = None
    already_adjusted: bool = False

    @property
    def trend_adjusted(self) -> bool:
        return self.adjustment is not None

    def changed_points(self) -> list[WeeklySalesPoint]:
        if self.backfill is None:
            return []
        return [
            point
            for point, week in zip(self.backfill.points, self.backfill.weekly_adjustments)
            if week.old_value != week.new_value
        ]


@dataclass(slots=True)
class ReconciliationResult:
    plan: ReconciliationPlan
    outcome: str

    @property
    def anomaly(self) -> bool:
        return self.plan.anomaly

    @property
    def trend_adjusted(self) -> bool:
        return self.plan.trend_adjusted


class Reconciler:
    def __init__(
        self,
        store: SnapshotStore,
        config: PipelineConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config or PipelineConfig()
        self.clock = clock

    def reconcile(self, record: ParsedPerformance, as_of: date, *, source: str) -> ReconciliationResult:
        plan = self.evaluate(record, as_of, source=source)
        return ReconciliationResult(plan=plan, outcome=self.apply(plan))

    def evaluate(self, record: ParsedPerformance, as_of: date, *, source: str) -> ReconciliationPlan:
        """Work out what reconciling ``record`` would change, without writing."""
        snapshot = SalesSnapshot.from_parsed(record, as_of, source=source)
        entity = self.store.get_entity(record.code)
        if entity is None:
            logger.info("New performance %s first seen on %s", record.code, as_of)
            return ReconciliationPlan(
                record=record,
                as_of=as_of,
                snapshot=snapshot,
                decision=DECISION_CREATED,
                entity_stub=record.entity_stub(),
            )

        prior = self.store.latest_snapshot_before(record.code, as_of)
        if prior is None:
            return ReconciliationPlan(record=record, as_of=as_of, snapshot=snapshot, decision=DECISION_BASELINE)

        config = self.config.for_series(entity.series or series_for_code(record.code))
        plan = ReconciliationPlan(
            record=record,
            as_of=as_of,
            snapshot=snapshot,
            decision=DECISION_UPDATED,
            prior=prior,
            ticket_delta=snapshot.total_tickets - prior.total_tickets,
            revenue_delta=snapshot.total_revenue - prior.total_revenue,
        )
        plan.anomaly = is_anomalous(plan.ticket_delta, prior.total_tickets, config)
        if plan.anomaly:
            logger.warning(
                "Anomaly for %s on %s: %+d tickets against %s on %s",
                record.code,
                as_of,
                plan.ticket_delta,
                prior.total_tickets,
                prior.as_of_date,
            )
        if is_material(plan.ticket_delta, config):
            self._plan_backfill(plan, config)
        return plan

    def apply(self, plan: ReconciliationPlan) -> str:
        outcome = self.store.write_reconciliation(
            plan.snapshot,
            entity=plan.entity_stub,
            points=plan.changed_points(),
            adjustment=plan.adjustment,
        )
        if plan.adjustment is not None:
            logger.info(
                "Backfilled %s weekly points for %s (%+d tickets)",
                len(plan.changed_points()),
                plan.record.code,
                plan.ticket_delta,
            )
        return outcome

    def _plan_backfill(self, plan: ReconciliationPlan, config: PipelineConfig) -> None:
        code = plan.record.code
        adjustment_id = adjustment_id_for(code, plan.as_of)
        if self.store.has_adjustment(adjustment_id):
            logger.info("Trend adjustment %s already recorded; leaving weekly curve as is", adjustment_id)
            plan.already_adjusted = True
            return
        now = self.clock()
        series = [
            point
            for point in self.store.weekly_series(code)
            if 0 <= point.weeks_before <= config.pacing_weeks
        ]
        result = backfill_series(
            series,
            plan.ticket_delta,
            adjustment_id=adjustment_id,
            confidence=config.backfill_confidence,
            adjusted_at=now,
        )
        plan.backfill = result
        plan.adjustment = TrendAdjustment(
            adjustment_id=adjustment_id,
            performance_code=code,
            snapshot_id=plan.snapshot.snapshot_id,
            adjustment_type="backfill" if plan.ticket_delta > 0 else "correction",
            old_total_tickets=plan.prior.total_tickets,
            new_total_tickets=plan.snapshot.total_tickets,
            tickets_difference=plan.ticket_delta,
            old_total_revenue=plan.prior.total_revenue,
            new_total_revenue=plan.snapshot.total_revenue,
            revenue_difference=plan.revenue_delta,
            weekly_adjustments=result.weekly_adjustments,
            trend_velocity_preserved=result.reshaped,
            confidence_score=config.backfill_confidence,
            created_at=now,
        )
