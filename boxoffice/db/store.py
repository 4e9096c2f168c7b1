"""Snapshot store backed by the analytical database.

Every write is an upsert keyed on its natural key, so replaying the same
document twice leaves the tables unchanged. Nothing here deletes rows.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from boxoffice.ingest.models import (
    IngestionExecution,
    PerformanceEntity,
    SalesSnapshot,
    TrendAdjustment,
    WeeklySalesPoint,
)
from boxoffice.utils.dates import as_date, as_datetime, utc_now
from boxoffice.utils.retry import retry

logger = logging.getLogger(__name__)

MEASURE_COLUMNS = (
    "fixed_count",
    "fixed_revenue",
    "non_fixed_count",
    "non_fixed_revenue",
    "single_count",
    "single_revenue",
    "reserved_count",
    "reserved_revenue",
    "total_tickets",
    "total_revenue",
    "capacity_percent",
    "budget_percent",
    "fixed_atp",
    "non_fixed_atp",
    "single_atp",
    "reserved_atp",
)

_SNAPSHOT_COLUMNS = ("snapshot_id", "performance_code", "as_of_date", *MEASURE_COLUMNS, "source", "created_at")

UPSERT_SNAPSHOT_SQL = """
    INSERT INTO sales_snapshots ({columns})
    VALUES ({values})
    ON CONFLICT (performance_code, as_of_date) DO UPDATE SET
      {updates}
""".format(
    columns=", ".join(_SNAPSHOT_COLUMNS),
    values=", ".join(f":{name}" for name in _SNAPSHOT_COLUMNS),
    updates=",\n      ".join(f"{name} = EXCLUDED.{name}" for name in MEASURE_COLUMNS),
)


class StoreUnavailableError(RuntimeError):
    pass


class SnapshotStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Analytical store unreachable: {exc}") from exc

    # Reads

    @retry
    def known_codes(self) -> set[str]:
        with self.engine.connect() as conn:
            return {row[0] for row in conn.execute(text("SELECT code FROM performances"))}

    @retry
    def get_entity(self, code: str) -> PerformanceEntity | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT code, title, performance_date, venue, capacity, series, season
                    FROM performances WHERE code = :code
                    """
                ),
                {"code": code},
            ).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["performance_date"] = as_date(data["performance_date"])
        return PerformanceEntity(**data)

    @retry
    def get_snapshot(self, code: str, as_of) -> SalesSnapshot | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM sales_snapshots WHERE performance_code = :code AND as_of_date = :as_of"),
                {"code": code, "as_of": as_of},
            ).mappings().first()
        return _snapshot_from_row(row) if row else None

    @retry
    def latest_snapshot_before(self, code: str, as_of) -> SalesSnapshot | None:
        """Most recent snapshot strictly earlier than ``as_of``."""
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT * FROM sales_snapshots
                    WHERE performance_code = :code AND as_of_date < :as_of
                    ORDER BY as_of_date DESC
                    LIMIT 1
                    """
                ),
                {"code": code, "as_of": as_of},
            ).mappings().first()
        return _snapshot_from_row(row) if row else None

    @retry
    def weekly_series(self, code: str) -> list[WeeklySalesPoint]:
        """Weekly pacing points, furthest week from the performance first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT performance_code, weeks_before, tickets_sold, data_source,
                           adjustment_id, last_adjusted, confidence_score
                    FROM weekly_sales
                    WHERE performance_code = :code
                    ORDER BY weeks_before DESC
                    """
                ),
                {"code": code},
            ).mappings().all()
        return [_point_from_row(row) for row in rows]

    @retry
    def has_adjustment(self, adjustment_id: str) -> bool:
        with self.engine.connect() as conn:
            found = conn.execute(
                text("SELECT 1 FROM trend_adjustments WHERE adjustment_id = :id"),
                {"id": adjustment_id},
            ).scalar_one_or_none()
        return found is not None

    @retry
    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM ingestion_executions WHERE execution_id = :id"),
                {"id": execution_id},
            ).mappings().first()
        return dict(row) if row else None

    # Writes

    @retry
    def ensure_entity(self, entity: PerformanceEntity) -> bool:
        with self.engine.begin() as conn:
            return self._ensure_entity(conn, entity)

    @retry
    def upsert_snapshot(self, snapshot: SalesSnapshot) -> str:
        """Insert or replace the snapshot; returns ``"inserted"`` or ``"updated"``."""
        with self.engine.begin() as conn:
            return self._upsert_snapshot(conn, snapshot)

    @retry
    def upsert_weekly_points(self, points: Iterable[WeeklySalesPoint]) -> None:
        with self.engine.begin() as conn:
            self._upsert_weekly_points(conn, points)

    @retry
    def append_adjustment(self, adjustment: TrendAdjustment) -> bool:
        with self.engine.begin() as conn:
            return self._append_adjustment(conn, adjustment)

    @retry
    def write_reconciliation(
        self,
        snapshot: SalesSnapshot,
        *,
        entity: PerformanceEntity | None = None,
        points: Iterable[WeeklySalesPoint] = (),
        adjustment: TrendAdjustment | None = None,
    ) -> str:
        """Persist one reconciled record in a single transaction."""
        with self.engine.begin() as conn:
            if entity is not None:
                self._ensure_entity(conn, entity)
            outcome = self._upsert_snapshot(conn, snapshot)
            if adjustment is not None and self._append_adjustment(conn, adjustment):
                self._upsert_weekly_points(conn, points)
        return outcome

    @retry
    def start_execution(self, execution: IngestionExecution) -> None:
        execution.start_time = execution.start_time or utc_now()
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO ingestion_executions (execution_id, pipeline_type, status, start_time, source_identifier)
                    VALUES (:execution_id, :pipeline_type, :status, :start_time, :source_identifier)
                    ON CONFLICT (execution_id) DO NOTHING
                    """
                ),
                {
                    "execution_id": execution.execution_id,
                    "pipeline_type": execution.pipeline_type,
                    "status": execution.status,
                    "start_time": execution.start_time,
                    "source_identifier": execution.source_identifier,
                },
            )

    @retry
    def finish_execution(self, execution: IngestionExecution) -> None:
        execution.end_time = execution.end_time or utc_now()
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE ingestion_executions SET
                      status = :status,
                      end_time = :end_time,
                      records_received = :records_received,
                      records_processed = :records_processed,
                      records_inserted = :records_inserted,
                      records_updated = :records_updated,
                      records_skipped = :records_skipped,
                      trends_adjusted = :trends_adjusted,
                      anomalies_detected = :anomalies_detected,
                      error_message = :error_message
                    WHERE execution_id = :execution_id
                    """
                ),
                {
                    "execution_id": execution.execution_id,
                    "status": execution.status,
                    "end_time": execution.end_time,
                    "records_received": execution.records_received,
                    "records_processed": execution.records_processed,
                    "records_inserted": execution.records_inserted,
                    "records_updated": execution.records_updated,
                    "records_skipped": execution.records_skipped,
                    "trends_adjusted": execution.trends_adjusted,
                    "anomalies_detected": execution.anomalies_detected,
                    "error_message": execution.error_message,
                },
            )

    def _ensure_entity(self, conn: Connection, entity: PerformanceEntity) -> bool:
        result = conn.execute(
            text(
                """
                INSERT INTO performances (code, title, performance_date, venue, capacity, series, season)
                VALUES (:code, :title, :performance_date, :venue, :capacity, :series, :season)
                ON CONFLICT (code) DO NOTHING
                """
            ),
            {
                "code": entity.code,
                "title": entity.title,
                "performance_date": entity.performance_date,
                "venue": entity.venue,
                "capacity": entity.capacity,
                "series": entity.series,
                "season": entity.season,
            },
        )
        created = result.rowcount == 1
        if created:
            logger.info("Created performance stub %s", entity.code)
        return created

    def _upsert_snapshot(self, conn: Connection, snapshot: SalesSnapshot) -> str:
        existing = conn.execute(
            text("SELECT 1 FROM sales_snapshots WHERE performance_code = :code AND as_of_date = :as_of"),
            {"code": snapshot.performance_code, "as_of": snapshot.as_of_date},
        ).scalar_one_or_none()
        params = {
            "snapshot_id": snapshot.snapshot_id,
            "performance_code": snapshot.performance_code,
            "as_of_date": snapshot.as_of_date,
            "source": snapshot.source,
            "created_at": snapshot.created_at or utc_now(),
            **snapshot.measures(),
        }
        conn.execute(text(UPSERT_SNAPSHOT_SQL), params)
        return "updated" if existing else "inserted"

    def _upsert_weekly_points(self, conn: Connection, points: Iterable[WeeklySalesPoint]) -> None:
        for point in points:
            conn.execute(
                text(
                    """
                    INSERT INTO weekly_sales (performance_code, weeks_before, tickets_sold, data_source,
                                              adjustment_id, last_adjusted, confidence_score)
                    VALUES (:performance_code, :weeks_before, :tickets_sold, :data_source,
                            :adjustment_id, :last_adjusted, :confidence_score)
                    ON CONFLICT (performance_code, weeks_before) DO UPDATE SET
                      tickets_sold = EXCLUDED.tickets_sold,
                      data_source = EXCLUDED.data_source,
                      adjustment_id = EXCLUDED.adjustment_id,
                      last_adjusted = EXCLUDED.last_adjusted,
                      confidence_score = EXCLUDED.confidence_score
                    """
                ),
                {
                    "performance_code": point.performance_code,
                    "weeks_before": point.weeks_before,
                    "tickets_sold": point.tickets_sold,
                    "data_source": point.data_source,
                    "adjustment_id": point.adjustment_id,
                    "last_adjusted": point.last_adjusted,
                    "confidence_score": point.confidence_score,
                },
            )

    def _append_adjustment(self, conn: Connection, adjustment: TrendAdjustment) -> bool:
        """Append the audit row; ``False`` when it was already recorded."""
        weekly = json.dumps(
            [
                {"week": item.weeks_before, "old_value": item.old_value, "new_value": item.new_value}
                for item in adjustment.weekly_adjustments
            ]
        )
        weekly_sql = ":weekly_adjustments" if conn.dialect.name == "sqlite" else "CAST(:weekly_adjustments AS JSONB)"
        result = conn.execute(
            text(
                f"""
                INSERT INTO trend_adjustments (
                  adjustment_id, performance_code, snapshot_id, adjustment_type,
                  old_total_tickets, new_total_tickets, tickets_difference,
                  old_total_revenue, new_total_revenue, revenue_difference,
                  weekly_adjustments, trend_velocity_preserved, adjustment_algorithm,
                  confidence_score, created_at
                )
                VALUES (
                  :adjustment_id, :performance_code, :snapshot_id, :adjustment_type,
                  :old_total_tickets, :new_total_tickets, :tickets_difference,
                  :old_total_revenue, :new_total_revenue, :revenue_difference,
                  {weekly_sql}, :trend_velocity_preserved, :adjustment_algorithm,
                  :confidence_score, :created_at
                )
                ON CONFLICT (adjustment_id) DO NOTHING
                """
            ),
            {
                "adjustment_id": adjustment.adjustment_id,
                "performance_code": adjustment.performance_code,
                "snapshot_id": adjustment.snapshot_id,
                "adjustment_type": adjustment.adjustment_type,
                "old_total_tickets": adjustment.old_total_tickets,
                "new_total_tickets": adjustment.new_total_tickets,
                "tickets_difference": adjustment.tickets_difference,
                "old_total_revenue": adjustment.old_total_revenue,
                "new_total_revenue": adjustment.new_total_revenue,
                "revenue_difference": adjustment.revenue_difference,
                "weekly_adjustments": weekly,
                "trend_velocity_preserved": adjustment.trend_velocity_preserved,
                "adjustment_algorithm": adjustment.adjustment_algorithm,
                "confidence_score": adjustment.confidence_score,
                "created_at": adjustment.created_at or utc_now(),
            },
        )
        return result.rowcount == 1


def _snapshot_from_row(row: Mapping[str, Any]) -> SalesSnapshot:
    data = {key: row[key] for key in _SNAPSHOT_COLUMNS if key != "total_tickets"}
    data["as_of_date"] = as_date(data["as_of_date"])
    data["created_at"] = as_datetime(data["created_at"])
    return SalesSnapshot(**data)


def _point_from_row(row: Mapping[str, Any]) -> WeeklySalesPoint:
    data = dict(row)
    data["last_adjusted"] = as_datetime(data["last_adjusted"])
    return WeeklySalesPoint(**data)
