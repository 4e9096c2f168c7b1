from datetime import date

import pytest
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)

from boxoffice.config import PipelineConfig
from boxoffice.db.store import SnapshotStore
from boxoffice.ingest.models import PerformanceEntity, SalesSnapshot, WeeklySalesPoint
from boxoffice.logic.reconcile import Reconciler
from report_tokens import KNOWN_CODE

# Mirrors the analytical store tables the SnapshotStore writes to.
metadata = MetaData()

performances = Table(
    "performances",
    metadata,
    Column("code", Text, primary_key=True),
    Column("title", Text, nullable=False),
    Column("performance_date", Date),
    Column("venue", Text),
    Column("capacity", Integer),
    Column("series", Text),
    Column("season", Text),
)

sales_snapshots = Table(
    "sales_snapshots",
    metadata,
    Column("snapshot_id", Text, primary_key=True),
    Column("performance_code", Text, nullable=False),
    Column("as_of_date", Date, nullable=False),
    Column("fixed_count", Integer),
    Column("fixed_revenue", Integer),
    Column("non_fixed_count", Integer),
    Column("non_fixed_revenue", Integer),
    Column("single_count", Integer),
    Column("single_revenue", Integer),
    Column("reserved_count", Integer),
    Column("reserved_revenue", Integer),
    Column("total_tickets", Integer),
    Column("total_revenue", Integer),
    Column("capacity_percent", Float),
    Column("budget_percent", Float),
    Column("fixed_atp", Integer),
    Column("non_fixed_atp", Integer),
    Column("single_atp", Integer),
    Column("reserved_atp", Integer),
    Column("source", Text),
    Column("created_at", DateTime),
    UniqueConstraint("performance_code", "as_of_date"),
)

weekly_sales = Table(
    "weekly_sales",
    metadata,
    Column("performance_code", Text, primary_key=True),
    Column("weeks_before", Integer, primary_key=True),
    Column("tickets_sold", Integer, nullable=False),
    Column("data_source", Text),
    Column("adjustment_id", Text),
    Column("last_adjusted", DateTime),
    Column("confidence_score", Float),
)

trend_adjustments = Table(
    "trend_adjustments",
    metadata,
    Column("adjustment_id", Text, primary_key=True),
    Column("performance_code", Text, nullable=False),
    Column("snapshot_id", Text),
    Column("adjustment_type", Text),
    Column("old_total_tickets", Integer),
    Column("new_total_tickets", Integer),
    Column("tickets_difference", Integer),
    Column("old_total_revenue", Integer),
    Column("new_total_revenue", Integer),
    Column("revenue_difference", Integer),
    Column("weekly_adjustments", JSON),
    Column("trend_velocity_preserved", Boolean),
    Column("adjustment_algorithm", Text),
    Column("confidence_score", Float),
    Column("created_at", DateTime),
)

ingestion_executions = Table(
    "ingestion_executions",
    metadata,
    Column("execution_id", Text, primary_key=True),
    Column("pipeline_type", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("start_time", DateTime),
    Column("end_time", DateTime),
    Column("source_identifier", Text),
    Column("records_received", Integer, default=0),
    Column("records_processed", Integer, default=0),
    Column("records_inserted", Integer, default=0),
    Column("records_updated", Integer, default=0),
    Column("records_skipped", Integer, default=0),
    Column("trends_adjusted", Integer, default=0),
    Column("anomalies_detected", Integer, default=0),
    Column("error_message", Text),
)


@pytest.fixture()
def engine():
    engine = create_engine("sqlite:///:memory:", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return SnapshotStore(engine)


@pytest.fixture()
def config():
    return PipelineConfig()


@pytest.fixture()
def reconciler(store, config):
    return Reconciler(store, config)


@pytest.fixture()
def seeded_store(store):
    """A known performance with 200 tickets as of 10/07 and a flat five-week curve."""
    store.ensure_entity(
        PerformanceEntity(
            code=KNOWN_CODE,
            title="Beethoven Nine",
            performance_date=date(2025, 10, 11),
            venue="Hall",
            capacity=1600,
            series="Series-10",
            season="25-26",
        )
    )
    store.upsert_snapshot(
        SalesSnapshot(
            snapshot_id="snap_251011A_20251007",
            performance_code=KNOWN_CODE,
            as_of_date=date(2025, 10, 7),
            fixed_count=100,
            fixed_revenue=500000,
            non_fixed_count=50,
            non_fixed_revenue=200000,
            single_count=50,
            single_revenue=300000,
            total_revenue=1000000,
        )
    )
    store.upsert_weekly_points(
        [WeeklySalesPoint(KNOWN_CODE, week, 40) for week in range(5, 0, -1)]
    )
    return store
