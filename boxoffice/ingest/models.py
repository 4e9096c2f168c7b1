"""Ingestion data models."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

SOURCE_REPROCESS = "pdf_reprocess"
SOURCE_WEBHOOK = "pdf_webhook"

WEEK_SOURCE_HISTORICAL = "historical"
WEEK_SOURCE_ADJUSTED = "pdf_adjusted"

_SERIES_RE = re.compile(r"^(\d{2})(\d{2})")


def average_price(revenue_cents: int, count: int) -> int:
    if count <= 0:
        return 0
    return round(revenue_cents / count)


def season_for_code(code: str) -> str:
    """``251011A`` -> ``25-26``."""
    match = _SERIES_RE.match(code)
    if not match:
        return "Unknown"
    start = int(match.group(1))
    return f"{start:02d}-{(start + 1) % 100:02d}"


def series_for_code(code: str) -> str:
    """``251011A`` -> ``Series-10``."""
    match = _SERIES_RE.match(code)
    if not match:
        return "Unknown"
    return f"Series-{match.group(2)}"


class RecordValidationError(ValueError):
    pass


@dataclass(slots=True)
class PerformanceEntity:
    code: str
    title: str
    performance_date: date | None = None
    venue: str = "Unknown"
    capacity: int = 0
    series: str = "Unknown"
    season: str = "Unknown"


@dataclass(slots=True)
class ParsedPerformance:
    """One performance row read from a sales report."""

    code: str
    date_text: str = ""
    performance_date: date | None = None
    budget_percent: float = 0.0
    fixed_count: int = 0
    fixed_revenue: int = 0
    non_fixed_count: int = 0
    non_fixed_revenue: int = 0
    single_count: int = 0
    single_revenue: int = 0
    subtotal_revenue: int = 0
    reserved_count: int = 0
    reserved_revenue: int = 0
    total_revenue: int = 0
    available_seats: int = 0
    capacity_percent: float = 0.0
    has_reserved_column: bool = False

    @property
    def total_tickets(self) -> int:
        return self.fixed_count + self.non_fixed_count + self.single_count

    @property
    def fixed_atp(self) -> int:
        return average_price(self.fixed_revenue, self.fixed_count)

    @property
    def non_fixed_atp(self) -> int:
        return average_price(self.non_fixed_revenue, self.non_fixed_count)

    @property
    def single_atp(self) -> int:
        return average_price(self.single_revenue, self.single_count)

    @property
    def reserved_atp(self) -> int:
        return average_price(self.reserved_revenue, self.reserved_count)

    def validate(self) -> None:
        counts = {
            "fixed_count": self.fixed_count,
            "non_fixed_count": self.non_fixed_count,
            "single_count": self.single_count,
            "reserved_count": self.reserved_count,
            "available_seats": self.available_seats,
        }
        for name, value in counts.items():
            if value < 0:
                raise RecordValidationError(f"{self.code}: {name} is negative ({value})")
        if self.total_revenue < 0:
            raise RecordValidationError(f"{self.code}: total_revenue is negative")
        if self.capacity_percent < 0 or self.budget_percent < 0:
            raise RecordValidationError(f"{self.code}: negative percentage")

    def entity_stub(self) -> PerformanceEntity:
        capacity = self.total_tickets + self.reserved_count + self.available_seats
        return PerformanceEntity(
            code=self.code,
            title=f"Performance {self.code}",
            performance_date=self.performance_date,
            capacity=capacity,
            series=series_for_code(self.code),
            season=season_for_code(self.code),
        )


@dataclass(slots=True)
class ParsedReport:
    records: list[ParsedPerformance]
    report_date: date | None = None
    rejected: int = 0


@dataclass(slots=True)
class SalesSnapshot:
    snapshot_id: str
    performance_code: str
    as_of_date: date
    fixed_count: int = 0
    fixed_revenue: int = 0
    non_fixed_count: int = 0
    non_fixed_revenue: int = 0
    single_count: int = 0
    single_revenue: int = 0
    reserved_count: int = 0
    reserved_revenue: int = 0
    total_revenue: int = 0
    capacity_percent: float = 0.0
    budget_percent: float = 0.0
    fixed_atp: int = 0
    non_fixed_atp: int = 0
    single_atp: int = 0
    reserved_atp: int = 0
    source: str = SOURCE_REPROCESS
    created_at: datetime | None = None

    @property
    def total_tickets(self) -> int:
        return self.fixed_count + self.non_fixed_count + self.single_count

    @classmethod
    def from_parsed(cls, record: ParsedPerformance, as_of: date, *, source: str) -> SalesSnapshot:
        return cls(
            snapshot_id=snapshot_id_for(record.code, as_of),
            performance_code=record.code,
            as_of_date=as_of,
            fixed_count=record.fixed_count,
            fixed_revenue=record.fixed_revenue,
            non_fixed_count=record.non_fixed_count,
            non_fixed_revenue=record.non_fixed_revenue,
            single_count=record.single_count,
            single_revenue=record.single_revenue,
            reserved_count=record.reserved_count,
            reserved_revenue=record.reserved_revenue,
            total_revenue=record.total_revenue,
            capacity_percent=record.capacity_percent,
            budget_percent=record.budget_percent,
            fixed_atp=record.fixed_atp,
            non_fixed_atp=record.non_fixed_atp,
            single_atp=record.single_atp,
            reserved_atp=record.reserved_atp,
            source=source,
        )

    def measures(self) -> dict[str, Any]:
        return {
            "fixed_count": self.fixed_count,
            "fixed_revenue": self.fixed_revenue,
            "non_fixed_count": self.non_fixed_count,
            "non_fixed_revenue": self.non_fixed_revenue,
            "single_count": self.single_count,
            "single_revenue": self.single_revenue,
            "reserved_count": self.reserved_count,
            "reserved_revenue": self.reserved_revenue,
            "total_tickets": self.total_tickets,
            "total_revenue": self.total_revenue,
            "capacity_percent": self.capacity_percent,
            "budget_percent": self.budget_percent,
            "fixed_atp": self.fixed_atp,
            "non_fixed_atp": self.non_fixed_atp,
            "single_atp": self.single_atp,
            "reserved_atp": self.reserved_atp,
        }


@dataclass(slots=True)
class WeeklySalesPoint:
    performance_code: str
    weeks_before: int
    tickets_sold: int
    data_source: str = WEEK_SOURCE_HISTORICAL
    adjustment_id: str | None = None
    last_adjusted: datetime | None = None
    confidence_score: float = 1.0


@dataclass(slots=True)
class WeekAdjustment:
    weeks_before: int
    old_value: int
    new_value: int


@dataclass(slots=True)
class TrendAdjustment:
    adjustment_id: str
    performance_code: str
    snapshot_id: str
    adjustment_type: str
    old_total_tickets: int
    new_total_tickets: int
    tickets_difference: int
    old_total_revenue: int
    new_total_revenue: int
    revenue_difference: int
    weekly_adjustments: list[WeekAdjustment] = field(default_factory=list)
    trend_velocity_preserved: bool = False
    adjustment_algorithm: str = "proportional"
    confidence_score: float = 0.8
    created_at: datetime | None = None


@dataclass(slots=True)
class IngestionExecution:
    execution_id: str
    pipeline_type: str
    status: str = "running"
    source_identifier: str | None = None
    records_received: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    trends_adjusted: int = 0
    anomalies_detected: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    error_message: str | None = None


def snapshot_id_for(code: str, as_of: date) -> str:
    return f"snap_{code}_{as_of:%Y%m%d}"


def adjustment_id_for(code: str, as_of: date) -> str:
    return f"adj_{code}_{as_of:%Y%m%d}"
