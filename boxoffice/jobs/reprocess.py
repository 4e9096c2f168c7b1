"""Reprocess a backlog of sales report documents.

Documents are handled oldest first, one at a time: each record's delta is
measured against whatever the previous documents left in the store, so order
matters. A dry run keeps its writes in a ``PlannedStore`` so later documents
still see them. A document that fails is counted and logged and the run moves
on; records it wrote before failing are reported as partial.

Usage::

    python -m boxoffice.jobs.reprocess /data/reports --since 2025-10-01 --dry-run
"""

from __future__ import annotations

import argparse
import copy
import logging
import os
import secrets
import sys
import time
from dataclasses import dataclass, fields
from datetime import date
from typing import Iterable, Sequence

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from boxoffice.config import ConfigError, PipelineConfig, load_config
from boxoffice.db.session import create_engine_from_env
from boxoffice.db.store import SnapshotStore, StoreUnavailableError
from boxoffice.ingest.models import (
    SOURCE_REPROCESS,
    IngestionExecution,
    PerformanceEntity,
    SalesSnapshot,
    TrendAdjustment,
    WeeklySalesPoint,
)
from boxoffice.ingest.parser import ReportParser
from boxoffice.ingest.sources import (
    DirectorySource,
    DocumentDateError,
    DocumentSource,
    DocumentSourceError,
    SourceDocument,
    SuffixExtractor,
    TokenExtractor,
    resolve_as_of_date,
)
from boxoffice.logic.reconcile import Reconciler
from boxoffice.utils.dates import parse_iso_date

logger = logging.getLogger(__name__)

EXIT_SOURCE_UNAVAILABLE = 1
EXIT_STORE_UNAVAILABLE = 2
EXIT_BAD_CONFIG = 3


@dataclass(slots=True)
class RunOptions:
    since: date | None = None
    performance: str | None = None
    limit: int | None = None
    dry_run: bool = False
    force: bool = False


@dataclass(slots=True)
class RunStats:
    documents_total: int = 0
    documents_processed: int = 0
    documents_skipped: int = 0
    documents_errored: int = 0
    records_received: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_unknown: int = 0
    records_existing: int = 0
    records_partial: int = 0
    anomalies: int = 0
    trends_adjusted: int = 0

    def add(self, other: RunStats) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))

    def render(self, *, dry_run: bool = False) -> str:
        lines = [
            "Reprocessing complete",
            f"  Documents processed:        {self.documents_processed}/{self.documents_total}",
            f"  Documents skipped:          {self.documents_skipped}",
            f"  Documents errored:          {self.documents_errored}",
            f"  Snapshots created:          {self.records_created}",
            f"  Snapshots updated:          {self.records_updated}",
            f"  Partial (failed documents): {self.records_partial}",
            f"  Skipped (already present):  {self.records_existing}",
            f"  Skipped (unknown entity):   {self.records_unknown}",
            f"  Anomalies detected:         {self.anomalies}",
            f"  Trends adjusted:            {self.trends_adjusted}",
        ]
        if dry_run:
            lines.append("DRY RUN: no changes were written")
        return "\n".join(lines)


@dataclass(slots=True)
class PreparedDocument:
    document: SourceDocument
    as_of: date
    date_source: str


class PlannedStore:
    """Store view for dry runs: reads fall through to ``store``, writes stay in memory.

    Only the calls a ``Reconciler`` makes are provided, so nothing can reach
    the real store's write path.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self.store = store
        self.entities: dict[str, PerformanceEntity] = {}
        self.snapshots: dict[tuple[str, date], SalesSnapshot] = {}
        self.points: dict[tuple[str, int], WeeklySalesPoint] = {}
        self.adjustments: set[str] = set()

    def get_entity(self, code: str) -> PerformanceEntity | None:
        return self.entities.get(code) or self.store.get_entity(code)

    def get_snapshot(self, code: str, as_of: date) -> SalesSnapshot | None:
        planned = self.snapshots.get((code, as_of))
        return planned if planned is not None else self.store.get_snapshot(code, as_of)

    def latest_snapshot_before(self, code: str, as_of: date) -> SalesSnapshot | None:
        candidates = [
            snapshot
            for (snapshot_code, day), snapshot in self.snapshots.items()
            if snapshot_code == code and day < as_of
        ]
        stored = self.store.latest_snapshot_before(code, as_of)
        if stored is not None:
            # Listed last so a planned snapshot for the same date wins the tie.
            candidates.append(stored)
        return max(candidates, key=lambda snapshot: snapshot.as_of_date, default=None)

    def weekly_series(self, code: str) -> list[WeeklySalesPoint]:
        return [
            self.points.get((code, point.weeks_before), point)
            for point in self.store.weekly_series(code)
        ]

    def has_adjustment(self, adjustment_id: str) -> bool:
        return adjustment_id in self.adjustments or self.store.has_adjustment(adjustment_id)

    def write_reconciliation(
        self,
        snapshot: SalesSnapshot,
        *,
        entity: PerformanceEntity | None = None,
        points: Iterable[WeeklySalesPoint] = (),
        adjustment: TrendAdjustment | None = None,
    ) -> str:
        key = (snapshot.performance_code, snapshot.as_of_date)
        outcome = "updated" if self.get_snapshot(*key) is not None else "inserted"
        if entity is not None and self.get_entity(entity.code) is None:
            self.entities[entity.code] = entity
        self.snapshots[key] = snapshot
        if adjustment is not None and not self.has_adjustment(adjustment.adjustment_id):
            self.adjustments.add(adjustment.adjustment_id)
            for point in points:
                self.points[(point.performance_code, point.weeks_before)] = point
        return outcome


class ReprocessController:
    def __init__(
        self,
        store: SnapshotStore,
        source: DocumentSource,
        *,
        config: PipelineConfig | None = None,
        extractor: TokenExtractor | None = None,
        parser: ReportParser | None = None,
        reconciler: Reconciler | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.config = config or PipelineConfig()
        self.extractor = extractor or SuffixExtractor()
        self.parser = parser or ReportParser(self.config)
        self.reconciler = reconciler or Reconciler(store, self.config)

    def run(self, options: RunOptions | None = None) -> RunStats:
        options = options or RunOptions()
        self.store.ping()
        try:
            known = self.store.known_codes()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Cannot load performances: {exc}") from exc

        stats = RunStats()
        backlog = self._prepare(options, stats)
        logger.info("%s documents queued; %s performances known", len(backlog), len(known))

        execution = None
        reconciler = self.reconciler
        if options.dry_run:
            reconciler = self._planning_reconciler()
        else:
            execution = IngestionExecution(
                execution_id=f"reprocess_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
                pipeline_type=SOURCE_REPROCESS,
                source_identifier=str(getattr(self.source, "root", "backlog")),
            )
            self.store.start_execution(execution)

        # (code, as_of) keys written by this run; never treated as already present.
        written: set[tuple[str, date]] = set()
        try:
            for position, prepared in enumerate(backlog, start=1):
                logger.info(
                    "[%s/%s] %s (as of %s, from %s)",
                    position,
                    len(backlog),
                    prepared.document.name,
                    prepared.as_of,
                    prepared.date_source,
                )
                counts = RunStats()
                try:
                    self._process_document(prepared, options, known, reconciler, written, counts)
                except Exception as exc:
                    stats.documents_errored += 1
                    stats.records_received += counts.records_received
                    stats.records_partial += counts.records_created + counts.records_updated
                    logger.exception("Failed to process %s: %s", prepared.document.name, exc)
                else:
                    stats.add(counts)
        except BaseException as exc:
            if execution is not None:
                self._finish(execution, stats, status="failed", error=str(exc) or type(exc).__name__)
            raise
        if execution is not None:
            self._finish(execution, stats, status="completed")
        return stats

    def _planning_reconciler(self) -> Reconciler:
        planner = copy.copy(self.reconciler)
        planner.store = PlannedStore(self.reconciler.store)
        return planner

    def _prepare(self, options: RunOptions, stats: RunStats) -> list[PreparedDocument]:
        """Date every document, then filter, sort and limit.

        Only the footer date is read here; rows are parsed when the document
        is processed.
        """
        prepared: list[PreparedDocument] = []
        for document in self.source:
            if options.since:
                # A report is never stamped before the day it was run.
                stamped = _stamped_date(document)
                if stamped is not None and stamped < options.since:
                    logger.debug("Skipping %s: stamped %s", document.name, stamped)
                    continue
            stats.documents_total += 1
            try:
                report_date = self.parser.report_date(self.extractor.extract(document))
                as_of, date_source = resolve_as_of_date(document, report_date)
            except Exception as exc:
                stats.documents_errored += 1
                logger.error("Cannot read %s: %s", document.name, exc)
                continue
            prepared.append(PreparedDocument(document, as_of, date_source))

        if options.since:
            kept = [item for item in prepared if item.as_of >= options.since]
            stats.documents_total -= len(prepared) - len(kept)
            prepared = kept
            logger.info("Filtered to %s documents since %s", len(prepared), options.since)

        prepared.sort(key=lambda item: (item.as_of, _created_key(item.document), item.document.name))

        if options.limit is not None and len(prepared) > options.limit:
            stats.documents_total -= len(prepared) - options.limit
            prepared = prepared[: options.limit]
            logger.info("Limited to the first %s documents", options.limit)
        return prepared

    def _process_document(
        self,
        prepared: PreparedDocument,
        options: RunOptions,
        known: set[str],
        reconciler: Reconciler,
        written: set[tuple[str, date]],
        stats: RunStats,
    ) -> None:
        records = self.parser.parse(self.extractor.extract(prepared.document)).records
        if options.performance:
            records = [record for record in records if record.code == options.performance]
        stats.records_received += len(records)

        changed = 0
        for record in records:
            if record.code not in known:
                stats.records_unknown += 1
                logger.info("Skipping %s: not a known performance", record.code)
                continue
            key = (record.code, prepared.as_of)
            if key not in written and not options.force and self.store.get_snapshot(*key) is not None:
                stats.records_existing += 1
                continue

            plan = reconciler.evaluate(record, prepared.as_of, source=SOURCE_REPROCESS)
            outcome = reconciler.apply(plan)
            written.add(key)
            changed += 1

            if outcome == "inserted":
                stats.records_created += 1
            else:
                stats.records_updated += 1
            if plan.anomaly:
                stats.anomalies += 1
            if plan.trend_adjusted:
                stats.trends_adjusted += 1

        if changed:
            stats.documents_processed += 1
        else:
            stats.documents_skipped += 1
            logger.info("Nothing to write for %s", prepared.document.name)

    def _finish(self, execution: IngestionExecution, stats: RunStats, *, status: str, error: str | None = None) -> None:
        execution.status = status
        execution.error_message = error
        execution.records_received = stats.records_received
        execution.records_processed = stats.records_created + stats.records_updated + stats.records_partial
        execution.records_inserted = stats.records_created
        execution.records_updated = stats.records_updated
        execution.records_skipped = stats.records_unknown + stats.records_existing
        execution.trends_adjusted = stats.trends_adjusted
        execution.anomalies_detected = stats.anomalies
        try:
            self.store.finish_execution(execution)
        except SQLAlchemyError as exc:
            logger.warning("Could not record execution %s: %s", execution.execution_id, exc)


def _created_key(document: SourceDocument) -> float:
    return document.created_at.timestamp() if document.created_at else 0.0


def _stamped_date(document: SourceDocument) -> date | None:
    """Metadata or filename date, whichever the document carries."""
    try:
        return resolve_as_of_date(document, None)[0]
    except DocumentDateError:
        return None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reprocess archived sales report documents.")
    parser.add_argument("source", help="Directory holding the report documents")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--since", type=parse_iso_date, help="Only documents dated on or after YYYY-MM-DD")
    parser.add_argument("--performance", help="Only records for this performance code")
    parser.add_argument("--limit", type=int, help="Process at most N documents (oldest first)")
    parser.add_argument("--force", action="store_true", help="Rewrite snapshots that already exist")
    parser.add_argument(
        "--pattern",
        action="append",
        help="Glob for document files (repeatable; default *.json and *.txt)",
    )
    parser.add_argument("--config", help="YAML file overriding defaults.yml")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_arg_parser().parse_args(argv)
    options = RunOptions(
        since=args.since,
        performance=args.performance,
        limit=args.limit,
        dry_run=args.dry_run,
        force=args.force,
    )

    try:
        config = load_config(args.config)
    except (ConfigError, OSError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_BAD_CONFIG

    source = DirectorySource(args.source, patterns=tuple(args.pattern or ("*.json", "*.txt")))
    try:
        source.check()
    except DocumentSourceError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_SOURCE_UNAVAILABLE

    try:
        store = SnapshotStore(create_engine_from_env())
    except (SQLAlchemyError, ImportError) as exc:
        print(f"Cannot create database engine: {exc}", file=sys.stderr)
        return EXIT_STORE_UNAVAILABLE

    if options.dry_run:
        logger.info("Dry run: no database changes will be made")
    if options.force:
        logger.warning("Force mode: existing snapshots will be rewritten")

    controller = ReprocessController(store, source, config=config)
    try:
        stats = controller.run(options)
    except StoreUnavailableError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_STORE_UNAVAILABLE
    except DocumentSourceError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_SOURCE_UNAVAILABLE
    print(stats.render(dry_run=options.dry_run))
    return 0


if __name__ == "__main__":
    sys.exit(main())
