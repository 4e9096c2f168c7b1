"""Ingest a single newly delivered sales report.

Unlike the backlog reprocessor this path accepts performances it has never
seen: they get a stub entity and a first snapshot.
"""

from __future__ import annotations

import argparse
import logging
import os
import pathlib
import secrets
import sys
import time
from datetime import date
from typing import Sequence

from dotenv import load_dotenv

from boxoffice.config import load_config
from boxoffice.db.session import create_engine_from_env
from boxoffice.db.store import SnapshotStore, StoreUnavailableError
from boxoffice.ingest.models import SOURCE_WEBHOOK, IngestionExecution
from boxoffice.ingest.parser import ReportParser
from boxoffice.ingest.sources import (
    DocumentSourceError,
    SourceDocument,
    SuffixExtractor,
    TokenExtractor,
    file_document,
    resolve_as_of_date,
)
from boxoffice.logic.reconcile import DECISION_CREATED, Reconciler

logger = logging.getLogger(__name__)


def ingest_document(
    store: SnapshotStore,
    document: SourceDocument,
    *,
    reconciler: Reconciler,
    parser: ReportParser | None = None,
    extractor: TokenExtractor | None = None,
    as_of: date | None = None,
) -> IngestionExecution:
    """Parse ``document`` and reconcile every row, recording one execution row.

    Errors mark the execution ``failed`` and are re-raised.
    """
    parser = parser or ReportParser(reconciler.config)
    extractor = extractor or SuffixExtractor()
    execution = IngestionExecution(
        execution_id=f"webhook_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
        pipeline_type=SOURCE_WEBHOOK,
        source_identifier=document.name,
    )
    store.start_execution(execution)
    try:
        report = parser.parse(extractor.extract(document))
        if as_of is None:
            as_of, date_source = resolve_as_of_date(document, report.report_date)
            logger.info("%s: as of %s (from %s)", document.name, as_of, date_source)
        execution.records_received = len(report.records)
        for record in report.records:
            result = reconciler.reconcile(record, as_of, source=SOURCE_WEBHOOK)
            execution.records_processed += 1
            if result.outcome == "inserted":
                execution.records_inserted += 1
            else:
                execution.records_updated += 1
            if result.plan.decision == DECISION_CREATED:
                logger.info("Registered new performance %s", record.code)
            if result.anomaly:
                execution.anomalies_detected += 1
            if result.trend_adjusted:
                execution.trends_adjusted += 1
        execution.records_skipped = report.rejected
        execution.status = "completed"
    except Exception as exc:
        execution.status = "failed"
        execution.error_message = str(exc)
        logger.error("Ingestion of %s failed: %s", document.name, exc)
        raise
    finally:
        store.finish_execution(execution)
    logger.info(
        "Ingested %s: %s inserted, %s updated, %s anomalies",
        document.name,
        execution.records_inserted,
        execution.records_updated,
        execution.anomalies_detected,
    )
    return execution


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    parser = argparse.ArgumentParser(description="Ingest one sales report document.")
    parser.add_argument("path", help="Token dump (.json or .txt)")
    args = parser.parse_args(argv)

    path = pathlib.Path(args.path)
    if not path.is_file():
        print(f"Document not found: {path}", file=sys.stderr)
        return 1
    document = file_document(path)
    store = SnapshotStore(create_engine_from_env())
    try:
        store.ping()
        execution = ingest_document(store, document, reconciler=Reconciler(store, load_config()))
    except StoreUnavailableError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except (DocumentSourceError, ValueError) as exc:
        print(f"Ingestion failed: {exc}", file=sys.stderr)
        return 1
    print(f"{execution.execution_id}: {execution.status}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
