"""Performance sales summary report parser.

Reports arrive as positional text tokens per page. Labels and values are
interleaved by layout, so each performance row is located by its code token
and the values that follow it are read in a fixed order. Some report revisions
carry an extra reserved/complimentary column pair between the subtotal and the
total; its presence is inferred from token shape.

Row layout after the performance code::

    date/time, budget %, fixed count, fixed revenue, non-fixed count,
    non-fixed revenue, single count, single revenue, subtotal revenue,
    [reserved count, [reserved revenue]], total revenue, available, capacity %
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Iterator, Sequence

from boxoffice.config import PipelineConfig
from boxoffice.ingest.models import ParsedPerformance, ParsedReport, RecordValidationError
from boxoffice.ingest.tokens import is_currency, is_integer, is_percentage, to_cents, to_int, to_percent
from boxoffice.utils.dates import parse_report_date

logger = logging.getLogger(__name__)

FOOTER_RE = re.compile(r"Run by .* on (\d{1,2}/\d{1,2}/\d{4})", re.IGNORECASE)
TIME_RE = re.compile(r"^\d{1,2}:\d{2}(\s*[AP]M)?$", re.IGNORECASE)


class ReportParseError(ValueError):
    pass


class _Cursor:
    """Reads tokens forward, stopping at the next performance code."""

    def __init__(self, tokens: Sequence[str], start: int, code_re: re.Pattern[str]) -> None:
        self.tokens = tokens
        self.index = start
        self.code_re = code_re

    def peek(self) -> str | None:
        if self.index >= len(self.tokens):
            return None
        token = self.tokens[self.index]
        if self.code_re.match(token):
            return None
        return token

    def take(self) -> str | None:
        token = self.peek()
        if token is not None:
            self.index += 1
        return token

    def take_if(self, predicate) -> str | None:
        token = self.peek()
        if token is not None and predicate(token):
            self.index += 1
            return token
        return None


class ReportParser:
    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        self._code_re = self.config.code_re

    def parse(self, pages: Sequence[Sequence[str]]) -> ParsedReport:
        records: list[ParsedPerformance] = []
        rejected = 0
        report_date = None
        for tokens in self._pages(pages):
            if report_date is None:
                report_date = self._find_report_date(tokens)
            page_records, page_rejected = self._parse_page(tokens)
            records.extend(page_records)
            rejected += page_rejected
        logger.info("Parsed %s performances (%s rejected)", len(records), rejected)
        return ParsedReport(records=records, report_date=report_date, rejected=rejected)

    def report_date(self, pages: Sequence[Sequence[str]]) -> date | None:
        """Footer run date alone; no rows are read."""
        for tokens in self._pages(pages):
            found = self._find_report_date(tokens)
            if found:
                return found
        return None

    @staticmethod
    def _pages(pages: Sequence[Sequence[str]]) -> Iterator[list[str]]:
        if isinstance(pages, (str, bytes)) or not isinstance(pages, Sequence):
            raise ReportParseError("Expected a sequence of pages")
        for number, page in enumerate(pages, start=1):
            if isinstance(page, (str, bytes)) or not isinstance(page, Sequence):
                raise ReportParseError(f"Page {number} is not a token sequence")
            yield [str(token).strip() for token in page]

    def _parse_page(self, tokens: list[str]) -> tuple[list[ParsedPerformance], int]:
        records: list[ParsedPerformance] = []
        rejected = 0
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if not self._is_row_code(tokens, index):
                index += 1
                continue
            cursor = _Cursor(tokens, index + 1, self._code_re)
            record = self._read_row(token, cursor)
            index = cursor.index
            try:
                record.validate()
            except RecordValidationError as exc:
                logger.warning("Dropping row: %s", exc)
                rejected += 1
                continue
            records.append(record)
        return records, rejected

    def _is_row_code(self, tokens: list[str], index: int) -> bool:
        if not self._code_re.match(tokens[index]):
            return False
        if index > 0 and self.config.total_marker in tokens[index - 1]:
            return False
        return True

    def _read_row(self, code: str, cursor: _Cursor) -> ParsedPerformance:
        date_text = cursor.take() or ""
        time_text = cursor.take_if(lambda t: TIME_RE.match(t) is not None)
        if time_text:
            date_text = f"{date_text} {time_text}"
        budget = cursor.take()
        fixed_count = cursor.take()
        fixed_revenue = cursor.take()
        non_fixed_count = cursor.take()
        non_fixed_revenue = cursor.take()
        single_count = cursor.take()
        single_revenue = cursor.take()
        subtotal = cursor.take()

        # Optional reserved/complimentary pair; the revenue half only follows a count.
        reserved_count = cursor.take_if(is_integer)
        reserved_revenue = cursor.take_if(is_currency) if reserved_count is not None else None

        total = cursor.take()
        available = cursor.take()
        capacity = cursor.take_if(is_percentage)

        subtotal_cents = to_cents(subtotal)
        return ParsedPerformance(
            code=code,
            date_text=date_text,
            performance_date=parse_report_date(date_text),
            budget_percent=to_percent(budget),
            fixed_count=to_int(fixed_count),
            fixed_revenue=to_cents(fixed_revenue),
            non_fixed_count=to_int(non_fixed_count),
            non_fixed_revenue=to_cents(non_fixed_revenue),
            single_count=to_int(single_count),
            single_revenue=to_cents(single_revenue),
            subtotal_revenue=subtotal_cents,
            reserved_count=to_int(reserved_count),
            reserved_revenue=to_cents(reserved_revenue),
            total_revenue=to_cents(total) if total is not None else subtotal_cents,
            available_seats=to_int(available),
            capacity_percent=to_percent(capacity),
            has_reserved_column=reserved_count is not None,
        )

    @staticmethod
    def _find_report_date(tokens: list[str]):
        for token in tokens:
            match = FOOTER_RE.search(token)
            if match:
                found = parse_report_date(match.group(1))
                if found:
                    return found
        return None
