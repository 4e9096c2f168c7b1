import pytest

from boxoffice.config import PipelineConfig
from boxoffice.ingest.parser import ReportParseError, ReportParser

from report_tokens import report_page, report_row


@pytest.fixture()
def parser():
    return ReportParser(PipelineConfig())


def test_parses_row_without_reserved_column(parser):
    report = parser.parse([report_page(report_row("251011A"))])
    assert len(report.records) == 1
    record = report.records[0]
    assert record.code == "251011A"
    assert record.fixed_count == 100
    assert record.fixed_revenue == 500000
    assert record.non_fixed_count == 50
    assert record.single_revenue == 300000
    assert record.total_tickets == 200
    assert record.total_revenue == 1000000
    assert record.available_seats == 1200
    assert record.capacity_percent == 14.3
    assert record.budget_percent == 62.5
    assert record.reserved_count == 0
    assert not record.has_reserved_column
    assert record.performance_date.isoformat() == "2025-10-11"


def test_parses_row_with_reserved_column(parser):
    row = report_row("251011A", reserved=(12, "0.00"), total="10,000.00")
    record = parser.parse([report_page(row)]).records[0]
    assert record.has_reserved_column
    assert record.reserved_count == 12
    assert record.reserved_revenue == 0
    # comps are excluded from sold tickets
    assert record.total_tickets == 200
    assert record.available_seats == 1200
    assert record.entity_stub().capacity == 200 + 12 + 1200


def test_both_revisions_in_one_document(parser):
    page = report_page(
        report_row("251011A"),
        report_row("251012B", reserved=(4, "80.00")),
    )
    report = parser.parse([page])
    assert [r.code for r in report.records] == ["251011A", "251012B"]
    assert report.records[1].reserved_count == 4
    assert report.records[1].reserved_revenue == 8000


def test_code_after_total_label_is_not_a_row(parser):
    page = report_page(report_row("251011A"))
    page.extend(["Series Total", "251011A", "999", "1.00"])
    report = parser.parse([page])
    assert len(report.records) == 1
    assert report.records[0].fixed_count == 100


def test_truncated_row_defaults_missing_fields(parser):
    page = ["251011A", "10/11/2025", "62.5%", "100", "5,000.00", "251012B"] + report_row("251012B")[1:]
    report = parser.parse([page])
    first, second = report.records
    assert first.fixed_count == 100
    assert first.single_count == 0
    assert first.total_revenue == 0
    assert second.code == "251012B"
    assert second.total_tickets == 200


def test_report_date_from_footer(parser):
    report = parser.parse([report_page(report_row("251011A"), run_on="10/14/2025")])
    assert report.report_date.isoformat() == "2025-10-14"


def test_missing_footer_leaves_date_unset(parser):
    report = parser.parse([report_page(report_row("251011A"), run_on=None)])
    assert report.report_date is None


def test_report_date_without_reading_rows(parser):
    pages = [report_page(report_row("251011A"), run_on=None), report_page(run_on="10/21/2025")]
    assert parser.report_date(pages).isoformat() == "2025-10-21"
    assert parser.report_date([report_page(run_on=None)]) is None
    with pytest.raises(ReportParseError):
        parser.report_date("251011A")


def test_rows_across_pages(parser):
    report = parser.parse([report_page(report_row("251011A")), report_page(report_row("251018A"))])
    assert {r.code for r in report.records} == {"251011A", "251018A"}


def test_empty_document_parses_to_nothing(parser):
    report = parser.parse([])
    assert report.records == []
    assert report.report_date is None


def test_rejects_non_token_input(parser):
    with pytest.raises(ReportParseError):
        parser.parse("251011A 10/11/2025")
    with pytest.raises(ReportParseError):
        parser.parse([None])


def test_custom_code_pattern():
    parser = ReportParser(PipelineConfig(performance_code_pattern=r"^P\d{4}$"))
    report = parser.parse([report_page(report_row("P1234"), report_row("251011A"))])
    assert [r.code for r in report.records] == ["P1234"]


def test_capacity_must_look_like_a_percentage(parser):
    row = report_row("251011A")[:-1]
    report = parser.parse([row + ["Run by boxoffice on 10/14/2025 6:00 AM"]])
    assert report.records[0].capacity_percent == 0.0
    assert report.records[0].available_seats == 1200
    assert report.report_date.isoformat() == "2025-10-14"
