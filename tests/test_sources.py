import json
import os
from datetime import date, datetime, timezone

import pytest

from boxoffice.ingest.sources import (
    DirectorySource,
    DocumentDateError,
    DocumentSourceError,
    ExtractionError,
    JsonTokenExtractor,
    SourceDocument,
    SuffixExtractor,
    TextTokenExtractor,
    date_from_filename,
    resolve_as_of_date,
)


def _document(name, payload=b"", created_at=None):
    return SourceDocument(name=name, created_at=created_at, loader=lambda: payload)


def test_directory_source_lists_matching_files(tmp_path):
    (tmp_path / "a.json").write_text("[]")
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "b.txt").write_text("251011A")
    (tmp_path / "ignored.pdf").write_bytes(b"%PDF")
    names = sorted(doc.name for doc in DirectorySource(tmp_path))
    assert names == ["a.json", os.path.join("nested", "b.txt")]


def test_directory_source_missing_root(tmp_path):
    source = DirectorySource(tmp_path / "absent")
    with pytest.raises(DocumentSourceError):
        source.check()
    with pytest.raises(DocumentSourceError):
        list(source)


def test_json_extractor_accepts_both_shapes():
    pages = [["251011A", "10/11/2025"], ["Total"]]
    extractor = JsonTokenExtractor()
    assert extractor.extract(_document("a.json", json.dumps(pages).encode())) == pages
    assert extractor.extract(_document("a.json", json.dumps({"pages": pages}).encode())) == pages


def test_json_extractor_rejects_garbage():
    with pytest.raises(ExtractionError):
        JsonTokenExtractor().extract(_document("a.json", b"{not json"))
    with pytest.raises(ExtractionError):
        JsonTokenExtractor().extract(_document("a.json", b'{"pages": "x"}'))


def test_text_extractor_splits_pages_on_form_feed():
    payload = "251011A\n10/11/2025\n\f\n251018A\n  62.5%  \n".encode()
    assert TextTokenExtractor().extract(_document("a.txt", payload)) == [
        ["251011A", "10/11/2025"],
        ["251018A", "62.5%"],
    ]


def test_suffix_extractor_rejects_unknown_types():
    with pytest.raises(ExtractionError):
        SuffixExtractor().extract(_document("report.pdf", b"%PDF"))


def test_date_from_filename():
    name = "performance_sales_summary_2025-10-14T13-05-22_webhook_1760447122_ab12cd34.json"
    assert date_from_filename(name) == date(2025, 10, 14)
    assert date_from_filename("archive/2025-09-30.txt") == date(2025, 9, 30)
    assert date_from_filename("report.json") is None
    assert date_from_filename("2025-13-45.json") is None


def test_as_of_date_prefers_content():
    document = _document(
        "summary_2025-10-01T00-00-00.json",
        created_at=datetime(2025, 10, 5, 15, tzinfo=timezone.utc),
    )
    assert resolve_as_of_date(document, date(2025, 10, 14)) == (date(2025, 10, 14), "content")


def test_as_of_date_falls_back_to_metadata_then_filename(monkeypatch):
    monkeypatch.setenv("TIMEZONE", "America/Chicago")
    late_evening = datetime(2025, 10, 6, 2, 30, tzinfo=timezone.utc)
    document = _document("summary_2025-10-01T00-00-00.json", created_at=late_evening)
    # 02:30 UTC is still the previous evening in Chicago
    assert resolve_as_of_date(document, None) == (date(2025, 10, 5), "metadata")

    undated = _document("summary_2025-10-01T00-00-00.json")
    assert resolve_as_of_date(undated, None) == (date(2025, 10, 1), "filename")


def test_as_of_date_unresolvable():
    with pytest.raises(DocumentDateError):
        resolve_as_of_date(_document("report.json"), None)
