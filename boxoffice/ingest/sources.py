"""Report document sources and token extraction."""

from __future__ import annotations

import json
import logging
import pathlib
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterator, Protocol

import pendulum

from boxoffice.utils.dates import local_date

logger = logging.getLogger(__name__)

# e.g. performance_sales_summary_2025-10-14T13-05-22_webhook_1760447122_ab12cd34.pdf
FILENAME_TS_RE = re.compile(r"(\d{4}-\d{2}-\d{2})(?:T\d{2}-\d{2}-\d{2})?")


class DocumentSourceError(RuntimeError):
    """The document source cannot be read at all."""


class DocumentDateError(ValueError):
    pass


class ExtractionError(ValueError):
    pass


@dataclass(slots=True)
class SourceDocument:
    name: str
    created_at: datetime | None
    loader: Callable[[], bytes]

    def read(self) -> bytes:
        return self.loader()


class DocumentSource(Protocol):
    def __iter__(self) -> Iterator[SourceDocument]: ...


class TokenExtractor(Protocol):
    def extract(self, document: SourceDocument) -> list[list[str]]: ...


def file_document(path: pathlib.Path, *, name: str | None = None) -> SourceDocument:
    """Wrap a local file; its modification time stands in for creation metadata."""
    return SourceDocument(
        name=name or path.name,
        created_at=pendulum.from_timestamp(path.stat().st_mtime),
        loader=path.read_bytes,
    )


class DirectorySource:
    """Read-only listing of report documents in a local directory."""

    def __init__(self, root: pathlib.Path | str, *, patterns: tuple[str, ...] = ("*.json", "*.txt")) -> None:
        self.root = pathlib.Path(root)
        self.patterns = patterns

    def check(self) -> None:
        if not self.root.is_dir():
            raise DocumentSourceError(f"Document directory not found: {self.root}")

    def __iter__(self) -> Iterator[SourceDocument]:
        self.check()
        seen: set[pathlib.Path] = set()
        for pattern in self.patterns:
            for path in sorted(self.root.rglob(pattern)):
                if path in seen or not path.is_file():
                    continue
                seen.add(path)
                yield file_document(path, name=str(path.relative_to(self.root)))


class JsonTokenExtractor:
    """Token dumps stored as ``[[token, ...], ...]`` or ``{"pages": [...]}``."""

    def extract(self, document: SourceDocument) -> list[list[str]]:
        try:
            data = json.loads(document.read().decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ExtractionError(f"{document.name}: invalid token dump ({exc})") from exc
        if isinstance(data, dict):
            data = data.get("pages")
        if not isinstance(data, list) or not all(isinstance(page, list) for page in data):
            raise ExtractionError(f"{document.name}: expected a list of pages")
        return [[str(token) for token in page] for page in data]


class TextTokenExtractor:
    """Plain-text dumps: one token per line, pages separated by form feeds."""

    def extract(self, document: SourceDocument) -> list[list[str]]:
        try:
            text = document.read().decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ExtractionError(f"{document.name}: not UTF-8 text") from exc
        pages = []
        for chunk in text.split("\f"):
            tokens = [line.strip() for line in chunk.splitlines() if line.strip()]
            if tokens:
                pages.append(tokens)
        return pages


class SuffixExtractor:
    """Dispatches to an extractor by file suffix."""

    def __init__(self, extractors: dict[str, TokenExtractor] | None = None) -> None:
        self.extractors = extractors or {
            ".json": JsonTokenExtractor(),
            ".txt": TextTokenExtractor(),
        }

    def extract(self, document: SourceDocument) -> list[list[str]]:
        suffix = pathlib.PurePath(document.name).suffix.lower()
        extractor = self.extractors.get(suffix)
        if extractor is None:
            raise ExtractionError(f"No token extractor for {document.name}")
        return extractor.extract(document)


def date_from_filename(name: str) -> date | None:
    match = FILENAME_TS_RE.search(pathlib.PurePath(name).name)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def resolve_as_of_date(document: SourceDocument, report_date: date | None) -> tuple[date, str]:
    """Pick the document's as-of date: report content, then metadata, then filename."""
    if report_date:
        return report_date, "content"
    if document.created_at:
        return local_date(document.created_at), "metadata"
    from_name = date_from_filename(document.name)
    if from_name:
        return from_name, "filename"
    raise DocumentDateError(f"Cannot determine report date for {document.name}")
