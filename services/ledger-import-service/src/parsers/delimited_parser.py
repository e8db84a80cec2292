from __future__ import annotations

import csv
from dataclasses import dataclass, field
from io import StringIO
from typing import Any

from models.import_rows import Dialect, RawRow
from parsers.dialect_detection import detect_delimiter, detect_dialect

MAX_FILE_BYTES = 50 * 1024 * 1024


class UploadRejectedError(ValueError):
    """Raised when an uploaded file cannot be analyzed at all."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(slots=True)
class ParsedExport:
    dialect: Dialect
    rows: list[RawRow]
    hints: dict[str, Any] = field(default_factory=dict)


def parse_ledger_export(file_bytes: bytes, *, max_bytes: int = MAX_FILE_BYTES) -> ParsedExport:
    """
    Split a 7-column ledger export into RawRows and infer its dialect.

    Columns are positional (date, account, category, total, currency, description, transfer);
    the first line is a header and is always dropped. Blank rows are skipped.
    """

    if len(file_bytes) > max_bytes:
        raise UploadRejectedError(
            "file_too_large",
            f"File is too large. Maximum size is {max_bytes // (1024 * 1024)} MB.",
        )
    if not file_bytes:
        raise UploadRejectedError("file_empty", "Uploaded file is empty.")

    raw_text = _decode_bytes(file_bytes)
    delimiter = detect_delimiter(raw_text)
    records = _read_records(raw_text, delimiter)
    if len(records) < 2:
        raise UploadRejectedError("too_few_rows", "File must contain a header row and at least one data row.")

    rows = [RawRow.from_cells(record) for record in records[1:] if any(cell.strip() for cell in record)]
    if not rows:
        raise UploadRejectedError("too_few_rows", "File must contain a header row and at least one data row.")

    dialect, hints = detect_dialect(raw_text, rows)
    hints["row_count"] = len(rows)
    return ParsedExport(dialect=dialect, rows=rows, hints=hints)


def _decode_bytes(file_bytes: bytes) -> str:
    try:
        # utf-8-sig also drops a leading BOM left by spreadsheet exports.
        return file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UploadRejectedError("file_unreadable", "File is not valid UTF-8 text.") from exc


def _read_records(raw_text: str, delimiter: str) -> list[list[str]]:
    reader = csv.reader(StringIO(raw_text, newline=""), delimiter=delimiter)
    try:
        return [record for record in reader if record]
    except csv.Error as exc:
        raise UploadRejectedError("file_unreadable", f"Failed to parse file: {exc}") from exc
