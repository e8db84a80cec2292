from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Any

from models.import_rows import EXPECTED_COLUMNS, DecimalSeparator, Dialect, RawRow

DELIMITERS = (";", ",", "\t", "|")
DEFAULT_DELIMITER = ";"
DATE_FORMATS = ("dd.MM.yyyy", "yyyy-MM-dd", "dd/MM/yyyy", "MM/dd/yyyy")
DEFAULT_DATE_FORMAT = "dd.MM.yyyy"
MAX_SAMPLE_LINES = 10
MAX_SAMPLE_DATES = 10

_NON_NUMERIC = re.compile(r"[^0-9.,-]")
_COMMA_CENTS = re.compile(r",[0-9]{2}\Z")
_DOT_CENTS = re.compile(r"\.[0-9]{2}\Z")

# Each pattern yields (year, month, day) group indexes for its capture groups.
_DATE_PATTERNS: dict[str, tuple[re.Pattern[str], tuple[int, int, int]]] = {
    "dd.MM.yyyy": (re.compile(r"([0-9]{2})\.([0-9]{2})\.([0-9]{4})"), (3, 2, 1)),
    "yyyy-MM-dd": (re.compile(r"([0-9]{4})-([0-9]{2})-([0-9]{2})"), (1, 2, 3)),
    "dd/MM/yyyy": (re.compile(r"([0-9]{2})/([0-9]{2})/([0-9]{4})"), (3, 2, 1)),
    "MM/dd/yyyy": (re.compile(r"([0-9]{2})/([0-9]{2})/([0-9]{4})"), (3, 1, 2)),
}


def detect_dialect(raw_text: str, rows: Sequence[RawRow]) -> tuple[Dialect, dict[str, Any]]:
    """
    Infer the full dialect of an upload.

    The delimiter comes from the raw text; decimal separator and date format come from the
    already-split rows. Returns (dialect, hints) where hints record the scores observed.
    """

    delimiter, delimiter_scores = _score_delimiters(raw_text)
    amounts = [row.total for row in rows if row.total]
    dates = [row.date for row in rows if row.date]
    decimal_separator, separator_scores = _score_decimal_separators(amounts)
    date_format = detect_date_format(dates)

    hints: dict[str, Any] = {
        "delimiter_scores": delimiter_scores,
        "decimal_separator_scores": separator_scores,
        "amount_samples": len(amounts),
        "date_samples": min(len(dates), MAX_SAMPLE_DATES),
    }
    dialect = Dialect(delimiter=delimiter, decimal_separator=decimal_separator, date_format=date_format)
    return dialect, hints


def detect_delimiter(raw_text: str) -> str:
    delimiter, _ = _score_delimiters(raw_text)
    return delimiter


def detect_decimal_separator(amounts: Iterable[str]) -> DecimalSeparator:
    separator, _ = _score_decimal_separators(amounts)
    return separator


def detect_date_format(dates: Iterable[str]) -> str:
    """
    Return the first format that parses every sample date.

    `MM/dd/yyyy` is skipped when any sample starts with a value above 12, since that group
    cannot be a month. Falls back to `dd.MM.yyyy` when nothing matches.
    """

    samples = [value for value in dates if value.strip()][:MAX_SAMPLE_DATES]
    if not samples:
        return DEFAULT_DATE_FORMAT

    for date_format in DATE_FORMATS:
        if not all(_is_valid_date(sample, date_format) for sample in samples):
            continue
        if date_format == "MM/dd/yyyy" and any(int(sample.split("/")[0]) > 12 for sample in samples):
            continue
        return date_format

    return DEFAULT_DATE_FORMAT


def _score_delimiters(raw_text: str) -> tuple[str, dict[str, int]]:
    lines = [line for line in raw_text.split("\n") if line.strip()]
    sample_lines = lines[:MAX_SAMPLE_LINES]

    best_delimiter = DEFAULT_DELIMITER
    best_score = 0
    scores: dict[str, int] = {}

    for delimiter in DELIMITERS:
        counts = [len(line.split(delimiter)) for line in sample_lines]
        if counts and all(count == EXPECTED_COLUMNS for count in counts):
            scores[delimiter] = len(counts)
            return delimiter, scores

        score = sum(1 for count in counts if count == EXPECTED_COLUMNS)
        scores[delimiter] = score
        if score > best_score:
            best_score = score
            best_delimiter = delimiter

    return best_delimiter, scores


def _score_decimal_separators(amounts: Iterable[str]) -> tuple[DecimalSeparator, dict[str, int]]:
    comma_score = 0
    dot_score = 0

    for raw in amounts:
        cleaned = _NON_NUMERIC.sub("", raw)
        if not cleaned:
            continue

        has_comma = "," in cleaned
        has_dot = "." in cleaned
        if has_comma and has_dot:
            # Whichever separator comes last is the decimal one.
            if cleaned.rfind(",") > cleaned.rfind("."):
                comma_score += 2
            else:
                dot_score += 2
        elif has_comma:
            if _COMMA_CENTS.search(cleaned):
                comma_score += 1
        elif has_dot:
            if _DOT_CENTS.search(cleaned):
                dot_score += 1

    separator: DecimalSeparator = "," if comma_score > dot_score else "."
    return separator, {",": comma_score, ".": dot_score}


def _is_valid_date(value: str, date_format: str) -> bool:
    pattern, (year_idx, month_idx, day_idx) = _DATE_PATTERNS[date_format]
    match = pattern.fullmatch(value)
    if match is None:
        return False

    year = int(match.group(year_idx))
    month = int(match.group(month_idx))
    day = int(match.group(day_idx))
    return 1 <= month <= 12 and 1 <= day <= 31 and 1900 <= year <= 2100
