"""
Display-only normalization of raw ledger rows.

Nothing computed here is sent to the ledger backend: submission forwards the original
strings together with the detected dialect, and the backend parses them authoritatively.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from models.import_rows import DecimalSeparator, NormalizedRow, RawRow, RowType

_NON_NUMERIC = re.compile(r"[^0-9.,-]")
# Leading float literal, matching how a lenient float parser reads "12.5-" or "1.2.3".
_FLOAT_PREFIX = re.compile(r"-?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")


def parse_preview_amount(raw: str, decimal_separator: DecimalSeparator) -> float | None:
    cleaned = _NON_NUMERIC.sub("", raw)
    if not cleaned:
        return None

    if decimal_separator == ",":
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    match = _FLOAT_PREFIX.match(cleaned)
    if match is None:
        return None
    return float(match.group(0))


def classify_row_type(transfer: str, amount: float | None) -> RowType:
    if transfer:
        return "transfer"
    if amount is not None and amount >= 0:
        return "income"
    # Unparsable amounts render as expenses; the error gate keeps them out of every tally.
    return "expense"


def row_error_reason(row: RawRow, decimal_separator: DecimalSeparator) -> str | None:
    if not row.date:
        return "missing date"
    if not row.account:
        return "missing account"
    if not row.total:
        return "missing amount"
    if not row.currency:
        return "missing currency"
    if parse_preview_amount(row.total, decimal_separator) is None:
        return "amount not a number"
    return None


def normalize_row(row_number: int, row: RawRow, decimal_separator: DecimalSeparator) -> NormalizedRow:
    amount = parse_preview_amount(row.total, decimal_separator)
    return NormalizedRow(
        row_number=row_number,
        raw=row,
        parsed_amount=amount,
        error_reason=row_error_reason(row, decimal_separator),
        row_type=classify_row_type(row.transfer, amount),
    )


def normalize_rows(rows: Sequence[RawRow], decimal_separator: DecimalSeparator) -> list[NormalizedRow]:
    """Row numbers are 1-based and follow file order, the same numbering the backend reports."""

    return [normalize_row(index, row, decimal_separator) for index, row in enumerate(rows, start=1)]
