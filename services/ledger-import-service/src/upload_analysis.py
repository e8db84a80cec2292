from __future__ import annotations

import logging
from collections.abc import Sequence

from models.import_rows import Currency, UploadResult
from parsers.delimited_parser import MAX_FILE_BYTES, parse_ledger_export
from reconciliation.currency_resolver import resolve_currency_tokens
from shared.observability.privacy import hash_payload

logger = logging.getLogger(__name__)


def analyze_upload(
    file_bytes: bytes,
    file_name: str,
    registry: Sequence[Currency],
    *,
    max_bytes: int = MAX_FILE_BYTES,
) -> UploadResult:
    """
    Run the upload step in one pass: dialect detection, row extraction, currency resolution.

    Raises UploadRejectedError for file-level problems; row-level problems are left for the
    preview to report.
    """

    parsed = parse_ledger_export(file_bytes, max_bytes=max_bytes)
    resolution = resolve_currency_tokens((row.currency for row in parsed.rows), registry)
    result = UploadResult(
        file_name=file_name,
        dialect=parsed.dialect,
        rows=parsed.rows,
        currency_resolution=resolution,
        file_sha256=hash_payload(file_bytes),
        dialect_hints=parsed.hints,
    )

    logger.info(
        {
            "event": "upload_analyzed",
            "file_sha256": result.file_sha256,
            "row_count": len(result.rows),
            "delimiter": result.dialect.delimiter,
            "decimal_separator": result.dialect.decimal_separator,
            "date_format": result.dialect.date_format,
            "resolved_currencies": len(resolution.resolved),
            "unresolved_currencies": len(resolution.unresolved),
        }
    )
    return result
