"""
Shared observability helpers (telemetry, privacy utilities, etc.).

Services import from this package to get consistent instrumentation and to keep
uploaded ledger contents out of logs.
"""

from .privacy import hash_payload, redact_failed_rows, redact_fields
from .telemetry import (
    CORRELATION_ID_HEADER,
    RequestContextToken,
    bind_import_session,
    bind_request_context,
    ensure_request_id,
    reset_import_session,
    reset_request_context,
    setup_telemetry,
)

__all__ = [
    "hash_payload",
    "redact_failed_rows",
    "redact_fields",
    "CORRELATION_ID_HEADER",
    "RequestContextToken",
    "bind_import_session",
    "bind_request_context",
    "ensure_request_id",
    "reset_import_session",
    "reset_request_context",
    "setup_telemetry",
]
