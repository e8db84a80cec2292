import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "[REDACTED]"
# Row fields that identify a problem without exposing amounts or free text.
FAILED_ROW_LOG_FIELDS = ("row_number", "error")


def hash_payload(value: Any) -> str:
    """
    Return a stable SHA-256 hash for the provided payload without leaking contents.

    Uploaded files are logged by this fingerprint only. Strings are encoded as UTF-8, bytes
    are used as-is, and other objects are serialized via JSON (falling back to repr()).
    """

    if value is None:
        normalized = b"null"
    elif isinstance(value, bytes):
        normalized = value
    elif isinstance(value, str):
        normalized = value.encode("utf-8")
    else:
        try:
            normalized = json.dumps(value, sort_keys=True, default=str).encode("utf-8")
        except TypeError:
            normalized = repr(value).encode("utf-8")

    return hashlib.sha256(normalized).hexdigest()


def redact_fields(payload: Mapping[str, Any], allowed_keys: Iterable[str]) -> dict[str, Any]:
    """Shallow copy that keeps whitelisted keys and redacts the rest."""

    whitelist = set(allowed_keys)
    return {key: (value if key in whitelist else REDACTED) for key, value in payload.items()}


def redact_failed_rows(failed_rows: Iterable[Mapping[str, Any]], limit: int = 20) -> list[dict[str, Any]]:
    """Loggable view of backend row rejections: row numbers and reasons, never row contents."""

    redacted: list[dict[str, Any]] = []
    for index, failed in enumerate(failed_rows):
        if index >= limit:
            break
        redacted.append(redact_fields(failed, FAILED_ROW_LOG_FIELDS))
    return redacted
