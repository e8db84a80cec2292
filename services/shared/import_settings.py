from __future__ import annotations

"""
Environment-driven settings for the ledger import service.

The service talks to one ledger backend and enforces a handful of upload/preview limits.
Loading and validating those values in one place keeps request handlers free of env
parsing and makes misconfiguration fail at startup instead of mid-import.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BACKEND_URL = "http://localhost:8080"
DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024
DEFAULT_PREVIEW_PAGE_SIZE = 50
DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
)
CORS_ENV_KEYS = (
    "IMPORT_CORS_ORIGINS",
    "CORS_ALLOWED_ORIGINS",
)


class SettingsError(RuntimeError):
    """Raised when import settings cannot be constructed."""


@dataclass(frozen=True, slots=True)
class BackendCredentials:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ImportSettings:
    backend_url: str
    backend_timeout_seconds: float
    submit_timeout_seconds: float
    max_file_bytes: int
    preview_page_size: int
    credentials: BackendCredentials
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS


def load_import_settings(
    *,
    default_backend_url: str = DEFAULT_BACKEND_URL,
    default_backend_timeout: float = 10.0,
    default_submit_timeout: float = 300.0,
    default_max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    default_page_size: int = DEFAULT_PREVIEW_PAGE_SIZE,
) -> ImportSettings:
    """
    Construct ImportSettings from the process environment.

    Note: the submit timeout bounds a single bulk import request; large exports can take
    minutes on the backend, so keep it well above the read timeout.

    Args:
        default_*: Fallback values when the matching env var is unset/empty.
    """

    backend_url = (os.getenv("LEDGER_BACKEND_URL") or default_backend_url).strip().rstrip("/")
    if not backend_url.startswith(("http://", "https://")):
        raise SettingsError(f"LEDGER_BACKEND_URL must be an http(s) URL (received '{backend_url}')")

    backend_timeout = _parse_positive_float(
        os.getenv("LEDGER_BACKEND_TIMEOUT_SECONDS"), default_backend_timeout, "LEDGER_BACKEND_TIMEOUT_SECONDS"
    )
    submit_timeout = _parse_positive_float(
        os.getenv("IMPORT_SUBMIT_TIMEOUT_SECONDS"), default_submit_timeout, "IMPORT_SUBMIT_TIMEOUT_SECONDS"
    )
    max_file_bytes = _parse_positive_int(
        os.getenv("IMPORT_MAX_FILE_BYTES"), default_max_file_bytes, "IMPORT_MAX_FILE_BYTES"
    )
    page_size = _parse_positive_int(
        os.getenv("IMPORT_PREVIEW_PAGE_SIZE"), default_page_size, "IMPORT_PREVIEW_PAGE_SIZE"
    )

    return ImportSettings(
        backend_url=backend_url,
        backend_timeout_seconds=backend_timeout,
        submit_timeout_seconds=submit_timeout,
        max_file_bytes=max_file_bytes,
        preview_page_size=page_size,
        credentials=BackendCredentials(
            access_token=_optional(os.getenv("LEDGER_BACKEND_ACCESS_TOKEN")),
            refresh_token=_optional(os.getenv("LEDGER_BACKEND_REFRESH_TOKEN")),
        ),
        cors_origins=_resolve_cors_origins(),
    )


def _resolve_cors_origins() -> tuple[str, ...]:
    """
    Origins allowed to call the import service.

    The first env var in `CORS_ENV_KEYS` holding a non-empty comma-separated list wins; a
    `*` anywhere collapses the list to `("*",)`, which is the form FastAPI expects.
    """

    for key in CORS_ENV_KEYS:
        raw_value = os.getenv(key)
        if not raw_value:
            continue
        origins = tuple(origin.strip() for origin in raw_value.split(",") if origin.strip())
        if origins:
            if "*" in origins:
                return ("*",)
            return origins
    return DEFAULT_CORS_ORIGINS


def _optional(raw_value: Optional[str]) -> Optional[str]:
    if raw_value is None or raw_value.strip() == "":
        return None
    return raw_value.strip()


def _parse_positive_float(raw_value: Optional[str], default: float, env_key: str) -> float:
    if raw_value is None or raw_value.strip() == "":
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:
        raise SettingsError(f"{env_key} must be numeric (received '{raw_value}')") from exc
    if value <= 0:
        raise SettingsError(f"{env_key} must be positive (received '{raw_value}')")
    return value


def _parse_positive_int(raw_value: Optional[str], default: int, env_key: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:
        raise SettingsError(f"{env_key} must be an integer (received '{raw_value}')") from exc
    if value <= 0:
        raise SettingsError(f"{env_key} must be positive (received '{raw_value}')")
    return value
