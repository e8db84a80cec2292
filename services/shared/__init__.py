"""
Shared utilities for the ledger import services.

This package contains code shared across services and scripts:
- import_settings: Environment-driven configuration for the import service
- observability: Telemetry, logging, and privacy utilities
"""

from .import_settings import (
    DEFAULT_BACKEND_URL,
    DEFAULT_MAX_FILE_BYTES,
    BackendCredentials,
    ImportSettings,
    SettingsError,
    load_import_settings,
)

__all__ = [
    "DEFAULT_BACKEND_URL",
    "DEFAULT_MAX_FILE_BYTES",
    "BackendCredentials",
    "ImportSettings",
    "SettingsError",
    "load_import_settings",
]
