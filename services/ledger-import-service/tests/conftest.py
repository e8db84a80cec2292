"""Pytest configuration for ledger-import-service tests.

Ensures the service's own src directory takes precedence in sys.path and points
persistence at a throwaway SQLite file before any engine is created.
"""

import os
import sys
import tempfile
from pathlib import Path

SERVICE_SRC = Path(__file__).resolve().parents[1] / "src"
SERVICES_ROOT = Path(__file__).resolve().parents[2]

for path in (SERVICES_ROOT, SERVICE_SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

_TEST_DB_DIR = tempfile.mkdtemp(prefix="ledger-import-tests-")
os.environ.setdefault("IMPORT_DB_URL", f"sqlite:///{Path(_TEST_DB_DIR) / 'imports.db'}")
