#!/usr/bin/env python3
"""
Walk a running ledger import service through the full import wizard for local export files.

Uploads each file, answers the currency step from --map/--new options, prints the preview,
and (unless --dry-run) submits the import and prints the backend's results.
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

IMPORT_SERVICE_URL = os.getenv("IMPORT_SERVICE_URL", "http://localhost:8004")
DEFAULT_TIMEOUT = 330.0
PREVIEW_ROWS_SHOWN = 10


class WizardWalkError(Exception):
    """Raised when the service rejects a wizard step."""


class ImportWizardWalker:
    """Drives the import service's wizard endpoints step by step."""

    def __init__(
        self,
        service_url: str = IMPORT_SERVICE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        currency_mapping: Optional[Dict[str, str]] = None,
        new_currencies: Optional[List[Dict[str, str]]] = None,
        dry_run: bool = False,
    ):
        self.service_url = service_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout, follow_redirects=True)
        self.currency_mapping = currency_mapping or {}
        self.new_currencies = new_currencies or []
        self.dry_run = dry_run
        self.results: List[Dict[str, Any]] = []

    def check_health(self) -> None:
        try:
            response = self.client.get(f"{self.service_url}/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise WizardWalkError(f"Cannot reach import service at {self.service_url}: {e}")
        print("✓ Import service is healthy")

    def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = self.client.request(method, f"{self.service_url}{path}", **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"error": "http_error", "details": response.text}
            raise WizardWalkError(f"{method} {path} -> {response.status_code} {body.get('error')}: {body.get('details')}")
        return response.json()

    def upload(self, import_id: str, file_path: Path) -> Dict[str, Any]:
        print(f"  Uploading {file_path.name}...")
        with open(file_path, "rb") as f:
            data = self._call("POST", f"/imports/{import_id}/file", files={"file": (file_path.name, f, "text/csv")})

        dialect = data.get("dialect") or {}
        print(
            f"    ✓ {data.get('row_count', 0)} rows "
            f"(delimiter {dialect.get('delimiter')!r}, decimal {dialect.get('decimal_separator')!r}, "
            f"dates {dialect.get('date_format')})"
        )
        unresolved = data.get("unresolved_currencies") or []
        if unresolved:
            print(f"    Unresolved currencies: {', '.join(unresolved)}")
        return data

    def resolve_currencies(self, import_id: str, unresolved: List[str]) -> None:
        mapping = {token: code for token, code in self.currency_mapping.items() if token in unresolved}
        proposals = [proposal for proposal in self.new_currencies if proposal["symbol"] in unresolved]
        print(f"  Answering currency step ({len(mapping)} mapped, {len(proposals)} new)...")
        self._call(
            "PUT",
            f"/imports/{import_id}/currency-mapping",
            json={"mapping": mapping, "new_currencies": proposals},
        )
        self._call("POST", f"/imports/{import_id}/next")

    def preview(self, import_id: str) -> Dict[str, Any]:
        data = self._call("GET", f"/imports/{import_id}/preview")
        stats = data["stats"]
        print("  Preview:")
        print(f"    Rows: {stats['total']}  Expenses: {stats['expenses']}  Incomes: {stats['incomes']}")
        print(f"    Transfers: {stats['transfers']}  Errors: {stats['errors']}")
        if stats["new_accounts"]:
            print(f"    New accounts: {', '.join(stats['new_accounts'])}")
        if stats["new_categories"]:
            print(f"    New categories: {', '.join(stats['new_categories'])}")
        for leg in stats.get("unpaired_transfer_rows") or []:
            print(f"    ! Row {leg['row_number']}: {leg['reason']}")

        error_rows = [row for row in data.get("rows", []) if row.get("error")]
        for row in error_rows[:PREVIEW_ROWS_SHOWN]:
            print(f"    ✗ Row {row['row_number']}: {row['error']}")
        return data

    def submit(self, import_id: str) -> Dict[str, Any]:
        print("  Submitting import...")
        data = self._call("POST", f"/imports/{import_id}/submit")
        result = data.get("result") or {}
        print(f"    ✓ Imported {result.get('imported', 0)} rows")
        for label in ("accounts_created", "categories_created", "currencies_created"):
            created = result.get(label) or []
            if created:
                print(f"      {label.replace('_', ' ').capitalize()}: {', '.join(created)}")
        for failed in (result.get("failed_rows") or [])[:PREVIEW_ROWS_SHOWN]:
            print(f"      ✗ Row {failed['row_number']}: {failed['error']}")
        return data

    def walk_file(self, file_path: Path) -> Dict[str, Any]:
        print(f"\n{'='*60}")
        print(f"Importing: {file_path.name}")
        print(f"{'='*60}\n")

        start_time = time.time()
        import_id: Optional[str] = None
        try:
            import_id = self._call("POST", "/imports")["import_id"]
            uploaded = self.upload(import_id, file_path)

            state = self._call("POST", f"/imports/{import_id}/next")["state"]
            if state == "resolve_currencies":
                self.resolve_currencies(import_id, uploaded.get("unresolved_currencies") or [])

            preview = self.preview(import_id)
            submitted = None
            if self.dry_run:
                print("  Dry run: submission skipped")
            else:
                submitted = self.submit(import_id)

            duration = time.time() - start_time
            print(f"\n✓ Done ({duration:.1f}s)\n")
            return {
                "file": file_path.name,
                "import_id": import_id,
                "duration_seconds": round(duration, 2),
                "errors": [],
                "success": True,
                "preview_stats": preview["stats"],
                "result": submitted.get("result") if submitted else None,
            }
        except (WizardWalkError, httpx.HTTPError, KeyError) as e:
            duration = time.time() - start_time
            print(f"\n✗ Import failed: {e}\n")
            return {
                "file": file_path.name,
                "import_id": import_id,
                "duration_seconds": round(duration, 2),
                "errors": [str(e)],
                "success": False,
            }

    def walk_all(self, file_paths: List[Path], output_file: Optional[Path] = None) -> Dict[str, Any]:
        self.check_health()

        for file_path in file_paths:
            if not file_path.exists():
                print(f"✗ File not found: {file_path}")
                continue
            self.results.append(self.walk_file(file_path))

        successful = sum(1 for r in self.results if r.get("success", False))
        report = {
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "service_url": self.service_url,
            "dry_run": self.dry_run,
            "total_files": len(self.results),
            "successful": successful,
            "failed": len(self.results) - successful,
            "results": self.results,
        }

        if output_file:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            with open(output_file, "w") as f:
                json.dump(report, f, indent=2, ensure_ascii=False)
            print(f"Report saved to: {output_file}")

        print("=" * 60)
        print(f"Files: {report['total_files']}  Successful: {successful}  Failed: {report['failed']}")
        print("=" * 60)
        return report


def _parse_mapping(values: List[str]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for value in values:
        token, sep, code = value.partition("=")
        if not sep or not token or not code:
            raise argparse.ArgumentTypeError(f"Expected TOKEN=CODE, got {value!r}")
        mapping[token] = code
    return mapping


def _parse_new_currencies(values: List[str]) -> List[Dict[str, str]]:
    proposals: List[Dict[str, str]] = []
    for value in values:
        token, sep, rest = value.partition("=")
        code, colon, name = rest.partition(":")
        if not sep or not colon or not token or not code or not name:
            raise argparse.ArgumentTypeError(f"Expected TOKEN=CODE:Name, got {value!r}")
        proposals.append({"symbol": token, "code": code, "name": name})
    return proposals


def main():
    parser = argparse.ArgumentParser(description="Walk the ledger import wizard for one or more export files")
    parser.add_argument("files", nargs="+", type=Path, help="Ledger export files (7-column delimited text)")
    parser.add_argument("--service", default=IMPORT_SERVICE_URL, help=f"Import service URL (default: {IMPORT_SERVICE_URL})")
    parser.add_argument("--map", action="append", default=[], metavar="TOKEN=CODE", help="Map an unresolved currency token to an existing code")
    parser.add_argument("--new", action="append", default=[], metavar="TOKEN=CODE:Name", help="Create a currency for an unresolved token")
    parser.add_argument("--dry-run", action="store_true", help="Stop after the preview without submitting")
    parser.add_argument("--output", type=Path, help="Output file for the JSON report")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help=f"Request timeout in seconds (default: {DEFAULT_TIMEOUT})")

    args = parser.parse_args()
    try:
        mapping = _parse_mapping(args.map)
        proposals = _parse_new_currencies(args.new)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    walker = ImportWizardWalker(
        service_url=args.service,
        timeout=args.timeout,
        currency_mapping=mapping,
        new_currencies=proposals,
        dry_run=args.dry_run,
    )
    try:
        report = walker.walk_all(args.files, output_file=args.output)
    except WizardWalkError as e:
        print(f"✗ {e}")
        sys.exit(2)

    if report["failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
