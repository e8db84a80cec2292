import logging
import re
import sys
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

SRC_DIR = Path(__file__).resolve().parent
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

SERVICES_ROOT = SRC_DIR.parents[1]
if str(SERVICES_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICES_ROOT))

from backend_client import AuthSession, LedgerBackendClient, LedgerBackendError
from http_client import ResilientHttpClient
from models.import_rows import NewCurrency, NormalizedRow
from parsers.delimited_parser import UploadRejectedError
from persistence.database import get_session, init_db
from persistence.models import ImportSession
from persistence.repository import ImportSessionRepository
from reconciliation.currency_resolver import CurrencyMappingError
from reconciliation.preview_engine import build_preview, existing_account_names, existing_category_names
from shared.import_settings import load_import_settings
from shared.observability.privacy import redact_failed_rows
from shared.observability.telemetry import (
    bind_import_session,
    bind_request_context,
    ensure_request_id,
    reset_import_session,
    reset_request_context,
    setup_telemetry,
)
from submission import NewCurrencyModel
from submission_guard import SubmissionGuard, SubmissionInFlightError
from upload_analysis import analyze_upload
from wizard import ImportWizard, InvalidTransitionError, WizardAction, WizardState

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Import Service")
setup_telemetry(app, service_name="ledger-import-service")

settings = load_import_settings()

UPLOAD_ERROR_STATUS = {
    "file_too_large": 413,
    "file_empty": 400,
    "file_unreadable": 422,
    "too_few_rows": 422,
}

_IMPORT_PATH = re.compile(r"^/imports/([^/]+)")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = ensure_request_id(request)
    token = bind_request_context(request_id)
    match = _IMPORT_PATH.match(request.url.path)
    session_token = bind_import_session(match.group(1) if match else None)
    try:
        response = await call_next(request)
        response.headers.setdefault("x-request-id", request_id)
        return response
    finally:
        reset_import_session(session_token)
        reset_request_context(token)


app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

backend_client = LedgerBackendClient(
    settings.backend_url,
    http_client=ResilientHttpClient(timeout=settings.backend_timeout_seconds),
    auth=AuthSession(settings.credentials.access_token, settings.credentials.refresh_token),
    submit_timeout=settings.submit_timeout_seconds,
)
submission_guard = SubmissionGuard()


def error_response(status_code: int, error_code: str, details: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "details": details, **extra},
    )


def _client_ip(request: Request) -> str | None:
    client = request.client
    if client:
        return client.host
    return None


def _invalid_transition(exc: InvalidTransitionError) -> JSONResponse:
    return error_response(409, "invalid_transition", exc.message, state=exc.state.value)


def _session_not_found() -> JSONResponse:
    return error_response(404, "import_session_not_found", "Import session not found.")


def _session_view(session_id: str, wizard: ImportWizard) -> Dict[str, Any]:
    upload = wizard.upload
    return {
        "import_id": session_id,
        "state": wizard.state.value,
        "submitting": wizard.submitting,
        "file_name": upload.file_name if upload else None,
        "row_count": len(upload.rows) if upload else 0,
        "dialect": (
            {
                "delimiter": upload.dialect.delimiter,
                "decimal_separator": upload.dialect.decimal_separator,
                "date_format": upload.dialect.date_format,
            }
            if upload
            else None
        ),
        "dialect_hints": upload.dialect_hints if upload else {},
        "resolved_currencies": dict(upload.currency_resolution.resolved) if upload else {},
        "unresolved_currencies": wizard.unresolved_currencies,
        "currency_mapping": dict(wizard.currency_mapping),
        "new_currencies": [
            {"code": proposal.code, "name": proposal.name, "symbol": proposal.symbol}
            for proposal in wizard.new_currencies
        ],
        "last_error": wizard.last_error,
        "result": wizard.result.to_dict() if wizard.result else None,
    }


def _preview_row(row: NormalizedRow) -> Dict[str, Any]:
    return {
        "row_number": row.row_number,
        **row.raw.to_dict(),
        "parsed_amount": row.parsed_amount,
        "row_type": row.row_type,
        "error": row.error_reason,
    }


@app.on_event("startup")
def on_startup() -> None:
    """Initialize persistence before serving requests."""
    init_db()


@app.get("/health")
def health_check() -> dict:
    return {"status": "ok", "service": "ledger-import-service"}


@app.post("/imports", status_code=201)
def create_import(request: Request, db: Session = Depends(get_session)) -> Dict[str, Any]:
    """Open a new wizard session in the upload step."""
    import_id = str(uuid4())
    repo = ImportSessionRepository(db)
    record = repo.create_session(import_id, source_ip=_client_ip(request))
    logger.info({"event": "import_session_created", "import_id": import_id})
    return _session_view(import_id, repo.load_wizard(record))


@app.get("/imports/{import_id}", response_model=None)
def get_import(import_id: str, db: Session = Depends(get_session)) -> Dict[str, Any] | JSONResponse:
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    return _session_view(import_id, repo.load_wizard(record))


@app.post("/imports/{import_id}/file", response_model=None)
async def select_file(
    import_id: str,
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    """
    Analyze a newly selected export: dialect, rows, and currency resolution.

    Any earlier upload and everything derived from it is discarded, including when the new
    file is rejected.
    """

    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)
    if not wizard.allows(WizardAction.SELECT_FILE):
        return _invalid_transition(InvalidTransitionError(wizard.state, WizardAction.SELECT_FILE))

    request_id = ensure_request_id(request)
    filename = file.filename or "ledger_export.csv"
    # One byte past the limit is enough to reject without buffering the whole file.
    file_bytes = await file.read(settings.max_file_bytes + 1)

    try:
        registry = await backend_client.list_currencies(request_id=request_id)
    except (LedgerBackendError, httpx.HTTPError) as exc:
        logger.warning({"event": "currency_registry_unavailable", "request_id": request_id, "error": str(exc)})
        return error_response(502, "ledger_unavailable", "Could not load currencies from the ledger backend.")

    try:
        upload = analyze_upload(file_bytes, filename, registry, max_bytes=settings.max_file_bytes)
    except UploadRejectedError as exc:
        wizard.clear_upload()
        repo.save_wizard(
            record,
            wizard,
            action="select_file_rejected",
            source_ip=_client_ip(request),
            details={"error": exc.code, "filename": filename, "request_id": request_id},
        )
        logger.info({"event": "upload_rejected", "request_id": request_id, "error": exc.code})
        return error_response(UPLOAD_ERROR_STATUS.get(exc.code, 400), exc.code, exc.message)

    transition = wizard.select_file(upload, registry)
    repo.save_wizard(
        record,
        wizard,
        transition,
        source_ip=_client_ip(request),
        details={
            "filename": filename,
            "file_sha256": upload.file_sha256,
            "row_count": len(upload.rows),
            "unresolved_currencies": len(upload.currency_resolution.unresolved),
            "request_id": request_id,
        },
    )
    return _session_view(import_id, wizard)


@app.post("/imports/{import_id}/next", response_model=None)
def next_step(import_id: str, request: Request, db: Session = Depends(get_session)) -> Dict[str, Any] | JSONResponse:
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)

    try:
        transition = wizard.next()
    except InvalidTransitionError as exc:
        return _invalid_transition(exc)
    except CurrencyMappingError as exc:
        return error_response(422, "currency_unresolved", str(exc), tokens=exc.tokens)

    repo.save_wizard(record, wizard, transition, source_ip=_client_ip(request))
    return _session_view(import_id, wizard)


@app.post("/imports/{import_id}/back", response_model=None)
def previous_step(
    import_id: str, request: Request, db: Session = Depends(get_session)
) -> Dict[str, Any] | JSONResponse:
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)

    try:
        transition = wizard.back()
    except InvalidTransitionError as exc:
        return _invalid_transition(exc)

    repo.save_wizard(record, wizard, transition, source_ip=_client_ip(request))
    return _session_view(import_id, wizard)


class CurrencyMappingPayload(BaseModel):
    mapping: Dict[str, str] = Field(default_factory=dict)
    new_currencies: List[NewCurrencyModel] = Field(default_factory=list)


@app.put("/imports/{import_id}/currency-mapping", response_model=None)
def update_currency_mapping(
    import_id: str,
    payload: CurrencyMappingPayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)

    proposals = [NewCurrency(code=item.code, name=item.name, symbol=item.symbol) for item in payload.new_currencies]
    try:
        transition = wizard.update_currency_mapping(payload.mapping, proposals)
    except InvalidTransitionError as exc:
        return _invalid_transition(exc)
    except CurrencyMappingError as exc:
        return error_response(422, "currency_unresolved", str(exc), tokens=exc.tokens)

    repo.save_wizard(
        record,
        wizard,
        transition,
        source_ip=_client_ip(request),
        details={"mapped": len(wizard.currency_mapping), "proposed": len(wizard.new_currencies)},
    )
    return _session_view(import_id, wizard)


@app.get("/imports/{import_id}/preview", response_model=None)
async def preview_import(
    import_id: str,
    request: Request,
    page: int = 0,
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    """Recompute the preview against a fresh snapshot of the ledger's accounts and categories."""
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)
    if wizard.state is not WizardState.PREVIEW or wizard.upload is None:
        return error_response(
            409,
            "invalid_transition",
            "Preview is only available in the preview step.",
            state=wizard.state.value,
        )

    request_id = ensure_request_id(request)
    try:
        accounts, categories = await backend_client.fetch_ledger_snapshot(request_id=request_id)
    except (LedgerBackendError, httpx.HTTPError) as exc:
        logger.warning({"event": "ledger_snapshot_unavailable", "request_id": request_id, "error": str(exc)})
        return error_response(502, "ledger_unavailable", "Could not load accounts and categories from the ledger.")

    preview = build_preview(
        wizard.upload.rows,
        wizard.upload.dialect.decimal_separator,
        existing_account_names(accounts),
        existing_category_names(categories),
        page=page,
        page_size=settings.preview_page_size,
    )
    stats = preview.stats
    logger.info(
        {
            "event": "preview_built",
            "request_id": request_id,
            "total": stats.total,
            "errors": stats.errors,
            "transfers": stats.transfers,
            "unpaired_transfer_rows": len(stats.unpaired_transfer_rows),
        }
    )
    return {
        "import_id": import_id,
        "stats": {
            "total": stats.total,
            "expenses": stats.expenses,
            "incomes": stats.incomes,
            "transfers": stats.transfers,
            "errors": stats.errors,
            "new_accounts": stats.new_accounts,
            "new_categories": stats.new_categories,
            "unpaired_transfer_rows": [
                {"row_number": leg.row_number, "reason": leg.reason} for leg in stats.unpaired_transfer_rows
            ],
        },
        "rows": [_preview_row(row) for row in preview.rows],
        "page": preview.page,
        "page_size": preview.page_size,
        "total_pages": preview.total_pages,
        "can_import": preview.can_import and not wizard.submitting,
        "submitting": wizard.submitting,
        "last_error": wizard.last_error,
    }


@app.post("/imports/{import_id}/submit", response_model=None)
async def submit_import(
    import_id: str,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    """
    Send every raw row to the ledger backend's bulk import, once.

    Failures (backend error, transport error, timeout) keep the wizard on preview with the
    message in `last_error`; success moves it to results.
    """

    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()

    request_id = ensure_request_id(request)
    try:
        async with submission_guard.hold(import_id):
            return await _run_submission(repo, record, request_id, _client_ip(request))
    except SubmissionInFlightError as exc:
        return error_response(409, "submission_in_progress", str(exc))


async def _run_submission(
    repo: ImportSessionRepository,
    record: ImportSession,
    request_id: str,
    source_ip: str | None,
) -> Dict[str, Any] | JSONResponse:
    wizard = repo.load_wizard(record)
    try:
        transition, import_request = wizard.begin_submission()
    except InvalidTransitionError as exc:
        return _invalid_transition(exc)

    repo.save_wizard(
        record,
        wizard,
        transition,
        source_ip=source_ip,
        details={"row_count": len(import_request.rows), "request_id": request_id},
    )

    try:
        result = await backend_client.submit_full_import(import_request, request_id=request_id)
    except (LedgerBackendError, httpx.HTTPError) as exc:
        message = _submission_error_message(exc)
        transition = wizard.fail_submission(message)
        repo.save_wizard(
            record,
            wizard,
            transition,
            source_ip=source_ip,
            details={"error": message, "request_id": request_id},
        )
        logger.error({"event": "import_submission_failed", "request_id": request_id, "error": message})
        return error_response(502, "submission_failed", message)
    except Exception as exc:
        # The submitting flag is already persisted; release it or the session stays locked.
        message = "Ledger import failed unexpectedly."
        transition = wizard.fail_submission(message)
        repo.save_wizard(
            record,
            wizard,
            transition,
            source_ip=source_ip,
            details={"error": message, "error_type": type(exc).__name__, "request_id": request_id},
        )
        logger.exception(
            {"event": "import_submission_failed", "request_id": request_id, "error_type": type(exc).__name__}
        )
        return error_response(502, "submission_failed", message)

    transition = wizard.complete_submission(result)
    result_payload = result.to_dict()
    repo.save_wizard(
        record,
        wizard,
        transition,
        source_ip=source_ip,
        details={
            "imported": result.imported,
            "failed_rows": redact_failed_rows(result_payload["failed_rows"]),
            "request_id": request_id,
        },
    )
    logger.info(
        {
            "event": "import_submitted",
            "request_id": request_id,
            "imported": result.imported,
            "failed_rows": len(result.failed_rows),
            "accounts_created": len(result.accounts_created),
            "categories_created": len(result.categories_created),
            "currencies_created": len(result.currencies_created),
        }
    )
    return _session_view(record.id, wizard)


def _submission_error_message(exc: Exception) -> str:
    if isinstance(exc, LedgerBackendError):
        return exc.message
    if isinstance(exc, httpx.TimeoutException):
        return f"Import request timed out after {settings.submit_timeout_seconds:g} seconds."
    if isinstance(exc, httpx.HTTPStatusError):
        return f"Ledger backend returned HTTP {exc.response.status_code}."
    return "Ledger backend is unavailable."


@app.post("/imports/{import_id}/reset", response_model=None)
def reset_import(import_id: str, request: Request, db: Session = Depends(get_session)) -> Dict[str, Any] | JSONResponse:
    repo = ImportSessionRepository(db)
    record = repo.get_session(import_id)
    if not record:
        return _session_not_found()
    wizard = repo.load_wizard(record)

    try:
        transition = wizard.reset()
    except InvalidTransitionError as exc:
        return _invalid_transition(exc)

    repo.save_wizard(record, wizard, transition, source_ip=_client_ip(request))
    return _session_view(import_id, wizard)
