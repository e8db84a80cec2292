import dataclasses
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
import pytest
from backend_client import LedgerBackendError
from fastapi.testclient import TestClient
from main import app
from models.import_rows import Currency, ImportResult, LedgerAccount, LedgerCategory
from persistence.database import SessionLocal, init_db
from persistence.models import ImportAuditEvent, ImportSession
from pydantic import ValidationError
from submission import parse_import_response
from submission_guard import SubmissionInFlightError

FIXTURE_BYTES = (Path(__file__).resolve().parent / "fixtures" / "ledger_export_semicolon.csv").read_bytes()


class StubLedgerBackend:
    def __init__(self) -> None:
        self.currencies = [Currency(code="EUR", name="Euro", symbol="€"), Currency(code="USD", name="US Dollar", symbol="$")]
        self.accounts = [LedgerAccount(name="Wallet", currency="EUR")]
        self.categories = [
            LedgerCategory(name="Food", type="expense", children=[LedgerCategory(name="Groceries", type="expense")])
        ]
        self.result = ImportResult(imported=4, accounts_created=["Savings"], categories_created=["Salary"])
        self.submitted: list[Any] = []
        self.submit_error: Exception | None = None
        self.snapshot_error: Exception | None = None
        self.snapshot_calls = 0

    async def list_currencies(self, *, request_id: str) -> list[Currency]:
        return list(self.currencies)

    async def fetch_ledger_snapshot(self, *, request_id: str):
        self.snapshot_calls += 1
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return list(self.accounts), list(self.categories)

    async def submit_full_import(self, request, *, request_id: str) -> ImportResult:
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return self.result


class BusySubmissionGuard:
    @asynccontextmanager
    async def hold(self, session_id: str):
        raise SubmissionInFlightError(f"Import session {session_id} is already submitting.")
        yield  # pragma: no cover

    def is_submitting(self, session_id: str) -> bool:
        return True


@pytest.fixture(autouse=True)
def reset_db():
    init_db()
    yield
    session = SessionLocal()
    session.query(ImportAuditEvent).delete()
    session.query(ImportSession).delete()
    session.commit()
    session.close()


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> StubLedgerBackend:
    stub = StubLedgerBackend()
    monkeypatch.setattr("main.backend_client", stub)
    return stub


@pytest.fixture
def client(backend: StubLedgerBackend):
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient) -> str:
    response = client.post("/imports")
    assert response.status_code == 201
    return response.json()["import_id"]


def _upload(client: TestClient, import_id: str, content: bytes = FIXTURE_BYTES, name: str = "export.csv"):
    return client.post(f"/imports/{import_id}/file", files={"file": (name, content, "text/csv")})


def _events(import_id: str) -> list[ImportAuditEvent]:
    session = SessionLocal()
    try:
        return (
            session.query(ImportAuditEvent)
            .filter_by(session_id=import_id)
            .order_by(ImportAuditEvent.id)
            .all()
        )
    finally:
        session.close()


def test_health_route_reports_service(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "ledger-import-service"}
    assert response.headers.get("x-request-id")


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.post("/imports", headers={"x-request-id": "req-echo"})

    assert response.headers["x-request-id"] == "req-echo"


def test_create_import_starts_in_upload(client: TestClient) -> None:
    response = client.post("/imports")
    payload = response.json()

    assert response.status_code == 201
    assert payload["state"] == "upload"
    assert payload["file_name"] is None
    assert payload["submitting"] is False


def test_unknown_session_returns_404(client: TestClient) -> None:
    response = client.get("/imports/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "import_session_not_found"


def test_full_flow_without_currency_step(client: TestClient, backend: StubLedgerBackend) -> None:
    import_id = _create(client)

    uploaded = _upload(client, import_id)
    assert uploaded.status_code == 200
    body = uploaded.json()
    assert body["state"] == "upload"
    assert body["row_count"] == 5
    assert body["dialect"] == {"delimiter": ";", "decimal_separator": ",", "date_format": "dd.MM.yyyy"}
    assert body["resolved_currencies"] == {"EUR": "EUR", "$": "USD"}
    assert body["unresolved_currencies"] == []

    advanced = client.post(f"/imports/{import_id}/next")
    assert advanced.json()["state"] == "preview"

    preview = client.get(f"/imports/{import_id}/preview")
    assert preview.status_code == 200
    data = preview.json()
    assert data["stats"]["total"] == 5
    assert data["stats"]["expenses"] == 1
    assert data["stats"]["incomes"] == 1
    assert data["stats"]["transfers"] == 1
    assert data["stats"]["errors"] == 1
    assert data["stats"]["new_accounts"] == ["Savings"]
    assert data["stats"]["new_categories"] == ["Salary"]
    assert data["stats"]["unpaired_transfer_rows"] == []
    assert data["rows"][4]["error"] == "missing amount"
    assert data["rows"][3]["parsed_amount"] == pytest.approx(1234.56)
    assert data["total_pages"] == 1
    assert data["can_import"] is True

    submitted = client.post(f"/imports/{import_id}/submit")
    assert submitted.status_code == 200
    result = submitted.json()
    assert result["state"] == "results"
    assert result["result"]["imported"] == 4
    assert result["result"]["accounts_created"] == ["Savings"]

    request = backend.submitted[0]
    assert len(request.rows) == 5
    assert request.rows[4].total == ""
    assert request.currency_mapping == {"EUR": "EUR", "$": "USD"}

    actions = [event.action for event in _events(import_id)]
    assert actions == ["session_created", "select_file", "next", "submit", "submission_succeeded"]


def test_preview_reads_fresh_ledger_snapshot_each_time(client: TestClient, backend: StubLedgerBackend) -> None:
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")

    first = client.get(f"/imports/{import_id}/preview").json()
    backend.accounts.append(LedgerAccount(name="Savings", currency="EUR"))
    second = client.get(f"/imports/{import_id}/preview").json()

    assert first["stats"]["new_accounts"] == ["Savings"]
    assert second["stats"]["new_accounts"] == []
    assert backend.snapshot_calls == 2


def test_currency_step_gates_preview(client: TestClient, backend: StubLedgerBackend) -> None:
    backend.currencies = [Currency(code="EUR", name="Euro", symbol="€")]
    import_id = _create(client)
    body = _upload(client, import_id).json()
    assert body["unresolved_currencies"] == ["$"]

    assert client.post(f"/imports/{import_id}/next").json()["state"] == "resolve_currencies"

    blocked = client.post(f"/imports/{import_id}/next")
    assert blocked.status_code == 422
    assert blocked.json()["error"] == "currency_unresolved"
    assert blocked.json()["tokens"] == ["$"]

    unknown = client.put(f"/imports/{import_id}/currency-mapping", json={"mapping": {"$": "USD"}})
    assert unknown.status_code == 422

    proposed = client.put(
        f"/imports/{import_id}/currency-mapping",
        json={"new_currencies": [{"code": "usd", "name": "US Dollar", "symbol": "$"}]},
    )
    assert proposed.status_code == 200
    assert proposed.json()["new_currencies"] == [{"code": "USD", "name": "US Dollar", "symbol": "$"}]

    assert client.post(f"/imports/{import_id}/next").json()["state"] == "preview"
    assert client.post(f"/imports/{import_id}/back").json()["state"] == "resolve_currencies"
    assert client.post(f"/imports/{import_id}/next").json()["state"] == "preview"

    client.post(f"/imports/{import_id}/submit")
    request = backend.submitted[0]
    assert [currency.code for currency in request.new_currencies] == ["USD"]
    assert request.currency_mapping == {"EUR": "EUR"}


@pytest.mark.parametrize(
    ("content", "status", "code"),
    [
        (b"", 400, "file_empty"),
        ("h;h;h;h;h;h;h\n01.01.2024;Café;C;1,00;EUR;;\n".encode("latin-1"), 422, "file_unreadable"),
        (b"Date;Account;Category;Total;Currency;Description;Transfer\n", 422, "too_few_rows"),
    ],
)
def test_rejected_upload_clears_previous_file(client: TestClient, content: bytes, status: int, code: str) -> None:
    import_id = _create(client)
    assert _upload(client, import_id).status_code == 200

    rejected = _upload(client, import_id, content=content, name="bad.csv")

    assert rejected.status_code == status
    assert rejected.json()["error"] == code
    snapshot = client.get(f"/imports/{import_id}").json()
    assert snapshot["state"] == "upload"
    assert snapshot["file_name"] is None
    assert snapshot["row_count"] == 0
    assert _events(import_id)[-1].action == "select_file_rejected"


def test_oversized_upload_is_rejected(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    import main

    monkeypatch.setattr("main.settings", dataclasses.replace(main.settings, max_file_bytes=64))
    import_id = _create(client)

    response = _upload(client, import_id)

    assert response.status_code == 413
    assert response.json()["error"] == "file_too_large"


def test_out_of_order_actions_return_409(client: TestClient) -> None:
    import_id = _create(client)

    assert client.post(f"/imports/{import_id}/next").status_code == 409
    assert client.post(f"/imports/{import_id}/back").status_code == 409
    assert client.get(f"/imports/{import_id}/preview").status_code == 409
    assert client.post(f"/imports/{import_id}/submit").status_code == 409

    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")
    again = _upload(client, import_id)
    assert again.status_code == 409
    assert again.json() == {
        "error": "invalid_transition",
        "details": "Action 'select_file' is not allowed in state 'preview'.",
        "state": "preview",
    }


def test_submission_failure_stays_on_preview(client: TestClient, backend: StubLedgerBackend) -> None:
    backend.submit_error = LedgerBackendError(500, "INTERNAL", "database unavailable")
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")

    response = client.post(f"/imports/{import_id}/submit")

    assert response.status_code == 502
    assert response.json() == {"error": "submission_failed", "details": "database unavailable"}
    snapshot = client.get(f"/imports/{import_id}").json()
    assert snapshot["state"] == "preview"
    assert snapshot["submitting"] is False
    assert snapshot["last_error"] == "database unavailable"

    preview = client.get(f"/imports/{import_id}/preview").json()
    assert preview["last_error"] == "database unavailable"
    assert preview["can_import"] is True


def test_submission_timeout_is_a_failure(client: TestClient, backend: StubLedgerBackend) -> None:
    backend.submit_error = httpx.ReadTimeout("slow backend")
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")

    response = client.post(f"/imports/{import_id}/submit")

    assert response.status_code == 502
    assert "timed out" in response.json()["details"]
    assert client.get(f"/imports/{import_id}").json()["state"] == "preview"


def _validation_error() -> ValidationError:
    try:
        parse_import_response({"imported": "lots"})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected the import response to be rejected")


def test_unexpected_submission_error_releases_session(client: TestClient, backend: StubLedgerBackend) -> None:
    backend.submit_error = _validation_error()
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")

    response = client.post(f"/imports/{import_id}/submit")

    assert response.status_code == 502
    assert response.json()["error"] == "submission_failed"
    view = client.get(f"/imports/{import_id}").json()
    assert view["state"] == "preview"
    assert view["submitting"] is False
    assert view["last_error"] == "Ledger import failed unexpectedly."

    backend.submit_error = None
    retry = client.post(f"/imports/{import_id}/submit")

    assert retry.status_code == 200
    assert retry.json()["state"] == "results"
    assert len(backend.submitted) == 2
    assert client.post(f"/imports/{import_id}/reset").status_code == 200


def test_submit_rejected_while_another_is_in_flight(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")
    monkeypatch.setattr("main.submission_guard", BusySubmissionGuard())

    response = client.post(f"/imports/{import_id}/submit")

    assert response.status_code == 409
    assert response.json()["error"] == "submission_in_progress"


def test_submitting_flag_is_persisted_during_backend_call(client: TestClient, backend: StubLedgerBackend) -> None:
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")
    observed: dict[str, Any] = {}

    async def submit_and_observe(request, *, request_id: str) -> ImportResult:
        session = SessionLocal()
        try:
            observed["submitting"] = session.get(ImportSession, import_id).submitting
        finally:
            session.close()
        return ImportResult(imported=4)

    backend.submit_full_import = submit_and_observe

    client.post(f"/imports/{import_id}/submit")

    assert observed["submitting"] is True
    assert client.get(f"/imports/{import_id}").json()["submitting"] is False


def test_second_submit_after_results_is_rejected(client: TestClient, backend: StubLedgerBackend) -> None:
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")
    client.post(f"/imports/{import_id}/submit")

    response = client.post(f"/imports/{import_id}/submit")

    assert response.status_code == 409
    assert len(backend.submitted) == 1


def test_preview_reports_unavailable_ledger(client: TestClient, backend: StubLedgerBackend) -> None:
    backend.snapshot_error = httpx.ConnectError("connection refused")
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")

    response = client.get(f"/imports/{import_id}/preview")

    assert response.status_code == 502
    assert response.json()["error"] == "ledger_unavailable"


def test_reset_from_results_starts_over(client: TestClient) -> None:
    import_id = _create(client)
    _upload(client, import_id)
    client.post(f"/imports/{import_id}/next")
    client.post(f"/imports/{import_id}/submit")

    response = client.post(f"/imports/{import_id}/reset")

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "upload"
    assert body["result"] is None
    assert body["file_name"] is None
    assert _upload(client, import_id).status_code == 200
