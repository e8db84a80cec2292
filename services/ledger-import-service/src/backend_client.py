"""
Client for the ledger backend the import wizard reads from and submits to.

Reads (currencies, accounts, categories) go through the resilient HTTP client with retries.
The bulk import is sent exactly once with its own, longer timeout. Bearer auth lives in an
explicit AuthSession; a 401 triggers one single-flight token refresh and one replay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from http_client import ResilientHttpClient
from models.import_rows import Currency, ImportResult, LedgerAccount, LedgerCategory
from submission import FullImportRequestModel, parse_import_response

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
INVALID_RESPONSE = "INVALID_RESPONSE"


class LedgerBackendError(RuntimeError):
    """Raised when the ledger backend answers with an error status."""

    def __init__(self, status_code: int | None, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class AuthSession:
    """
    Bearer credentials for the ledger backend, shared by every call of one client.

    `refresh_after` is single-flight: callers that saw the same stale access token queue on
    one lock, the first performs the refresh, and the rest reuse the new token.
    """

    def __init__(self, access_token: str | None = None, refresh_token: str | None = None) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def can_refresh(self) -> bool:
        return self._refresh_token is not None

    def authorization_headers(self) -> dict[str, str]:
        if not self._access_token:
            return {}
        return {"Authorization": f"Bearer {self._access_token}"}

    async def refresh_after(
        self,
        stale_token: str | None,
        perform_refresh: Callable[[str], Awaitable[tuple[str, str]]],
    ) -> None:
        async with self._lock:
            if self._access_token != stale_token:
                return
            if self._refresh_token is None:
                raise LedgerBackendError(401, "UNAUTHORIZED", "No refresh token available.")
            try:
                access_token, refresh_token = await perform_refresh(self._refresh_token)
            except (LedgerBackendError, httpx.RequestError):
                self._access_token = None
                self._refresh_token = None
                raise
            self._access_token = access_token
            self._refresh_token = refresh_token
            self.refresh_count += 1


class LedgerBackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        http_client: ResilientHttpClient | None = None,
        auth: AuthSession | None = None,
        submit_timeout: float = 300.0,
    ) -> None:
        self._base_url = base_url.rstrip("/") + API_PREFIX
        self._http = http_client or ResilientHttpClient()
        self._auth = auth or AuthSession()
        self._submit_timeout = submit_timeout

    async def list_currencies(self, *, request_id: str) -> list[Currency]:
        return await self._call("GET", "/currencies", request_id=request_id, parse=_currencies_from_json)

    async def list_accounts(self, *, request_id: str) -> list[LedgerAccount]:
        return await self._call("GET", "/accounts", request_id=request_id, parse=_accounts_from_json)

    async def list_categories(self, *, request_id: str) -> list[LedgerCategory]:
        return await self._call("GET", "/categories", request_id=request_id, parse=_categories_from_json)

    async def fetch_ledger_snapshot(self, *, request_id: str) -> tuple[list[LedgerAccount], list[LedgerCategory]]:
        accounts, categories = await asyncio.gather(
            self.list_accounts(request_id=request_id),
            self.list_categories(request_id=request_id),
        )
        return accounts, categories

    async def submit_full_import(self, request: FullImportRequestModel, *, request_id: str) -> ImportResult:
        return await self._call(
            "POST",
            "/import/full",
            request_id=request_id,
            parse=lambda payload: parse_import_response(payload or {}),
            json=request.model_dump(),
            max_attempts=1,
            timeout=self._submit_timeout,
        )

    async def _refresh_tokens(self, refresh_token: str) -> tuple[str, str]:
        try:
            response, _ = await self._http.post(
                f"{self._base_url}/auth/refresh",
                request_id="token-refresh",
                json={"refresh_token": refresh_token},
                max_attempts=1,
            )
        except httpx.HTTPStatusError as exc:
            raise _backend_error(exc.response) from exc
        try:
            body = response.json()
            return body["access_token"], body["refresh_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise _invalid_response(response, "/auth/refresh", exc) from exc

    async def _call(
        self,
        method: str,
        path: str,
        *,
        request_id: str,
        parse: Callable[[Any], Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self._base_url}{path}"
        replayed = False
        while True:
            stale_token = self._auth.access_token
            try:
                response, _ = await self._http.request(
                    method,
                    url,
                    request_id=request_id,
                    headers=self._auth.authorization_headers(),
                    **kwargs,
                )
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code == 401 and not replayed and self._auth.can_refresh:
                    logger.info({"event": "ledger_backend_token_refresh", "request_id": request_id, "path": path})
                    await self._auth.refresh_after(stale_token, self._refresh_tokens)
                    replayed = True
                    continue
                raise _backend_error(exc.response) from exc

            # Contract-breaking bodies surface as backend errors.
            try:
                payload = response.json() if response.content else None
                return parse(payload) if parse else payload
            except (KeyError, TypeError, ValueError) as exc:
                raise _invalid_response(response, path, exc) from exc


def _currencies_from_json(payload: Any) -> list[Currency]:
    return [
        Currency(code=item["code"], name=item.get("name", ""), symbol=item.get("symbol", ""))
        for item in _unwrap_data(payload)
    ]


def _accounts_from_json(payload: Any) -> list[LedgerAccount]:
    return [LedgerAccount(name=item["name"], currency=item.get("currency", "")) for item in _unwrap_data(payload)]


def _categories_from_json(payload: Any) -> list[LedgerCategory]:
    return [_category_from_json(item) for item in _unwrap_data(payload)]


def _unwrap_data(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("data")
    return list(payload or [])


def _category_from_json(item: dict[str, Any]) -> LedgerCategory:
    return LedgerCategory(
        name=item["name"],
        type=item.get("type", ""),
        children=[_category_from_json(child) for child in item.get("children") or []],
    )


def _backend_error(response: httpx.Response) -> LedgerBackendError:
    code = "BACKEND_ERROR"
    message = f"Ledger backend returned HTTP {response.status_code}."
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code") or code
        message = body["error"].get("message") or message
    return LedgerBackendError(response.status_code, code, message)


def _invalid_response(response: httpx.Response, path: str, exc: Exception) -> LedgerBackendError:
    logger.warning(
        {
            "event": "ledger_backend_invalid_response",
            "path": path,
            "status_code": response.status_code,
            "error_type": type(exc).__name__,
        }
    )
    return LedgerBackendError(
        response.status_code,
        INVALID_RESPONSE,
        f"Ledger backend returned an unexpected response for {path}.",
    )
