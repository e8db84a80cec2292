"""
Contract with the ledger backend's bulk import executor (`POST /api/v1/import/full`).

The request always carries the original row strings plus the detected dialect, so the
backend re-parses amounts and dates itself. Error rows are forwarded too; the backend is
the final arbiter and reports rejections in `failed_rows`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from models.import_rows import FailedRow, ImportResult, NewCurrency, RawRow, UploadResult
from reconciliation.currency_resolver import merge_currency_mapping


class FullImportRowModel(BaseModel):
    date: str = ""
    account: str = ""
    category: str = ""
    total: str = ""
    currency: str = ""
    description: str = ""
    transfer: str = ""


class NewCurrencyModel(BaseModel):
    code: str
    name: str
    symbol: str


class FullImportRequestModel(BaseModel):
    date_format: str
    decimal_separator: str
    currency_mapping: Dict[str, str] = Field(default_factory=dict)
    new_currencies: List[NewCurrencyModel] = Field(default_factory=list)
    rows: List[FullImportRowModel] = Field(default_factory=list)


class FailedRowModel(BaseModel):
    row_number: int
    data: FullImportRowModel
    error: str


class FullImportResponseModel(BaseModel):
    imported: int = 0
    accounts_created: List[str] = Field(default_factory=list)
    categories_created: List[str] = Field(default_factory=list)
    currencies_created: List[str] = Field(default_factory=list)
    failed_rows: List[FailedRowModel] = Field(default_factory=list)

    @field_validator("accounts_created", "categories_created", "currencies_created", "failed_rows", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Optional[Any]) -> Any:
        # The executor serializes empty slices as null.
        return [] if value is None else value


def build_import_request(
    upload: UploadResult,
    user_mapping: Mapping[str, str],
    new_currencies: Sequence[NewCurrency],
) -> FullImportRequestModel:
    return FullImportRequestModel(
        date_format=upload.dialect.date_format,
        decimal_separator=upload.dialect.decimal_separator,
        currency_mapping=merge_currency_mapping(upload.currency_resolution.resolved, user_mapping),
        new_currencies=[
            NewCurrencyModel(code=proposal.code, name=proposal.name, symbol=proposal.symbol)
            for proposal in new_currencies
        ],
        rows=[FullImportRowModel(**row.to_dict()) for row in upload.rows],
    )


def parse_import_response(payload: Mapping[str, Any]) -> ImportResult:
    model = FullImportResponseModel.model_validate(payload)
    return ImportResult(
        imported=model.imported,
        accounts_created=list(model.accounts_created),
        categories_created=list(model.categories_created),
        currencies_created=list(model.currencies_created),
        failed_rows=[
            FailedRow(
                row_number=failed.row_number,
                data=RawRow.from_dict(failed.data.model_dump()),
                error=failed.error,
            )
            for failed in model.failed_rows
        ],
    )
