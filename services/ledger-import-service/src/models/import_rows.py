from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from typing_extensions import Literal

DecimalSeparator = Literal[",", "."]
RowType = Literal["income", "expense", "transfer"]

RAW_ROW_FIELDS = ("date", "account", "category", "total", "currency", "description", "transfer")
EXPECTED_COLUMNS = len(RAW_ROW_FIELDS)


@dataclass(slots=True)
class RawRow:
    """One positional row of a ledger export, exactly as read from the file."""

    date: str = ""
    account: str = ""
    category: str = ""
    total: str = ""
    currency: str = ""
    description: str = ""
    transfer: str = ""

    @classmethod
    def from_cells(cls, cells: list[str]) -> RawRow:
        padded = [cell.strip() for cell in cells[:EXPECTED_COLUMNS]]
        padded.extend([""] * (EXPECTED_COLUMNS - len(padded)))
        return cls(*padded)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RawRow:
        return cls(**{name: str(payload.get(name) or "") for name in RAW_ROW_FIELDS})

    def to_dict(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in RAW_ROW_FIELDS}


@dataclass(frozen=True, slots=True)
class Dialect:
    delimiter: str
    decimal_separator: DecimalSeparator
    date_format: str


@dataclass(frozen=True, slots=True)
class Currency:
    code: str
    name: str
    symbol: str


@dataclass(frozen=True, slots=True)
class NewCurrency:
    """A currency the user asked the backend to create; `symbol` is the unresolved token."""

    code: str
    name: str
    symbol: str


@dataclass(slots=True)
class CurrencyResolution:
    resolved: dict[str, str] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UploadResult:
    """Everything derived from a single file selection."""

    file_name: str
    dialect: Dialect
    rows: list[RawRow]
    currency_resolution: CurrencyResolution
    file_sha256: str | None = None
    dialect_hints: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "dialect": {
                "delimiter": self.dialect.delimiter,
                "decimal_separator": self.dialect.decimal_separator,
                "date_format": self.dialect.date_format,
            },
            "rows": [row.to_dict() for row in self.rows],
            "currency_resolution": {
                "resolved": dict(self.currency_resolution.resolved),
                "unresolved": list(self.currency_resolution.unresolved),
            },
            "file_sha256": self.file_sha256,
            "dialect_hints": dict(self.dialect_hints),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UploadResult:
        dialect = payload["dialect"]
        resolution = payload.get("currency_resolution") or {}
        return cls(
            file_name=payload.get("file_name", ""),
            dialect=Dialect(
                delimiter=dialect["delimiter"],
                decimal_separator=dialect["decimal_separator"],
                date_format=dialect["date_format"],
            ),
            rows=[RawRow.from_dict(row) for row in payload.get("rows", [])],
            currency_resolution=CurrencyResolution(
                resolved=dict(resolution.get("resolved") or {}),
                unresolved=list(resolution.get("unresolved") or []),
            ),
            file_sha256=payload.get("file_sha256"),
            dialect_hints=dict(payload.get("dialect_hints") or {}),
        )


@dataclass(slots=True)
class NormalizedRow:
    """Display-only view of a RawRow; recomputed on every preview, never submitted."""

    row_number: int
    raw: RawRow
    parsed_amount: float | None
    error_reason: str | None
    row_type: RowType


@dataclass(slots=True)
class UnpairedTransferLeg:
    row_number: int
    reason: str


@dataclass(slots=True)
class TransferPair:
    source: NormalizedRow
    dest: NormalizedRow


@dataclass(slots=True)
class TransferPairing:
    pairs: list[TransferPair] = field(default_factory=list)
    unpaired: list[UnpairedTransferLeg] = field(default_factory=list)


@dataclass(slots=True)
class PreviewStats:
    total: int = 0
    expenses: int = 0
    incomes: int = 0
    transfers: int = 0
    errors: int = 0
    new_accounts: list[str] = field(default_factory=list)
    new_categories: list[str] = field(default_factory=list)
    unpaired_transfer_rows: list[UnpairedTransferLeg] = field(default_factory=list)


@dataclass(slots=True)
class LedgerAccount:
    name: str
    currency: str = ""


@dataclass(slots=True)
class LedgerCategory:
    name: str
    type: str = ""
    children: list[LedgerCategory] = field(default_factory=list)


@dataclass(slots=True)
class FailedRow:
    row_number: int
    data: RawRow
    error: str


@dataclass(slots=True)
class ImportResult:
    imported: int = 0
    accounts_created: list[str] = field(default_factory=list)
    categories_created: list[str] = field(default_factory=list)
    currencies_created: list[str] = field(default_factory=list)
    failed_rows: list[FailedRow] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "accounts_created": list(self.accounts_created),
            "categories_created": list(self.categories_created),
            "currencies_created": list(self.currencies_created),
            "failed_rows": [
                {"row_number": failed.row_number, "data": failed.data.to_dict(), "error": failed.error}
                for failed in self.failed_rows
            ],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ImportResult:
        return cls(
            imported=int(payload.get("imported") or 0),
            accounts_created=list(payload.get("accounts_created") or []),
            categories_created=list(payload.get("categories_created") or []),
            currencies_created=list(payload.get("currencies_created") or []),
            failed_rows=[
                FailedRow(row_number=item["row_number"], data=RawRow.from_dict(item["data"]), error=item["error"])
                for item in payload.get("failed_rows") or []
            ],
        )
