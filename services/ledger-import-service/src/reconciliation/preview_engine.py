from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from models.import_rows import (
    DecimalSeparator,
    LedgerAccount,
    LedgerCategory,
    NormalizedRow,
    PreviewStats,
    RawRow,
)
from parsers.row_normalizer import normalize_rows
from reconciliation.transfer_pairing import pair_transfer_legs

CATEGORY_PATH_SEPARATOR = "\\"
DEFAULT_PAGE_SIZE = 50


@dataclass(slots=True)
class Preview:
    stats: PreviewStats
    rows: list[NormalizedRow] = field(default_factory=list)
    page: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    total_pages: int = 0

    @property
    def can_import(self) -> bool:
        return self.stats.total > 0


def compute_preview_stats(
    rows: Sequence[RawRow],
    decimal_separator: DecimalSeparator,
    existing_accounts: Iterable[str],
    existing_categories: Iterable[str],
) -> PreviewStats:
    """
    Summarize what an import would do against the current ledger.

    Args:
        rows: Every raw row of the upload, in file order.
        decimal_separator: Detected decimal convention used to parse amounts for display.
        existing_accounts: Account names already in the ledger.
        existing_categories: Category names already in the ledger, bare and `Parent\\Child`.
    Returns:
        PreviewStats with per-type counts, the error count, and the insertion-ordered names of
        accounts and categories the import would create. Transfers are counted in pairs.
    Assumptions:
        Pure function; callers recompute it whenever any input changes.
    """

    return _compute_stats(normalize_rows(rows, decimal_separator), existing_accounts, existing_categories)


def build_preview(
    rows: Sequence[RawRow],
    decimal_separator: DecimalSeparator,
    existing_accounts: Iterable[str],
    existing_categories: Iterable[str],
    *,
    page: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Preview:
    """Stats over every row plus one page of normalized rows for display."""

    normalized = normalize_rows(rows, decimal_separator)
    stats = _compute_stats(normalized, existing_accounts, existing_categories)

    page_size = max(1, page_size)
    total_pages = math.ceil(len(normalized) / page_size)
    page = min(max(0, page), max(total_pages - 1, 0))
    start = page * page_size
    return Preview(
        stats=stats,
        rows=normalized[start : start + page_size],
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


def existing_account_names(accounts: Iterable[LedgerAccount]) -> list[str]:
    return [account.name for account in accounts]


def existing_category_names(categories: Iterable[LedgerCategory]) -> list[str]:
    """Flatten the category tree into bare names plus `Parent\\Child` composites."""

    names: list[str] = []
    for category in categories:
        names.append(category.name)
        for child in category.children:
            names.append(child.name)
            names.append(f"{category.name}{CATEGORY_PATH_SEPARATOR}{child.name}")
    return names


def _compute_stats(
    normalized: Sequence[NormalizedRow],
    existing_accounts: Iterable[str],
    existing_categories: Iterable[str],
) -> PreviewStats:
    known_accounts = {name.lower() for name in existing_accounts}
    known_categories = {name.lower() for name in existing_categories}

    stats = PreviewStats(total=len(normalized))
    # dicts double as insertion-ordered sets
    new_accounts: dict[str, None] = {}
    new_categories: dict[str, None] = {}
    transfer_legs = 0

    for row in normalized:
        if row.error_reason is not None:
            stats.errors += 1
            continue

        raw = row.raw
        if row.row_type == "transfer":
            transfer_legs += 1
            if raw.transfer.lower() not in known_accounts:
                new_accounts.setdefault(raw.transfer)
        elif row.row_type == "expense":
            stats.expenses += 1
        else:
            stats.incomes += 1

        if raw.account.lower() not in known_accounts:
            new_accounts.setdefault(raw.account)
        if raw.category and _is_new_category(raw.category, known_categories):
            new_categories.setdefault(raw.category)

    stats.transfers = transfer_legs // 2
    stats.new_accounts = list(new_accounts)
    stats.new_categories = list(new_categories)
    stats.unpaired_transfer_rows = pair_transfer_legs(normalized).unpaired
    return stats


def _is_new_category(category: str, known_categories: set[str]) -> bool:
    # A qualified name is reported whole even when its parent already exists.
    return category.lower() not in known_categories
