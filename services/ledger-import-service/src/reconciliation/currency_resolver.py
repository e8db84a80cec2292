from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from models.import_rows import Currency, CurrencyResolution, NewCurrency


class CurrencyMappingError(ValueError):
    """Raised when the user's currency choices leave tokens unresolved or point at unknown codes."""

    def __init__(self, message: str, tokens: Sequence[str]) -> None:
        super().__init__(message)
        self.tokens = list(tokens)


def resolve_currency_string(raw: str, registry: Sequence[Currency]) -> str | None:
    """
    Map a free-text currency token to a registry code.

    Codes match case-insensitively and are tried first; symbols match exactly because many
    of them are non-Latin. Returns None for empty or unknown tokens.
    """

    token = raw.strip()
    if not token:
        return None

    lowered = token.lower()
    for currency in registry:
        if currency.code.lower() == lowered:
            return currency.code

    for currency in registry:
        if currency.symbol == token:
            return currency.code

    return None


def resolve_currency_tokens(tokens: Iterable[str], registry: Sequence[Currency]) -> CurrencyResolution:
    """Resolve each distinct non-empty token once, keeping first-seen order."""

    resolution = CurrencyResolution()
    seen: set[str] = set()
    for token in tokens:
        if not token.strip() or token in seen:
            continue
        seen.add(token)

        code = resolve_currency_string(token, registry)
        if code is not None:
            resolution.resolved[token] = code
        else:
            resolution.unresolved.append(token)
    return resolution


def apply_user_mapping(
    unresolved: Sequence[str],
    mapping: Mapping[str, str],
    new_currencies: Sequence[NewCurrency],
    registry: Sequence[Currency],
) -> tuple[dict[str, str], list[NewCurrency]]:
    """
    Validate the resolve step's answers and return the (mapping, proposals) that satisfy it.

    Every unresolved token needs either a mapping to an existing code or a proposal with a
    3-letter code and a name. A mapping wins over a proposal for the same token.
    """

    known_codes = {currency.code for currency in registry}
    pending = set(unresolved)

    accepted_mapping: dict[str, str] = {}
    unknown_codes: list[str] = []
    for token, code in mapping.items():
        if token not in pending or not code:
            continue
        if code not in known_codes:
            unknown_codes.append(token)
            continue
        accepted_mapping[token] = code
    if unknown_codes:
        raise CurrencyMappingError("Currency mapping points at unknown currency codes.", unknown_codes)

    accepted_proposals: list[NewCurrency] = []
    proposed_tokens: set[str] = set()
    for proposal in new_currencies:
        token = proposal.symbol
        if token not in pending or token in accepted_mapping or token in proposed_tokens:
            continue
        code = proposal.code.strip().upper()
        name = proposal.name.strip()
        if len(code) != 3 or not name:
            continue
        accepted_proposals.append(NewCurrency(code=code, name=name, symbol=token))
        proposed_tokens.add(token)

    missing = [token for token in unresolved if token not in accepted_mapping and token not in proposed_tokens]
    if missing:
        raise CurrencyMappingError("Every unresolved currency must be mapped or created.", missing)

    return accepted_mapping, accepted_proposals


def merge_currency_mapping(auto_resolved: Mapping[str, str], user_mapping: Mapping[str, str]) -> dict[str, str]:
    return {**auto_resolved, **user_mapping}
