"""
Explicit state machine for the four-step full import wizard.

States: upload -> resolve_currencies -> preview -> results. Every user action is checked
against TRANSITIONS (and a few data guards) before state changes, so an out-of-order
request is rejected here rather than relying on the UI to hide the button.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from models.import_rows import Currency, ImportResult, NewCurrency, UploadResult
from reconciliation.currency_resolver import CurrencyMappingError, apply_user_mapping
from submission import FullImportRequestModel, build_import_request


class WizardState(str, Enum):
    UPLOAD = "upload"
    RESOLVE_CURRENCIES = "resolve_currencies"
    PREVIEW = "preview"
    RESULTS = "results"


class WizardAction(str, Enum):
    SELECT_FILE = "select_file"
    NEXT = "next"
    BACK = "back"
    UPDATE_MAPPING = "update_mapping"
    SUBMIT = "submit"
    SUBMISSION_SUCCEEDED = "submission_succeeded"
    SUBMISSION_FAILED = "submission_failed"
    RESET = "reset"


TRANSITIONS: dict[tuple[WizardState, WizardAction], frozenset[WizardState]] = {
    (WizardState.UPLOAD, WizardAction.SELECT_FILE): frozenset({WizardState.UPLOAD}),
    (WizardState.UPLOAD, WizardAction.NEXT): frozenset({WizardState.RESOLVE_CURRENCIES, WizardState.PREVIEW}),
    (WizardState.UPLOAD, WizardAction.RESET): frozenset({WizardState.UPLOAD}),
    (WizardState.RESOLVE_CURRENCIES, WizardAction.UPDATE_MAPPING): frozenset({WizardState.RESOLVE_CURRENCIES}),
    (WizardState.RESOLVE_CURRENCIES, WizardAction.BACK): frozenset({WizardState.UPLOAD}),
    (WizardState.RESOLVE_CURRENCIES, WizardAction.NEXT): frozenset({WizardState.PREVIEW}),
    (WizardState.RESOLVE_CURRENCIES, WizardAction.RESET): frozenset({WizardState.UPLOAD}),
    (WizardState.PREVIEW, WizardAction.BACK): frozenset({WizardState.RESOLVE_CURRENCIES, WizardState.UPLOAD}),
    (WizardState.PREVIEW, WizardAction.SUBMIT): frozenset({WizardState.PREVIEW}),
    (WizardState.PREVIEW, WizardAction.SUBMISSION_SUCCEEDED): frozenset({WizardState.RESULTS}),
    (WizardState.PREVIEW, WizardAction.SUBMISSION_FAILED): frozenset({WizardState.PREVIEW}),
    (WizardState.PREVIEW, WizardAction.RESET): frozenset({WizardState.UPLOAD}),
    (WizardState.RESULTS, WizardAction.RESET): frozenset({WizardState.UPLOAD}),
}

# Only the submission outcome may land while an import request is outstanding.
_ALLOWED_WHILE_SUBMITTING = frozenset({WizardAction.SUBMISSION_SUCCEEDED, WizardAction.SUBMISSION_FAILED})


class InvalidTransitionError(RuntimeError):
    def __init__(self, state: WizardState, action: WizardAction, reason: str | None = None) -> None:
        message = reason or f"Action '{action.value}' is not allowed in state '{state.value}'."
        super().__init__(message)
        self.state = state
        self.action = action
        self.message = message


@dataclass(slots=True)
class Transition:
    action: WizardAction
    from_state: WizardState
    to_state: WizardState


@dataclass
class ImportWizard:
    state: WizardState = WizardState.UPLOAD
    upload: UploadResult | None = None
    currency_registry: list[Currency] = field(default_factory=list)
    currency_mapping: dict[str, str] = field(default_factory=dict)
    new_currencies: list[NewCurrency] = field(default_factory=list)
    submitting: bool = False
    last_error: str | None = None
    result: ImportResult | None = None

    @property
    def unresolved_currencies(self) -> list[str]:
        if self.upload is None:
            return []
        return list(self.upload.currency_resolution.unresolved)

    def allows(self, action: WizardAction) -> bool:
        if self.submitting and action not in _ALLOWED_WHILE_SUBMITTING:
            return False
        return (self.state, action) in TRANSITIONS

    def select_file(self, upload: UploadResult, registry: Sequence[Currency]) -> Transition:
        """Replace every piece of derived state with the new file's analysis."""

        transition = self._transition(WizardAction.SELECT_FILE, WizardState.UPLOAD)
        self.upload = upload
        self.currency_registry = list(registry)
        self._clear_derived()
        return transition

    def clear_upload(self) -> None:
        """Drop the previous file after a rejected selection; the wizard stays in upload."""

        if not self.allows(WizardAction.SELECT_FILE):
            raise InvalidTransitionError(self.state, WizardAction.SELECT_FILE)
        self.upload = None
        self.currency_registry = []
        self._clear_derived()

    def next(self) -> Transition:
        if self.state is WizardState.UPLOAD:
            if self.upload is None:
                raise InvalidTransitionError(self.state, WizardAction.NEXT, "Select a file before continuing.")
            target = WizardState.RESOLVE_CURRENCIES if self.unresolved_currencies else WizardState.PREVIEW
            return self._transition(WizardAction.NEXT, target)

        if self.state is WizardState.RESOLVE_CURRENCIES:
            self._check(WizardAction.NEXT, WizardState.PREVIEW)
            # Raises CurrencyMappingError while any token is still unmapped.
            mapping, proposals = apply_user_mapping(
                self.unresolved_currencies,
                self.currency_mapping,
                self.new_currencies,
                self.currency_registry,
            )
            self.currency_mapping = mapping
            self.new_currencies = proposals
            return self._transition(WizardAction.NEXT, WizardState.PREVIEW)

        raise InvalidTransitionError(self.state, WizardAction.NEXT)

    def back(self) -> Transition:
        if self.state is WizardState.PREVIEW and self.unresolved_currencies:
            return self._transition(WizardAction.BACK, WizardState.RESOLVE_CURRENCIES)
        return self._transition(WizardAction.BACK, WizardState.UPLOAD)

    def update_currency_mapping(self, mapping: Mapping[str, str], new_currencies: Sequence[NewCurrency]) -> Transition:
        """
        Record the user's answers for unresolved tokens; completeness is checked on `next`.

        Mapping a token to a code the registry does not know is rejected immediately.
        """

        self._check(WizardAction.UPDATE_MAPPING, WizardState.RESOLVE_CURRENCIES)
        pending = set(self.unresolved_currencies)
        known_codes = {currency.code for currency in self.currency_registry}

        cleaned = {token: code for token, code in mapping.items() if token in pending and code}
        unknown = [token for token, code in cleaned.items() if code not in known_codes]
        if unknown:
            raise CurrencyMappingError("Currency mapping points at unknown currency codes.", unknown)

        self.currency_mapping = cleaned
        self.new_currencies = [
            NewCurrency(code=proposal.code.strip().upper(), name=proposal.name.strip(), symbol=proposal.symbol)
            for proposal in new_currencies
            if proposal.symbol in pending and proposal.symbol not in cleaned
        ]
        return self._transition(WizardAction.UPDATE_MAPPING, WizardState.RESOLVE_CURRENCIES)

    def begin_submission(self) -> tuple[Transition, FullImportRequestModel]:
        self._check(WizardAction.SUBMIT, WizardState.PREVIEW)
        if self.upload is None or not self.upload.rows:
            raise InvalidTransitionError(self.state, WizardAction.SUBMIT, "There are no rows to import.")

        request = build_import_request(self.upload, self.currency_mapping, self.new_currencies)
        transition = self._transition(WizardAction.SUBMIT, WizardState.PREVIEW)
        self.submitting = True
        self.last_error = None
        return transition, request

    def complete_submission(self, result: ImportResult) -> Transition:
        self._require_submitting(WizardAction.SUBMISSION_SUCCEEDED)
        transition = self._transition(WizardAction.SUBMISSION_SUCCEEDED, WizardState.RESULTS)
        self.submitting = False
        self.result = result
        return transition

    def fail_submission(self, message: str) -> Transition:
        self._require_submitting(WizardAction.SUBMISSION_FAILED)
        transition = self._transition(WizardAction.SUBMISSION_FAILED, WizardState.PREVIEW)
        self.submitting = False
        self.last_error = message
        return transition

    def reset(self) -> Transition:
        transition = self._transition(WizardAction.RESET, WizardState.UPLOAD)
        self.upload = None
        self.currency_registry = []
        self._clear_derived()
        return transition

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "upload": self.upload.to_dict() if self.upload else None,
            "currency_registry": [
                {"code": currency.code, "name": currency.name, "symbol": currency.symbol}
                for currency in self.currency_registry
            ],
            "currency_mapping": dict(self.currency_mapping),
            "new_currencies": [
                {"code": proposal.code, "name": proposal.name, "symbol": proposal.symbol}
                for proposal in self.new_currencies
            ],
            "submitting": self.submitting,
            "last_error": self.last_error,
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any] | None) -> ImportWizard:
        if not snapshot:
            return cls()
        result_payload = snapshot.get("result")
        return cls(
            state=WizardState(snapshot.get("state", WizardState.UPLOAD.value)),
            upload=UploadResult.from_dict(snapshot["upload"]) if snapshot.get("upload") else None,
            currency_registry=[Currency(**item) for item in snapshot.get("currency_registry") or []],
            currency_mapping=dict(snapshot.get("currency_mapping") or {}),
            new_currencies=[NewCurrency(**item) for item in snapshot.get("new_currencies") or []],
            submitting=bool(snapshot.get("submitting", False)),
            last_error=snapshot.get("last_error"),
            result=ImportResult.from_dict(result_payload) if result_payload else None,
        )

    def _clear_derived(self) -> None:
        self.currency_mapping = {}
        self.new_currencies = []
        self.submitting = False
        self.last_error = None
        self.result = None

    def _check(self, action: WizardAction, target: WizardState) -> None:
        if self.submitting and action not in _ALLOWED_WHILE_SUBMITTING:
            raise InvalidTransitionError(self.state, action, "An import is already in progress.")
        allowed = TRANSITIONS.get((self.state, action))
        if not allowed or target not in allowed:
            raise InvalidTransitionError(self.state, action)

    def _transition(self, action: WizardAction, target: WizardState) -> Transition:
        self._check(action, target)
        transition = Transition(action=action, from_state=self.state, to_state=target)
        self.state = target
        return transition

    def _require_submitting(self, action: WizardAction) -> None:
        if not self.submitting:
            raise InvalidTransitionError(self.state, action, "No import is in progress.")
