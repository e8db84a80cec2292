import pytest
from models.import_rows import (
    Currency,
    CurrencyResolution,
    Dialect,
    FailedRow,
    ImportResult,
    NewCurrency,
    RawRow,
    UploadResult,
)
from reconciliation.currency_resolver import CurrencyMappingError
from wizard import TRANSITIONS, ImportWizard, InvalidTransitionError, WizardAction, WizardState

REGISTRY = [Currency(code="EUR", name="Euro", symbol="€"), Currency(code="RUB", name="Russian Ruble", symbol="₽")]


def _upload(*, unresolved: list[str] | None = None, rows: list[RawRow] | None = None) -> UploadResult:
    return UploadResult(
        file_name="export.csv",
        dialect=Dialect(delimiter=";", decimal_separator=",", date_format="dd.MM.yyyy"),
        rows=rows
        if rows is not None
        else [RawRow(date="01.01.2024", account="Wallet", total="-1,00", currency="EUR")],
        currency_resolution=CurrencyResolution(resolved={"EUR": "EUR"}, unresolved=list(unresolved or [])),
        file_sha256="abc",
    )


def _wizard_in_preview(**upload_kwargs) -> ImportWizard:
    wizard = ImportWizard()
    wizard.select_file(_upload(**upload_kwargs), REGISTRY)
    wizard.next()
    return wizard


def test_next_skips_currency_step_when_everything_resolved() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(), REGISTRY)

    transition = wizard.next()

    assert transition.from_state is WizardState.UPLOAD
    assert transition.to_state is WizardState.PREVIEW
    assert wizard.state is WizardState.PREVIEW


def test_next_without_file_is_rejected() -> None:
    wizard = ImportWizard()

    with pytest.raises(InvalidTransitionError):
        wizard.next()
    assert wizard.state is WizardState.UPLOAD


def test_currency_gate_blocks_until_every_token_is_answered() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(unresolved=["руб.", "zł"]), REGISTRY)
    assert wizard.next().to_state is WizardState.RESOLVE_CURRENCIES

    wizard.update_currency_mapping({"руб.": "RUB"}, [])
    with pytest.raises(CurrencyMappingError) as excinfo:
        wizard.next()
    assert excinfo.value.tokens == ["zł"]
    assert wizard.state is WizardState.RESOLVE_CURRENCIES

    wizard.update_currency_mapping({"руб.": "RUB"}, [NewCurrency(code="pln", name="Polish Zloty", symbol="zł")])
    transition = wizard.next()

    assert transition.to_state is WizardState.PREVIEW
    assert wizard.currency_mapping == {"руб.": "RUB"}
    assert wizard.new_currencies == [NewCurrency(code="PLN", name="Polish Zloty", symbol="zł")]


def test_update_currency_mapping_rejects_unknown_code() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(unresolved=["руб."]), REGISTRY)
    wizard.next()

    with pytest.raises(CurrencyMappingError):
        wizard.update_currency_mapping({"руб.": "XXX"}, [])


def test_back_returns_to_currency_step_only_when_it_was_needed() -> None:
    with_tokens = ImportWizard()
    with_tokens.select_file(_upload(unresolved=["zł"]), REGISTRY)
    with_tokens.next()
    with_tokens.update_currency_mapping({}, [NewCurrency(code="PLN", name="Polish Zloty", symbol="zł")])
    with_tokens.next()

    assert with_tokens.back().to_state is WizardState.RESOLVE_CURRENCIES
    assert with_tokens.back().to_state is WizardState.UPLOAD
    # The upload survives going back so the user can continue without reselecting.
    assert with_tokens.upload is not None

    without_tokens = _wizard_in_preview()
    assert without_tokens.back().to_state is WizardState.UPLOAD


def test_selecting_new_file_replaces_derived_state() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(unresolved=["zł"]), REGISTRY)
    wizard.next()
    wizard.update_currency_mapping({"zł": "EUR"}, [])
    wizard.back()

    replacement = _upload()
    wizard.select_file(replacement, REGISTRY)

    assert wizard.upload is replacement
    assert wizard.currency_mapping == {}
    assert wizard.new_currencies == []
    assert wizard.last_error is None
    assert wizard.result is None


def test_clear_upload_discards_previous_file() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(), REGISTRY)

    wizard.clear_upload()

    assert wizard.upload is None
    with pytest.raises(InvalidTransitionError):
        wizard.next()


def test_submission_success_moves_to_results() -> None:
    wizard = _wizard_in_preview()

    _, request = wizard.begin_submission()
    assert wizard.submitting
    assert len(request.rows) == 1

    result = ImportResult(imported=1)
    transition = wizard.complete_submission(result)

    assert transition.to_state is WizardState.RESULTS
    assert wizard.result is result
    assert not wizard.submitting


def test_submission_failure_stays_on_preview_with_error() -> None:
    wizard = _wizard_in_preview()
    wizard.begin_submission()

    transition = wizard.fail_submission("backend exploded")

    assert transition.to_state is WizardState.PREVIEW
    assert wizard.last_error == "backend exploded"
    assert not wizard.submitting

    # A retry is allowed and clears the previous error.
    wizard.begin_submission()
    assert wizard.last_error is None


def test_second_submit_while_in_flight_is_rejected() -> None:
    wizard = _wizard_in_preview()
    wizard.begin_submission()

    with pytest.raises(InvalidTransitionError):
        wizard.begin_submission()


@pytest.mark.parametrize("action", ["back", "reset"])
def test_navigation_is_blocked_while_submitting(action: str) -> None:
    wizard = _wizard_in_preview()
    wizard.begin_submission()

    with pytest.raises(InvalidTransitionError):
        getattr(wizard, action)()
    assert wizard.state is WizardState.PREVIEW


def test_submit_without_rows_is_rejected() -> None:
    wizard = _wizard_in_preview(rows=[])

    with pytest.raises(InvalidTransitionError):
        wizard.begin_submission()


def test_submission_outcome_without_submission_is_rejected() -> None:
    wizard = _wizard_in_preview()

    with pytest.raises(InvalidTransitionError):
        wizard.complete_submission(ImportResult())
    with pytest.raises(InvalidTransitionError):
        wizard.fail_submission("nope")


def test_reset_from_results_returns_to_empty_upload() -> None:
    wizard = _wizard_in_preview()
    wizard.begin_submission()
    wizard.complete_submission(ImportResult(imported=1))

    transition = wizard.reset()

    assert transition.from_state is WizardState.RESULTS
    assert wizard.state is WizardState.UPLOAD
    assert wizard.upload is None
    assert wizard.result is None


@pytest.mark.parametrize(
    ("state", "action"),
    [
        (state, action)
        for state in WizardState
        for action in (WizardAction.SELECT_FILE, WizardAction.NEXT, WizardAction.BACK, WizardAction.UPDATE_MAPPING)
        if (state, action) not in TRANSITIONS
    ],
)
def test_actions_outside_transition_table_are_rejected(state: WizardState, action: WizardAction) -> None:
    wizard = ImportWizard(state=state, upload=_upload(), currency_registry=list(REGISTRY))
    calls = {
        WizardAction.SELECT_FILE: lambda: wizard.select_file(_upload(), REGISTRY),
        WizardAction.NEXT: wizard.next,
        WizardAction.BACK: wizard.back,
        WizardAction.UPDATE_MAPPING: lambda: wizard.update_currency_mapping({}, []),
    }

    assert not wizard.allows(action)
    with pytest.raises(InvalidTransitionError):
        calls[action]()
    assert wizard.state is state


def test_snapshot_round_trip_restores_every_field() -> None:
    wizard = ImportWizard()
    wizard.select_file(_upload(unresolved=["zł"]), REGISTRY)
    wizard.next()
    wizard.update_currency_mapping({}, [NewCurrency(code="PLN", name="Polish Zloty", symbol="zł")])
    wizard.next()
    wizard.begin_submission()
    wizard.complete_submission(
        ImportResult(
            imported=0,
            failed_rows=[FailedRow(row_number=1, data=RawRow(account="Wallet"), error="bad row")],
        )
    )

    restored = ImportWizard.from_snapshot(wizard.to_snapshot())

    assert restored == wizard


def test_from_empty_snapshot_starts_in_upload() -> None:
    assert ImportWizard.from_snapshot(None).state is WizardState.UPLOAD
