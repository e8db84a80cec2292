from pathlib import Path

import pytest
from parsers.delimited_parser import UploadRejectedError, parse_ledger_export

FIXTURES = Path(__file__).resolve().parent / "fixtures"


def test_parse_ledger_export_reads_fixture_rows_and_dialect() -> None:
    parsed = parse_ledger_export((FIXTURES / "ledger_export_semicolon.csv").read_bytes())

    assert parsed.dialect.delimiter == ";"
    assert parsed.dialect.decimal_separator == ","
    assert parsed.dialect.date_format == "dd.MM.yyyy"
    assert len(parsed.rows) == 5
    assert parsed.rows[0].category == "Food\\Groceries"
    assert parsed.rows[1].transfer == "Savings"
    assert parsed.rows[4].total == ""
    assert parsed.hints["row_count"] == 5


def test_parse_ledger_export_drops_header_even_when_it_looks_like_data() -> None:
    content = "01.01.2024;A;C;1,00;EUR;d;\n02.01.2024;B;C;2,00;EUR;d;\n"

    parsed = parse_ledger_export(content.encode("utf-8"))

    assert [row.account for row in parsed.rows] == ["B"]


def test_parse_ledger_export_pads_short_rows_and_trims_cells() -> None:
    content = "h1;h2;h3;h4;h5;h6;h7\n 01.01.2024 ; Wallet ;Food; -5,00 \n"

    parsed = parse_ledger_export(content.encode("utf-8"))

    row = parsed.rows[0]
    assert row.date == "01.01.2024"
    assert row.account == "Wallet"
    assert row.total == "-5,00"
    assert row.currency == ""
    assert row.transfer == ""


def test_parse_ledger_export_skips_blank_rows_and_handles_crlf() -> None:
    content = "h;h;h;h;h;h;h\r\n\r\n01.01.2024;A;C;1,00;EUR;d;\r\n;;;;;;\r\n02.01.2024;B;C;2,00;EUR;d;\r\n"

    parsed = parse_ledger_export(content.encode("utf-8"))

    assert [row.account for row in parsed.rows] == ["A", "B"]


def test_parse_ledger_export_honors_quoted_fields_with_delimiters() -> None:
    content = 'h,h,h,h,h,h,h\n2024-01-01,Wallet,Food,-3.50,USD,"Lunch, with team",\n'

    parsed = parse_ledger_export(content.encode("utf-8"))

    assert parsed.dialect.delimiter == ","
    assert parsed.rows[0].description == "Lunch, with team"
    assert parsed.dialect.decimal_separator == "."
    assert parsed.dialect.date_format == "yyyy-MM-dd"


def test_parse_ledger_export_tolerates_byte_order_mark() -> None:
    content = "﻿h;h;h;h;h;h;h\n01.01.2024;A;C;1,00;EUR;d;\n"

    parsed = parse_ledger_export(content.encode("utf-8"))

    assert parsed.rows[0].date == "01.01.2024"


def test_parse_ledger_export_rejects_oversized_file_before_parsing() -> None:
    with pytest.raises(UploadRejectedError) as excinfo:
        parse_ledger_export(b"\xff" * 11, max_bytes=10)

    assert excinfo.value.code == "file_too_large"


def test_parse_ledger_export_rejects_empty_file() -> None:
    with pytest.raises(UploadRejectedError) as excinfo:
        parse_ledger_export(b"")

    assert excinfo.value.code == "file_empty"


def test_parse_ledger_export_rejects_invalid_utf8() -> None:
    with pytest.raises(UploadRejectedError) as excinfo:
        parse_ledger_export("h;h;h;h;h;h;h\n01.01.2024;Café;C;1,00;EUR;d;\n".encode("latin-1"))

    assert excinfo.value.code == "file_unreadable"


@pytest.mark.parametrize("content", ["h;h;h;h;h;h;h\n", "h;h;h;h;h;h;h\n\n;;;;;;\n"])
def test_parse_ledger_export_requires_a_data_row(content: str) -> None:
    with pytest.raises(UploadRejectedError) as excinfo:
        parse_ledger_export(content.encode("utf-8"))

    assert excinfo.value.code == "too_few_rows"
