from datetime import date, timedelta
from decimal import Decimal
import math

import pytest

from travel_expense.core import (
    build_mailto_link,
    document_name,
    export_filename,
    format_euro,
    iso_week_label,
    plain_number,
    to_number,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,5", 1.5),
        ("12,50", 12.5),
        ("0,05", 0.05),
        ("1234,56", 1234.56),
        ("7.25", 7.25),
        (" 42 ", 42.0),
        ("-3,5", -3.5),
        ("12abc", 12.0),
        ("25 300,0", 25.0),
        (19, 19.0),
        (2.5, 2.5),
    ],
)
def test_to_number_reads_decimal_comma_and_numbers(raw, expected):
    assert to_number(raw) == pytest.approx(expected)


@pytest.mark.parametrize(
    "raw",
    [
        "", "abc", "€", ",", "-", None, float("nan"), float("inf"), "Infinity", "1e400", True,
        10**400, Decimal("sNaN"), Decimal("NaN"),
    ],
)
def test_to_number_turns_invalid_input_into_zero(raw):
    assert to_number(raw) == 0


def test_comma_strings_match_their_float_value():
    for value in [0.01, 0.5, 3.75, 19.99, 250.0, 98765.43]:
        assert to_number(f"{value}".replace(".", ",")) == value


def test_format_euro_uses_german_separators():
    assert format_euro(1234.5) == "1.234,50\u00a0€"
    assert format_euro("12,5") == "12,50\u00a0€"
    assert format_euro(-3) == "-3,00\u00a0€"
    assert format_euro("garbage") == "0,00\u00a0€"


def test_format_euro_rounds_halves_away_from_zero():
    assert format_euro("0,125") == "0,13\u00a0€"
    assert format_euro(2.675) == "2,68\u00a0€"
    assert format_euro(-0.125) == "-0,13\u00a0€"
    assert format_euro(1234567.005) == "1.234.567,01\u00a0€"
    assert format_euro(-0.001) == "0,00\u00a0€"


def test_plain_number_drops_trailing_zero():
    assert plain_number(120.0) == "120"
    assert plain_number(120.5) == "120.5"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2025-07-01", "27/2025"),
        ("2024-12-30", "1/2025"),
        ("2021-01-03", "53/2020"),
        ("2026-01-01", "1/2026"),
        (date(2020, 12, 31), "53/2020"),
        ("", ""),
        (None, ""),
        ("not a date", ""),
        ("2025-02-30", ""),
    ],
)
def test_iso_week_label(raw, expected):
    assert iso_week_label(raw) == expected


def _thursday_rule(day: date) -> str:
    thursday = day + timedelta(days=4 - day.isoweekday())
    week = math.ceil(((thursday - date(thursday.year, 1, 1)).days + 1) / 7)
    return f"{week}/{thursday.year}"


def test_iso_week_label_matches_thursday_rule_for_every_day():
    day = date(2018, 12, 20)
    while day < date(2027, 1, 10):
        iso_year, week, _ = day.isocalendar()
        assert iso_week_label(day.isoformat()) == _thursday_rule(day) == f"{week}/{iso_year}"
        day += timedelta(days=1)


def test_document_and_file_names():
    assert document_name("Erika Mustermann", "27/2025") == "Reisekosten_Erika Mustermann_KW27-2025"
    assert document_name("", "") == "Reisekosten_Mitarbeiter_KWXX"
    assert export_filename("Erika", "1/2026") == "Reisekosten_Erika_KW1-2026.pdf"


def test_mailto_link_encodes_like_uri_components():
    link = build_mailto_link("rechnungswesen@example.com", "27/2025", "Bitte einfügen (PDF).")
    assert link == (
        "mailto:rechnungswesen@example.com"
        "?subject=Reisekosten%20KW%2027%2F2025"
        "&body=Bitte%20einf%C3%BCgen%20(PDF)."
    )
    assert "subject=Reisekosten%20KW%20XX" in build_mailto_link("a@example.com", "", "x")
