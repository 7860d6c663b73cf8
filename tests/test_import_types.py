from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from backoffice.errors import RowError
from backoffice.import_types import (
    IMPORT_HANDLERS,
    clean_text,
    extract_fields,
    normalize_billing_period,
    parse_date,
    parse_decimal,
)
from backoffice.models import BillingPeriodType, ImportType


def test_clean_text_normalizes_spreadsheet_numbers_and_blanks():
    assert clean_text(1001.0) == "1001"
    assert clean_text("  Smith ") == "Smith"
    assert clean_text("   ") is None
    assert clean_text(None) is None


def test_parse_decimal_accepts_currency_formats():
    assert parse_decimal("$1,250.50", "account_value") == Decimal("1250.50")
    assert parse_decimal("(300)", "account_value") == Decimal("-300")
    assert parse_decimal("24%", "marginal_tax_bracket") == Decimal("24")
    assert parse_decimal(12.5, "account_value") == Decimal("12.5")
    assert parse_decimal("", "account_value") is None

    with pytest.raises(RowError) as excinfo:
        parse_decimal("twelve", "account_value")
    assert excinfo.value.code == "VALUE_INVALID"


def test_parse_date_handles_serials_and_text_formats():
    assert parse_date(45292, "as_of_date") == date(2024, 1, 1)
    assert parse_date("45292", "as_of_date") == date(2024, 1, 1)
    assert parse_date("2024-03-15", "as_of_date") == date(2024, 3, 15)
    assert parse_date("03/15/2024", "as_of_date") == date(2024, 3, 15)

    with pytest.raises(RowError) as excinfo:
        parse_date("next tuesday", "as_of_date")
    assert excinfo.value.code == "DATE_INVALID"


@pytest.mark.parametrize(
    ("value", "hint", "expected"),
    [
        ("2024-3", None, (BillingPeriodType.MONTH, "2024-03")),
        ("03/2024", "month", (BillingPeriodType.MONTH, "2024-03")),
        ("2024 Q2", None, (BillingPeriodType.QUARTER, "2024-Q2")),
        ("q4-2023", "quarter", (BillingPeriodType.QUARTER, "2023-Q4")),
        (2024, None, (BillingPeriodType.YEAR, "2024")),
    ],
)
def test_normalize_billing_period(value, hint, expected):
    assert normalize_billing_period(value, hint) == expected


def test_normalize_billing_period_rejects_mismatched_hint():
    with pytest.raises(RowError) as excinfo:
        normalize_billing_period("2024-Q1", "month")
    assert excinfo.value.code == "PERIOD_INVALID"


def test_extract_fields_supports_index_and_header_mappings():
    fields = ("account_number", "client_number", "custodian")
    by_index = extract_fields(["A-1", "C-1", "  "], {"account_number": 0, "client_number": 1, "custodian": 2}, fields)
    by_header = extract_fields(
        {"Account #": "A-1", "Client #": "C-1"},
        {"account_number": "Account #", "client_number": "Client #"},
        fields,
    )

    assert by_index == {"account_number": "A-1", "client_number": "C-1", "custodian": None}
    assert by_header == {"account_number": "A-1", "client_number": "C-1", "custodian": None}


def test_natural_keys_per_import_type():
    contact = IMPORT_HANDLERS[ImportType.CONTACT]
    beneficiary = IMPORT_HANDLERS[ImportType.BENEFICIARY]
    billing = IMPORT_HANDLERS[ImportType.BILLING]

    assert contact.natural_key({"client_number": " C-7 "}) == "C-7"
    assert contact.natural_key({"client_number": ""}) is None
    assert beneficiary.natural_key({"account_number": "a-1", "name": "Jane Doe"}) == "A-1:JANE DOE"
    assert billing.natural_key({"household_number": "H-1", "billing_period": "2024-Q1"}) == "H-1:2024-Q1"
    assert billing.natural_key({"household_number": "H-1", "billing_period": None}) is None
