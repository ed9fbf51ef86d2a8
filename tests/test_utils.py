from datetime import datetime, UTC
from decimal import Decimal

import pytest

from listing_billing.utils import (
    cents_to_major,
    clean_card_number,
    format_major,
    is_amex,
    last_four,
    mask_card,
    parse_major,
    validate_card,
)

TODAY = datetime(2026, 10, 19, tzinfo=UTC)


def test_valid_visa_passes():
    assert validate_card("4000 0000 0000 0002", "12/28", "123", today=TODAY) == []


def test_amex_requires_four_digit_cvv():
    assert validate_card("378282246310005", "12/28", "1234", today=TODAY) == []
    problems = validate_card("378282246310005", "12/28", "123", today=TODAY)
    assert problems == ["Security code must be 4 digits"]


def test_visa_rejects_four_digit_cvv():
    assert validate_card("4111111111111111", "12/28", "1234", today=TODAY) == ["Security code must be 3 digits"]


def test_card_number_length_bounds():
    assert validate_card("411111111111", "12/28", "123", today=TODAY) == ["Card number must be 13-19 digits"]
    assert validate_card("4" * 20, "12/28", "123", today=TODAY) == ["Card number must be 13-19 digits"]
    assert validate_card("4" * 13, "12/28", "123", today=TODAY) == []


def test_expiry_month_is_valid_through_its_end():
    assert validate_card("4111111111111111", "10/26", "123", today=TODAY) == []
    assert validate_card("4111111111111111", "09/26", "123", today=TODAY) == ["Card has expired"]
    assert validate_card("4111111111111111", "10/2026", "123", today=TODAY) == []


def test_bad_expiry_format_and_month():
    assert validate_card("4111111111111111", "1228", "123", today=TODAY) == ["Expiry date must be MM/YY"]
    assert validate_card("4111111111111111", "13/28", "123", today=TODAY) == [
        "Expiry month must be between 01 and 12"
    ]


def test_card_helpers_strip_separators():
    assert clean_card_number("4000-0000 0000-0002") == "4000000000000002"
    assert last_four("5555 5555 5555 4444") == "4444"
    assert is_amex("3782 822463 10005")
    assert not is_amex("4111111111111111")
    assert mask_card("4111111111111111") == "****1111"


def test_money_conversions_are_exact():
    assert cents_to_major(1234) == Decimal("12.34")
    assert cents_to_major(1) == Decimal("0.01")
    assert format_major(1200) == "12.00"
    assert format_major(5) == "0.05"
    assert str(cents_to_major(8700)) == "87.00"
    assert parse_major("99.00") == 9900
    assert parse_major("0.01") == 1


def test_parse_major_rejects_sub_cent_amounts():
    with pytest.raises(ValueError):
        parse_major("12.345")
