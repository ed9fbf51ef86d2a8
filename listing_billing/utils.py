"""Shared utility functions for the billing service."""

import logging
import re
from datetime import datetime, UTC
from decimal import Decimal

from listing_billing.constants import (
    AMEX_PREFIXES,
    CARD_NUMBER_MAX_LENGTH,
    CARD_NUMBER_MIN_LENGTH,
)

logger = logging.getLogger(__name__)

_CARD_SEPARATORS = re.compile(r"[\s-]")
_CENT = Decimal("0.01")


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def cents_to_major(cents: int) -> Decimal:
    """Exact display amount for integer minor units (1234 -> Decimal('12.34'))."""
    return (Decimal(cents) / 100).quantize(_CENT)


def format_major(cents: int) -> str:
    """Gateway wire format: two-decimal major units."""
    return f"{cents_to_major(cents):.2f}"


def parse_major(value: str) -> int:
    """Parse a gateway major-unit amount ('12.34') back into cents.

    Raises:
        ValueError: if the value has sub-cent precision or is not a number.
    """
    amount = Decimal(value) * 100
    if amount != amount.to_integral_value():
        raise ValueError(f"Amount {value!r} has sub-cent precision")
    return int(amount)


def clean_card_number(card_number: str) -> str:
    """Strip spaces and dashes from a card number."""
    return _CARD_SEPARATORS.sub("", card_number or "")


def last_four(card_number: str) -> str:
    return clean_card_number(card_number)[-4:]


def is_amex(card_number: str) -> bool:
    return clean_card_number(card_number).startswith(AMEX_PREFIXES)


def validate_card(card_number: str, expiry_date: str, cvv: str | None, today: datetime | None = None) -> list[str]:
    """
    Validate raw card fields.

    Args:
        card_number: Card number, separators allowed.
        expiry_date: Expiry as MM/YY (MM/YYYY also accepted).
        cvv: Security code; length depends on the card brand.
        today: Reference date for the expiry check (defaults to now).

    Returns:
        List of problems, empty when the card is valid.
    """
    problems = []
    number = clean_card_number(card_number)
    if not number.isdigit() or not CARD_NUMBER_MIN_LENGTH <= len(number) <= CARD_NUMBER_MAX_LENGTH:
        problems.append("Card number must be 13-19 digits")

    if cvv is not None:
        expected = 4 if is_amex(number) else 3
        if not (cvv.isdigit() and len(cvv) == expected):
            problems.append(f"Security code must be {expected} digits")

    match = re.fullmatch(r"(\d{1,2})\s*/\s*(\d{2}|\d{4})", expiry_date or "")
    if not match:
        problems.append("Expiry date must be MM/YY")
        return problems

    month, year = int(match.group(1)), int(match.group(2))
    if year < 100:
        year += 2000
    if not 1 <= month <= 12:
        problems.append("Expiry month must be between 01 and 12")
        return problems

    today = today or now_utc()
    # Cards are valid through the last day of the expiry month
    if (year, month) < (today.year, today.month):
        problems.append("Card has expired")
    return problems


def mask_card(card_number: str) -> str:
    """Loggable representation of a card number."""
    return f"****{last_four(card_number)}" if card_number else "missing"


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
