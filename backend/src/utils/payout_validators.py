"""
Validation of agent payout details (tax id and payout requisites).

Each validator returns the cleaned value or raises ValueError with a message
that is shown to administrators verbatim.
"""

import re


def validate_tax_id(tax_id: str) -> str:
    """Validate an individual's INN (12 digits)."""
    cleaned = (tax_id or "").strip()
    if not cleaned:
        raise ValueError("Agent has no tax id (INN)")
    if not re.fullmatch(r"\d{12}", cleaned):
        raise ValueError(f'Invalid INN format: "{tax_id}" (expected 12 digits)')
    return cleaned


def luhn_checksum_valid(digits: str) -> bool:
    """Check a digit string with the Luhn algorithm."""
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_card_number(card_number: str) -> str:
    """Validate a payment card number (13-19 digits, Luhn check)."""
    digits = re.sub(r"\D", "", card_number or "")
    if not digits:
        raise ValueError("Agent has no card number")
    if not 13 <= len(digits) <= 19 or not luhn_checksum_valid(digits):
        raise ValueError("Invalid card number")
    return digits


def validate_bank_account(bank_account: str) -> str:
    """Validate a Russian settlement account number (20 digits)."""
    cleaned = re.sub(r"\s", "", bank_account or "")
    if not cleaned:
        raise ValueError("Agent has incomplete bank details")
    if not re.fullmatch(r"\d{20}", cleaned):
        raise ValueError(f'Invalid bank account format: "{bank_account}" (expected 20 digits)')
    return cleaned


def validate_bik(bik: str) -> str:
    """Validate a bank identification code (BIK, 9 digits)."""
    cleaned = (bik or "").strip()
    if not cleaned:
        raise ValueError("Agent has incomplete bank details")
    if not re.fullmatch(r"\d{9}", cleaned):
        raise ValueError(f'Invalid BIK format: "{bik}" (expected 9 digits)')
    return cleaned


def mask_card_number(card_number: str) -> str:
    """Mask a card number for display: "4111111111111111" -> "**** **** **** 1111"."""
    digits = re.sub(r"\D", "", card_number or "")
    if len(digits) < 4:
        return "****"
    return f"**** **** **** {digits[-4:]}"
