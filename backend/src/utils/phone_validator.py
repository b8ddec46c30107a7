"""
Phone number validation utilities.

Provides centralized phone number cleaning and validation logic
for agent payout details.
"""

import re
from typing import Optional


def clean_phone_number(phone: str) -> str:
    """
    Clean phone number by removing common separators.

    Args:
        phone: Phone number string (may contain spaces, dashes, parentheses)

    Returns:
        Cleaned phone number (leading "+" preserved)
    """
    return re.sub(r'[-\s()]', '', phone)


def validate_russian_phone(phone: str) -> str:
    """
    Validate and normalize a Russian phone number to +7XXXXXXXXXX.

    Accepts "+7...", "7..." and the domestic "8..." prefix.

    Args:
        phone: Phone number string to validate

    Returns:
        Normalized phone number (+7 followed by 10 digits)

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone or not phone.strip():
        raise ValueError('Phone number is required')

    cleaned = clean_phone_number(phone)

    if not re.fullmatch(r'\+?[78]\d{10}', cleaned):
        raise ValueError(f'Invalid phone format: "{phone}" (expected Russian number)')

    return '+7' + cleaned[-10:]


def validate_russian_phone_optional(phone: Optional[str]) -> Optional[str]:
    """
    Validate a Russian phone number for optional fields.

    Returns:
        Normalized phone number, or None if phone is None/empty

    Raises:
        ValueError: If phone number is invalid (but not empty)
    """
    if phone is None or not phone.strip():
        return None
    return validate_russian_phone(phone)
