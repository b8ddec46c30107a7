"""
Money helpers.

All amounts are integers in minor units (kopecks). Conversion to major units
only happens at the edges: provider payloads and user-facing text.
"""

from decimal import Decimal


def minor_to_major(amount: int) -> Decimal:
    """Convert kopecks to rubles as an exact Decimal (12345 -> Decimal('123.45'))."""
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def major_to_minor(amount: Decimal) -> int:
    """Convert a ruble amount reported by the provider to kopecks."""
    return int((Decimal(str(amount)) * 100).to_integral_value())


def format_rubles(amount: int) -> str:
    """
    Format kopecks for messages: 123456789 -> "1 234 567,89 ₽".

    Whole amounts drop the kopecks: 700000 -> "7 000 ₽".
    """
    rubles, kopecks = divmod(amount, 100)
    whole = f"{rubles:,}".replace(",", " ")
    if kopecks:
        return f"{whole},{kopecks:02d} ₽"
    return f"{whole} ₽"
