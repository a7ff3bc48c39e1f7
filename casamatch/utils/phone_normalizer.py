"""Phone number normalization utilities for Italian phone numbers"""

from typing import Optional


def normalize_italian_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize Italian phone number to standard format.

    Converts various phone number formats to a bare national number:
    - Removes all non-digit characters
    - Strips the international prefix (+39, 0039)
    - Keeps the leading 0 of landlines and the leading 3 of mobiles

    Args:
        phone: Raw phone number string (can be None)

    Returns:
        Normalized phone number (e.g., "3331234567") or None if invalid

    Examples:
        >>> normalize_italian_phone("+39 333 123 4567")
        "3331234567"
        >>> normalize_italian_phone("0039 02 1234567")
        "021234567"
        >>> normalize_italian_phone("02-1234567")
        "021234567"
        >>> normalize_italian_phone(None)
        None
    """
    if not phone:
        return None

    # Remove all non-digit characters
    digits = ''.join(c for c in phone if c.isdigit())

    if not digits:
        return None

    # Handle international prefix
    if digits.startswith('0039'):
        digits = digits[4:]
    elif digits.startswith('39') and len(digits) > 10:
        digits = digits[2:]

    # Italian numbers: landlines 6-11 digits starting with 0, mobiles 9-10 digits starting with 3
    if len(digits) < 6 or len(digits) > 11:
        return None

    return digits
