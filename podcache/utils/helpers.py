"""
Utility helper functions for safe data handling.
"""
from typing import Any


def safe_lower(value: Any) -> str:
    """
    Safely lowercase a value, handling None.

    Args:
        value: Any value to lowercase

    Returns:
        Lowercased string or empty string if None
    """
    if value is None:
        return ""
    return str(value).lower()


def safe_strip(value: Any) -> str:
    """
    Safely strip whitespace from a value, handling None.

    Args:
        value: Any value to strip

    Returns:
        Stripped string or empty string if None
    """
    if value is None:
        return ""
    return str(value).strip()
