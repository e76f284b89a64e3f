"""
Execution argument validation utilities for spcrawl.

Provides centralized validation for the values callers hand to a crawl run:
- The last-modified-time boundary (fixed "YYYY-MM-DD HH:MM:SS" format)
- SharePoint unique identifiers (GUIDs, optionally wrapped in braces)

Validation happens before any remote call so that a malformed argument
aborts the run without touching the tenant.

Usage:
    from spcrawl.utils.validators import validate_last_modified_time

    try:
        boundary = validate_last_modified_time(user_input)
    except ArgumentValidationError as e:
        print(f"Error: {e}")
"""

import re
from datetime import datetime
from typing import Optional


LAST_MODIFIED_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

GUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)


class ArgumentValidationError(ValueError):
    """Raised when an execution argument cannot be parsed."""
    pass


def validate_last_modified_time(value: Optional[str]) -> datetime:
    """
    Parse the last-modified-time execution argument.

    Args:
        value: Boundary in "YYYY-MM-DD HH:MM:SS" format

    Returns:
        Naive datetime for the boundary

    Raises:
        ArgumentValidationError: If the value is missing or malformed

    Examples:
        >>> validate_last_modified_time("2024-01-31 08:30:00")
        datetime.datetime(2024, 1, 31, 8, 30)
        >>> validate_last_modified_time("31/01/2024")
        Traceback (most recent call last):
        ArgumentValidationError: Argument last_modified_time is incorrect. Expected format is YYYY-MM-DD HH:MM:SS
    """
    if not value or not isinstance(value, str):
        raise ArgumentValidationError(
            "Argument last_modified_time is required (format YYYY-MM-DD HH:MM:SS)"
        )

    try:
        return datetime.strptime(value.strip(), LAST_MODIFIED_TIME_FORMAT)
    except ValueError:
        raise ArgumentValidationError(
            "Argument last_modified_time is incorrect. Expected format is YYYY-MM-DD HH:MM:SS"
        ) from None


def normalize_unique_id(value: Optional[str]) -> Optional[str]:
    """
    Strip enclosing braces from a SharePoint unique id.

    Search results report ids as "{xxxxxxxx-...}" while the change log and
    the REST API use the bare form.

    Examples:
        >>> normalize_unique_id("{0A1B2C3D-0000-0000-0000-000000000001}")
        '0A1B2C3D-0000-0000-0000-000000000001'
        >>> normalize_unique_id(None) is None
        True
    """
    if value is None:
        return None
    stripped = str(value).strip().strip("{}")
    return stripped or None


def is_valid_guid(value: str) -> bool:
    """Check whether a (brace-stripped) value is a GUID."""
    if not value or not isinstance(value, str):
        return False
    return GUID_PATTERN.match(value.strip("{}")) is not None
