from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class NotFoundError(LookupError):
    """404-level missing pallet, line, sku-instance or photo."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., no free project code)."""


class ReadOnlyProjectError(PermissionError):
    """403-level write against an inactive project."""


class ReadOnlyPalletError(PermissionError):
    """403-level write against a cancelled pallet, or a line edit on a pallet that is not open."""


class InvalidTransitionError(ValueError):
    """409-level pallet status change not allowed from the current state."""


class PalletNotClosedError(ValueError):
    """409-level label request for a pallet that is neither closed nor labelled."""


# Checked in order: subclasses must precede their bases.
_HTTP_STATUS = (
    (ValidationError, 400),
    (ReadOnlyProjectError, 403),
    (ReadOnlyPalletError, 403),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (PalletNotClosedError, 409),
    (ConflictError, 409),
)

DOMAIN_ERRORS = tuple(cls for cls, _ in _HTTP_STATUS)


def http_status_for(exc: BaseException) -> int:
    """Map an error category to its HTTP status code; anything else is 500."""
    for cls, status in _HTTP_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def coerce_int(value: Any, field: str, *, default: int | None = None) -> int:
    """
    Strictly coerce form/JSON input to int.

    - None / "" -> default (ValidationError when no default)
    - Rejects bools, floats, decimals and scientific notation
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise ValidationError(f"{field} is required")
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be an integer")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def coerce_bool(value: Any) -> bool:
    """HTML checkbox semantics: any non-empty value other than false/0/off is True."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    s = str(value).strip().lower()
    return s not in ("", "0", "false", "off", "no")


def clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
