"""
HTTP header utilities for secure transmission.

Headers arrive as plain dicts (tests, other frameworks), Starlette
``Headers`` or raw ASGI ``(name, value)`` byte pairs. Lookups here are
case-insensitive and treat blank values as absent.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from secure_transmission.constants import HEADER_SIGN, HEADER_TIMESTAMP
from secure_transmission.exceptions import MissingFieldError

__all__ = [
    "HEADER_SIGN",
    "HEADER_TIMESTAMP",
    "get_header",
    "headers_from_scope",
    "replace_header",
    "require_header",
]


def get_header(headers: Mapping[str, Any], name: str) -> str | None:
    """
    Get a header value, handling case-insensitive lookups.

    Args:
        headers: Header mapping
        name: Header name in any case

    Returns:
        The stripped value, or None if absent or blank
    """
    value: Any = None
    # Try exact match first (faster)
    if name in headers:
        value = headers[name]
    else:
        name_lower = name.lower()
        for key in headers:
            if str(key).lower() == name_lower:
                value = headers[key]
                break
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    value = str(value).strip()
    return value or None


def require_header(headers: Mapping[str, Any], name: str) -> str:
    """
    Get a header that must be present.

    Raises:
        MissingFieldError: If the header is absent or blank
    """
    value = get_header(headers, name)
    if value is None:
        raise MissingFieldError(f"{name} header is required")
    return value


def headers_from_scope(raw: Iterable[tuple[bytes, bytes]]) -> dict[str, str]:
    """
    Convert ASGI header pairs into a str dict.

    Names are lowercased by ASGI servers already; the first occurrence wins,
    matching how a single-valued header is read elsewhere.
    """
    result: dict[str, str] = {}
    for name, value in raw:
        key = name.decode("latin-1").lower()
        if key not in result:
            result[key] = value.decode("latin-1")
    return result


def replace_header(
    raw: Iterable[tuple[bytes, bytes]],
    name: bytes,
    value: bytes | None,
) -> list[tuple[bytes, bytes]]:
    """
    Return ASGI header pairs with ``name`` replaced (or removed if value is None).
    """
    name_lower = name.lower()
    result = [(n, v) for n, v in raw if n.lower() != name_lower]
    if value is not None:
        result.append((name_lower, value))
    return result
