"""
Transport envelopes for secure transmission.

POST requests (SignedEnvelope) spread across four locations:

┌──────────────────┬──────────────────────────────────────────────┐
│ <key header>     │ SM2(symmetric key), hex                      │
│ Sign             │ SM4(sign_prefix + timestamp + plaintext), hex│
│ Timestamp        │ epoch seconds, decimal                       │
│ body.requestData │ SM4(plaintext), hex                          │
└──────────────────┴──────────────────────────────────────────────┘

GET/DELETE requests (QueryEnvelope) carry a single ``data`` query parameter,
optionally with the key header and no signature.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from secure_transmission.constants import (
    BODY_DATA_FIELD,
    HEADER_SIGN,
    HEADER_TIMESTAMP,
    QUERY_DATA_PARAM,
)
from secure_transmission.crypto import symmetric_encrypt
from secure_transmission.exceptions import MalformedBodyError, MalformedHeaderError
from secure_transmission.headers import get_header, require_header

__all__ = [
    "QueryEnvelope",
    "SignedEnvelope",
    "build_query_params",
    "build_request_body",
    "compute_signature",
    "extract_request_data",
    "parse_query_envelope",
    "parse_signed_headers",
]

_TIMESTAMP_RE = re.compile(r"-?[0-9]+")


@dataclass(frozen=True)
class SignedEnvelope:
    """Signed POST request, before the body is read."""

    wrapped_key: str = field(repr=False)
    signature: str
    timestamp: int


@dataclass(frozen=True)
class QueryEnvelope:
    """Encrypted GET/DELETE query payload."""

    data: str
    wrapped_key: str | None = field(default=None, repr=False)

    @property
    def is_hybrid(self) -> bool:
        """True when data is SM4 ciphertext under a wrapped key, False for direct SM2."""
        return self.wrapped_key is not None


def parse_signed_headers(headers: Mapping[str, Any], key_header: str) -> SignedEnvelope:
    """
    Extract the signed-envelope headers of a POST request.

    Args:
        headers: Request headers
        key_header: Configured wrapped-key header name

    Raises:
        MissingFieldError: If any of the three headers is absent or blank
        MalformedHeaderError: If Timestamp is not an integer
    """
    wrapped_key = require_header(headers, key_header)
    signature = require_header(headers, HEADER_SIGN)
    raw_timestamp = require_header(headers, HEADER_TIMESTAMP)
    if not _TIMESTAMP_RE.fullmatch(raw_timestamp):
        raise MalformedHeaderError(f"{HEADER_TIMESTAMP} header must be epoch seconds")
    timestamp = int(raw_timestamp)
    return SignedEnvelope(wrapped_key=wrapped_key, signature=signature, timestamp=timestamp)


def parse_query_envelope(data: str | None, headers: Mapping[str, Any], key_header: str) -> QueryEnvelope | None:
    """Build a QueryEnvelope, or None if there is no ``data`` to decode."""
    if data is None or not data.strip():
        return None
    return QueryEnvelope(data=data.strip(), wrapped_key=get_header(headers, key_header))


def extract_request_data(body: bytes | str) -> str:
    """
    Extract the ``requestData`` ciphertext from a POST body.

    Raises:
        MalformedBodyError: If the body is not a JSON object with a string requestData
    """
    try:
        payload = json.loads(body)
    except (ValueError, TypeError, RecursionError) as e:
        raise MalformedBodyError(f"Request body must be a JSON object with {BODY_DATA_FIELD}") from e
    if not isinstance(payload, dict) or BODY_DATA_FIELD not in payload:
        raise MalformedBodyError(f"Parameter {BODY_DATA_FIELD} is missing")
    value = payload[BODY_DATA_FIELD]
    if not isinstance(value, str) or not value:
        raise MalformedBodyError(f"Parameter {BODY_DATA_FIELD} must be a non-empty string")
    return value


def compute_signature(sign_prefix: str, timestamp: int, plaintext: str, key: str) -> str:
    """Expected ``Sign`` header: SM4(sign_prefix + timestamp + plaintext) under the request key."""
    return symmetric_encrypt(f"{sign_prefix}{timestamp}{plaintext}", key)


def build_request_body(ciphertext: str) -> bytes:
    """Wrap POST ciphertext into the ``{"requestData": ...}`` body."""
    return json.dumps({BODY_DATA_FIELD: ciphertext}, separators=(",", ":")).encode()


def build_query_params(ciphertext: str) -> dict[str, str]:
    """Query parameters for an encrypted GET/DELETE request."""
    return {QUERY_DATA_PARAM: ciphertext}
