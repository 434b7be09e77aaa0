"""
Request decoding and response encoding pipelines.

Framework-agnostic transformations over values already in memory (headers,
query value, body bytes). The ASGI middleware and the aiohttp client are thin
adapters around these.

Usage (Server - any framework):
    from secure_transmission.core import decode_signed_body, encode_response

    plaintext = decode_signed_body(request.headers, request.body, config)
    # Process request...
    body = encode_response(json.dumps(result).encode(), request.headers, config)

Usage (Client):
    from secure_transmission.core import RequestEncoder

    encoder = RequestEncoder(server_public_key, key_header="X-Encrypt-Key", sign_prefix="PFX")
    body, headers = encoder.encode_signed_body({"a": 1})
    response = httpx.post(url, content=body, headers=headers)
    result = encoder.decode_response(response.content)
"""

from __future__ import annotations

import hmac
import json
import re
import time
from collections.abc import Mapping
from json.decoder import scanstring
from typing import Any

from secure_transmission._logging import get_logger
from secure_transmission.config import SecureConfig
from secure_transmission.constants import (
    HEADER_SIGN,
    HEADER_TIMESTAMP,
    RESPONSE_DATA_FIELD,
)
from secure_transmission.crypto import (
    asymmetric_decrypt,
    asymmetric_encrypt,
    create_symmetric_key,
    symmetric_decrypt,
    symmetric_encrypt,
)
from secure_transmission.envelope import (
    build_query_params,
    build_request_body,
    compute_signature,
    extract_request_data,
    parse_query_envelope,
    parse_signed_headers,
)
from secure_transmission.exceptions import (
    ExpiredSignatureError,
    KeyResolutionError,
    SecureTransmissionError,
    SignatureInvalidError,
)
from secure_transmission.keys import resolve_response_key, unwrap_symmetric_key

__all__ = [
    # Server-side
    "decode_query_envelope",
    "decode_signed_body",
    "encode_response",
    # Client-side
    "RequestEncoder",
    # Helpers
    "dumps_compact",
    "string_form",
]

_logger = get_logger(__name__)

_WHITESPACE = re.compile(r"[ \t\n\r]*")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


_DECODER = json.JSONDecoder(parse_constant=_reject_constant)


def dumps_compact(value: Any) -> str:
    """Serialize JSON the way Starlette's JSONResponse does."""
    return json.dumps(value, ensure_ascii=False, allow_nan=False, separators=(",", ":"))


def string_form(value: Any) -> str:
    """Text encrypted for a value: strings verbatim, anything else as compact JSON."""
    if isinstance(value, str):
        return value
    return dumps_compact(value)


# =============================================================================
# SERVER SIDE
# =============================================================================


def _skip_whitespace(text: str, idx: int) -> int:
    match = _WHITESPACE.match(text, idx)
    return match.end() if match else idx


def _locate_data(text: str) -> tuple[Any, int, int] | None:
    """
    Find the top-level ``data`` member of a JSON object without re-serializing it.

    Only the value's span is reported, so callers can splice a replacement in
    and leave every other byte of the document as it was.

    Args:
        text: JSON document

    Returns:
        (value, start, end) of the last ``data`` member, or None if the
        document is not an object or has no such member

    Raises:
        ValueError: If the object is not valid JSON (NaN/Infinity included)
    """
    idx = _skip_whitespace(text, 0)
    if text[idx : idx + 1] != "{":
        return None

    found: tuple[Any, int, int] | None = None
    idx = _skip_whitespace(text, idx + 1)
    if text[idx : idx + 1] == "}":
        idx += 1
    else:
        while True:
            if text[idx : idx + 1] != '"':
                raise ValueError(f"Expected member name at offset {idx}")
            name, idx = scanstring(text, idx + 1)
            idx = _skip_whitespace(text, idx)
            if text[idx : idx + 1] != ":":
                raise ValueError(f"Expected ':' at offset {idx}")
            start = _skip_whitespace(text, idx + 1)
            value, idx = _DECODER.raw_decode(text, start)
            if name == RESPONSE_DATA_FIELD:
                found = (value, start, idx)
            idx = _skip_whitespace(text, idx)
            separator = text[idx : idx + 1]
            idx += 1
            if separator == "}":
                break
            if separator != ",":
                raise ValueError(f"Expected ',' or '}}' at offset {idx - 1}")
            idx = _skip_whitespace(text, idx)

    if _skip_whitespace(text, idx) != len(text):
        raise ValueError(f"Extra data at offset {idx}")
    return found


def decode_query_envelope(
    data: str | None,
    headers: Mapping[str, Any],
    config: SecureConfig,
) -> str | None:
    """
    Decrypt a GET/DELETE ``data`` query value.

    Without a wrapped-key header the value itself is SM2 ciphertext; with one,
    the header is unwrapped and the value is SM4 ciphertext under that key.

    Args:
        data: Raw ``data`` query value (None if absent)
        headers: Request headers
        config: Settings

    Returns:
        Plaintext, or None if there was nothing to decode

    Raises:
        KeyResolutionError: If the private key is missing or the header cannot be unwrapped
        CryptoError: If the payload cannot be decrypted
    """
    envelope = parse_query_envelope(data, headers, config.header_key_name)
    if envelope is None:
        return None

    if envelope.wrapped_key is None:
        if not config.asymmetric_private_key:
            raise KeyResolutionError("Server private key is not configured")
        _logger.debug("Query decryption: mode=sm2 length=%d", len(envelope.data))
        return asymmetric_decrypt(envelope.data, config.asymmetric_private_key)

    key = unwrap_symmetric_key(envelope.wrapped_key, config)
    _logger.debug("Query decryption: mode=sm4 length=%d", len(envelope.data))
    return symmetric_decrypt(envelope.data, key)


def decode_signed_body(
    headers: Mapping[str, Any],
    body: bytes | str,
    config: SecureConfig,
    *,
    now: float | None = None,
) -> bytes:
    """
    Verify and decrypt a signed POST body.

    Steps run in a fixed order and the first failure aborts:
    headers present, timestamp inside the replay window, key unwrapped,
    ``requestData`` extracted, payload decrypted, signature matched.

    Args:
        headers: Request headers (key header, Sign, Timestamp)
        body: Raw JSON body ``{"requestData": "<hex>"}``
        config: Settings
        now: Current epoch seconds (defaults to time.time())

    Returns:
        Decrypted body, UTF-8 encoded, to replace the request body

    Raises:
        MissingFieldError: If a required header is absent or blank
        MalformedHeaderError: If Timestamp is not an integer
        ExpiredSignatureError: If |now - Timestamp| exceeds the window
        KeyResolutionError: If the wrapped key cannot be unwrapped
        MalformedBodyError: If requestData is missing
        CryptoError: If requestData cannot be decrypted
        SignatureInvalidError: If the recomputed signature differs from Sign
    """
    envelope = parse_signed_headers(headers, config.header_key_name)

    current = int(time.time() if now is None else now)
    skew = abs(current - envelope.timestamp)
    if skew > config.sign_timeout_seconds:
        raise ExpiredSignatureError(skew, config.sign_timeout_seconds)

    key = unwrap_symmetric_key(envelope.wrapped_key, config)
    ciphertext = extract_request_data(body)
    plaintext = symmetric_decrypt(ciphertext, key)

    expected = compute_signature(config.sign_prefix, envelope.timestamp, plaintext, key)
    if not hmac.compare_digest(expected.encode(), envelope.signature.encode()):
        raise SignatureInvalidError("Invalid request, signature verification failed")

    _logger.debug("Signed body verified: skew=%ds length=%d", skew, len(plaintext))
    return plaintext.encode("utf-8")


def encode_response(
    body: bytes | str,
    headers: Mapping[str, Any],
    config: SecureConfig,
) -> bytes:
    """
    Encrypt the ``data`` field of a JSON response.

    Best effort: bodies that are not JSON objects, or whose ``data`` is absent
    or null, are returned unchanged, and any key or cipher failure returns the
    original body. Only the ``data`` value is replaced; every other byte of
    the body, sibling fields and whitespace included, is kept.

    Args:
        body: Response body
        headers: Headers of the request being answered
        config: Settings

    Returns:
        Body with ``data`` replaced by hex ciphertext, or the original body
    """
    original = body.encode("utf-8") if isinstance(body, str) else body
    try:
        text = original.decode("utf-8")
        located = _locate_data(text)
    except (ValueError, RecursionError):
        _logger.debug("Response not valid JSON, left unencrypted")
        return original
    if located is None or located[0] is None:
        return original

    value, start, end = located
    try:
        key = resolve_response_key(headers, config)
        ciphertext = symmetric_encrypt(string_form(value), key)
    except (SecureTransmissionError, ValueError) as e:
        _logger.warning("Response encryption failed, sending plaintext: error_type=%s error=%s", type(e).__name__, e)
        return original

    return (text[:start] + json.dumps(ciphertext) + text[end:]).encode("utf-8")


# =============================================================================
# CLIENT SIDE
# =============================================================================


class RequestEncoder:
    """
    Encode requests for a secure transmission server.

    Holds one fresh symmetric key; create one encoder per request so the
    response can be decrypted with the key the request was sent under.

    Example:
        encoder = RequestEncoder(server_pk, key_header="X-Encrypt-Key", sign_prefix="PFX")
        params, headers = encoder.encode_query({"page": 1})
        body, headers = encoder.encode_signed_body({"name": "admin"})
        result = encoder.decode_response(response_body)
    """

    def __init__(
        self,
        public_key: str,
        key_header: str,
        sign_prefix: str = "",
        *,
        symmetric_key: str | None = None,
    ) -> None:
        """
        Initialize request encoder.

        Args:
            public_key: Server SM2 public key (hex or base64)
            key_header: Header name the server reads the wrapped key from
            sign_prefix: Shared signature prefix
            symmetric_key: Key to use instead of a random one (tests, replays)
        """
        self.public_key = public_key
        self.key_header = key_header
        self.sign_prefix = sign_prefix
        self._key = symmetric_key or create_symmetric_key()
        self._wrapped_key = asymmetric_encrypt(self._key, public_key)

    @property
    def symmetric_key(self) -> str:
        """The per-request SM4 key."""
        return self._key

    def get_headers(self) -> dict[str, str]:
        """
        Get the wrapped-key header.

        Returns:
            Dict with the configured key header
        """
        return {self.key_header: self._wrapped_key}

    def encode_query(self, params: Any, *, hybrid: bool = True) -> tuple[dict[str, str], dict[str, str]]:
        """
        Encrypt GET/DELETE parameters into the ``data`` query parameter.

        Args:
            params: Object serialized to JSON (strings are sent verbatim)
            hybrid: SM4 under the wrapped key (True) or SM2 directly without a key header (False)

        Returns:
            Tuple of (query_params, headers)
        """
        plaintext = string_form(params)
        if hybrid:
            return (build_query_params(symmetric_encrypt(plaintext, self._key)), self.get_headers())
        return (build_query_params(asymmetric_encrypt(plaintext, self.public_key)), {})

    def encode_signed_body(self, payload: Any, *, timestamp: int | None = None) -> tuple[bytes, dict[str, str]]:
        """
        Encrypt and sign a POST body.

        Args:
            payload: Object serialized to JSON (strings are sent verbatim)
            timestamp: Signing time in epoch seconds (defaults to now)

        Returns:
            Tuple of (body, headers) with key header, Sign, Timestamp and Content-Type
        """
        plaintext = string_form(payload)
        ts = int(time.time()) if timestamp is None else timestamp
        headers = {
            **self.get_headers(),
            HEADER_SIGN: compute_signature(self.sign_prefix, ts, plaintext, self._key),
            HEADER_TIMESTAMP: str(ts),
            "Content-Type": "application/json",
        }
        return (build_request_body(symmetric_encrypt(plaintext, self._key)), headers)

    def decrypt_data(self, ciphertext: str) -> Any:
        """Decrypt a response ``data`` value, parsing JSON objects and arrays."""
        plaintext = symmetric_decrypt(ciphertext, self._key)
        if plaintext[:1] in ("{", "["):
            try:
                return json.loads(plaintext)
            except ValueError:
                return plaintext
        return plaintext

    def decode_response(self, body: bytes | str) -> Any:
        """
        Decrypt the ``data`` field of a response body.

        Returns:
            Parsed response with ``data`` decrypted; non-object bodies and
            bodies without a string ``data`` are returned parsed but untouched

        Raises:
            CryptoError: If ``data`` cannot be decrypted with this request's key
        """
        payload = json.loads(body)
        if isinstance(payload, dict) and isinstance(payload.get(RESPONSE_DATA_FIELD), str):
            payload[RESPONSE_DATA_FIELD] = self.decrypt_data(payload[RESPONSE_DATA_FIELD])
        return payload
