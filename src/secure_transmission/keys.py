"""
Per-request symmetric key resolution.

A request either carries its own SM4 key, SM2-wrapped in the configured
header, or falls back to the configured static key. The result lives for
one request only and is never cached.
"""

from collections.abc import Mapping
from typing import Any

from secure_transmission._logging import get_logger
from secure_transmission.config import SecureConfig
from secure_transmission.crypto import asymmetric_decrypt
from secure_transmission.exceptions import CryptoError, KeyResolutionError
from secure_transmission.headers import get_header

__all__ = [
    "resolve_response_key",
    "resolve_symmetric_key",
    "unwrap_symmetric_key",
]

_logger = get_logger(__name__)


def unwrap_symmetric_key(wrapped_key: str, config: SecureConfig) -> str:
    """
    Recover a symmetric key from its SM2-wrapped form.

    Args:
        wrapped_key: Hex SM2 ciphertext from the key header
        config: Settings providing the server private key

    Returns:
        The raw symmetric key string

    Raises:
        KeyResolutionError: If the private key is missing or decryption fails
    """
    if not config.asymmetric_private_key:
        raise KeyResolutionError("Server private key is not configured")
    try:
        return asymmetric_decrypt(wrapped_key, config.asymmetric_private_key)
    except CryptoError as e:
        # Cipher details stay in the log, the message reaches the client
        _logger.info("Key unwrap failed: error=%s", e)
        raise KeyResolutionError("Failed to unwrap request key") from e


def resolve_symmetric_key(wrapped_key: str | None, config: SecureConfig) -> str:
    """
    Resolve the symmetric key governing a payload.

    Blank or absent wrapped keys resolve to ``header_fallback_key`` verbatim.

    Raises:
        KeyResolutionError: If a wrapped key is present but cannot be unwrapped
    """
    if wrapped_key is None or not wrapped_key.strip():
        _logger.debug("No wrapped key, using fallback key")
        return config.header_fallback_key
    return unwrap_symmetric_key(wrapped_key.strip(), config)


def resolve_response_key(headers: Mapping[str, Any], config: SecureConfig) -> str:
    """Resolve the key from the current request's headers (read again on the way out)."""
    return resolve_symmetric_key(get_header(headers, config.header_key_name), config)
