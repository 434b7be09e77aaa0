"""
Protocol constants for secure transmission.

Header and field names are part of the wire format shared with browser and
SDK clients; changing them breaks interoperability.
"""

from typing import Final

# =============================================================================
# Wire names
# =============================================================================

HEADER_SIGN: Final = "Sign"
"""Hex SM4 ciphertext of ``sign_prefix + timestamp + plaintext``."""

HEADER_TIMESTAMP: Final = "Timestamp"
"""Signing time as decimal epoch seconds."""

QUERY_DATA_PARAM: Final = "data"
"""Query parameter carrying the GET/DELETE payload."""

BODY_DATA_FIELD: Final = "requestData"
"""JSON body field carrying the POST ciphertext."""

RESPONSE_DATA_FIELD: Final = "data"
"""JSON response field replaced by its ciphertext."""

# =============================================================================
# Cipher parameters
# =============================================================================

SM2_POINT_PREFIX: Final = "04"
"""Uncompressed point marker prepended to every SM2 ciphertext."""

SM2_COORDINATE_SIZE: Final = 32
SM2_DIGEST_SIZE: Final = 32

SM4_KEY_SIZE: Final = 16
SM4_BLOCK_SIZE: Final = 16
SM4_HEX_KEY_LENGTH: Final = 2 * SM4_KEY_SIZE

DEFAULT_MODE: Final = "ECB"
DEFAULT_PADDING: Final = "PKCS5Padding"

# =============================================================================
# Configuration defaults
# =============================================================================

DEFAULT_SIGN_TIMEOUT: Final = 60
DEFAULT_ENV_PREFIX: Final = "SECURE_TRANSMISSION_"

# =============================================================================
# ASGI scope keys
# =============================================================================

SCOPE_PLAINTEXT: Final = "secure_transmission.plaintext"
"""Decrypted payload stored in the ASGI scope for the application."""

SCOPE_POLICY: Final = "secure_transmission.policy"
"""Resolved TransmissionPolicy for the matched route."""

POLICY_ATTRIBUTE: Final = "__secure_transmission__"
"""Attribute set on endpoints by the ``secure_transmission`` decorator."""
