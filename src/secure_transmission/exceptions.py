"""
Exception hierarchy for secure_transmission.

Request rejections inherit from DecodeError, which carries the HTTP status
the ASGI middleware answers with.
"""

from http import HTTPStatus


class SecureTransmissionError(Exception):
    """Base exception for all secure transmission errors."""


class ConfigurationError(SecureTransmissionError):
    """Required configuration is missing or invalid.

    Raised at startup, never while serving a request.
    """


class CryptoError(SecureTransmissionError):
    """A primitive failed.

    Possible causes:
    - Malformed ciphertext (bad hex/base64, truncated, wrong padding)
    - Key of the wrong length or encoding
    - Unsupported mode or padding name
    - SM2 digest mismatch (wrong private key or tampered ciphertext)
    """


class DecodeError(SecureTransmissionError):
    """An inbound request could not be decoded and must be rejected."""

    status_code: int = HTTPStatus.BAD_REQUEST


class KeyResolutionError(DecodeError):
    """The wrapped symmetric key could not be unwrapped."""


class MissingFieldError(DecodeError):
    """A required header is absent or blank."""


class MalformedHeaderError(DecodeError):
    """A required header is present but cannot be parsed."""


class MalformedBodyError(DecodeError):
    """The request body is not a JSON object carrying ``requestData``."""


class ExpiredSignatureError(DecodeError):
    """The signing timestamp is outside the replay window."""

    status_code = HTTPStatus.UNAUTHORIZED

    def __init__(self, skew: int, window: int) -> None:
        self.skew = skew
        self.window = window
        super().__init__("Invalid request, signature has expired")


class SignatureInvalidError(DecodeError):
    """The recomputed signature does not match the ``Sign`` header."""

    status_code = HTTPStatus.UNAUTHORIZED
