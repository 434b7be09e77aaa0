"""
Immutable configuration for secure transmission.

A SecureConfig is built once at startup and passed explicitly to every
pipeline call, so several configurations can coexist in one process.

Configuration keys (camelCase, kebab-case and snake_case accepted):
    headerEncryptKeyName   header carrying the wrapped symmetric key
    headerEncryptKeyValue  fallback symmetric key for responses
    secretKey              server SM2 private key (hex or base64)
    signTimeout            replay window in seconds
    signPrefix             text mixed into the signature input
    enabled                master switch
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from secure_transmission._logging import get_logger
from secure_transmission.constants import (
    DEFAULT_ENV_PREFIX,
    DEFAULT_SIGN_TIMEOUT,
    SM4_HEX_KEY_LENGTH,
    SM4_KEY_SIZE,
)
from secure_transmission.exceptions import ConfigurationError

__all__ = [
    "SecureConfig",
]

_logger = get_logger(__name__)

# Normalized key (lowercase, separators stripped) -> field name
_KEY_ALIASES = {
    "headerencryptkeyname": "header_key_name",
    "headerkeyname": "header_key_name",
    "headerencryptkeyvalue": "header_fallback_key",
    "headerfallbackkey": "header_fallback_key",
    "secretkey": "asymmetric_private_key",
    "asymmetricprivatekey": "asymmetric_private_key",
    "signtimeout": "sign_timeout_seconds",
    "signtimeoutseconds": "sign_timeout_seconds",
    "signprefix": "sign_prefix",
    "enabled": "enabled",
}

_ENV_FIELDS = {
    "HEADER_ENCRYPT_KEY_NAME": "header_key_name",
    "HEADER_ENCRYPT_KEY_VALUE": "header_fallback_key",
    "SECRET_KEY": "asymmetric_private_key",
    "SIGN_TIMEOUT": "sign_timeout_seconds",
    "SIGN_PREFIX": "sign_prefix",
    "ENABLED": "enabled",
}

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


def _normalize_key(key: str) -> str:
    return re.sub(r"[-_.\s]", "", key).lower()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"enabled must be a boolean, got {value!r}")


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"signTimeout must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"signTimeout must be an integer, got {value!r}") from e


def _is_valid_symmetric_key(key: str) -> bool:
    if len(key) == SM4_HEX_KEY_LENGTH:
        return re.fullmatch(r"[0-9a-fA-F]+", key) is not None
    return len(key) == SM4_KEY_SIZE and len(key.encode("utf-8")) == SM4_KEY_SIZE


@dataclass(frozen=True)
class SecureConfig:
    """Validated secure transmission settings."""

    header_key_name: str = ""
    """Header carrying the SM2-wrapped symmetric key."""

    header_fallback_key: str = ""
    """Symmetric key used for responses when no wrapped key was sent."""

    asymmetric_private_key: str = field(default="", repr=False)
    """Server SM2 private key (hex or base64)."""

    sign_timeout_seconds: int = DEFAULT_SIGN_TIMEOUT
    """Maximum allowed |now - Timestamp| for signed requests."""

    sign_prefix: str = field(default="", repr=False)
    """Shared text mixed into the signature input."""

    enabled: bool = False
    """When False the middleware bypasses the whole pipeline."""

    def __post_init__(self) -> None:
        """
        Validate settings.

        Raises:
            ConfigurationError: If enabled without a key header name or a
                usable fallback key, or with a negative replay window
        """
        if not self.enabled:
            return
        if not self.header_key_name:
            raise ConfigurationError("headerEncryptKeyName is required when secure transmission is enabled")
        if not self.header_fallback_key:
            raise ConfigurationError("headerEncryptKeyValue is required when secure transmission is enabled")
        if not _is_valid_symmetric_key(self.header_fallback_key):
            raise ConfigurationError("headerEncryptKeyValue must be 16 characters or 32 hex characters")
        if self.sign_timeout_seconds < 0:
            raise ConfigurationError("signTimeout must not be negative")
        if not self.asymmetric_private_key:
            _logger.warning("secretKey is not configured: wrapped keys and encrypted queries cannot be decoded")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> SecureConfig:
        """
        Build a config from a settings mapping.

        Unknown keys are ignored so a whole settings section can be passed.

        Args:
            mapping: e.g. {"headerEncryptKeyName": "X-Encrypt-Key", "enabled": "true"}

        Raises:
            ConfigurationError: If a value cannot be coerced or validation fails
        """
        values: dict[str, Any] = {}
        for key, value in mapping.items():
            name = _KEY_ALIASES.get(_normalize_key(str(key)))
            if name is None or value is None:
                continue
            if name == "enabled":
                values[name] = _coerce_bool(value)
            elif name == "sign_timeout_seconds":
                values[name] = _coerce_int(value)
            else:
                values[name] = str(value)
        return cls(**values)

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        environ: Mapping[str, str] | None = None,
    ) -> SecureConfig:
        """
        Build a config from environment variables.

        Reads ``{prefix}HEADER_ENCRYPT_KEY_NAME``, ``{prefix}HEADER_ENCRYPT_KEY_VALUE``,
        ``{prefix}SECRET_KEY``, ``{prefix}SIGN_TIMEOUT``, ``{prefix}SIGN_PREFIX``
        and ``{prefix}ENABLED``.

        Args:
            prefix: Variable name prefix
            environ: Mapping to read instead of os.environ
        """
        env = os.environ if environ is None else environ
        values = {field_name: env[prefix + suffix] for suffix, field_name in _ENV_FIELDS.items() if prefix + suffix in env}
        return cls.from_mapping(values)
