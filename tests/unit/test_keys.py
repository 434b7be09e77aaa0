"""Unit tests for per-request key resolution."""

from collections.abc import Callable

import pytest

from secure_transmission.config import SecureConfig
from secure_transmission.crypto import asymmetric_encrypt, generate_keypair
from secure_transmission.exceptions import KeyResolutionError
from secure_transmission.keys import resolve_response_key, resolve_symmetric_key, unwrap_symmetric_key
from tests.conftest import FALLBACK_KEY, KEY_HEADER


class TestUnwrap:
    """Test unwrap_symmetric_key."""

    def test_unwraps(self, config: SecureConfig, server_keypair: tuple[str, str]) -> None:
        _, pk = server_keypair
        wrapped = asymmetric_encrypt("0123456789abcdef", pk)
        assert unwrap_symmetric_key(wrapped, config) == "0123456789abcdef"

    def test_missing_private_key(self, config_factory: Callable[..., SecureConfig]) -> None:
        config = config_factory(asymmetric_private_key="")
        with pytest.raises(KeyResolutionError, match="not configured"):
            unwrap_symmetric_key("04" + "00" * 100, config)

    def test_garbage_wrapped_key(self, config: SecureConfig) -> None:
        with pytest.raises(KeyResolutionError, match="unwrap"):
            unwrap_symmetric_key("definitely-not-ciphertext", config)

    def test_wrapped_for_another_server(self, config: SecureConfig) -> None:
        """The client-facing message omits the cipher failure, kept as the cause."""
        _, other_pk = generate_keypair()
        with pytest.raises(KeyResolutionError) as exc_info:
            unwrap_symmetric_key(asymmetric_encrypt("0123456789abcdef", other_pk), config)
        assert str(exc_info.value) == "Failed to unwrap request key"
        assert "digest" in str(exc_info.value.__cause__)


class TestResolve:
    """Test resolve_symmetric_key / resolve_response_key."""

    @pytest.mark.parametrize("wrapped", [None, "", "   "])
    def test_fallback(self, config: SecureConfig, wrapped: str | None) -> None:
        assert resolve_symmetric_key(wrapped, config) == FALLBACK_KEY

    def test_fallback_without_private_key(self, config_factory: Callable[..., SecureConfig]) -> None:
        """The fallback path never needs the private key."""
        config = config_factory(asymmetric_private_key="")
        assert resolve_symmetric_key(None, config) == FALLBACK_KEY

    def test_wrapped(self, config: SecureConfig, server_keypair: tuple[str, str]) -> None:
        _, pk = server_keypair
        wrapped = asymmetric_encrypt("k" * 16, pk)
        assert resolve_symmetric_key(f"  {wrapped}\n", config) == "k" * 16

    def test_response_key_from_headers(self, config: SecureConfig, server_keypair: tuple[str, str]) -> None:
        _, pk = server_keypair
        wrapped = asymmetric_encrypt("k" * 16, pk)
        assert resolve_response_key({KEY_HEADER.lower(): wrapped}, config) == "k" * 16
        assert resolve_response_key({}, config) == FALLBACK_KEY
