"""
Cryptographic primitives for secure transmission.

Three families, each a set of pure functions with no retained state:

- SM2 public-key encryption (GB/T 32918.4) for wrapping symmetric keys.
  Ciphertext wire format, hex encoded:

  ┌──────┬────────────────┬──────────────┬────────────┐
  │ 0x04 │ C1 = kG (x, y) │ C3 = SM3 tag │ C2 = M ⊕ t │
  │ (1B) │     (64B)      │    (32B)     │    (NB)    │
  └──────┴────────────────┴──────────────┴────────────┘

- SM4 block cipher (ECB/CBC) for payloads, hex or base64 output.
- SM3 digest, optionally salted.

Curve arithmetic comes from gmssl; SM4 and SM3 run on cryptography's
OpenSSL bindings.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
import secrets
import uuid

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from gmssl import sm2 as gm_sm2

from secure_transmission.constants import (
    DEFAULT_MODE,
    DEFAULT_PADDING,
    SM2_COORDINATE_SIZE,
    SM2_DIGEST_SIZE,
    SM2_POINT_PREFIX,
    SM4_BLOCK_SIZE,
    SM4_HEX_KEY_LENGTH,
    SM4_KEY_SIZE,
)
from secure_transmission.exceptions import CryptoError

__all__ = [
    "asymmetric_decrypt",
    "asymmetric_encrypt",
    "create_symmetric_key",
    "digest",
    "generate_keypair",
    "sha256_hex",
    "symmetric_decrypt",
    "symmetric_encrypt",
    "symmetric_encrypt_base64",
]

_HEX_RE = re.compile(r"[0-9a-fA-F]+")

_ECC = gm_sm2.default_ecc_table
_N = int(_ECC["n"], 16)
_P = int(_ECC["p"], 16)
_A = int(_ECC["a"], 16)
_B = int(_ECC["b"], 16)
_G = _ECC["g"]

# Only used for point multiplication (_kg); keys are passed per call.
# CryptSM2.decrypt never checks C3, so encrypt/decrypt are built here on top
# of _kg and the SM3 KDF instead of gmssl's public methods.
_CURVE = gm_sm2.CryptSM2(private_key="", public_key="", mode=1)

_POINT_SIZE = 2 * SM2_COORDINATE_SIZE


# =============================================================================
# ENCODING HELPERS
# =============================================================================


def _to_bytes(text: str | bytes) -> bytes:
    return text if isinstance(text, bytes) else text.encode("utf-8")


def _decode_text(text: str, what: str) -> bytes:
    """Decode hex, falling back to standard base64 (hex wins when ambiguous)."""
    text = text.strip()
    if not text:
        raise CryptoError(f"Empty {what}")
    if len(text) % 2 == 0 and _HEX_RE.fullmatch(text):
        return bytes.fromhex(text)
    try:
        padded = text + "=" * (-len(text) % 4)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid {what} encoding: expected hex or base64") from e


def _to_utf8(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError("Decrypted data is not valid UTF-8") from e


# =============================================================================
# SM2
# =============================================================================


def _multiply(k: int, point: str) -> str:
    """Scalar multiplication k·P on the SM2 curve, points as 128-char hex."""
    result = _CURVE._kg(k, point)  # noqa: SLF001
    if not result:
        raise CryptoError("Point multiplication reached infinity")
    return result


def _check_on_curve(point: str) -> None:
    x = int(point[:_POINT_SIZE], 16)
    y = int(point[_POINT_SIZE:], 16)
    if not (0 <= x < _P and 0 <= y < _P):
        raise CryptoError("Point coordinate out of range")
    if (y * y - (x * x * x + _A * x + _B)) % _P != 0:
        raise CryptoError("Point is not on the SM2 curve")


def _load_public_key(public_key: str) -> str:
    raw = _decode_text(public_key, "public key")
    if len(raw) == _POINT_SIZE + 1 and raw[0] == 0x04:
        raw = raw[1:]
    if len(raw) != _POINT_SIZE:
        raise CryptoError(f"Invalid SM2 public key length: {len(raw)} bytes (expected 64 or 65)")
    point = raw.hex()
    _check_on_curve(point)
    return point


def _load_private_key(private_key: str) -> int:
    raw = _decode_text(private_key, "private key")
    # BigInteger.toByteArray() style keys carry a leading sign byte
    if len(raw) == SM2_COORDINATE_SIZE + 1 and raw[0] == 0:
        raw = raw[1:]
    if not 0 < len(raw) <= SM2_COORDINATE_SIZE:
        raise CryptoError(f"Invalid SM2 private key length: {len(raw)} bytes (expected 32)")
    d = int.from_bytes(raw, "big")
    if not 1 <= d < _N - 1:
        raise CryptoError("SM2 private key out of range")
    return d


def _kdf(z: bytes, length: int) -> bytes:
    """GB/T 32918 key derivation: SM3(z || ct) blocks, ct a 32-bit counter from 1."""
    blocks: list[bytes] = []
    counter = 1
    while sum(len(b) for b in blocks) < length:
        h = hashes.Hash(hashes.SM3())
        h.update(z + counter.to_bytes(4, "big"))
        blocks.append(h.finalize())
        counter += 1
    return b"".join(blocks)[:length]


def _sm3(data: bytes) -> bytes:
    try:
        h = hashes.Hash(hashes.SM3())
    except UnsupportedAlgorithm as e:
        raise CryptoError("SM3 is not supported by the OpenSSL backend") from e
    h.update(data)
    return h.finalize()


def asymmetric_encrypt(plaintext: str | bytes, public_key: str) -> str:
    """
    Encrypt with SM2 (C1C3C2 layout).

    Args:
        plaintext: Text to encrypt (UTF-8 encoded when str)
        public_key: Recipient public key, hex or base64, with or without 04

    Returns:
        Hex ciphertext starting with ``04``

    Raises:
        CryptoError: If the public key is malformed
    """
    point = _load_public_key(public_key)
    message = _to_bytes(plaintext)

    while True:
        k = secrets.randbelow(_N - 1) + 1
        c1 = _multiply(k, _G)
        shared = bytes.fromhex(_multiply(k, point))
        t = _kdf(shared, len(message))
        if message and not any(t):
            continue
        break

    x2, y2 = shared[:SM2_COORDINATE_SIZE], shared[SM2_COORDINATE_SIZE:]
    c2 = bytes(m ^ k_ for m, k_ in zip(message, t, strict=True))
    c3 = _sm3(x2 + message + y2)
    return SM2_POINT_PREFIX + c1 + c3.hex() + c2.hex()


def asymmetric_decrypt(ciphertext: str, private_key: str) -> str:
    """
    Decrypt SM2 ciphertext produced by :func:`asymmetric_encrypt` or sm-crypto.

    Args:
        ciphertext: Hex ``04 || C1 || C3 || C2``
        private_key: Scalar d, hex or base64

    Returns:
        Plaintext as text

    Raises:
        CryptoError: If the ciphertext is malformed or the digest does not match
    """
    d = _load_private_key(private_key)
    text = ciphertext.strip()
    if not text or len(text) % 2 or not _HEX_RE.fullmatch(text):
        raise CryptoError("SM2 ciphertext must be hex")
    raw = bytes.fromhex(text)
    if len(raw) < 1 + _POINT_SIZE + SM2_DIGEST_SIZE or raw[0] != 0x04:
        raise CryptoError("SM2 ciphertext too short or missing 04 prefix")

    c1 = raw[1 : 1 + _POINT_SIZE].hex()
    c3 = raw[1 + _POINT_SIZE : 1 + _POINT_SIZE + SM2_DIGEST_SIZE]
    c2 = raw[1 + _POINT_SIZE + SM2_DIGEST_SIZE :]
    _check_on_curve(c1)

    shared = bytes.fromhex(_multiply(d, c1))
    t = _kdf(shared, len(c2))
    if c2 and not any(t):
        raise CryptoError("SM2 key derivation produced an all-zero stream")
    message = bytes(c ^ k for c, k in zip(c2, t, strict=True))

    x2, y2 = shared[:SM2_COORDINATE_SIZE], shared[SM2_COORDINATE_SIZE:]
    if not secrets.compare_digest(_sm3(x2 + message + y2), c3):
        raise CryptoError("SM2 digest mismatch")
    return _to_utf8(message)


def generate_keypair() -> tuple[str, str]:
    """
    Generate an SM2 key pair.

    Returns:
        Tuple of (private_key_hex, public_key_hex) where the public key is
        the uncompressed ``04 || x || y`` form expected by sm-crypto
    """
    d = secrets.randbelow(_N - 2) + 1
    return (f"{d:064x}", SM2_POINT_PREFIX + _multiply(d, _G))


# =============================================================================
# SM4
# =============================================================================


def _symmetric_key(key: str) -> bytes:
    """32 hex characters decode to 16 bytes; 16 characters are used as-is."""
    if len(key) == SM4_HEX_KEY_LENGTH:
        try:
            return bytes.fromhex(key)
        except ValueError as e:
            raise CryptoError("32-character SM4 key must be hex") from e
    if len(key) == SM4_KEY_SIZE:
        raw = key.encode("utf-8")
        if len(raw) == SM4_KEY_SIZE:
            return raw
    raise CryptoError(f"Invalid SM4 key length: {len(key)} (expected 16 or 32 hex characters)")


def _normalize_padding(padding: str) -> str:
    name = padding.upper()
    if name.endswith("PADDING"):
        name = name[: -len("PADDING")]
    if name not in ("PKCS5", "PKCS7", "ZERO", "NO"):
        raise CryptoError(f"Unsupported padding: {padding}")
    return name


def _cipher(key: str, iv: str, mode: str) -> Cipher[modes.Mode]:
    key_bytes = _symmetric_key(key)
    mode_name = mode.upper()
    cipher_mode: modes.Mode
    if mode_name == "ECB":
        cipher_mode = modes.ECB()
    elif mode_name == "CBC":
        iv_bytes = iv.encode("utf-8")
        if len(iv_bytes) != SM4_BLOCK_SIZE:
            raise CryptoError(f"CBC mode requires a 16-byte IV, got {len(iv_bytes)}")
        cipher_mode = modes.CBC(iv_bytes)
    else:
        raise CryptoError(f"Unsupported mode: {mode}")
    try:
        return Cipher(algorithms.SM4(key_bytes), cipher_mode)
    except UnsupportedAlgorithm as e:
        raise CryptoError("SM4 is not supported by the OpenSSL backend") from e


def _pad(data: bytes, padding: str) -> bytes:
    if padding in ("PKCS5", "PKCS7"):
        padder = sym_padding.PKCS7(SM4_BLOCK_SIZE * 8).padder()
        return padder.update(data) + padder.finalize()
    if padding == "ZERO":
        return data + b"\x00" * (-len(data) % SM4_BLOCK_SIZE)
    if len(data) % SM4_BLOCK_SIZE:
        raise CryptoError("NoPadding requires input aligned to the 16-byte block size")
    return data


def _unpad(data: bytes, padding: str) -> bytes:
    if padding in ("PKCS5", "PKCS7"):
        unpadder = sym_padding.PKCS7(SM4_BLOCK_SIZE * 8).unpadder()
        try:
            return unpadder.update(data) + unpadder.finalize()
        except ValueError as e:
            raise CryptoError("Invalid PKCS padding") from e
    if padding == "ZERO":
        return data.rstrip(b"\x00")
    return data


def _sm4_encrypt(plaintext: str | bytes, key: str, iv: str, mode: str, padding: str) -> bytes:
    cipher = _cipher(key, iv, mode)
    data = _pad(_to_bytes(plaintext), _normalize_padding(padding))
    encryptor = cipher.encryptor()
    return encryptor.update(data) + encryptor.finalize()


def symmetric_encrypt(
    plaintext: str | bytes,
    key: str,
    iv: str = "",
    mode: str = DEFAULT_MODE,
    padding: str = DEFAULT_PADDING,
) -> str:
    """
    Encrypt with SM4.

    Args:
        plaintext: Text to encrypt
        key: 32 hex characters or 16 raw characters
        iv: Initialization vector for CBC (16 characters), ignored for ECB
        mode: "ECB" or "CBC"
        padding: "PKCS5Padding", "PKCS7Padding", "ZeroPadding" or "NoPadding"

    Returns:
        Lowercase hex ciphertext

    Raises:
        CryptoError: If the key, IV, mode or padding is invalid
    """
    return _sm4_encrypt(plaintext, key, iv, mode, padding).hex()


def symmetric_encrypt_base64(
    plaintext: str | bytes,
    key: str,
    iv: str = "",
    mode: str = DEFAULT_MODE,
    padding: str = DEFAULT_PADDING,
) -> str:
    """Encrypt with SM4, returning standard base64 instead of hex."""
    return base64.b64encode(_sm4_encrypt(plaintext, key, iv, mode, padding)).decode("ascii")


def symmetric_decrypt(
    ciphertext: str,
    key: str,
    iv: str = "",
    mode: str = DEFAULT_MODE,
    padding: str = DEFAULT_PADDING,
) -> str:
    """
    Decrypt SM4 ciphertext (hex or base64).

    Raises:
        CryptoError: If the ciphertext, key or parameters are invalid
    """
    cipher = _cipher(key, iv, mode)
    padding_name = _normalize_padding(padding)
    data = _decode_text(ciphertext, "ciphertext")
    if len(data) % SM4_BLOCK_SIZE:
        raise CryptoError(f"Ciphertext length {len(data)} is not a multiple of the block size")
    decryptor = cipher.decryptor()
    plaintext = decryptor.update(data) + decryptor.finalize()
    return _to_utf8(_unpad(plaintext, padding_name))


def create_symmetric_key() -> str:
    """Create a fresh 32-hex-character SM4 key (uuid4 without dashes)."""
    return uuid.uuid4().hex


# =============================================================================
# DIGESTS
# =============================================================================


def digest(text: str | bytes, salt: str | bytes | None = None) -> str:
    """
    SM3 digest as hex.

    Args:
        text: Input text
        salt: Optional salt, hashed before the text

    Returns:
        64-character lowercase hex digest
    """
    data = _to_bytes(text)
    if salt is not None:
        data = _to_bytes(salt) + data
    return _sm3(data).hex()


def sha256_hex(text: str | bytes) -> str:
    """SHA-256 digest as hex."""
    return hashlib.sha256(_to_bytes(text)).hexdigest()
