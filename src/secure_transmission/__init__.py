"""
Application-layer hybrid encryption for HTTP payloads.

Request and response bodies stay opaque to anything that terminates TLS
(proxies, gateways, logs): clients send a per-request SM4 key wrapped with
the server's SM2 public key, encrypt payloads under it and sign POST bodies
with a timestamp to bound replays.

Usage (Server - FastAPI):
    from secure_transmission import SecureConfig, secure_transmission
    from secure_transmission.middleware.fastapi import SecureTransmissionMiddleware

    app = FastAPI()
    app.add_middleware(SecureTransmissionMiddleware, config=SecureConfig.from_env())

    @app.post("/users")
    @secure_transmission(encrypt=True, decrypt=True)
    async def create_user(user: User) -> dict: ...

Usage (Client - aiohttp):
    from secure_transmission.middleware.aiohttp import SecureClientSession

    async with SecureClientSession(base_url, public_key=pk, key_header="X-Encrypt-Key") as session:
        response = await session.post("/users", json=data)
        result = await session.read_json(response)
"""

from secure_transmission.config import SecureConfig
from secure_transmission.exceptions import (
    ConfigurationError,
    CryptoError,
    DecodeError,
    ExpiredSignatureError,
    KeyResolutionError,
    MalformedBodyError,
    MalformedHeaderError,
    MissingFieldError,
    SecureTransmissionError,
    SignatureInvalidError,
)
from secure_transmission.policy import TransmissionPolicy, secure_transmission

__all__ = [
    # Configuration
    "SecureConfig",
    # Route flags
    "TransmissionPolicy",
    "secure_transmission",
    # Exceptions
    "ConfigurationError",
    "CryptoError",
    "DecodeError",
    "ExpiredSignatureError",
    "KeyResolutionError",
    "MalformedBodyError",
    "MalformedHeaderError",
    "MissingFieldError",
    "SecureTransmissionError",
    "SignatureInvalidError",
]

__version__ = "0.1.0"
