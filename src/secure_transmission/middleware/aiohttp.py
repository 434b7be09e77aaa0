"""
aiohttp client session speaking the secure transmission protocol.

Provides a drop-in wrapper around aiohttp.ClientSession that automatically:
- Generates a fresh SM4 key per request and sends it SM2-wrapped
- Encrypts GET/DELETE params into the ``data`` query parameter
- Encrypts and signs POST JSON bodies
- Decrypts the ``data`` field of responses on ``read_json``

Usage:
    async with SecureClientSession(
        base_url="https://api.example.com",
        public_key=server_public_key,
        key_header="X-Encrypt-Key",
        sign_prefix="PFX",
    ) as session:
        response = await session.post("/users", json={"name": "admin"})
        result = await session.read_json(response)
"""

import json as json_module
import types
import weakref
from typing import Any
from urllib.parse import urljoin

import aiohttp
from typing_extensions import Self

from secure_transmission._logging import get_logger
from secure_transmission.core import RequestEncoder

__all__ = [
    "SecureClientSession",
]

_logger = get_logger(__name__)

_QUERY_METHODS = frozenset({"GET", "DELETE"})


class SecureClientSession:
    """
    aiohttp-compatible client session with secure transmission.

    Each request gets its own RequestEncoder (and symmetric key); the encoder
    is remembered per response so concurrent requests decrypt independently.
    """

    def __init__(
        self,
        base_url: str,
        public_key: str,
        key_header: str,
        sign_prefix: str = "",
        **aiohttp_kwargs: Any,
    ) -> None:
        """
        Initialize secure client session.

        Args:
            base_url: Base URL for API requests (e.g., "https://api.example.com")
            public_key: Server SM2 public key (hex or base64)
            key_header: Header name the server reads the wrapped key from
            sign_prefix: Shared signature prefix
            **aiohttp_kwargs: Additional arguments passed to aiohttp.ClientSession
        """
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self.key_header = key_header
        self.sign_prefix = sign_prefix

        self._session: aiohttp.ClientSession | None = None
        self._aiohttp_kwargs = aiohttp_kwargs

        # Maps responses to the encoder (and key) their request was sent with
        self._response_encoders: weakref.WeakKeyDictionary[aiohttp.ClientResponse, RequestEncoder] = (
            weakref.WeakKeyDictionary()
        )

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        self._session = aiohttp.ClientSession(**self._aiohttp_kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        if self._session:
            await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Any = None,
        hybrid: bool = True,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """
        Make an encrypted HTTP request.

        Args:
            method: HTTP method
            url: URL (relative to base_url or absolute)
            json: POST body (encrypted and signed)
            params: GET/DELETE parameters (encrypted into ``data``)
            hybrid: For GET/DELETE, SM4 under a wrapped key (True) or SM2 only (False)
            **kwargs: Additional arguments passed to aiohttp

        Returns:
            aiohttp.ClientResponse
        """
        if not self._session:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")

        # Resolve URL
        if not url.startswith(("http://", "https://")):
            url = urljoin(self.base_url + "/", url.lstrip("/"))

        method = method.upper()
        encoder = RequestEncoder(self.public_key, self.key_header, self.sign_prefix)
        headers = dict(kwargs.pop("headers", {}))

        if method in _QUERY_METHODS and params is not None:
            query, extra_headers = encoder.encode_query(params, hybrid=hybrid)
            kwargs["params"] = query
            _logger.debug("Query encrypted: method=%s url=%s hybrid=%s", method, url, hybrid)
        elif json is not None:
            body, extra_headers = encoder.encode_signed_body(json)
            kwargs["data"] = body
            _logger.debug("Body signed: method=%s url=%s body_size=%d", method, url, len(body))
        else:
            # Still send the wrapped key so the response is encrypted under it
            extra_headers = encoder.get_headers()
            if params is not None:
                kwargs["params"] = params

        headers.update(extra_headers)
        kwargs["headers"] = headers
        response = await self._session.request(method, url, **kwargs)

        # Store encoder per-response for concurrent request safety
        if extra_headers.get(self.key_header):
            self._response_encoders[response] = encoder

        return response

    # Convenience methods
    async def get(self, url: str, *, params: Any = None, **kwargs: Any) -> aiohttp.ClientResponse:
        """GET request."""
        return await self.request("GET", url, params=params, **kwargs)

    async def post(self, url: str, *, json: Any = None, **kwargs: Any) -> aiohttp.ClientResponse:
        """POST request."""
        return await self.request("POST", url, json=json, **kwargs)

    async def delete(self, url: str, *, params: Any = None, **kwargs: Any) -> aiohttp.ClientResponse:
        """DELETE request."""
        return await self.request("DELETE", url, params=params, **kwargs)

    async def read_json(self, response: aiohttp.ClientResponse) -> Any:
        """
        Read a JSON response, decrypting its ``data`` field.

        Responses to requests sent without a wrapped key are returned parsed
        but not decrypted, since they are encrypted under the server's
        fallback key.

        Raises:
            CryptoError: If ``data`` cannot be decrypted with the request key
        """
        body = await response.read()
        encoder = self._response_encoders.get(response)
        if encoder is None:
            return json_module.loads(body)
        return encoder.decode_response(body)
