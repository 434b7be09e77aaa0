"""
FastAPI/Starlette ASGI middleware for secure transmission.

Provides, for routes marked with ``@secure_transmission``:
- GET/DELETE: decryption of the ``data`` query parameter (lenient)
- POST: signature verification and body decryption (strict, 400/401 on failure)
- Encryption of the ``data`` field of JSON responses (best effort)

Usage:
    from secure_transmission.config import SecureConfig
    from secure_transmission.middleware.fastapi import SecureTransmissionMiddleware
    from secure_transmission.policy import secure_transmission

    app = FastAPI()
    app.add_middleware(SecureTransmissionMiddleware, config=SecureConfig.from_env())

    @app.post("/users")
    @secure_transmission(encrypt=True, decrypt=True)
    async def create_user(user: User) -> dict:
        return {"code": 200, "data": user.model_dump()}
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode

from secure_transmission._logging import get_logger
from secure_transmission.config import SecureConfig
from secure_transmission.constants import QUERY_DATA_PARAM, SCOPE_PLAINTEXT, SCOPE_POLICY
from secure_transmission.core import decode_query_envelope, decode_signed_body, dumps_compact, encode_response
from secure_transmission.exceptions import CryptoError, DecodeError, MalformedBodyError, SecureTransmissionError
from secure_transmission.headers import headers_from_scope, replace_header
from secure_transmission.policy import TransmissionPolicy, resolve_route_policy

__all__ = [
    "SecureTransmissionMiddleware",
    "bind_query_plaintext",
]

_logger = get_logger(__name__)

_QUERY_METHODS = frozenset({"GET", "DELETE"})

Receive = Callable[[], Awaitable[dict[str, Any]]]
Send = Callable[[dict[str, Any]], Awaitable[None]]

# Type alias for policy resolver callback
PolicyResolver = Callable[[dict[str, Any]], TransmissionPolicy | None]
"""
Callback to resolve the route policy from request scope.

Args:
    scope: ASGI scope dict

Returns:
    TransmissionPolicy, or None for unprotected routes
"""


@dataclass
class ResponseEncodingState:
    """Per-request state for response encoding."""

    encode: bool = False
    """Whether the response is JSON and must be buffered for encoding."""

    start: dict[str, Any] | None = None
    """Held http.response.start message (Content-Length changes after encoding)."""

    body: bytearray = field(default_factory=bytearray)
    """Buffered response body."""


def _query_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return dumps_compact(value)


def bind_query_plaintext(pairs: list[tuple[str, str]], plaintext: str) -> str:
    """
    Rebuild a query string around a decrypted ``data`` value.

    A JSON object is spread into individual parameters (lists repeat the
    name, nulls are dropped) so the framework binds them as usual; any other
    plaintext replaces the ``data`` value.

    Args:
        pairs: Parsed query pairs, including the encrypted ``data``
        plaintext: Decrypted payload

    Returns:
        Encoded query string
    """
    try:
        value = json.loads(plaintext)
    except (ValueError, RecursionError):
        value = None

    result = [(k, v) for k, v in pairs if k != QUERY_DATA_PARAM]
    if isinstance(value, dict):
        for name, item in value.items():
            for element in item if isinstance(item, list) else [item]:
                if element is not None:
                    result.append((str(name), _query_value(element)))
    else:
        result.append((QUERY_DATA_PARAM, plaintext))
    return urlencode(result)


class SecureTransmissionMiddleware:
    """
    Pure ASGI middleware for secure transmission.

    Features:
    - Resolves the matched route's TransmissionPolicy (or uses a custom resolver)
    - Decrypts ``data`` query parameters of GET/DELETE requests
    - Verifies and decrypts signed POST bodies, rejecting invalid ones
    - Encrypts the ``data`` field of JSON responses

    Unmarked routes, non-HTTP scopes and disabled configs pass through untouched.
    """

    def __init__(
        self,
        app: Any,
        config: SecureConfig,
        policy_resolver: PolicyResolver | None = None,
    ) -> None:
        """
        Initialize secure transmission middleware.

        Args:
            app: ASGI application
            config: Validated settings
            policy_resolver: Callback returning the policy for a scope. Defaults
                to matching the routes of the Starlette/FastAPI application.
        """
        self.app = app
        self.config = config
        self.policy_resolver = policy_resolver

    async def __call__(self, scope: dict[str, Any], receive: Receive, send: Send) -> None:
        """ASGI interface."""
        if scope["type"] != "http" or not self.config.enabled:
            await self.app(scope, receive, send)
            return

        policy = self._resolve_policy(scope)
        if policy is None or not policy.active:
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")
        scope[SCOPE_POLICY] = policy
        headers = headers_from_scope(scope.get("headers", []))
        _logger.debug(
            "Protected request: method=%s path=%s decrypt=%s encrypt=%s",
            method,
            path,
            policy.decrypt_inbound,
            policy.encrypt_outbound,
        )

        if policy.decrypt_inbound:
            if method in _QUERY_METHODS:
                self._decode_query(scope, headers)
            elif method == "POST":
                try:
                    receive = await self._create_decrypted_receive(scope, receive, headers)
                except DecodeError as e:
                    _logger.info("Request rejected: method=%s path=%s error_type=%s", method, path, type(e).__name__)
                    await self._send_error(send, e.status_code, str(e))
                    return
                except CryptoError as e:
                    # Don't expose cipher details to clients
                    _logger.info("Request rejected: method=%s path=%s error_type=%s", method, path, type(e).__name__)
                    await self._send_error(send, 400, "Request decryption failed")
                    return

        if policy.encrypt_outbound:
            send = self._create_encrypting_send(scope, headers, send)

        await self.app(scope, receive, send)

    def _resolve_policy(self, scope: dict[str, Any]) -> TransmissionPolicy | None:
        if self.policy_resolver is not None:
            return self.policy_resolver(scope)
        # Starlette sets scope["app"] before running its middleware stack
        routes = getattr(scope.get("app"), "routes", None) or getattr(self.app, "routes", None)
        if not routes:
            return None
        return resolve_route_policy(routes, scope)

    def _decode_query(self, scope: dict[str, Any], headers: dict[str, str]) -> None:
        """Decrypt ``data`` in place; failures are logged and the query is left as sent."""
        query = scope.get("query_string", b"").decode("latin-1")
        pairs = parse_qsl(query, keep_blank_values=True)
        data = next((v for k, v in pairs if k == QUERY_DATA_PARAM), None)

        try:
            plaintext = decode_query_envelope(data, headers, self.config)
        except SecureTransmissionError as e:
            _logger.warning(
                "Query decryption failed, passing through: path=%s error_type=%s error=%s",
                scope.get("path", ""),
                type(e).__name__,
                e,
            )
            return
        if plaintext is None:
            return

        try:
            rebuilt = bind_query_plaintext(pairs, plaintext)
        except (TypeError, ValueError, RecursionError) as e:
            _logger.warning("Query binding failed, passing through: path=%s error=%s", scope.get("path", ""), e)
            return

        scope[SCOPE_PLAINTEXT] = plaintext
        scope["query_string"] = rebuilt.encode("ascii")
        _logger.debug("Query decrypted: path=%s", scope.get("path", ""))

    async def _create_decrypted_receive(
        self,
        scope: dict[str, Any],
        receive: Receive,
        headers: dict[str, str],
    ) -> Receive:
        """
        Verify and decrypt the POST body before the app starts.

        The whole body is read up front so verification errors become 4xx
        responses instead of failures inside the application.
        """
        chunks: list[bytes] = []
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise MalformedBodyError("Client disconnected during request")
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break

        plaintext = decode_signed_body(headers, b"".join(chunks), self.config)

        scope[SCOPE_PLAINTEXT] = plaintext
        scope["headers"] = replace_header(scope.get("headers", []), b"content-length", str(len(plaintext)).encode())

        body_returned = False

        async def decrypted_receive() -> dict[str, Any]:
            nonlocal body_returned

            if not body_returned:
                body_returned = True
                return {"type": "http.request", "body": plaintext, "more_body": False}
            # Subsequent calls: wait for disconnect
            return await receive()

        return decrypted_receive

    def _create_encrypting_send(
        self,
        scope: dict[str, Any],
        headers: dict[str, str],
        send: Send,
    ) -> Send:
        """Create send wrapper that encrypts the ``data`` field of JSON responses."""
        # Per-request state (closure)
        state = ResponseEncodingState()

        async def encrypting_send(message: dict[str, Any]) -> None:
            msg_type = message["type"]

            if msg_type == "http.response.start":
                content_type = next(
                    (v for n, v in message.get("headers", []) if n.lower() == b"content-type"),
                    b"",
                )
                if b"json" in content_type.lower():
                    state.encode = True
                    state.start = message
                    return
                await send(message)

            elif msg_type == "http.response.body" and state.encode:
                state.body.extend(message.get("body", b""))
                if message.get("more_body", False):
                    return
                await _flush()

            else:
                await send(message)

        async def _flush() -> None:
            body = encode_response(bytes(state.body), headers, self.config)
            start = state.start or {"type": "http.response.start", "status": 200, "headers": []}
            new_headers = replace_header(start.get("headers", []), b"content-length", str(len(body)).encode())
            _logger.debug("Response encoded: path=%s size=%d", scope.get("path", ""), len(body))
            await send({**start, "headers": new_headers})
            await send({"type": "http.response.body", "body": body, "more_body": False})

        return encrypting_send

    async def _send_error(self, send: Send, status: int, message: str) -> None:
        """Send an error response."""
        body = json.dumps({"error": message}).encode()
        await send(
            {
                "type": "http.response.start",
                "status": int(status),
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                ],
            }
        )
        await send(
            {
                "type": "http.response.body",
                "body": body,
                "more_body": False,
            }
        )
