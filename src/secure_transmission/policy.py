"""
Per-route capability flags.

Endpoints opt in with a decorator; the ASGI middleware resolves the matched
route's flags before running any pipeline.

Usage:
    from secure_transmission.policy import secure_transmission

    @app.post("/users")
    @secure_transmission(encrypt=True, decrypt=True)
    async def create_user(user: User) -> dict:
        ...
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from starlette.routing import Match

from secure_transmission.constants import POLICY_ATTRIBUTE

__all__ = [
    "TransmissionPolicy",
    "get_policy",
    "resolve_route_policy",
    "secure_transmission",
]

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class TransmissionPolicy:
    """Which directions of a route are protected."""

    decrypt_inbound: bool = False
    encrypt_outbound: bool = False

    @property
    def active(self) -> bool:
        return self.decrypt_inbound or self.encrypt_outbound


def secure_transmission(*, encrypt: bool = False, decrypt: bool = False) -> Callable[[F], F]:
    """
    Mark an endpoint for request decryption and/or response encryption.

    Args:
        encrypt: Encrypt the ``data`` field of the response
        decrypt: Decrypt the request (``data`` query for GET/DELETE, signed body for POST)
    """

    def decorator(endpoint: F) -> F:
        setattr(endpoint, POLICY_ATTRIBUTE, TransmissionPolicy(decrypt_inbound=decrypt, encrypt_outbound=encrypt))
        return endpoint

    return decorator


def get_policy(endpoint: Any) -> TransmissionPolicy | None:
    """Policy attached to an endpoint, if any."""
    policy = getattr(endpoint, POLICY_ATTRIBUTE, None)
    return policy if isinstance(policy, TransmissionPolicy) else None


def resolve_route_policy(routes: Iterable[Any], scope: dict[str, Any]) -> TransmissionPolicy | None:
    """
    Find the policy of the route that fully matches an HTTP scope.

    Mounted sub-applications and routers are searched recursively.

    Args:
        routes: Starlette/FastAPI routes
        scope: ASGI HTTP scope

    Returns:
        The endpoint's policy, or None if no route matches or it is unmarked
    """
    for route in routes:
        match, child_scope = route.matches(scope)
        if match != Match.FULL:
            continue
        endpoint = getattr(route, "endpoint", None)
        if endpoint is not None:
            return get_policy(endpoint)
        nested = getattr(route, "routes", None)
        if nested:
            return resolve_route_policy(nested, {**scope, **child_scope})
        return None
    return None
