"""Caller identity resolution."""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from galaxy_chat.constants import DEFAULT_IDENTITY_HEADER

if TYPE_CHECKING:
    from fastapi import Request


@runtime_checkable
class IdentityOracle(Protocol):
    """Resolves the authenticated caller of a request."""

    def current_identity(self, request: Request) -> str | None:
        """Return an opaque identity, or None when unauthenticated."""
        ...


class HeaderIdentityOracle:
    """Trusts an identity header set by an authenticating gateway.

    When ``api_token`` is configured the request must also carry
    ``Authorization: Bearer <api_token>``.
    """

    def __init__(self, header: str = DEFAULT_IDENTITY_HEADER, api_token: str | None = None) -> None:
        self.header = header
        self._api_token = api_token

    def current_identity(self, request: Request) -> str | None:
        if self._api_token:
            auth_header = request.headers.get("Authorization", "")
            scheme, _, token = auth_header.partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(token, self._api_token):
                return None
        identity = (request.headers.get(self.header) or "").strip()
        return identity or None
