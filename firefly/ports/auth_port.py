"""Auth port — source of the bearer token attached to remote requests.

The identity provider itself is an external capability; the sync engine
only ever asks for a current access token.
"""

from __future__ import annotations

from typing import Protocol


class AuthError(Exception):
    """Raised when no valid access token can be obtained."""


class TokenProvider(Protocol):
    """Anything that can hand out a current access token."""

    async def get_access_token(self) -> str: ...
