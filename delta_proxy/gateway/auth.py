from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from delta_proxy.errors import AuthError


@dataclass(slots=True)
class BearerCredentials:
    token: str

    @property
    def authorization(self) -> str:
        return f"Bearer {self.token}"


def require_bearer(request: Request) -> BearerCredentials:
    """Return the caller's bearer token; it is forwarded to upstream as-is."""
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    return BearerCredentials(token=token.strip())
