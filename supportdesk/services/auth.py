from __future__ import annotations

from typing import Protocol

from jose import JWTError, jwt


class AuthError(Exception):
    pass


class TokenProvider(Protocol):
    async def get_id_token(self) -> str | None: ...


class StaticTokenProvider:
    """Hands out a fixed ID token, or none when signed out."""

    def __init__(self, token: str | None) -> None:
        self.token = token

    async def get_id_token(self) -> str | None:
        return self.token


def read_identity_claims(token: str) -> dict:
    # Signature checks belong to the identity provider; only the claims are read here.
    try:
        return jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise AuthError("Invalid ID token") from exc


async def resolve_identity(provider: TokenProvider) -> str | None:
    token = await provider.get_id_token()
    if not token:
        return None
    claims = read_identity_claims(token)
    email = claims.get("email") or claims.get("cognito:username") or claims.get("sub")
    return str(email) if email else None
