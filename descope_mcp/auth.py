"""
Bearer token validation and the per-request caller identity.

This module is the authentication (AuthN) layer:
- Extracts Bearer tokens from the HTTP Authorization header
- Verifies the JWT signature and expiration
- Extracts scopes and the OAuth client id into a CallerAuthInfo

Two verification modes, chosen by MCP_JWT_ALGORITHM:
- HS256 (default): shared secret, for local tokens minted by
  scripts/generate_token.py
- RS256/ES256 etc.: Descope-issued tokens, verified against the project's
  JWKS at {baseUrl}/{projectId}/.well-known/jwks.json

Token structure (JWT payload), as issued by Descope for an inbound app:
    {
        "sub": "U2abc...",               # The Descope user id
        "scope": "openid app:read",      # Space-delimited (a JSON list is accepted too)
        "client_id": "<base64 projectId:appId>",
        "exp": 1738800000
    }

The validated CallerAuthInfo is the trust boundary for everything downstream:
descope_mcp.outbound re-reads claims from the raw token *without* verifying
it again, which is only sound because validate_token() ran first.
"""

import functools
from contextvars import ContextVar
from dataclasses import dataclass

import jwt

from descope_mcp.config import settings
from descope_mcp.config_store import ProviderConfig


class AuthError(Exception):
    """
    Raised when token validation fails for any reason.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class CallerAuthInfo:
    """
    Verified identity of the caller for the duration of one request.

    Attributes:
        token: The raw bearer token, as presented
        scopes: Granted scopes
        client_id: OAuth client id (base64 of "projectId:appId" for Descope
                   inbound apps); empty when the token carries none
        subject: The verified "sub" claim
    """

    token: str
    scopes: frozenset[str]
    client_id: str
    subject: str


_current_caller: ContextVar[CallerAuthInfo | None] = ContextVar("current_caller", default=None)


@functools.lru_cache(maxsize=8)
def _jwks_client(jwks_url: str) -> jwt.PyJWKClient:
    # PyJWKClient caches the key set, so keep one per URL.
    return jwt.PyJWKClient(jwks_url)


def jwks_url(provider: ProviderConfig) -> str:
    return f"{provider.base_url}/{provider.project_id}/.well-known/jwks.json"


def _parse_scopes(claim) -> frozenset[str]:
    if isinstance(claim, str):
        return frozenset(claim.split())
    if not isinstance(claim, list):
        raise AuthError("Invalid scope claim: must be a list or a space-delimited string")
    if not all(isinstance(s, str) for s in claim):
        raise AuthError("Invalid scope claim: all entries must be strings")
    return frozenset(claim)


def validate_token(
    authorization_header: str | None, provider: ProviderConfig | None = None
) -> CallerAuthInfo:
    """
    Validate a Bearer token from the Authorization header.

    Args:
        authorization_header: The raw Authorization header value,
                              expected format: "Bearer <jwt-token>"
        provider: Resolved identity provider configuration, needed to locate
                  the JWKS when tokens are asymmetrically signed

    Returns:
        CallerAuthInfo with the raw token, scopes, client id and subject

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    token = parts[1].strip()
    algorithm = settings.jwt_algorithm

    try:
        if algorithm.startswith("HS"):
            key = settings.jwt_secret_key
        else:
            if provider is None or not provider.project_id:
                raise AuthError("Identity provider project id is not configured", status_code=503)
            key = _jwks_client(jwks_url(provider)).get_signing_key_from_jwt(token).key

        payload = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            audience=settings.jwt_audience,
            options={
                "require": ["exp", "sub"],
                "verify_aud": settings.jwt_audience is not None,
            },
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.PyJWKClientError as e:
        raise AuthError(f"Unable to fetch signing key: {e}")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthError("Invalid token: 'sub' must be a non-empty string")

    scopes = _parse_scopes(payload.get("scope", []))

    client_id = payload.get("client_id") or payload.get("azp") or ""
    if not isinstance(client_id, str):
        raise AuthError("Invalid client_id claim: must be a string")

    return CallerAuthInfo(token=token, scopes=scopes, client_id=client_id, subject=subject)


def current_caller() -> CallerAuthInfo:
    """
    The caller authenticated for the tool call in progress.

    Set by the server's AuthMiddleware around each tools/call.

    Raises:
        AuthError: when called outside an authenticated tool call
    """
    caller = _current_caller.get()
    if caller is None:
        raise AuthError("No authenticated caller for this request")
    return caller


def set_current_caller(caller: CallerAuthInfo | None):
    """Bind the caller for the current context; returns a token for reset_current_caller()."""
    return _current_caller.set(caller)


def reset_current_caller(token) -> None:
    _current_caller.reset(token)
