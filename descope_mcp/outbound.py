"""
Calling third-party APIs on the caller's behalf through Descope outbound apps.

Every tool that touches a user's third-party account goes through the same
steps, implemented once here as ScopedOutboundCall:

    1. Authorization   - the caller's scopes must include the tool's scope.
                         Checked before any network I/O.
    2. Claim extraction - read "sub" from the caller's bearer token
    3. Client identity  - decode the OAuth client id into projectId:appId
    4. Token exchange   - ask Descope for the user's latest token for the
                          outbound app (e.g. "github")
    5. Downstream call  - hand that access token to the callback

Each failure point raises its own exception, all subclasses of
OutboundCallError (a FastMCP ToolError, so the MCP layer turns them into
isError tool results). Nothing here retries.

Trust boundary: get_sub_from_jwt() does NOT verify the token signature. It
relies on descope_mcp.auth.validate_token() having verified the very same
token earlier in the request. Do not call it on unverified input.
"""

import base64
import binascii
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import httpx
from fastmcp.exceptions import ToolError
from jwt.utils import base64url_decode

from descope_mcp.auth import CallerAuthInfo
from descope_mcp.config import settings
from descope_mcp.config_store import ConfigResolver

logger = logging.getLogger("mcp-server.outbound")

OUTBOUND_TOKEN_PATH = "/v1/mgmt/outbound/app/user/token/latest"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class OutboundCallError(ToolError):
    """Base class for every failure of a scoped outbound call."""


class Unauthorized(OutboundCallError):
    """The caller lacks the scope the tool requires."""

    def __init__(self, required_scope: str):
        self.required_scope = required_scope
        super().__init__(f"Insufficient permissions: '{required_scope}' scope required")


class InvalidToken(OutboundCallError):
    """The bearer token is not a three-part JWT or has no "sub" claim."""


class InvalidClientId(OutboundCallError):
    """The OAuth client id does not decode to "projectId:appId"."""


class ExchangeFailed(OutboundCallError):
    """
    The outbound token request failed.

    `status` is Descope's HTTP status, or 0 when no response arrived
    (connection error, timeout).
    """

    def __init__(self, status: int, status_text: str):
        self.status = status
        self.status_text = status_text
        super().__init__(f"Failed to fetch outbound token: {status} {status_text}")


class DownstreamFailed(OutboundCallError):
    """
    The external API could not be reached, returned a non-2xx status, or
    sent an unreadable body. `status` is 0 when no response arrived.
    """

    def __init__(self, service: str, status: int, status_text: str):
        self.service = service
        self.status = status
        self.status_text = status_text
        super().__init__(f"{service} request failed: {status} {status_text}")


class UnexpectedFormat(OutboundCallError):
    """A response parsed fine but does not have the documented shape."""


# ---------------------------------------------------------------------------
# Token and client id decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientIdentity:
    project_id: str
    app_id: str


def require_scope(caller: CallerAuthInfo, required_scope: str) -> None:
    if required_scope not in caller.scopes:
        logger.warning(
            "Outbound call denied: insufficient scope",
            extra={
                "log_data": {
                    "subject": caller.subject,
                    "required_scope": required_scope,
                    "decision": "denied",
                }
            },
        )
        raise Unauthorized(required_scope)


def get_sub_from_jwt(token: str) -> str:
    """
    Return the "sub" claim of a JWT without verifying its signature.

    Precondition: the token was already verified by auth.validate_token().
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidToken("Invalid JWT format or missing sub claim")

    # Only the payload segment is read; header and signature are not inspected.
    try:
        claims = json.loads(base64url_decode(parts[1]))
    except (binascii.Error, ValueError) as e:
        logger.warning("Unable to decode bearer token claims", extra={"log_data": {"error": str(e)}})
        raise InvalidToken("Invalid JWT format or missing sub claim")

    if not isinstance(claims, dict):
        raise InvalidToken("Invalid JWT format or missing sub claim")

    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise InvalidToken("Invalid JWT format or missing sub claim")
    return sub


def decode_client_id(client_id: str) -> ClientIdentity:
    """Decode a Descope client id, base64 of "projectId:appId"."""
    try:
        decoded = base64.b64decode(client_id + "=" * (-len(client_id) % 4)).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClientId("Invalid client ID format")

    project_id, _, rest = decoded.partition(":")
    app_id = rest.split(":", 1)[0]
    if not project_id or not app_id:
        raise InvalidClientId("Invalid client ID format")
    return ClientIdentity(project_id=project_id, app_id=app_id)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


HttpClientFactory = Callable[[], httpx.AsyncClient]


def default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout)


async def fetch_outbound_token(
    http: httpx.AsyncClient,
    base_url: str,
    project_id: str,
    caller_token: str,
    app_id: str,
    user_id: str,
) -> str:
    """
    Exchange the caller's token for the user's token at an outbound app.

    Single attempt. The request is authenticated as the project, with the
    caller's own token as the key ("Bearer <projectId>:<token>").

    Raises:
        ExchangeFailed: Descope was unreachable or returned a non-2xx status
        UnexpectedFormat: the body has no token.accessToken
    """
    try:
        response = await http.post(
            f"{base_url}{OUTBOUND_TOKEN_PATH}",
            json={"appId": app_id, "userId": user_id},
            headers={"Authorization": f"Bearer {project_id}:{caller_token}"},
        )
    except httpx.HTTPError as e:
        logger.error(
            "Outbound token exchange failed: no response",
            extra={"log_data": {"app_id": app_id, "user_id": user_id, "error": repr(e)}},
        )
        raise ExchangeFailed(0, str(e) or type(e).__name__) from e

    if not response.is_success:
        logger.error(
            "Outbound token exchange failed",
            extra={
                "log_data": {
                    "app_id": app_id,
                    "user_id": user_id,
                    "status": response.status_code,
                }
            },
        )
        raise ExchangeFailed(response.status_code, response.reason_phrase)

    try:
        body = response.json()
    except ValueError:
        raise UnexpectedFormat("Outbound token response is not JSON")

    token = body.get("token") if isinstance(body, dict) else None
    access_token = token.get("accessToken") if isinstance(token, dict) else None
    if not isinstance(access_token, str) or not access_token:
        raise UnexpectedFormat("Outbound token response has no token.accessToken")
    return access_token


async def send(
    http_client_factory: HttpClientFactory,
    service: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make one downstream request on a fresh client.

    Raises:
        DownstreamFailed: the request got no response (status 0)
    """
    try:
        async with http_client_factory() as http:
            return await http.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        logger.error(
            "Downstream request failed: no response",
            extra={"log_data": {"service": service, "url": url, "error": repr(e)}},
        )
        raise DownstreamFailed(service, 0, str(e) or type(e).__name__) from e


def read_json(response: httpx.Response, service: str) -> Any:
    """Return the JSON body of a downstream response, or raise DownstreamFailed."""
    if not response.is_success:
        logger.error(
            "Downstream request failed",
            extra={
                "log_data": {
                    "service": service,
                    "url": str(response.request.url),
                    "status": response.status_code,
                }
            },
        )
        raise DownstreamFailed(service, response.status_code, response.reason_phrase)
    try:
        return response.json()
    except ValueError:
        raise DownstreamFailed(service, response.status_code, "response body is not JSON")


def expect_list(data: Any, what: str) -> list:
    if not isinstance(data, list):
        raise UnexpectedFormat(f"Expected a list of {what}, got {type(data).__name__}")
    return data


def expect_object(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise UnexpectedFormat(f"Expected {what} to be an object, got {type(data).__name__}")
    return data


def format_records(
    records: Iterable[Any],
    formatter: Callable[[Any], str],
    header: str,
    empty_message: str,
) -> str:
    """Render records as text blocks under a header, or `empty_message` if there are none."""
    blocks = [formatter(record) for record in records]
    if not blocks:
        return empty_message
    return f"{header}\n\n" + "\n".join(blocks)


# ---------------------------------------------------------------------------
# The pattern
# ---------------------------------------------------------------------------


class ScopedOutboundCall:
    """
    Authorize, exchange the caller's token, then call a third-party API.

    Args:
        required_scope: Scope the caller must hold
        provider_key: Descope outbound app id (e.g. "github")
        resolver: Where the Descope base URL and project id come from
        http_client_factory: Builds the httpx client for the exchange

    Usage:
        call = ScopedOutboundCall("app:read", "github", resolver)
        repos = await call(caller, github.list_repos)
    """

    def __init__(
        self,
        required_scope: str,
        provider_key: str,
        resolver: ConfigResolver,
        http_client_factory: HttpClientFactory = default_http_client,
    ):
        self.required_scope = required_scope
        self.provider_key = provider_key
        self.resolver = resolver
        self.http_client_factory = http_client_factory

    async def __call__(
        self,
        caller: CallerAuthInfo,
        callback: Callable[..., Awaitable[Any]],
        *params: Any,
    ) -> Any:
        require_scope(caller, self.required_scope)
        user_id = get_sub_from_jwt(caller.token)
        client = decode_client_id(caller.client_id)

        provider = await self.resolver.resolve_async()
        # Without a configured project, address the project the client belongs to.
        project_id = provider.project_id or client.project_id

        logger.info(
            "Fetching outbound token",
            extra={
                "log_data": {
                    "outbound_app": self.provider_key,
                    "user_id": user_id,
                    "client_app_id": client.app_id,
                }
            },
        )
        async with self.http_client_factory() as http:
            access_token = await fetch_outbound_token(
                http,
                provider.base_url,
                project_id,
                caller.token,
                self.provider_key,
                user_id,
            )

        return await callback(access_token, *params)
