"""
MCP server exposing weather and GitHub tools behind Descope bearer auth.

This module creates and runs the MCP server with:
- Tools: echo, get_alerts, get_forecast, list_github_repos, create_github_repo
- Bearer authentication: every MCP request must carry a valid token
- Scope-based authorization: token scopes decide which tools are visible/callable
- GitHub tools call GitHub as the user, via Descope outbound token exchange
- A small settings API (GET/PUT /config) for the Descope project id and base URL
- OAuth discovery documents for MCP clients
- Health and readiness endpoints
- Structured JSON logging
- Streamable HTTP transport

Architecture:
    The flow for every tools/call:

    1. Client sends HTTP request with "Authorization: Bearer <jwt>" header
    2. AuthMiddleware validates the token (auth.validate_token) and checks
       TOOL_SCOPE_MAP
    3. The validated CallerAuthInfo is bound to the request context
    4. The tool reads it back (auth.current_caller) and, for GitHub tools,
       runs a ScopedOutboundCall: scope check, "sub" extraction, client id
       decode, Descope token exchange, GitHub request
    5. Failures at any step become isError tool results with a specific message

    The Descope base URL and project id come from the ConfigResolver built
    once below and passed to everything that needs it.

Running the server:
    python -m descope_mcp.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Settings at /config
    - Health check at /health, readiness at /ready
"""

import json
import logging
import sys
import uuid
from typing import Annotated, Sequence

import httpx
from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from pydantic import Field
from starlette.middleware import Middleware as ASGIMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from descope_mcp.auth import (
    AuthError,
    CallerAuthInfo,
    current_caller,
    reset_current_caller,
    set_current_caller,
    validate_token,
)
from descope_mcp.config import settings
from descope_mcp.config_store import ConfigResolver, ConfigValidationError, PersistenceUnavailable
from descope_mcp.github import GitHubClient, format_repo
from descope_mcp.outbound import (
    HttpClientFactory,
    ScopedOutboundCall,
    Unauthorized,
    default_http_client,
    format_records,
    require_scope,
)
from descope_mcp.tools import CONFIG_WRITE_SCOPE, READ_SCOPE, TOOL_SCOPE_MAP, WRITE_SCOPE
from descope_mcp.weather import WeatherClient, format_alert, format_period

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO", "logger": "mcp-server",
         "message": "Tool call authorized", "subject": "alice", "tool": "get_alerts"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"log_data": {...}})
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("mcp-server")

# CORS for browser-based MCP clients and the settings API.
CORS_MIDDLEWARE = [
    ASGIMiddleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type", "Accept", "MCP-Protocol-Version", "Mcp-Session-Id"],
        expose_headers=["Mcp-Session-Id"],
    )
]


# ---------------------------------------------------------------------------
# Authentication & Authorization Middleware
# ---------------------------------------------------------------------------


class AuthMiddleware(Middleware):
    """
    Bearer authentication and scope-based authorization middleware.

    - tools/list responses are filtered to the tools the token's scopes allow
    - tools/call requests are rejected if the token lacks the required scope;
      allowed calls run with the caller bound via auth.set_current_caller
    """

    def __init__(self, resolver: ConfigResolver):
        self.resolver = resolver

    def _get_auth_header(self) -> str | None:
        """Authorization header of the current HTTP request, None outside HTTP (stdio)."""
        try:
            request = get_http_request()
            return request.headers.get("authorization")
        except RuntimeError:
            return None

    async def _authenticate(self, request_id: str) -> CallerAuthInfo:
        auth_header = self._get_auth_header()
        try:
            caller = validate_token(auth_header, await self.resolver.resolve_async())
            logger.info(
                "Authentication successful",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "subject": caller.subject,
                        "scopes": sorted(caller.scopes),
                        "decision": "authenticated",
                    }
                },
            )
            return caller
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": "authentication_failed",
                        "detail": e.message,
                    }
                },
            )
            raise

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        request_id = str(uuid.uuid4())[:8]
        caller = await self._authenticate(request_id)

        all_tools = await call_next(context)

        authorized_tools = []
        for tool in all_tools:
            required_scope = TOOL_SCOPE_MAP.get(tool.name)
            if required_scope and required_scope in caller.scopes:
                authorized_tools.append(tool)

        logger.info(
            "Tool list filtered by scope",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": caller.subject,
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized_tools],
                    "decision": "filtered",
                }
            },
        )

        return authorized_tools

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name

        caller = await self._authenticate(request_id)

        required_scope = TOOL_SCOPE_MAP.get(tool_name)

        if required_scope is None:
            # Fail closed: a tool without a scope mapping is not callable.
            logger.warning(
                "Tool call denied: no scope mapping found",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "subject": caller.subject,
                        "tool": tool_name,
                        "decision": "denied",
                        "reason": "no_scope_mapping",
                    }
                },
            )
            raise PermissionError(f"Access denied: tool '{tool_name}' has no scope mapping")

        if required_scope not in caller.scopes:
            logger.warning(
                "Tool call denied: insufficient scope",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "subject": caller.subject,
                        "tool": tool_name,
                        "required_scope": required_scope,
                        "token_scopes": sorted(caller.scopes),
                        "decision": "denied",
                        "reason": "insufficient_scope",
                    }
                },
            )
            raise Unauthorized(required_scope)

        logger.info(
            "Tool call authorized",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": caller.subject,
                    "tool": tool_name,
                    "required_scope": required_scope,
                    "decision": "allowed",
                }
            },
        )

        bound = set_current_caller(caller)
        try:
            return await call_next(context)
        finally:
            reset_current_caller(bound)


def _jsonrpc_error(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


def _server_url(request: Request) -> str:
    return (settings.server_url or str(request.base_url)).rstrip("/")


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_server(
    resolver: ConfigResolver,
    http_client_factory: HttpClientFactory = default_http_client,
) -> FastMCP:
    """
    Build the MCP server.

    Args:
        resolver: The process's provider configuration resolver
        http_client_factory: Builds httpx clients for every outbound call
                             (Descope, GitHub, NWS)
    """
    mcp = FastMCP(
        name="descope-mcp-server",
        instructions=(
            "Weather alerts and forecasts from the US National Weather Service, "
            "and GitHub repository tools acting as the signed-in user. "
            "Tool access depends on the scopes granted to the caller's token."
        ),
        middleware=[AuthMiddleware(resolver)],
    )

    weather = WeatherClient(settings.nws_api_base, settings.user_agent, http_client_factory)
    github = GitHubClient(settings.github_api_base, settings.user_agent, http_client_factory)
    list_repos_call = ScopedOutboundCall(
        READ_SCOPE, settings.github_outbound_app_id, resolver, http_client_factory
    )
    create_repo_call = ScopedOutboundCall(
        WRITE_SCOPE, settings.github_outbound_app_id, resolver, http_client_factory
    )

    # -----------------------------------------------------------------------
    # Tools
    # -----------------------------------------------------------------------

    @mcp.tool(description="Echo a message back to the caller.")
    async def echo(message: str) -> str:
        require_scope(current_caller(), READ_SCOPE)
        return f"Tool echo: {message}"

    @mcp.tool(description="Get weather alerts for a US state.")
    async def get_alerts(
        state: Annotated[
            str, Field(min_length=2, max_length=2, description="Two-letter state code (e.g. CA, NY)")
        ],
    ) -> str:
        require_scope(current_caller(), READ_SCOPE)
        state_code = state.upper()
        logger.info("Tool executed: get_alerts", extra={"log_data": {"state": state_code}})

        features = await weather.get_alerts(state_code)
        return format_records(
            features,
            format_alert,
            header=f"Active alerts for {state_code}:",
            empty_message=f"No active alerts for {state_code}",
        )

    @mcp.tool(description="Get the weather forecast for a US location.")
    async def get_forecast(
        latitude: Annotated[float, Field(ge=-90, le=90, description="Latitude of the location")],
        longitude: Annotated[float, Field(ge=-180, le=180, description="Longitude of the location")],
    ) -> str:
        require_scope(current_caller(), READ_SCOPE)
        logger.info(
            "Tool executed: get_forecast",
            extra={"log_data": {"latitude": latitude, "longitude": longitude}},
        )

        periods = await weather.get_forecast(latitude, longitude)
        return format_records(
            periods,
            format_period,
            header=f"Forecast for {latitude}, {longitude}:",
            empty_message="No forecast periods available",
        )

    @mcp.tool(description="List the signed-in user's GitHub repositories.")
    async def list_github_repos() -> str:
        caller = current_caller()
        logger.info("Tool executed: list_github_repos", extra={"log_data": {"subject": caller.subject}})

        repos = await list_repos_call(caller, github.list_repos)
        return format_records(
            repos,
            format_repo,
            header=f"Repositories for {caller.subject}:",
            empty_message=f"No results for {caller.subject}",
        )

    @mcp.tool(description="Create a GitHub repository owned by the signed-in user.")
    async def create_github_repo(
        name: Annotated[
            str,
            Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9._-]+$", description="Repository name"),
        ],
        description: Annotated[str, Field(description="Short repository description")] = "",
        private: Annotated[bool, Field(description="Create the repository as private")] = True,
    ) -> str:
        caller = current_caller()
        logger.info(
            "Tool executed: create_github_repo",
            extra={"log_data": {"subject": caller.subject, "repo": name}},
        )

        repo = await create_repo_call(caller, github.create_repo, name, description, private)
        return f"Created repository\n\n{format_repo(repo)}"

    # -----------------------------------------------------------------------
    # Settings API
    # -----------------------------------------------------------------------

    @mcp.custom_route("/config", methods=["GET"])
    async def get_config(request: Request) -> Response:
        return JSONResponse((await resolver.resolve_async()).to_dict())

    @mcp.custom_route("/config", methods=["PUT"])
    async def put_config(request: Request) -> Response:
        try:
            caller = validate_token(request.headers.get("authorization"), await resolver.resolve_async())
        except AuthError as e:
            logger.warning("Configuration update rejected", extra={"log_data": {"detail": e.message}})
            return JSONResponse({"error": e.message}, status_code=e.status_code)

        if CONFIG_WRITE_SCOPE not in caller.scopes:
            return JSONResponse(
                {"error": f"Insufficient permissions: '{CONFIG_WRITE_SCOPE}' scope required"},
                status_code=403,
            )

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

        require_durable = request.query_params.get("durable", "").lower() in ("1", "true", "yes")
        try:
            config = await resolver.update_async(body, require_durable=require_durable)
        except ConfigValidationError as e:
            return JSONResponse({"error": e.message}, status_code=e.status_code)
        except PersistenceUnavailable as e:
            return JSONResponse(
                {"error": e.message, "config": e.config.to_dict()},
                status_code=e.status_code,
            )

        logger.info("Configuration updated via API", extra={"log_data": {"subject": caller.subject}})
        return JSONResponse(config.to_dict())

    # -----------------------------------------------------------------------
    # OAuth discovery
    # -----------------------------------------------------------------------

    @mcp.custom_route("/.well-known/oauth-protected-resource", methods=["GET"])
    async def protected_resource_metadata(request: Request) -> Response:
        server_url = _server_url(request)
        return JSONResponse(
            {
                "resource": f"{server_url}/mcp",
                "authorization_servers": [server_url],
                "bearer_methods_supported": ["header"],
                "scopes_supported": sorted(set(TOOL_SCOPE_MAP.values())),
                "resource_documentation": f"{server_url}/docs",
            }
        )

    @mcp.custom_route("/.well-known/oauth-authorization-server", methods=["GET"])
    async def authorization_server_metadata(request: Request) -> Response:
        provider = await resolver.resolve_async()
        if not provider.project_id:
            return _jsonrpc_error(-32603, "Identity provider project id is not configured", 503)

        well_known_url = (
            f"{provider.base_url}/v1/apps/{provider.project_id}/.well-known/openid-configuration"
        )
        try:
            async with http_client_factory() as http:
                response = await http.get(well_known_url)
            response.raise_for_status()
            metadata = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Error fetching well-known configuration",
                extra={"log_data": {"url": well_known_url, "error": str(e)}},
            )
            return _jsonrpc_error(-32603, "Internal server error", 500)

        return JSONResponse(metadata)

    # -----------------------------------------------------------------------
    # Health and Readiness
    # -----------------------------------------------------------------------

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness probe: is the server process alive and responsive?"""
        return JSONResponse({"status": "healthy"})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness probe: is an identity provider project configured?"""
        if not (await resolver.resolve_async()).project_id:
            return JSONResponse(
                {"status": "not_ready", "reason": "identity provider project id not configured"},
                status_code=503,
            )
        return JSONResponse({"status": "ready"})

    return mcp


# Constructed once per process; every handler shares it.
resolver = ConfigResolver.from_settings(settings)
mcp = create_server(resolver)


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=enabled)",
        settings.host,
        settings.port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        middleware=CORS_MIDDLEWARE,
    )
