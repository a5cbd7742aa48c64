"""
Tool definitions and scope-based access mapping.

The central registry for access control: which scope each MCP tool requires.
The server's AuthMiddleware reads it to filter tools/list and to gate
tools/call; the outbound tools check the same scope again before contacting
Descope.

Scope naming convention: "<resource>:<action>". The Descope inbound app grants
"app:read" for read-only tools and "app:write" for tools that change the
user's third-party accounts. "config:write" is not a tool scope; it guards
PUT /config.
"""

READ_SCOPE = "app:read"
WRITE_SCOPE = "app:write"
CONFIG_WRITE_SCOPE = "config:write"

# Maps each tool name to the scope required to access it.
TOOL_SCOPE_MAP: dict[str, str] = {
    "echo": READ_SCOPE,
    "get_alerts": READ_SCOPE,
    "get_forecast": READ_SCOPE,
    "list_github_repos": READ_SCOPE,
    "create_github_repo": WRITE_SCOPE,
}
