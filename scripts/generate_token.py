"""
CLI utility to mint local bearer tokens for the MCP server.

In production, tokens are issued by Descope to the MCP client through the
inbound app's OAuth flow. For local development the server runs with
MCP_JWT_ALGORITHM=HS256 and this script plays the identity provider: it signs
tokens with the shared secret and shapes them like Descope's (space-delimited
"scope" claim, "client_id" of base64 "projectId:appId").

Usage examples:

    # Read-only tools
    python -m scripts.generate_token --sub alice --scope app:read

    # All tools, for a specific Descope project and inbound app
    python -m scripts.generate_token --sub alice --scope app:read app:write \\
        --project-id P2abc --app-id github-inbound

    # Allowed to change the provider configuration via PUT /config
    python -m scripts.generate_token --sub ops --scope config:write

    # Expired token (for testing rejection)
    python -m scripts.generate_token --sub alice --scope app:read --exp-hours -1

The GitHub tools additionally need a real Descope project: the token exchange
is answered by Descope, not by this script.
"""

import argparse
import base64
import datetime

import jwt


def encode_client_id(project_id: str, app_id: str) -> str:
    """Build a Descope-style client id: base64 of "projectId:appId"."""
    return base64.b64encode(f"{project_id}:{app_id}".encode("utf-8")).decode("ascii")


def generate_token(
    subject: str,
    scopes: list[str],
    secret: str,
    client_id: str | None = None,
    algorithm: str = "HS256",
    exp_hours: float = 8.0,
) -> str:
    """
    Generate a signed JWT token with the given claims.

    Args:
        subject: The "sub" claim (the Descope user id in production)
        scopes: Granted scopes, written as one space-delimited "scope" claim
        secret: The signing key (must match the server's MCP_JWT_SECRET_KEY)
        client_id: Value for the "client_id" claim, omitted when None
        algorithm: JWT signing algorithm (default: HS256)
        exp_hours: Hours until expiration (negative = already expired)

    Returns:
        The encoded JWT token string
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    payload = {
        "sub": subject,
        "scope": " ".join(scopes),
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }
    if client_id is not None:
        payload["client_id"] = client_id

    return jwt.encode(payload, secret, algorithm=algorithm)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate bearer tokens for local development of the MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--sub", required=True, help="Subject claim (user id)")
    parser.add_argument(
        "--scope",
        nargs="+",
        default=[],
        help="Scopes to grant (e.g., app:read app:write config:write)",
    )
    parser.add_argument(
        "--project-id",
        default="local-project",
        help="Descope project id encoded into the client_id claim",
    )
    parser.add_argument(
        "--app-id",
        default="local-app",
        help="Descope inbound app id encoded into the client_id claim",
    )
    parser.add_argument(
        "--secret",
        default="dev-secret-change-me",
        help="JWT signing secret (must match server's MCP_JWT_SECRET_KEY)",
    )
    parser.add_argument("--algorithm", default="HS256", help="JWT signing algorithm (default: HS256)")
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until token expires (negative = already expired, default: 8)",
    )

    args = parser.parse_args()

    client_id = encode_client_id(args.project_id, args.app_id)
    token = generate_token(
        subject=args.sub,
        scopes=args.scope,
        secret=args.secret,
        client_id=client_id,
        algorithm=args.algorithm,
        exp_hours=args.exp_hours,
    )

    print(f"Subject:    {args.sub}")
    print(f"Scopes:     {' '.join(args.scope)}")
    print(f"Client id:  {client_id} ({args.project_id}:{args.app_id})")
    print(f"Algorithm:  {args.algorithm}")
    print()
    print(f"Token: {token}")

    print()
    print("Usage with curl (initialize MCP session):")
    print('  curl -X POST http://localhost:8080/mcp \\')
    print('    -H "Content-Type: application/json" \\')
    print('    -H "Accept: application/json, text/event-stream" \\')
    print(f'    -H "Authorization: Bearer {token}" \\')
    print(
        '    -d \'{"jsonrpc":"2.0","id":1,"method":"initialize",'
        '"params":{"protocolVersion":"2025-03-26","capabilities":{},'
        '"clientInfo":{"name":"test","version":"1.0"}}}\''
    )


if __name__ == "__main__":
    main()
