"""
Process settings loaded from environment variables.

Uses pydantic-settings so every field maps to an environment variable with the
MCP_ prefix (MCP_HOST, MCP_PORT, ...). The Descope fields additionally accept
the unprefixed names the hosting platform already provides
(DESCOPE_PROJECT_ID, DESCOPE_BASE_URL, SERVER_URL).

These values are only the *process-level* layer of the provider configuration.
The effective Descope project id and base URL are resolved by
`descope_mcp.config_store.ConfigResolver`, where a persisted override wins over
what is set here, and a hard-coded default is used when neither is present.

Locally, you can set them via environment variables or a .env file.
"""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Fields without an explicit alias read from MCP_<FIELD_NAME>.
    """

    # --- Server settings ---

    # "0.0.0.0" is required inside containers; use "127.0.0.1" for local-only.
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # Public URL of this server, used in the OAuth discovery documents.
    # When unset, the URL is derived from the incoming request.
    server_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MCP_SERVER_URL", "SERVER_URL"),
    )

    # --- Inbound token validation ---

    # HS* algorithms verify with jwt_secret_key (local development tokens from
    # scripts/generate_token.py). RS*/ES* algorithms verify against the
    # identity provider's JWKS.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"

    # When set, the "aud" claim must match. Descope session tokens carry the
    # project id as audience.
    jwt_audience: str | None = None

    # --- Identity provider (fallback layer of the provider configuration) ---

    descope_project_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MCP_DESCOPE_PROJECT_ID", "DESCOPE_PROJECT_ID"),
    )
    descope_base_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MCP_DESCOPE_BASE_URL", "DESCOPE_BASE_URL"),
    )

    # Key of the outbound application configured in Descope for GitHub.
    github_outbound_app_id: str = "github"

    # --- Durable configuration store ---

    # Directory holding named blob stores. Unset means no durable storage is
    # provisioned; configuration updates then only live in this process.
    blob_store_dir: Path | None = None
    config_store_name: str = "descope-config"

    # --- Downstream APIs ---

    nws_api_base: str = "https://api.weather.gov"
    github_api_base: str = "https://api.github.com"
    user_agent: str = "weather-app/1.0"

    # Client-side timeout (seconds) for outbound HTTP calls.
    http_timeout: float = 30.0

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        # Lets tests build Settings(descope_project_id=...) despite the aliases.
        "populate_by_name": True,
        # The .env file may hold variables for other tools.
        "extra": "ignore",
    }


# Singleton instance: import this from other modules.
settings = Settings()
