"""GitHub REST calls made with a user's outbound access token."""

from typing import Any

from descope_mcp.outbound import (
    HttpClientFactory,
    default_http_client,
    expect_list,
    expect_object,
    read_json,
    send,
)

SERVICE = "GitHub"


def format_repo(repo: dict) -> str:
    """Format a repository record into a readable block."""
    visibility = "private" if repo.get("private") else "public"
    return "\n".join(
        [
            f"Name: {repo.get('full_name') or repo.get('name') or 'Unknown'}",
            f"Visibility: {visibility}",
            f"Description: {repo.get('description') or 'No description'}",
            f"Stars: {repo.get('stargazers_count', 0)}",
            f"URL: {repo.get('html_url') or 'Unknown'}",
            "---",
        ]
    )


class GitHubClient:
    def __init__(self, api_base: str, user_agent: str, http_client_factory: HttpClientFactory = default_http_client):
        self.api_base = api_base.rstrip("/")
        self.user_agent = user_agent
        self.http_client_factory = http_client_factory

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": self.user_agent,
        }

    async def list_repos(self, access_token: str) -> list[dict[str, Any]]:
        """Repositories of the authenticated user, most recently updated first."""
        response = await send(
            self.http_client_factory,
            SERVICE,
            "GET",
            f"{self.api_base}/user/repos",
            params={"sort": "updated", "per_page": 100},
            headers=self._headers(access_token),
        )
        repos = expect_list(read_json(response, SERVICE), "repositories")
        return [expect_object(repo, "repository") for repo in repos]

    async def create_repo(
        self, access_token: str, name: str, description: str = "", private: bool = True
    ) -> dict[str, Any]:
        response = await send(
            self.http_client_factory,
            SERVICE,
            "POST",
            f"{self.api_base}/user/repos",
            json={"name": name, "description": description, "private": private},
            headers=self._headers(access_token),
        )
        return expect_object(read_json(response, SERVICE), "created repository")
