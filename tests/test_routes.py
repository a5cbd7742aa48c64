"""
Tests for the plain HTTP routes: settings API, OAuth discovery, health.

These routes are not MCP protocol, so no session or lifespan is needed.
"""

import httpx
import pytest

from conftest import DESCOPE_BASE_URL, FailingBlobStore
from descope_mcp.config_store import ConfigResolver, ProviderConfig
from descope_mcp.server import create_server


@pytest.fixture
async def make_client(fake_http):
    clients = []

    def _make_client(resolver: ConfigResolver) -> httpx.AsyncClient:
        app = create_server(resolver, fake_http.client_factory).http_app(transport="streamable-http")
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        clients.append(client)
        return client

    yield _make_client

    for client in clients:
        await client.aclose()


@pytest.fixture
def client(make_client, resolver):
    return make_client(resolver)


class TestConfigApi:
    async def test_get_returns_effective_config(self, client):
        response = await client.get("/config")

        assert response.status_code == 200
        assert response.json() == {"projectId": None, "baseUrl": DESCOPE_BASE_URL}

    async def test_put_requires_token(self, client):
        response = await client.put("/config", json={"projectId": "P-1"})

        assert response.status_code == 401

    async def test_put_requires_config_scope(self, client, make_auth_header):
        response = await client.put(
            "/config",
            json={"projectId": "P-1"},
            headers={"Authorization": make_auth_header(scopes=["app:read", "app:write"])},
        )

        assert response.status_code == 403
        assert "config:write" in response.json()["error"]

    async def test_put_merges_and_returns_config(self, client, make_auth_header, memory_store):
        headers = {"Authorization": make_auth_header(scopes=["config:write"])}

        await client.put("/config", json={"projectId": "P-1"}, headers=headers)
        response = await client.put("/config", json={"baseUrl": "https://eu.descope.test"}, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"projectId": "P-1", "baseUrl": "https://eu.descope.test"}
        assert (await client.get("/config")).json() == response.json()
        assert memory_store.set_calls == 2

    async def test_put_rejects_non_string_field(self, client, make_auth_header):
        response = await client.put(
            "/config",
            json={"baseUrl": 123},
            headers={"Authorization": make_auth_header(scopes=["config:write"])},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "baseUrl must be a string"}

    async def test_put_rejects_invalid_json(self, client, make_auth_header):
        response = await client.put(
            "/config",
            content=b"{not json",
            headers={
                "Authorization": make_auth_header(scopes=["config:write"]),
                "Content-Type": "application/json",
            },
        )

        assert response.status_code == 400

    async def test_unpersisted_update_succeeds_by_default(self, make_client, make_auth_header, fallback):
        client = make_client(ConfigResolver(FailingBlobStore(), fallback))
        headers = {"Authorization": make_auth_header(scopes=["config:write"])}

        response = await client.put("/config", json={"projectId": "P-1"}, headers=headers)

        assert response.status_code == 200
        assert (await client.get("/config")).json()["projectId"] == "P-1"

    async def test_unpersisted_update_with_durable_flag(self, make_client, make_auth_header, fallback):
        client = make_client(ConfigResolver(FailingBlobStore(), fallback))
        headers = {"Authorization": make_auth_header(scopes=["config:write"])}

        response = await client.put("/config?durable=true", json={"projectId": "P-1"}, headers=headers)

        assert response.status_code == 503
        assert response.json()["config"]["projectId"] == "P-1"
        # Still in effect for this process.
        assert (await client.get("/config")).json()["projectId"] == "P-1"


class TestDiscovery:
    async def test_protected_resource_metadata(self, client):
        response = await client.get("/.well-known/oauth-protected-resource")

        metadata = response.json()
        assert metadata["resource"] == "http://testserver/mcp"
        assert metadata["authorization_servers"] == ["http://testserver"]
        assert metadata["bearer_methods_supported"] == ["header"]
        assert metadata["scopes_supported"] == ["app:read", "app:write"]

    async def test_authorization_server_metadata_is_proxied(self, make_client, memory_store, fake_http):
        resolver = ConfigResolver(memory_store, ProviderConfig(base_url=DESCOPE_BASE_URL, project_id="P-1"))
        well_known = f"{DESCOPE_BASE_URL}/v1/apps/P-1/.well-known/openid-configuration"
        fake_http.add("GET", well_known, json={"issuer": f"{DESCOPE_BASE_URL}/v1/apps/P-1"})

        response = await make_client(resolver).get("/.well-known/oauth-authorization-server")

        assert response.status_code == 200
        assert response.json() == {"issuer": f"{DESCOPE_BASE_URL}/v1/apps/P-1"}

    async def test_authorization_server_upstream_failure(self, make_client, memory_store, fake_http):
        resolver = ConfigResolver(memory_store, ProviderConfig(base_url=DESCOPE_BASE_URL, project_id="P-1"))

        response = await make_client(resolver).get("/.well-known/oauth-authorization-server")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == -32603

    async def test_authorization_server_without_project(self, client, fake_http):
        response = await client.get("/.well-known/oauth-authorization-server")

        assert response.status_code == 503
        assert fake_http.requests == []


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.json() == {"status": "healthy"}

    async def test_not_ready_without_project(self, client):
        response = await client.get("/ready")

        assert response.status_code == 503

    async def test_ready_once_project_configured(self, client, make_auth_header):
        await client.put(
            "/config",
            json={"projectId": "P-1"},
            headers={"Authorization": make_auth_header(scopes=["config:write"])},
        )

        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}
