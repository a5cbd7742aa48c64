"""
Shared test fixtures for the MCP server test suite.

Key fixtures:
- make_token: A factory function to generate JWT tokens with any claims
- make_auth_header: Same, as a full "Bearer <token>" header value
- memory_store / failing_store: stand-ins for the durable blob store
- resolver: A ConfigResolver over memory_store with known fallbacks
- fake_http: Records outbound HTTP requests and answers them from canned
  responses (httpx.MockTransport), so tests can assert on call counts

Testing approach:
- test_auth.py, test_config_store.py, test_outbound.py: unit tests
- test_tools.py: full MCP protocol round trips through the ASGI app
- test_routes.py: the plain HTTP routes (settings API, discovery, health)
"""

import base64
import datetime

import httpx
import jwt
import pytest

from descope_mcp.blob_store import BlobStoreUnavailable
from descope_mcp.config import settings
from descope_mcp.config_store import ConfigCache, ConfigResolver, ProviderConfig

TEST_SECRET = settings.jwt_secret_key
TEST_ALGORITHM = settings.jwt_algorithm

DESCOPE_BASE_URL = "https://api.descope.test"
EXCHANGE_URL = f"{DESCOPE_BASE_URL}/v1/mgmt/outbound/app/user/token/latest"
GITHUB_REPOS_URL = f"{settings.github_api_base}/user/repos"
NWS_BASE = settings.nws_api_base


def encode_client_id(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


DEFAULT_CLIENT_ID = encode_client_id("proj1:app1")


# ---------------------------------------------------------------------------
# Token factory fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to generate JWT tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", scopes=["app:read"])
    """

    def _make_token(
        sub: str = "test-user",
        scopes: list[str] | None = None,
        client_id: str | None = DEFAULT_CLIENT_ID,
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {}

        if include_sub:
            payload["sub"] = sub

        if scopes is not None:
            payload["scope"] = scopes

        if client_id is not None:
            payload["client_id"] = client_id

        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)

        payload["iat"] = now

        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# Blob stores
# ---------------------------------------------------------------------------
class MemoryBlobStore:
    def __init__(self, values: dict[str, str] | None = None):
        self.values = dict(values or {})
        self.set_calls = 0

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.set_calls += 1
        self.values[key] = value


class FailingBlobStore(MemoryBlobStore):
    """Readable, but every write fails (or every call, with fail_reads=True)."""

    def __init__(self, values: dict[str, str] | None = None, fail_reads: bool = False):
        super().__init__(values)
        self.fail_reads = fail_reads

    def get(self, key: str) -> str | None:
        if self.fail_reads:
            raise BlobStoreUnavailable("store offline")
        return super().get(key)

    def set(self, key: str, value: str) -> None:
        self.set_calls += 1
        raise BlobStoreUnavailable("store offline")


@pytest.fixture
def memory_store():
    return MemoryBlobStore()


@pytest.fixture
def failing_store():
    return FailingBlobStore()


@pytest.fixture
def fallback():
    return ProviderConfig(base_url=DESCOPE_BASE_URL, project_id=None)


@pytest.fixture
def resolver(memory_store, fallback):
    return ConfigResolver(memory_store, fallback, ConfigCache())


# ---------------------------------------------------------------------------
# Outbound HTTP
# ---------------------------------------------------------------------------
class FakeHttp:
    """
    Canned responses for outbound HTTP, keyed by method and URL (query ignored).

    Unknown URLs answer 404. Every request is recorded in `requests`.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], tuple[int, dict]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, status_code: int = 200, **response_kwargs) -> None:
        self.routes[(method, url)] = (status_code, response_kwargs)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url).split("?", 1)[0])
        if key not in self.routes:
            return httpx.Response(404, json={"message": "Not Found"})
        status_code, response_kwargs = self.routes[key]
        return httpx.Response(status_code, **response_kwargs)

    def client_factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def requests_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?", 1)[0] == url]


@pytest.fixture
def fake_http():
    return FakeHttp()
