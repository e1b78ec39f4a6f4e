"""Test configuration and fixtures."""

import asyncio
import json
import os
import time
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

# Set up test environment variables BEFORE importing identityprovider modules
os.environ.setdefault("IDP_LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("IDP_STATE_BACKEND", "memory")

from identityprovider.base import OAuthProvider, ProviderFactory
from identityprovider.errors import ProviderConstructionError
from identityprovider.manager import ProviderManager, set_provider_manager
from identityprovider.providers import GenericOAuth2Factory, GitHubFactory, OIDCFactory
from identityprovider.registry import TypeRegistry
from identityprovider.state import InMemoryStateStore

ACME_OPTIONS = {
    "client_id": "acme-client",
    "client_secret": "acme-secret",
    "authorize_url": "https://idp.acme.test/oauth/authorize",
    "token_url": "https://idp.acme.test/oauth/token",
    "userinfo_url": "https://idp.acme.test/userinfo",
}

ALICE = {
    "sub": "u-123",
    "preferred_username": "alice",
    "email": "alice@example.com",
    "groups": ["engineering"],
}


class FakeUpstream:
    """Mock OAuth2 authorization server served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.valid_codes = {"abc"}
        self.token_status = 200
        self.token_body: Any = {"access_token": "at-1", "token_type": "bearer"}
        self.userinfo_status = 200
        self.userinfo_body: Any = dict(ALICE)
        self.routes: dict[str, Any] = {}  # path -> (status, body); str bodies are sent as text
        self.delay = 0.0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = request.url.path
        if path in self.routes:
            status, body = self.routes[path]
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)

        if path.endswith("/token") or path.endswith("/access_token"):
            form = parse_qs(request.content.decode())
            if form.get("code", [""])[0] not in self.valid_codes:
                return httpx.Response(400, json={"error": "invalid_grant"})
            if isinstance(self.token_body, str):
                return httpx.Response(self.token_status, text=self.token_body)
            return httpx.Response(self.token_status, json=self.token_body)

        if path.endswith("/userinfo") or path == "/user":
            if request.headers.get("Authorization") != "Bearer at-1":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(self.userinfo_status, json=self.userinfo_body)

        return httpx.Response(404, json={"error": "not_found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))


class StubProvider(OAuthProvider):
    """Provider that never talks to an upstream."""

    ready = False

    @property
    def provider_type(self) -> str:
        return "stub"

    async def get_authorization_url(self, redirect_uri, state, **kwargs) -> str:
        return self._build_url("https://stub.test/authorize", {"state": state.value})

    async def exchange_code(self, code, redirect_uri) -> dict[str, Any]:
        return {"access_token": code}

    async def fetch_attributes(self, tokens, state) -> dict[str, Any]:
        return {"id": tokens["access_token"], "login": "stub-user"}


class StubFactory(ProviderFactory):
    """Factory that counts constructions.

    Options:
        fail: raise ProviderConstructionError
        explode: raise an unexpected exception
        delay: seconds to spend half-constructed
    """

    def __init__(self, type_name: str = "stub"):
        super().__init__()
        self._type = type_name
        self.created: list[StubProvider] = []

    @property
    def type(self) -> str:
        return self._type

    def create(self, name, options, state_store) -> StubProvider:
        if options.get("fail"):
            raise ProviderConstructionError(f"rejected options for {name}", provider_name=name)
        if options.get("explode"):
            raise KeyError("client_id")
        provider = StubProvider(name, state_store, client_id="stub", client_secret="stub")
        if options.get("delay"):
            time.sleep(options["delay"])
        provider.ready = True
        self.created.append(provider)
        return provider


@pytest.fixture
def upstream() -> FakeUpstream:
    """Mock upstream OAuth2 server."""
    return FakeUpstream()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore(ttl_seconds=300)


@pytest.fixture
def stub_factory() -> StubFactory:
    return StubFactory()


@pytest.fixture
def registry(upstream: FakeUpstream, stub_factory: StubFactory) -> TypeRegistry:
    """Registry with the built-in provider types talking to the mock upstream."""
    registry = TypeRegistry()
    registry.register(GenericOAuth2Factory(transport=upstream.transport))
    registry.register(OIDCFactory(transport=upstream.transport))
    registry.register(GitHubFactory(transport=upstream.transport))
    registry.register(stub_factory)
    return registry


@pytest.fixture
def manager(registry: TypeRegistry, state_store: InMemoryStateStore) -> ProviderManager:
    return ProviderManager(registry=registry, state_store=state_store)


@pytest.fixture
def acme(manager: ProviderManager):
    """Configured generic-oauth2 provider named 'acme'."""
    report = manager.configure([{"name": "acme", "type": "generic-oauth2", "options": ACME_OPTIONS}])
    assert report.ok, report.errors
    return manager.get("acme")


@pytest.fixture(autouse=True)
def reset_provider_manager():
    """Reset the global provider manager between tests."""
    set_provider_manager(None)
    yield
    set_provider_manager(None)


def write_providers_file(path, providers: list[dict]) -> None:
    path.write_text(json.dumps({"providers": providers}), encoding="utf-8")
