from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from pathgate.allowlist import compile_allow_patterns
from pathgate.app import create_app
from pathgate.config import GateSettings
from pathgate.engine import AccessDecisionEngine
from pathgate.errors import SessionStoreError
from pathgate.registry import ApplicationPolicy, ApplicationRegistry

from fake_backend.fake_backend import app as backend_app

APP_HOST = "app.example.com"
OTHER_HOST = "other.example.com"
BROWSER_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 Safari/605.1.15"
ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) Chrome/126.0 Mobile Safari/537.36"
APP_UA = "okhttp/4.12.0"


class FakeSessionStore:
    """In-memory SessionStore with a manual clock and a call log."""

    def __init__(self) -> None:
        self.now = 0.0
        self.expires: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail: set[str] = set()

    async def _check(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        # yield like a network call would, so concurrent requests interleave
        await asyncio.sleep(0)
        if op in self.fail:
            raise SessionStoreError(op, key, ConnectionError("boom"))

    def _alive(self, key: str) -> bool:
        exp = self.expires.get(key)
        if exp is None:
            return False
        if exp <= self.now:
            del self.expires[key]
            return False
        return True

    async def exists(self, key: str) -> bool:
        await self._check("exists", key)
        return self._alive(key)

    async def set_with_expiry(self, key: str, ttl: timedelta) -> None:
        await self._check("set", key)
        self.expires[key] = self.now + ttl.total_seconds()

    async def refresh_expiry(self, key: str, ttl: timedelta) -> None:
        await self._check("expire", key)
        if self._alive(key):
            self.expires[key] = self.now + ttl.total_seconds()

    async def ping(self) -> bool:
        await self._check("ping", "-")
        return True

    def ttl(self, key: str) -> float:
        return self.expires[key] - self.now

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]


def make_policy(hostname: str = APP_HOST, **kw) -> ApplicationPolicy:
    allow = kw.pop("allow", "")
    kw.setdefault("upstream_target", httpx.URL("http://backend.internal:3000"))
    return ApplicationPolicy(hostname=hostname, allow_patterns=compile_allow_patterns(allow), **kw)


@pytest.fixture()
def store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture()
def policy() -> ApplicationPolicy:
    return make_policy(allow="10.9.", session_ttl=timedelta(minutes=10), auto_renew=True)


@pytest.fixture()
def registry(policy) -> ApplicationRegistry:
    return ApplicationRegistry.from_policies(
        [policy, make_policy(OTHER_HOST, secret_path_prefix="/open-sesame", auto_renew=False)]
    )


@pytest.fixture()
def engine(registry, store) -> AccessDecisionEngine:
    return AccessDecisionEngine(registry, store)


@pytest.fixture()
def backend_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=backend_app))


@pytest.fixture()
def make_client(registry, store, backend_client):
    """TestClient factory: make_client(**settings_overrides)."""
    clients = []

    def _make(upstream_client: httpx.AsyncClient | None = None, **overrides) -> TestClient:
        settings = GateSettings(registry=registry, **overrides)
        app = create_app(settings, store=store, upstream_client=upstream_client or backend_client)
        c = TestClient(app, base_url=f"http://{APP_HOST}")
        c.__enter__()
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()
