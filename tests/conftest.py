from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from st_gateway.core.settings import GatewaySettings
from st_gateway.core.stores import InMemoryStore
from st_gateway.main import create_app


class FakeUpstream:
    """Scripted upstream served through ``httpx.MockTransport``.

    Each call consumes the next scripted item; the last item repeats once the
    script is exhausted. Exceptions in the script are raised as transport
    failures.
    """

    def __init__(self, *responses):
        self.script = list(responses) or [httpx.Response(200, json={})]
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    def client_factory(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), timeout=timeout)


def put_secret(store: InMemoryStore, user_id: str, key: str, value: str, *, active: bool = True) -> None:
    entries = store.secrets.setdefault(user_id, {}).setdefault(key, [])
    if active:
        for entry in entries:
            entry["active"] = False
    entries.append({"id": f"{key}-{len(entries) + 1}", "value": value, "active": active})


@pytest.fixture()
def settings() -> GatewaySettings:
    return GatewaySettings(retry_delay_ms=10)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def record_sleep(sleeps):
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return fake_sleep


@pytest.fixture()
def make_client(settings, store, record_sleep):
    def _make(upstream: FakeUpstream | None = None, **overrides) -> TestClient:
        upstream = upstream or FakeUpstream()
        app = create_app(
            settings=overrides.pop("settings", settings),
            store=overrides.pop("store", store),
            http_client_factory=upstream.client_factory,
            sleep=record_sleep,
        )
        return TestClient(app)

    return _make
