import asyncio
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fhirsub.app import SubscriptionServer
from fhirsub.channels.manager import ChannelManager
from fhirsub.config import FhirSubConfig
from fhirsub.core.resource import FhirResource
from fhirsub.core.types import ChannelType
from fhirsub.dispatch.coordinator import DispatchCoordinator
from fhirsub.subscriptions.registry import SubscriptionRegistry
from fhirsub.subscriptions.store import InMemorySubscriptionStore


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


class RecordingTransport:
    """In-memory transport that records every payload it is asked to send."""

    def __init__(
        self,
        channel_type: ChannelType = ChannelType.WEBSOCKET,
        *,
        fail_open: bool = False,
        fail_send: bool = False,
        send_delay: float = 0.0,
        open_delay: float = 0.0,
    ):
        self.channel_type = channel_type
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.send_delay = send_delay
        self.open_delay = open_delay
        self.sent: list[str] = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_open:
            raise ConnectionError("handshake refused")
        self.opened = True

    async def send(self, payload: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise ConnectionError("broken pipe")
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def make_transport():
    """Factory for RecordingTransport instances."""
    return RecordingTransport


@pytest.fixture()
def make_observation():
    """Factory for Observation resources about a patient."""

    def _make(patient: str = "Patient/1", code: Optional[str] = None, resource_id: str = "100") -> FhirResource:
        data = {
            "resourceType": "Observation",
            "id": resource_id,
            "status": "final",
            "subject": {"reference": patient},
        }
        if code:
            data["code"] = {"coding": [{"system": "http://loinc.org", "code": code}]}
        return FhirResource(data)

    return _make


@pytest.fixture()
def store():
    return InMemorySubscriptionStore()


@pytest_asyncio.fixture()
async def registry(store):
    registry = SubscriptionRegistry(store=store)
    await registry.startup()
    return registry


@pytest.fixture()
def channels(registry):
    return ChannelManager(registry)


@pytest.fixture()
def coordinator(registry, channels):
    return DispatchCoordinator(registry, channels, push_timeout=1.0, max_delivery_failures=3)


@pytest.fixture()
def hook_requests():
    """Requests received by the fake rest-hook endpoint."""
    return []


@pytest_asyncio.fixture()
async def hook_client(hook_requests):
    """httpx client whose requests are answered in memory."""

    async def handler(request: httpx.Request) -> httpx.Response:
        hook_requests.append(request)
        if request.url.path == "/broken":
            return httpx.Response(500)
        if request.url.path == "/slow":
            await asyncio.sleep(1.0)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture()
def server(hook_client):
    return SubscriptionServer(FhirSubConfig(), http_client=hook_client)


@pytest_asyncio.fixture()
async def api_client(server):
    """Async test client for the fhirsub API, with startup and shutdown hooks run."""
    async with server.app.router.lifespan_context(server.app):
        async with AsyncClient(transport=ASGITransport(app=server.app), base_url="http://testserver") as ac:
            yield ac
