from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Awaitable, Callable

import pytest
from aiohttp import ClientSession, web

from tests.fakes import FakeSink, make_harness
from webhook_relay.domain.models import Envelope
from webhook_relay.main import create_app
from webhook_relay.runtime import RUNTIME_KEY
from webhook_relay.services.emitter import ChangeEventEmitter
from webhook_relay.services.events import EventService
from webhook_relay.services.sink import WebhookSink
from webhook_relay.services.stats import StatsService

Responder = Callable[[web.Request], Awaitable[web.StreamResponse]]


@dataclass
class SinkStub:
    """Local HTTP endpoint standing in for the external consumer."""

    url: str = ""
    requests: list[tuple[Any, dict[str, Any]]] = field(default_factory=list)
    responder: Responder | None = None

    def respond(self, status: int = 200, body: Any = None, *, text: str | None = None) -> None:
        async def responder(_request: web.Request) -> web.StreamResponse:
            if text is not None:
                return web.Response(status=status, text=text)
            return web.json_response({"ok": True} if body is None else body, status=status)

        self.responder = responder


@pytest.fixture
async def sink_stub():
    stub = SinkStub()
    stub.respond(200)

    async def handler(request: web.Request) -> web.StreamResponse:
        raw = await request.read()
        stub.requests.append((request.headers.copy(), json.loads(raw.decode("utf-8"))))
        assert stub.responder is not None
        return await stub.responder(request)

    app = web.Application()
    app.router.add_post("/hook", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    stub.url = f"http://127.0.0.1:{port}/hook"
    try:
        yield stub
    finally:
        await runner.cleanup()


@pytest.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def make_sink(http_session):
    def factory(url: str, *, timeout_seconds: float = 2.0, required_fields=()) -> WebhookSink:
        return WebhookSink(
            http_session,
            url,
            token="test-token",
            timeout_seconds=timeout_seconds,
            required_fields=required_fields,
        )

    return factory


@pytest.fixture
def harness():
    return make_harness(FakeSink())


@pytest.fixture
def submitted() -> list[Envelope]:
    return []


@pytest.fixture
async def service_client(aiohttp_client, harness, submitted):
    """API client over in-memory stores; emitted envelopes land in ``submitted``."""
    emitter = ChangeEventEmitter(lambda envelope: submitted.append(envelope) or True)
    app = create_app(with_runtime=False)
    app[RUNTIME_KEY] = SimpleNamespace(
        coordinator=harness.coordinator,
        event_service=EventService(harness.events, harness.log, emitter),  # type: ignore[arg-type]
        stats_service=StatsService(harness.events, harness.log),  # type: ignore[arg-type]
    )
    return await aiohttp_client(app)
