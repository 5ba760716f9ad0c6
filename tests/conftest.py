import pytest

from fakes import FakeDevices, FakeSession
from peer_connector import CallConnector
from server import serve


@pytest.fixture
async def relay():
    server, router = await serve("127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    router.url = f"ws://127.0.0.1:{port}"
    yield router
    server.close()
    await server.wait_closed()


@pytest.fixture
async def make_connector(relay):
    made = []

    async def _make(devices=None):
        events = []
        connector = CallConnector(
            relay.url,
            devices=devices if devices is not None else FakeDevices(),
            session_factory=FakeSession,
            on_event=lambda kind, data: events.append((kind, data)),
        )
        connector.events = events
        await connector.start()
        made.append(connector)
        return connector

    yield _make
    for connector in made:
        await connector.stop()
