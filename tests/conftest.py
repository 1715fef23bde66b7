import pytest
import pytest_asyncio

from backend import MemoryBackend
from services.chat_service import ChatService
from services.transport import Transport


class RecordingTransport(Transport):
    """Transport that records every outbound event instead of sending it."""

    def __init__(self):
        self.open_connections: list[str] = []
        self.sent: list[tuple[str, str, object]] = []

    def open(self, connection_id: str):
        self.open_connections.append(connection_id)

    def close(self, connection_id: str):
        self.open_connections.remove(connection_id)

    def connection_ids(self) -> list[str]:
        return list(self.open_connections)

    async def send(self, connection_id, event, data):
        if connection_id in self.open_connections:
            self.sent.append((connection_id, event, data))

    def events(self, connection_id: str, event: str) -> list:
        return [data for cid, name, data in self.sent if cid == connection_id and name == event]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store():
    return MemoryBackend()


@pytest_asyncio.fixture
async def service(store, transport):
    chat = ChatService(store, transport, call_timeout=0.05)
    await chat.start()
    yield chat
    await chat.shutdown()


@pytest.fixture
def login(service, transport):
    async def _login(connection_id: str, username: str) -> dict:
        transport.open(connection_id)
        await service.connect(connection_id)
        return await service.handle(connection_id, "set_username", username)

    return _login


@pytest.fixture
def drop(service, transport):
    async def _drop(connection_id: str):
        transport.close(connection_id)
        await service.disconnect(connection_id)

    return _drop
