from typing import Any


class Transport:
    """Outbound side of the connection layer.

    Implementations deliver one event to one live connection and must never
    raise for a connection that has already gone away.
    """

    async def send(self, connection_id: str, event: str, data: Any) -> None:
        raise NotImplementedError

    def connection_ids(self) -> list[str]:
        raise NotImplementedError

    async def send_many(self, connection_ids, event: str, data: Any) -> None:
        for connection_id in list(connection_ids):
            await self.send(connection_id, event, data)

    async def send_all(self, event: str, data: Any) -> None:
        await self.send_many(self.connection_ids(), event, data)
