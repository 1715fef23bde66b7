from datetime import datetime
from typing import Optional

from backend import StorageBackend
from schemas.chat import Message
from services.errors import InvalidInput
from services.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


def system_notice(message: str, room: Optional[str] = None) -> dict:
    return {"message": message, "room": room, "timestamp": datetime.now().isoformat()}


class RoomDirectory:
    """Room names and their member connections.

    Membership is in-memory and per process; the room record and its message
    history live in the storage backend. A room left with no members is deleted,
    and its stored messages are purged when purge_empty_rooms is set.
    """

    def __init__(self, store: StorageBackend, transport: Transport,
                 history_limit: int = 50, purge_empty_rooms: bool = True):
        self.store = store
        self.transport = transport
        self.history_limit = history_limit
        self.purge_empty_rooms = purge_empty_rooms
        # room -> ordered member connection ids
        self._members: dict[str, dict[str, None]] = {}
        # connection id -> ordered room names
        self._rooms_of: dict[str, dict[str, None]] = {}

    async def ensure(self, room: str):
        room = (room or "").strip()
        if not room:
            raise InvalidInput("Invalid room name")
        if room not in self._members:
            self._members[room] = {}
            logger.info(f"Room {room} created")
        await self.store.ensure_room(room)

    def exists(self, room: str) -> bool:
        return room in self._members

    def members(self, room: str) -> list[str]:
        return list(self._members.get(room, {}))

    def rooms_of(self, connection_id: str) -> list[str]:
        return list(self._rooms_of.get(connection_id, {}))

    def is_member(self, connection_id: str, room: str) -> bool:
        return connection_id in self._members.get(room, {})

    async def broadcast(self, room: str, event: str, data, exclude: Optional[str] = None):
        targets = [cid for cid in self.members(room) if cid != exclude]
        logger.debug(f"Broadcasting {event} to {len(targets)} members of room {room}")
        await self.transport.send_many(targets, event, data)

    async def join(self, connection_id: str, username: str, room: str) -> list[Message]:
        """Add the connection to room and return its recent history, oldest first."""
        room = (room or "").strip()
        await self.ensure(room)
        already_member = self.is_member(connection_id, room)
        self._members[room][connection_id] = None
        self._rooms_of.setdefault(connection_id, {})[room] = None

        if not already_member:
            logger.info(f"{username} ({connection_id}) joined room {room}")
            await self.broadcast(room, "system", system_notice(f"{username} joined {room}", room), exclude=connection_id)
        return await self.store.room_history(room, self.history_limit)

    async def leave(self, connection_id: str, username: Optional[str], room: str) -> bool:
        """Remove membership. Returns True when the room was deleted as a result."""
        members = self._members.get(room)
        if members is None or connection_id not in members:
            return False
        del members[connection_id]
        joined = self._rooms_of.get(connection_id)
        if joined is not None:
            joined.pop(room, None)
            if not joined:
                del self._rooms_of[connection_id]

        logger.info(f"{username or connection_id} left room {room}")
        if username:
            await self.broadcast(room, "system", system_notice(f"{username} left {room}", room))
        return await self._delete_if_empty(room)

    async def _delete_if_empty(self, room: str) -> bool:
        if self._members.get(room):
            return False
        self._members.pop(room, None)
        await self.store.delete_room(room, purge_messages=self.purge_empty_rooms)
        if room in self._members:
            # joined again while the store delete was in flight
            await self.store.ensure_room(room)
            logger.info(f"Room {room} was re-joined during deletion, keeping it")
            return False
        logger.info(f"Room {room} deleted because it has no members left")
        await self.transport.send_all("system", system_notice(f"Room {room} was deleted because it has no members left", room))
        return True

    async def on_disconnect(self, connection_id: str, username: Optional[str] = None) -> list[str]:
        deleted = []
        for room in self.rooms_of(connection_id):
            if await self.leave(connection_id, username, room):
                deleted.append(room)
        return deleted
