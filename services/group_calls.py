from typing import Any, Optional

from services.registry import ConnectionRegistry
from services.room_directory import RoomDirectory
from services.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


class GroupCallManager:
    """Per-room mesh call membership and signaling relay.

    Every participant negotiates a direct peer connection with every other
    participant; this class only tracks who is in each room's call and forwards
    offer/answer/candidate payloads between them.
    """

    def __init__(self, registry: ConnectionRegistry, rooms: RoomDirectory, transport: Transport,
                 require_participant: bool = True):
        self.registry = registry
        self.rooms = rooms
        self.transport = transport
        self.require_participant = require_participant
        # room -> ordered participant usernames
        self._calls: dict[str, dict[str, None]] = {}

    def participants(self, room: str) -> list[str]:
        return list(self._calls.get(room, {}))

    def calls_of(self, username: str) -> list[str]:
        return [room for room, members in self._calls.items() if username in members]

    async def _send_to(self, usernames, event: str, data: dict):
        targets = [cid for cid in (self.registry.resolve(u) for u in usernames) if cid is not None]
        await self.transport.send_many(targets, event, data)

    async def invite(self, username: str, room: str, is_video: bool = False):
        await self.rooms.broadcast(room, "room_call_incoming", {
            "room": room,
            "from": username,
            "isVideo": bool(is_video),
        }, exclude=self.registry.resolve(username))

    async def join(self, username: str, room: str) -> list[str]:
        """Add username to the room's call; returns the participants already present."""
        members = self._calls.setdefault(room, {})
        existing = [u for u in members if u != username]
        if username in members:
            return existing
        members[username] = None
        logger.info(f"{username} joined call in room {room} ({len(members)} participants)")
        await self._send_to(existing, "room_call_joined", {"room": room, "user": username})
        return existing

    async def signal(self, sender: str, room: str, to: str, signal_type: str, data: Any) -> bool:
        if self.require_participant:
            members = self._calls.get(room, {})
            if sender not in members or to not in members:
                logger.warning(f"room_call_signal from {sender} to {to} in {room} dropped: not both participants")
                return False
        target = self.registry.resolve(to)
        if target is None:
            logger.debug(f"room_call_signal to offline user {to} dropped")
            return False
        await self.transport.send(target, "room_call_signal", {
            "room": room,
            "to": to,
            "from": sender,
            "type": signal_type,
            "data": data,
        })
        return True

    async def leave(self, username: str, room: str) -> bool:
        members = self._calls.get(room)
        if members is None or username not in members:
            return False
        del members[username]
        logger.info(f"{username} left call in room {room}")
        if not members:
            del self._calls[room]
            logger.info(f"Call in room {room} ended, no participants left")
            return True
        await self._send_to(list(members), "room_call_left", {"room": room, "user": username})
        return True

    async def on_disconnect(self, username: Optional[str]) -> list[str]:
        if not username:
            return []
        left = self.calls_of(username)
        for room in left:
            await self.leave(username, room)
        return left
