from typing import Optional

from backend import StorageBackend
from schemas.chat import Message
from services.errors import NotFound, PersistenceError, TargetOffline
from services.registry import ConnectionRegistry
from services.room_directory import RoomDirectory
from services.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


class MessageService:
    """Room and direct messages, read receipts and typing relay.

    Every message is persisted before it is broadcast so that a read receipt
    for a delivered message can always be resolved.
    """

    def __init__(self, store: StorageBackend, registry: ConnectionRegistry, rooms: RoomDirectory,
                 transport: Transport, persist_offline_dm: bool = False):
        self.store = store
        self.registry = registry
        self.rooms = rooms
        self.transport = transport
        self.persist_offline_dm = persist_offline_dm

    async def _persist(self, **fields) -> Message:
        try:
            return await self.store.create_message(**fields)
        except Exception as e:
            logger.error(f"Failed to persist message from {fields.get('sender')}: {e}", exc_info=True)
            raise PersistenceError("Could not store message")

    async def post_room_message(self, sender: str, room: str, content: str) -> Message:
        if not self.rooms.exists(room):
            raise NotFound(f"Room '{room}' does not exist")
        message = await self._persist(content=content, sender=sender, room=room, is_private=False)
        logger.debug(f"Message {message.id} from {sender} to room {room}")
        await self.rooms.broadcast(room, "chat_message", message.to_wire())
        return message

    async def post_direct_message(self, sender: str, recipient: str, content: str) -> tuple[Message, bool]:
        """Returns the stored message and whether the recipient was online.

        An offline recipient raises TargetOffline unless offline messages are
        persisted, in which case the message is stored and echoed to the sender.
        """
        target = self.registry.resolve(recipient)
        if target is None and not self.persist_offline_dm:
            logger.warning(f"Direct message from {sender} dropped: {recipient} is offline")
            raise TargetOffline(f"{recipient} is not online")

        message = await self._persist(content=content, sender=sender, to=recipient, is_private=True)
        origin = self.registry.resolve(sender)
        if origin is not None:
            await self.transport.send(origin, "private_message", message.to_wire())
        if target is not None and target != origin:
            await self.transport.send(target, "private_message", message.to_wire())
        logger.debug(f"Direct message {message.id} from {sender} to {recipient}, delivered={target is not None}")
        return message, target is not None

    async def post_file_message(self, sender: str, room: str, url: str, original: str, size: int) -> Message:
        if not self.rooms.exists(room):
            raise NotFound(f"Room '{room}' does not exist")
        message = await self._persist(
            content=f"Sent a file: {original}",
            sender=sender,
            room=room,
            is_private=False,
            metadata={"url": url, "size": size, "type": "file"},
        )
        await self.rooms.broadcast(room, "fileMessage", {
            "username": sender,
            "url": url,
            "original": original,
            "size": size,
            "timestamp": message.created_at,
            "room": room,
        })
        return message

    async def share_file(self, sender: str, room: str, filename: str, url: str, size: int) -> Message:
        """Announce a file that was already uploaded elsewhere as a room message."""
        if not self.rooms.exists(room):
            raise NotFound(f"Room '{room}' does not exist")
        message = await self._persist(
            content=f"📎 {filename}",
            sender=sender,
            room=room,
            is_private=False,
            metadata={"url": url, "size": size, "type": "file"},
        )
        logger.debug(f"File {filename} shared by {sender} in room {room} as message {message.id}")
        await self.rooms.broadcast(room, "file_message", message.to_wire())
        return message

    async def mark_read(self, reader: str, message_id: str) -> Optional[Message]:
        message = await self.store.add_reader(message_id, reader)
        if message is None:
            logger.debug(f"Read receipt from {reader} for {message_id} ignored")
            return None

        payload = {"messageId": message.id, "readBy": message.read_by}
        if message.is_private:
            targets = []
            for username in (message.sender, message.to):
                cid = self.registry.resolve(username) if username else None
                if cid is not None and cid not in targets:
                    targets.append(cid)
            await self.transport.send_many(targets, "message_read", payload)
        elif message.room:
            await self.rooms.broadcast(message.room, "message_read", payload)
        return message

    async def typing(self, connection_id: str, username: str, room: str, is_typing: bool):
        await self.rooms.broadcast(room, "typing", {
            "room": room,
            "username": username,
            "isTyping": bool(is_typing),
        }, exclude=connection_id)
