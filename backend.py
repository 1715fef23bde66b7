import itertools
import json
import time
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, STORAGE_BACKEND, DM_HISTORY_MAX
from redis_keys import (
    REDIS_ROOMS_KEY,
    REDIS_ROOM_META_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_DM_MESSAGES_KEY,
    REDIS_MESSAGE_KEY,
    REDIS_MESSAGE_READERS_KEY,
    REDIS_MESSAGE_READERS_SET_KEY,
    REDIS_MESSAGE_SEQ_KEY,
    REDIS_USER_KEY,
)
from schemas.chat import Message
from logging_config import get_logger

logger = get_logger(__name__)


def dm_key(a: str, b: str) -> str:
    """Order-independent key for the conversation between two usernames."""
    return "::".join(sorted([a, b]))


def now_millis() -> int:
    return int(time.time() * 1000)


class StorageBackend:
    """Persistence used by the chat coordinator.

    Rooms, messages (room and direct), read receipts and user records live here.
    Live presence and call state never do; those are owned by the services.
    """

    async def ping(self) -> bool:
        return True

    async def ensure_room(self, room: str) -> bool:
        raise NotImplementedError

    async def list_rooms(self) -> list[str]:
        raise NotImplementedError

    async def delete_room(self, room: str, purge_messages: bool = True) -> bool:
        raise NotImplementedError

    async def create_message(self, content: str, sender: str, room: Optional[str] = None,
                             to: Optional[str] = None, is_private: bool = False,
                             system: bool = False, metadata: Optional[dict] = None) -> Message:
        raise NotImplementedError

    async def get_message(self, message_id: str) -> Optional[Message]:
        raise NotImplementedError

    async def add_reader(self, message_id: str, username: str) -> Optional[Message]:
        """Append username to readBy if absent.

        Returns the updated message, or None when the message is unknown or the
        reader was already recorded.
        """
        raise NotImplementedError

    async def room_history(self, room: str, limit: int) -> list[Message]:
        raise NotImplementedError

    async def dm_history(self, a: str, b: str, limit: int) -> list[Message]:
        raise NotImplementedError

    async def touch_user(self, username: str, connection_id: Optional[str]) -> None:
        raise NotImplementedError

    async def get_user(self, username: str) -> Optional[dict]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryBackend(StorageBackend):
    def __init__(self, dm_history_max: int = DM_HISTORY_MAX):
        self.dm_history_max = dm_history_max
        self._rooms: dict[str, dict] = {}
        self._messages: dict[str, Message] = {}
        self._room_messages: dict[str, list[str]] = {}
        self._dm_messages: dict[str, list[str]] = {}
        self._users: dict[str, dict] = {}
        self._seq = itertools.count(1)
        logger.info("Initializing MemoryBackend")

    async def ensure_room(self, room: str) -> bool:
        if room in self._rooms:
            return False
        self._rooms[room] = {"name": room, "created_at": datetime.now().isoformat()}
        self._room_messages.setdefault(room, [])
        logger.debug(f"Room {room} created in memory")
        return True

    async def list_rooms(self) -> list[str]:
        return list(self._rooms)

    async def delete_room(self, room: str, purge_messages: bool = True) -> bool:
        existed = self._rooms.pop(room, None) is not None
        if purge_messages:
            for message_id in self._room_messages.pop(room, []):
                self._messages.pop(message_id, None)
        logger.debug(f"Room {room} deleted from memory: existed={existed}, purged={purge_messages}")
        return existed

    async def create_message(self, content, sender, room=None, to=None, is_private=False,
                             system=False, metadata=None) -> Message:
        message = Message(
            id=str(next(self._seq)),
            content=content,
            sender=sender,
            room=room,
            to=to,
            is_private=is_private,
            system=system,
            created_at=now_millis(),
            metadata=metadata,
        )
        self._messages[message.id] = message
        if is_private:
            ids = self._dm_messages.setdefault(dm_key(sender, to), [])
            ids.append(message.id)
            while len(ids) > self.dm_history_max:
                self._messages.pop(ids.pop(0), None)
        else:
            self._room_messages.setdefault(room, []).append(message.id)
        return message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def add_reader(self, message_id: str, username: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        if message is None or username in message.read_by:
            return None
        message.read_by.append(username)
        return message.model_copy(deep=True)

    def _collect(self, ids: list[str], limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return [self._messages[i].model_copy(deep=True) for i in ids[-limit:] if i in self._messages]

    async def room_history(self, room: str, limit: int) -> list[Message]:
        return self._collect(self._room_messages.get(room, []), limit)

    async def dm_history(self, a: str, b: str, limit: int) -> list[Message]:
        return self._collect(self._dm_messages.get(dm_key(a, b), []), limit)

    async def touch_user(self, username: str, connection_id: Optional[str]) -> None:
        self._users[username] = {
            "username": username,
            "connection_id": connection_id or "",
            "last_active": datetime.now().isoformat(),
        }

    async def get_user(self, username: str) -> Optional[dict]:
        user = self._users.get(username)
        return dict(user) if user else None


class RedisBackend(StorageBackend):
    def __init__(self, client: Optional[redis.Redis] = None, dm_history_max: int = DM_HISTORY_MAX):
        self.redis_client = client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        self.dm_history_max = dm_history_max
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    async def ping(self) -> bool:
        try:
            await self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    async def ensure_room(self, room: str) -> bool:
        added = await self.redis_client.sadd(REDIS_ROOMS_KEY, room)
        if added:
            key = REDIS_ROOM_META_KEY.format(room=room)
            await self.redis_client.hset(key, mapping={
                "name": room,
                "created_at": datetime.now().isoformat(),
            })
            logger.debug(f"Room {room} created with key: {key}")
        return bool(added)

    async def list_rooms(self) -> list[str]:
        return sorted(await self.redis_client.smembers(REDIS_ROOMS_KEY))

    async def delete_room(self, room: str, purge_messages: bool = True) -> bool:
        logger.info(f"Deleting room {room}")
        removed = await self.redis_client.srem(REDIS_ROOMS_KEY, room)
        await self.redis_client.delete(REDIS_ROOM_META_KEY.format(room=room))
        if purge_messages:
            list_key = REDIS_ROOM_MESSAGES_KEY.format(room=room)
            ids = await self.redis_client.lrange(list_key, 0, -1)
            await self._delete_messages(ids)
            await self.redis_client.delete(list_key)
            logger.debug(f"Purged {len(ids)} messages of room {room}")
        return bool(removed)

    async def _delete_messages(self, ids: list[str]):
        keys = []
        for message_id in ids:
            keys.append(REDIS_MESSAGE_KEY.format(message_id=message_id))
            keys.append(REDIS_MESSAGE_READERS_KEY.format(message_id=message_id))
            keys.append(REDIS_MESSAGE_READERS_SET_KEY.format(message_id=message_id))
        if keys:
            await self.redis_client.delete(*keys)

    async def create_message(self, content, sender, room=None, to=None, is_private=False,
                             system=False, metadata=None) -> Message:
        message_id = await self.redis_client.incr(REDIS_MESSAGE_SEQ_KEY)
        message = Message(
            id=str(message_id),
            content=content,
            sender=sender,
            room=room,
            to=to,
            is_private=is_private,
            system=system,
            created_at=now_millis(),
            metadata=metadata,
        )
        # readBy lives in its own list so receipts never rewrite the blob
        blob = message.model_dump(by_alias=True, exclude={"read_by"})
        await self.redis_client.set(REDIS_MESSAGE_KEY.format(message_id=message.id), json.dumps(blob))

        if is_private:
            list_key = REDIS_DM_MESSAGES_KEY.format(pair=dm_key(sender, to))
            length = await self.redis_client.rpush(list_key, message.id)
            overflow = length - self.dm_history_max
            if overflow > 0:
                dropped = await self.redis_client.lpop(list_key, overflow)
                await self._delete_messages(dropped or [])
        else:
            await self.redis_client.rpush(REDIS_ROOM_MESSAGES_KEY.format(room=room), message.id)
        logger.debug(f"Stored message {message.id} from {sender}")
        return message

    async def _load(self, ids: list[str]) -> list[Message]:
        if not ids:
            return []
        blobs = await self.redis_client.mget([REDIS_MESSAGE_KEY.format(message_id=i) for i in ids])
        messages = []
        for message_id, blob in zip(ids, blobs):
            if blob is None:
                continue
            readers = await self.redis_client.lrange(REDIS_MESSAGE_READERS_KEY.format(message_id=message_id), 0, -1)
            data = json.loads(blob)
            data["readBy"] = readers
            messages.append(Message.model_validate(data))
        return messages

    async def get_message(self, message_id: str) -> Optional[Message]:
        messages = await self._load([message_id])
        return messages[0] if messages else None

    async def add_reader(self, message_id: str, username: str) -> Optional[Message]:
        if not await self.redis_client.exists(REDIS_MESSAGE_KEY.format(message_id=message_id)):
            return None
        added = await self.redis_client.sadd(REDIS_MESSAGE_READERS_SET_KEY.format(message_id=message_id), username)
        if not added:
            return None
        await self.redis_client.rpush(REDIS_MESSAGE_READERS_KEY.format(message_id=message_id), username)
        return await self.get_message(message_id)

    async def room_history(self, room: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        ids = await self.redis_client.lrange(REDIS_ROOM_MESSAGES_KEY.format(room=room), -limit, -1)
        return await self._load(ids)

    async def dm_history(self, a: str, b: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        ids = await self.redis_client.lrange(REDIS_DM_MESSAGES_KEY.format(pair=dm_key(a, b)), -limit, -1)
        return await self._load(ids)

    async def touch_user(self, username: str, connection_id: Optional[str]) -> None:
        await self.redis_client.hset(REDIS_USER_KEY.format(username=username), mapping={
            "username": username,
            "connection_id": connection_id or "",
            "last_active": datetime.now().isoformat(),
        })

    async def get_user(self, username: str) -> Optional[dict]:
        user = await self.redis_client.hgetall(REDIS_USER_KEY.format(username=username))
        return user or None

    async def close(self) -> None:
        await self.redis_client.aclose()


def create_backend(kind: str = STORAGE_BACKEND) -> StorageBackend:
    if kind == "redis":
        return RedisBackend()
    if kind == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown storage backend: {kind}")
