from typing import Any, Optional

from pydantic import BaseModel, ValidationError

import constants
from backend import StorageBackend
from schemas.chat import (
    AnswerCallIn,
    CallUserIn,
    ChatMessageIn,
    EndCallIn,
    FileMessageIn,
    IceCandidateIn,
    MessageReadIn,
    PrivateMessageIn,
    RejectCallIn,
    RoomCallInviteIn,
    RoomCallSignalIn,
    RoomIn,
    TypingIn,
)
from services.calls import CallManager
from services.errors import ChatError, InvalidInput, NotAuthenticated, NotFound
from services.group_calls import GroupCallManager
from services.messaging import MessageService
from services.registry import ConnectionRegistry
from services.room_directory import RoomDirectory, system_notice
from services.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)

# Events without an acknowledgment; failures are dropped silently.
FIRE_AND_FORGET = {
    "typing",
    "message_read",
    "get_online_users",
    "call_user",
    "answer_call",
    "reject_call",
    "end_call",
    "ice_candidate",
    "room_call_invite",
    "room_call_signal",
}


def _parse(model: type[BaseModel], data: Any, field: Optional[str] = None):
    # bare string payloads are accepted for single-field events, e.g. join_room("lobby")
    if field is not None and not isinstance(data, dict):
        data = {field: data}
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as e:
        raise InvalidInput(f"Invalid payload: {e.errors()[0].get('msg', 'invalid')}")


def _username_from(data: Any) -> str:
    if isinstance(data, dict):
        data = data.get("username")
    if not isinstance(data, str):
        raise InvalidInput("Invalid username")
    return data


class ChatService:
    """Owns presence, rooms, messaging and call signaling for one process.

    The transport layer calls connect/disconnect and hands every inbound event
    to handle(); everything outbound goes through the injected Transport.
    """

    def __init__(self, store: StorageBackend, transport: Transport,
                 default_room: str = constants.DEFAULT_ROOM,
                 history_limit: int = constants.HISTORY_LIMIT,
                 call_timeout: float = constants.CALL_TIMEOUT_SECONDS,
                 purge_empty_rooms: bool = constants.PURGE_EMPTY_ROOMS,
                 persist_offline_dm: bool = constants.PERSIST_OFFLINE_DM,
                 require_call_participant: bool = constants.ROOM_CALL_SIGNAL_REQUIRES_PARTICIPANT):
        self.store = store
        self.transport = transport
        self.default_room = default_room
        self.registry = ConnectionRegistry()
        self.rooms = RoomDirectory(store, transport, history_limit=history_limit,
                                   purge_empty_rooms=purge_empty_rooms)
        self.messages = MessageService(store, self.registry, self.rooms, transport,
                                       persist_offline_dm=persist_offline_dm)
        self.calls = CallManager(self.registry, transport, timeout=call_timeout)
        self.group_calls = GroupCallManager(self.registry, self.rooms, transport,
                                            require_participant=require_call_participant)
        self._handlers = {
            "set_username": self.on_set_username,
            "join_room": self.on_join_room,
            "leave_room": self.on_leave_room,
            "chat_message": self.on_chat_message,
            "private_message": self.on_private_message,
            "file_message": self.on_file_message,
            "typing": self.on_typing,
            "message_read": self.on_message_read,
            "get_users_online": self.on_get_users_online,
            "get_online_users": self.on_get_online_users,
            "call_user": self.on_call_user,
            "answer_call": self.on_answer_call,
            "reject_call": self.on_reject_call,
            "end_call": self.on_end_call,
            "ice_candidate": self.on_ice_candidate,
            "room_call_invite": self.on_room_call_invite,
            "room_call_join": self.on_room_call_join,
            "room_call_signal": self.on_room_call_signal,
            "room_call_leave": self.on_room_call_leave,
        }

    async def start(self):
        await self.rooms.ensure(self.default_room)
        logger.info(f"Chat service started, default room {self.default_room}")

    async def shutdown(self):
        self.calls.shutdown()
        await self.store.close()

    def knows(self, event: str) -> bool:
        return event in self._handlers

    async def handle(self, connection_id: str, event: str, data: Any = None) -> Optional[dict]:
        """Run one inbound event. Returns the acknowledgment payload, if any.

        Never raises: request/response events report failures as
        {ok: False, error}, fire-and-forget events drop them.
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event {event} from connection {connection_id}")
            return {"ok": False, "error": f"Unknown event {event}", "code": InvalidInput.code}
        try:
            return await handler(connection_id, data)
        except ChatError as e:
            logger.debug(f"{event} from {connection_id} rejected: {e.code} {e.message}")
            if event in FIRE_AND_FORGET:
                return None
            return {"ok": False, "error": e.message, "code": e.code}
        except Exception as e:
            logger.error(f"Error handling {event} from connection {connection_id}: {e}", exc_info=True)
            if event in FIRE_AND_FORGET:
                return None
            return {"ok": False, "error": "Internal server error", "code": "server_error"}

    def _require_user(self, connection_id: str) -> str:
        username = self.registry.username_of(connection_id)
        if username is None:
            raise NotAuthenticated("Set a username first")
        return username

    async def _broadcast_presence(self):
        await self.transport.send_all("users_online", self.registry.online_users())

    async def connect(self, connection_id: str):
        logger.info(f"Connection {connection_id} opened")

    async def disconnect(self, connection_id: str):
        """Single fan-out for everything a closed connection leaves behind."""
        username = self.registry.username_of(connection_id)
        logger.info(f"Connection {connection_id} closed (user={username})")
        hooks = []
        if username:
            hooks.append(("calls", self.calls.on_disconnect(username)))
            hooks.append(("group_calls", self.group_calls.on_disconnect(username)))
        hooks.append(("rooms", self.rooms.on_disconnect(connection_id, username)))
        for name, hook in hooks:
            try:
                await hook
            except Exception as e:
                logger.error(f"Disconnect cleanup ({name}) failed for {connection_id}: {e}", exc_info=True)

        released = self.registry.release(connection_id)
        if released:
            await self._broadcast_presence()
            await self.transport.send_all("system", system_notice(f"{released} left"))
            try:
                await self.store.touch_user(released, None)
            except Exception as e:
                logger.error(f"Could not update last activity for {released}: {e}", exc_info=True)

    # Presence and rooms

    async def on_set_username(self, connection_id: str, data: Any) -> dict:
        previous = self.registry.username_of(connection_id)
        was_member = self.rooms.is_member(connection_id, self.default_room)
        username = self.registry.claim(connection_id, _username_from(data))
        try:
            history = await self.rooms.join(connection_id, username, self.default_room)
        except Exception:
            await self._undo_claim(connection_id, previous, was_member)
            raise
        if previous is not None and previous != username:
            # calls are keyed by username, so the old identity hangs up
            await self.calls.on_disconnect(previous)
            await self.group_calls.on_disconnect(previous)
        try:
            await self.store.touch_user(username, connection_id)
        except Exception as e:
            logger.error(f"Could not store user record for {username}: {e}", exc_info=True)
        await self._broadcast_presence()
        return {
            "ok": True,
            "rooms": self.rooms.rooms_of(connection_id),
            "usersOnline": self.registry.online_users(),
            "history": [m.to_wire() for m in history],
        }

    async def _undo_claim(self, connection_id: str, previous: Optional[str], was_member: bool):
        """Put the registry back the way it was before a failed set_username."""
        self.registry.release(connection_id)
        if previous is not None:
            self.registry.claim(connection_id, previous)
        if not was_member:
            try:
                await self.rooms.leave(connection_id, None, self.default_room)
            except Exception as e:
                logger.error(f"Could not roll back {self.default_room} membership of {connection_id}: {e}", exc_info=True)

    async def on_join_room(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(RoomIn, data, "room")
        history = await self.rooms.join(connection_id, username, payload.room)
        return {"ok": True, "room": payload.room, "history": [m.to_wire() for m in history]}

    async def on_leave_room(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(RoomIn, data, "room")
        deleted = await self.rooms.leave(connection_id, username, payload.room)
        return {"ok": True, "room": payload.room, "deleted": deleted}

    async def on_get_users_online(self, connection_id: str, data: Any) -> dict:
        return {"users": self.registry.online_users()}

    async def on_get_online_users(self, connection_id: str, data: Any) -> None:
        await self.transport.send(connection_id, "users_online", self.registry.online_users())

    # Messaging

    async def on_chat_message(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(ChatMessageIn, data)
        message = await self.messages.post_room_message(username, payload.room, payload.content)
        return {"ok": True, "id": message.id}

    async def on_private_message(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(PrivateMessageIn, data)
        message, delivered = await self.messages.post_direct_message(username, payload.to, payload.content)
        if not delivered:
            return {"ok": False, "error": f"{payload.to} is not online", "code": "target_offline", "id": message.id}
        return {"ok": True, "id": message.id}

    async def on_file_message(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(FileMessageIn, data)
        message = await self.messages.share_file(username, payload.room, payload.filename, payload.url, payload.size)
        return {"ok": True, "id": message.id}

    async def on_typing(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(TypingIn, data)
        await self.messages.typing(connection_id, username, payload.room, payload.is_typing)

    async def on_message_read(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(MessageReadIn, data, "messageId")
        await self.messages.mark_read(username, payload.message_id)

    # 1:1 calls

    async def on_call_user(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(CallUserIn, data)
        await self.calls.call_user(username, payload.to, payload.offer, payload.is_video)

    async def on_answer_call(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(AnswerCallIn, data)
        await self.calls.answer_call(username, payload.to, payload.answer)

    async def on_reject_call(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(RejectCallIn, data)
        await self.calls.reject_call(username, payload.to, payload.reason)

    async def on_end_call(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(EndCallIn, data)
        await self.calls.end_call(username, payload.to)

    async def on_ice_candidate(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(IceCandidateIn, data)
        await self.calls.ice_candidate(username, payload.to, payload.candidate)

    # Group (room) calls

    async def on_room_call_invite(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(RoomCallInviteIn, data, "room")
        await self.group_calls.invite(username, payload.room, payload.is_video)

    async def on_room_call_join(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(RoomIn, data, "room")
        participants = await self.group_calls.join(username, payload.room)
        return {"ok": True, "room": payload.room, "participants": participants}

    async def on_room_call_signal(self, connection_id: str, data: Any) -> None:
        username = self._require_user(connection_id)
        payload = _parse(RoomCallSignalIn, data)
        await self.group_calls.signal(username, payload.room, payload.to, payload.type, payload.data)

    async def on_room_call_leave(self, connection_id: str, data: Any) -> dict:
        username = self._require_user(connection_id)
        payload = _parse(RoomIn, data, "room")
        if not await self.group_calls.leave(username, payload.room):
            raise NotFound(f"Not in a call in room '{payload.room}'")
        return {"ok": True, "room": payload.room}
