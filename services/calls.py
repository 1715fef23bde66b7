import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from services.registry import ConnectionRegistry
from services.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    OUTGOING = "outgoing"
    RINGING = "ringing"
    IN_CALL = "in-call"


@dataclass(eq=False)
class CallSession:
    caller: str
    callee: str
    is_video: bool = False
    offer: Any = None
    answer: Any = None
    answered: bool = False
    timer: Optional[asyncio.Task] = field(default=None, repr=False)

    def peer_of(self, username: str) -> Optional[str]:
        if username == self.caller:
            return self.callee
        if username == self.callee:
            return self.caller
        return None

    def state_of(self, username: str) -> CallState:
        if self.answered:
            return CallState.IN_CALL
        if username == self.caller:
            return CallState.OUTGOING
        if username == self.callee:
            return CallState.RINGING
        return CallState.IDLE


class CallManager:
    """Server-side 1:1 call state machine.

    caller: idle -> outgoing -> in-call -> idle
    callee: idle -> ringing  -> in-call -> idle
    Any non-idle state returns to idle on reject, end, timeout or disconnect.
    Offer, answer and ICE payloads are relayed without inspection.
    """

    def __init__(self, registry: ConnectionRegistry, transport: Transport, timeout: float = 30):
        self.registry = registry
        self.transport = transport
        self.timeout = timeout
        # username -> session; both participants point at the same session
        self._sessions: dict[str, CallSession] = {}

    def state(self, username: str) -> CallState:
        session = self._sessions.get(username)
        return session.state_of(username) if session else CallState.IDLE

    def session_of(self, username: str) -> Optional[CallSession]:
        return self._sessions.get(username)

    async def _send(self, username: str, event: str, data: dict) -> bool:
        connection_id = self.registry.resolve(username)
        if connection_id is None:
            logger.debug(f"Dropping {event} for offline user {username}")
            return False
        await self.transport.send(connection_id, event, data)
        return True

    def _session_with(self, username: str, peer: str) -> Optional[CallSession]:
        session = self._sessions.get(username)
        if session is None or session.peer_of(username) != peer:
            return None
        return session

    async def call_user(self, caller: str, callee: str, offer: Any, is_video: bool = False) -> bool:
        if caller == callee:
            logger.warning(f"{caller} tried to call themselves")
            return False
        if self.state(caller) != CallState.IDLE:
            logger.warning(f"call_user from {caller} ignored: caller is {self.state(caller).value}")
            return False
        if self.registry.resolve(callee) is None:
            logger.info(f"call_user from {caller} dropped: {callee} is offline")
            return False
        if self.state(callee) != CallState.IDLE:
            logger.info(f"{callee} is busy, rejecting call from {caller}")
            await self._send(caller, "call_rejected", {"from": callee, "reason": "busy"})
            return False

        session = CallSession(caller=caller, callee=callee, is_video=bool(is_video), offer=offer)
        self._sessions[caller] = session
        self._sessions[callee] = session
        session.timer = asyncio.create_task(self._expire(session))
        logger.info(f"Call started: {caller} -> {callee} (video={session.is_video})")
        await self._send(callee, "incoming_call", {"from": caller, "offer": offer, "isVideo": session.is_video})
        return True

    async def answer_call(self, callee: str, caller: str, answer: Any) -> bool:
        session = self._session_with(callee, caller)
        if session is None or session.callee != callee or session.answered:
            logger.warning(f"answer_call from {callee} to {caller} ignored: no ringing call")
            return False
        session.answered = True
        session.answer = answer
        self._disarm(session)
        logger.info(f"Call answered: {caller} <-> {callee}")
        await self._send(caller, "call_answered", {"from": callee, "answer": answer})
        return True

    async def ice_candidate(self, sender: str, to: str, candidate: Any) -> bool:
        if self._session_with(sender, to) is None:
            logger.debug(f"ice_candidate from {sender} to {to} dropped: no call between them")
            return False
        return await self._send(to, "ice_candidate", {"from": sender, "candidate": candidate})

    async def reject_call(self, sender: str, to: str, reason: Optional[str] = None) -> bool:
        session = self._session_with(sender, to)
        if session is None:
            return False
        self._end(session)
        logger.info(f"Call between {sender} and {to} rejected: {reason or 'rejected'}")
        await self._send(to, "call_rejected", {"from": sender, "reason": reason or "rejected"})
        return True

    async def end_call(self, sender: str, to: str) -> bool:
        session = self._session_with(sender, to)
        if session is None:
            return False
        self._end(session)
        logger.info(f"Call between {sender} and {to} ended by {sender}")
        await self._send(to, "call_ended", {"from": sender})
        return True

    async def on_disconnect(self, username: str) -> Optional[str]:
        session = self._sessions.get(username)
        if session is None:
            return None
        peer = session.peer_of(username)
        self._end(session)
        logger.info(f"Call between {username} and {peer} ended by disconnect")
        await self._send(peer, "call_ended", {"from": username})
        return peer

    async def _expire(self, session: CallSession):
        await asyncio.sleep(self.timeout)
        if self._sessions.get(session.caller) is not session or session.answered:
            return
        self._end(session)
        logger.info(f"Call {session.caller} -> {session.callee} timed out")
        await self._send(session.callee, "call_ended", {"from": session.caller})
        await self._send(session.caller, "call_rejected", {"from": session.callee, "reason": "no_answer"})

    def _disarm(self, session: CallSession):
        timer = session.timer
        session.timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    def _end(self, session: CallSession):
        self._disarm(session)
        for username in (session.caller, session.callee):
            if self._sessions.get(username) is session:
                del self._sessions[username]

    def shutdown(self):
        for session in set(self._sessions.values()):
            self._end(session)
