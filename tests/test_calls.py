import asyncio

import pytest

from services.calls import CallState

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


@pytest.fixture
def pair(login):
    async def _pair():
        await login("c1", "alice")
        await login("c2", "bob")

    return _pair


@pytest.mark.asyncio
async def test_call_answer_and_end(service, transport, pair):
    await pair()

    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER, "isVideo": True})
    assert service.calls.state("alice") == CallState.OUTGOING
    assert service.calls.state("bob") == CallState.RINGING
    assert transport.events("c2", "incoming_call") == [{"from": "alice", "offer": OFFER, "isVideo": True}]

    await service.handle("c2", "answer_call", {"to": "alice", "answer": ANSWER})
    assert service.calls.state("alice") == CallState.IN_CALL
    assert service.calls.state("bob") == CallState.IN_CALL
    assert transport.events("c1", "call_answered") == [{"from": "bob", "answer": ANSWER}]

    await service.handle("c1", "end_call", {"to": "bob"})
    assert transport.events("c2", "call_ended") == [{"from": "alice"}]
    assert service.calls.state("alice") == CallState.IDLE
    assert service.calls.state("bob") == CallState.IDLE


@pytest.mark.asyncio
async def test_ice_candidates_relay_only_between_call_peers(service, transport, pair, login):
    await pair()
    await login("c3", "carol")
    candidate = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.1 54400 typ host"}

    await service.handle("c1", "ice_candidate", {"to": "bob", "candidate": candidate})
    assert transport.events("c2", "ice_candidate") == []

    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c1", "ice_candidate", {"to": "bob", "candidate": candidate})
    await service.handle("c3", "ice_candidate", {"to": "bob", "candidate": candidate})

    assert transport.events("c2", "ice_candidate") == [{"from": "alice", "candidate": candidate}]
    assert service.calls.state("bob") == CallState.RINGING


@pytest.mark.asyncio
async def test_busy_callee_rejects_automatically(service, transport, pair, login):
    await pair()
    await login("c3", "carol")
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})

    await service.handle("c3", "call_user", {"to": "bob", "offer": OFFER})

    assert transport.events("c3", "call_rejected") == [{"from": "bob", "reason": "busy"}]
    assert service.calls.state("carol") == CallState.IDLE
    assert len(transport.events("c2", "incoming_call")) == 1


@pytest.mark.asyncio
async def test_call_to_offline_user_is_dropped(service, transport, login):
    await login("c1", "alice")
    transport.clear()
    await service.handle("c1", "call_user", {"to": "ghost", "offer": OFFER})
    assert service.calls.state("alice") == CallState.IDLE
    assert transport.sent == []


@pytest.mark.asyncio
async def test_caller_cannot_start_second_call(service, transport, pair, login):
    await pair()
    await login("c3", "carol")
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c1", "call_user", {"to": "carol", "offer": OFFER})
    assert transport.events("c3", "incoming_call") == []
    assert service.calls.state("carol") == CallState.IDLE


@pytest.mark.asyncio
async def test_reject_call(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c2", "reject_call", {"to": "alice", "reason": "declined"})

    assert transport.events("c1", "call_rejected") == [{"from": "bob", "reason": "declined"}]
    assert service.calls.state("alice") == CallState.IDLE
    assert service.calls.state("bob") == CallState.IDLE


@pytest.mark.asyncio
async def test_caller_cannot_answer_own_call(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c1", "answer_call", {"to": "bob", "answer": ANSWER})
    assert transport.events("c2", "call_answered") == []
    assert service.calls.state("alice") == CallState.OUTGOING


@pytest.mark.asyncio
async def test_unanswered_call_times_out_once(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})

    await asyncio.sleep(0.2)

    assert transport.events("c2", "call_ended") == [{"from": "alice"}]
    assert transport.events("c1", "call_rejected") == [{"from": "bob", "reason": "no_answer"}]
    assert service.calls.state("alice") == CallState.IDLE
    assert service.calls.state("bob") == CallState.IDLE


@pytest.mark.asyncio
async def test_answered_call_does_not_time_out(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c2", "answer_call", {"to": "alice", "answer": ANSWER})

    await asyncio.sleep(0.2)

    assert service.calls.state("alice") == CallState.IN_CALL
    assert transport.events("c2", "call_ended") == []


@pytest.mark.asyncio
async def test_stale_timeout_does_not_end_new_call(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    first = service.calls.session_of("alice")
    await service.handle("c1", "end_call", {"to": "bob"})
    assert first.timer is None

    await asyncio.sleep(0.03)
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c2", "answer_call", {"to": "alice", "answer": ANSWER})
    await asyncio.sleep(0.1)

    assert service.calls.state("alice") == CallState.IN_CALL
    assert transport.events("c2", "call_ended") == [{"from": "alice"}]


@pytest.mark.asyncio
async def test_disconnect_ends_call_for_peer(service, transport, pair, drop):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})
    await service.handle("c2", "answer_call", {"to": "alice", "answer": ANSWER})

    await drop("c2")

    assert transport.events("c1", "call_ended") == [{"from": "bob"}]
    assert service.calls.state("alice") == CallState.IDLE


@pytest.mark.asyncio
async def test_call_events_before_username_are_dropped(service, transport):
    transport.open("c1")
    assert await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER}) is None
    assert transport.sent == []


@pytest.mark.asyncio
async def test_renaming_hangs_up_calls_of_old_name(service, transport, pair):
    await pair()
    await service.handle("c1", "call_user", {"to": "bob", "offer": OFFER})

    reply = await service.handle("c1", "set_username", "alicia")

    assert reply["ok"] is True
    assert transport.events("c2", "call_ended") == [{"from": "alice"}]
    assert service.calls.state("alice") == CallState.IDLE
    assert service.calls.state("bob") == CallState.IDLE
