# tests/test_negotiator.py
import asyncio
import itertools
import json

import pytest

from fakes import FakePeerConnection, candidate_blob, make_negotiator, wait_until
from nat.candidates import DescriptionError
from nat.negotiator import NegotiationError, NegotiatorState
from util import metrics

pytestmark = pytest.mark.asyncio


async def _paired():
    a, b = make_negotiator("A"), make_negotiator("B")
    offer = await a.create_offer()
    answer = await b.receive_offer(offer)
    assert await a.receive_answer(answer) is True
    return a, b


async def test_create_offer_initializes_and_reports_candidates():
    n = make_negotiator("A")
    seen = []
    n.on_ice_candidate(seen.append)

    offer = await n.create_offer()

    assert n.state is NegotiatorState.NEGOTIATING
    assert offer["type"] == "offer" and offer["sdp"].startswith("v=0")
    assert len(seen) == 1
    assert seen[0]["sdpMid"] == "0" and seen[0]["candidate"].startswith("candidate:")
    assert n._pc.channel.label == "textEditor"


async def test_create_offer_rejected_once_connected():
    a, _ = await _paired()
    assert a.state is NegotiatorState.CONNECTED
    with pytest.raises(NegotiationError):
        await a.create_offer()


async def test_receive_offer_rejects_malformed_input():
    n = make_negotiator("B")
    with pytest.raises(DescriptionError):
        await n.receive_offer({"type": "offer"})
    with pytest.raises(DescriptionError):
        await n.receive_offer({"type": "answer", "sdp": "v=0\r\n"})
    with pytest.raises(DescriptionError):
        await n.receive_offer({"type": "offer", "sdp": "v=0\r\ns=-\r\n"})


async def test_receive_answer_applies_once():
    FakePeerConnection.auto_link = False
    a, b = make_negotiator("A"), make_negotiator("B")
    answer = await b.receive_offer(await a.create_offer())

    assert await a.receive_answer(answer) is True
    assert a._pc.signalingState == "stable"
    assert await a.receive_answer(answer) is False
    assert a._pc.remoteDescription.sdp == answer["sdp"]


async def test_duplicate_answers_racing_apply_once():
    FakePeerConnection.auto_link = False
    a, b = make_negotiator("A"), make_negotiator("B")
    answer = await b.receive_offer(await a.create_offer())

    results = await asyncio.gather(a.receive_answer(answer), a.receive_answer(answer))

    assert sorted(results) == [False, True]


async def test_answer_before_offer_is_ignored():
    n = make_negotiator("A")
    assert await n.receive_answer({"type": "answer", "sdp": "v=0\r\n"}) is False


async def test_channel_open_reports_status_then_connected_later():
    events = []
    a, b = make_negotiator("A", connected_delay=0.05), make_negotiator("B", connected_delay=0.05)
    a.on_status_change(lambda ok, reason: events.append(("status", ok, reason)))
    a.on_connected(lambda: events.append(("connected",)))

    answer = await b.receive_offer(await a.create_offer())
    await a.receive_answer(answer)

    assert events == [("status", True, "Connected")]
    assert b.state is NegotiatorState.CONNECTED
    await wait_until(lambda: ("connected",) in events)
    assert events.count(("connected",)) == 1


async def test_close_cancels_pending_connected_callback():
    fired = []
    a, b = make_negotiator("A", connected_delay=0.05), make_negotiator("B", connected_delay=0.05)
    a.on_connected(lambda: fired.append("a"))
    await a.receive_answer(await b.receive_offer(await a.create_offer()))

    await a.close()
    await asyncio.sleep(0.1)

    assert fired == []
    assert a.state is NegotiatorState.CLOSED


async def test_messages_flow_both_ways_as_json_objects():
    a, b = await _paired()
    got_a, got_b = [], []
    a.on_message(got_a.append)
    b.on_message(got_b.append)

    assert a.send_message({"type": "contentUpdate", "content": "hi"}) is True
    assert b.send_message({"type": "fontUpdate", "isNotoFont": True}) is True

    assert got_b == [{"type": "contentUpdate", "content": "hi"}]
    assert got_a == [{"type": "fontUpdate", "isNotoFont": True}]
    assert json.loads(a._channel.sent[0])["content"] == "hi"


async def test_non_object_messages_are_dropped():
    a, b = await _paired()
    got = []
    b.on_message(got.append)

    b._channel.emit("message", "not json")
    b._channel.emit("message", "[1, 2]")

    assert got == []


async def test_send_while_closed_returns_false_without_raising():
    n = make_negotiator("A")
    assert n.send_message({"type": "contentUpdate", "content": "x"}) is False

    a, b = await _paired()
    await a.close()
    assert a.send_message({"type": "contentUpdate", "content": "x"}) is False
    assert metrics.get("messages_dropped") == 2


async def test_peer_close_moves_to_closed_and_reports():
    a, b = await _paired()
    statuses = []
    b.on_status_change(lambda ok, reason: statuses.append((ok, reason)))

    await a.close()

    assert b.state is NegotiatorState.CLOSED
    assert statuses == [(False, "Disconnected")]


async def test_close_is_idempotent():
    a, _ = await _paired()
    statuses = []
    a.on_status_change(lambda ok, reason: statuses.append(ok))

    await a.close()
    await a.close()

    assert statuses == [False]


async def test_connection_failure_is_absorbing_until_closed():
    a = make_negotiator("A")
    statuses = []
    a.on_status_change(lambda ok, reason: statuses.append((ok, reason)))
    await a.create_offer()
    pc = a._pc

    pc.fail()

    assert a.state is NegotiatorState.FAILED
    assert statuses == [(False, "Connection failed")]
    with pytest.raises(NegotiationError):
        a.initialize()
    with pytest.raises(NegotiationError):
        await a.create_offer()

    await a.close()
    await a.close()

    assert a.state is NegotiatorState.CLOSED
    assert statuses == [(False, "Connection failed")]
    assert pc.closed


async def test_add_ice_candidate_swallows_ingestion_errors():
    n = make_negotiator("A")
    assert await n.add_ice_candidate(candidate_blob()) is False  # no connection yet

    await n.create_offer()
    n._pc.fail_add = True
    assert await n.add_ice_candidate(candidate_blob()) is False
    assert await n.add_ice_candidate({"candidate": "garbage", "sdpMid": "0"}) is False
    assert await n.add_ice_candidate({"candidate": "", "sdpMid": "0"}) is False
    assert n.remote_paths == set()


async def test_candidate_ingestion_is_order_independent():
    blobs = [
        candidate_blob("192.168.1.10", 50000),
        candidate_blob("192.168.1.11", 50001),
        candidate_blob("203.0.113.7", 61000),
        candidate_blob("192.168.1.10", 50000),
    ]
    results = set()
    for order in itertools.permutations(blobs):
        n = make_negotiator("A")
        await n.create_offer()
        for blob in order:
            await n.add_ice_candidate(blob)
        results.add(frozenset(n.remote_paths))

    assert len(results) == 1
    assert len(next(iter(results))) == 3


async def test_initialize_again_replaces_connection():
    n = make_negotiator("A")
    n.initialize()
    first = n._pc
    n.initialize()

    assert n._pc is not first
    await n.close()
    assert first.closed
