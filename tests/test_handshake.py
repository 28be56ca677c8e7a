# tests/test_handshake.py
"""End-to-end handshake scenarios on the in-process bus."""

import asyncio
import gc
from unittest.mock import AsyncMock, Mock, patch

import pytest

from shhsignal.bus import TOPIC_OFFER, TOPIC_REJECT, TOPIC_SIGNAL, Envelope
from shhsignal.client import SignalClient
from shhsignal.codec import decode, encode
from shhsignal.handshake import PendingResult
from shhsignal.peer import LoopbackPeerConnection, PeerConnection
from shhsignal.robustness import (
    ERR_CONNECTION_TIMEOUT,
    ERR_PREMATURE_CLOSE,
    ConnectionTimeout,
    InvalidStateError,
    PrematureClose,
    Rejected,
    SignalError,
)
from shhsignal.session import SessionState

OFFER = {"type": "offer", "sdp": "v=0\r\n"}
S1 = {"type": "candidate", "candidate": {"candidate": "candidate:1"}}
S2 = {"type": "candidate", "candidate": {"candidate": "candidate:2"}}


async def start_pair(bus, **options):
    alice = SignalClient(bus, **options)
    bob = SignalClient(bus, **options)
    await alice.start()
    await bob.start()
    return alice, bob


async def settle(pending: PendingResult, timeout: float = 2.0):
    return await asyncio.wait_for(pending.future, timeout)


class RecordingFactory:
    """Peer factory that keeps every peer it creates."""

    def __init__(self, **defaults):
        self.defaults = defaults
        self.created = []

    def __call__(self, **options):
        peer = LoopbackPeerConnection(**{**self.defaults, **options})
        self.created.append(peer)
        return peer


async def raw_sender(bus):
    """Key ids for a hand-driven remote party: (signing key id, signer identity, public key)."""
    sig_key = await bus.new_key_pair()
    enc_key = await bus.new_key_pair()
    return sig_key, await bus.get_public_key(sig_key), await bus.get_public_key(enc_key)


async def send(bus, topic, payload, sig_key, recipient):
    await bus.post(Envelope(topic=topic, payload=encode(payload), sig=sig_key, pub_key=recipient))


@pytest.mark.asyncio
async def test_accept_scenario(bus):
    alice, bob = await start_pair(bus)
    requests, bob_results = [], []

    def on_request(request):
        requests.append(request)
        bob_results.append(request.accept({"name": "bob"}))

    bob.on("request", on_request)
    result = await settle(alice.connect(bob.identity, {"name": "alice"}))

    assert result.metadata == {"name": "bob"}
    assert requests[0].metadata == {"name": "alice"}
    assert requests[0].initiator == alice.identity

    bob_result = await settle(bob_results[0])
    assert bob_result.metadata == {"name": "alice"}
    assert alice.peers() == [result.peer]
    assert bob.peers() == [bob_result.peer]
    assert len(alice.timers) == 0
    assert len(bob.timers) == 0
    assert alice.registry.list_sessions()[0].state is SessionState.CONNECTED

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_accept_with_duplicated_delivery(make_bus):
    bus = make_bus(duplicates=1)
    alice, bob = await start_pair(bus)
    requests = []
    bob.on("request", lambda request: requests.append(request) or request.accept())

    result = await settle(alice.connect(bob.identity))
    assert result.metadata == {}
    assert len(requests) == 1

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_initiator_sees_connect_before_stream(bus, pump):
    alice = SignalClient(bus, peer_factory=RecordingFactory(streams=["camera"], tracks=[("audio", "camera")]))
    bob = SignalClient(bus)
    await alice.start()
    await bob.start()
    bob.on("request", lambda request: request.accept())

    pending = alice.connect(bob.identity)
    result = await pending
    seen = []
    result.peer.on("connect", lambda: seen.append("connect"))
    result.peer.on("stream", lambda stream: seen.append(("stream", stream)))
    result.peer.on("track", lambda track, stream: seen.append(("track", track)))

    await pump(5)
    assert seen == ["connect", ("stream", "camera"), ("track", "audio")]

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_responder_sees_connect_before_stream(bus, pump):
    alice = SignalClient(bus)
    bob = SignalClient(bus, peer_factory=RecordingFactory(streams=["camera"]))
    await alice.start()
    await bob.start()
    seen = []

    async def watch(pending):
        result = await pending
        result.peer.on("connect", lambda: seen.append("connect"))
        result.peer.on("stream", lambda stream: seen.append(("stream", stream)))

    bob.on("request", lambda request: asyncio.ensure_future(watch(request.accept())))
    await settle(alice.connect(bob.identity))
    await pump(10)
    assert seen == ["connect", ("stream", "camera")]

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_reject_scenario(bus, pump):
    factory = RecordingFactory()
    alice = SignalClient(bus)
    bob = SignalClient(bus, peer_factory=factory)
    await alice.start()
    await bob.start()
    requests = []

    def on_request(request):
        requests.append(request)
        request.reject({"reason": "busy"})

    bob.on("request", on_request)

    with pytest.raises(Rejected) as exc_info:
        await settle(alice.connect(bob.identity, {"name": "alice"}))
    assert exc_info.value.metadata == {"reason": "busy"}
    assert factory.created == []
    assert bob.peers() == []
    assert len(alice.registry) == 0

    # Reject is terminal: a late signal for the same session is ignored
    raw_id = requests[0].session.raw_id
    scoped_id = requests[0].session_id
    await send(bus, TOPIC_SIGNAL, {"signal": S1, "sessionId": raw_id},
               alice.handshake.keys.sig_key_id, bob.identity.public_key)
    await pump()
    assert scoped_id not in bob.registry
    assert bob.registry.is_finalized(scoped_id)
    assert len(bob.timers) == 0

    with pytest.raises(InvalidStateError):
        requests[0].accept()

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_timeout_scenario(bus):
    alice, bob = await start_pair(bus, connection_timeout=50)
    bob.on("request", lambda request: None)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ConnectionTimeout) as exc_info:
        await settle(alice.connect(bob.identity))
    elapsed = loop.time() - started

    assert exc_info.value.code == ERR_CONNECTION_TIMEOUT
    assert exc_info.value.metadata == {"code": ERR_CONNECTION_TIMEOUT}
    assert 0.045 <= elapsed < 1.0
    assert len(alice.registry) == 0
    assert len(alice.timers) == 0

    await asyncio.sleep(0.1)
    assert len(bob.registry) == 0  # unanswered request expired too

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_signals_queued_before_accept_flush_in_order(bus, pump):
    factory = RecordingFactory()
    bob = SignalClient(bus, peer_factory=factory)
    await bob.start()
    sig_key, signer, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)

    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER, "metadata": {}, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await send(bus, TOPIC_SIGNAL, {"pubKey": public_key, "signal": S1, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await send(bus, TOPIC_SIGNAL, {"pubKey": public_key, "signal": S2, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await pump()

    assert len(requests) == 1
    session = bob.registry.get(f"{signer}:t1")
    assert session.state is SessionState.PENDING_OFFER
    assert session.pending_signals == [OFFER, S1, S2]

    requests[0].accept()
    assert factory.created[0].received_signals == [OFFER, S1, S2]
    assert session.pending_signals is None
    assert session.state is SessionState.SIGNALING

    await bob.close()


@pytest.mark.asyncio
async def test_signals_racing_ahead_of_offer(bus, pump):
    factory = RecordingFactory()
    bob = SignalClient(bus, peer_factory=factory)
    await bob.start()
    sig_key, signer, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)

    await send(bus, TOPIC_SIGNAL, {"pubKey": public_key, "signal": S1, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await pump()
    session = bob.registry.get(f"{signer}:t1")
    assert session.state is SessionState.QUEUED
    assert requests == []

    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER, "metadata": {"n": 1}, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await pump()
    assert len(requests) == 1
    assert requests[0].metadata == {"n": 1}
    assert session.state is SessionState.PENDING_OFFER

    requests[0].accept()
    assert factory.created[0].received_signals == [S1, OFFER]

    await bob.close()


@pytest.mark.asyncio
async def test_duplicate_offer_is_ignored(bus, pump):
    bob = SignalClient(bus)
    await bob.start()
    sig_key, signer, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)
    offer = {"pubKey": public_key, "signal": OFFER, "metadata": {}, "sessionId": "t1"}

    await send(bus, TOPIC_OFFER, offer, sig_key, bob.identity.public_key)
    await send(bus, TOPIC_OFFER, offer, sig_key, bob.identity.public_key)
    await pump()
    assert len(requests) == 1
    assert bob.registry.get(f"{signer}:t1").pending_signals == [OFFER]

    requests[0].accept()
    await send(bus, TOPIC_OFFER, offer, sig_key, bob.identity.public_key)
    await pump()
    assert len(requests) == 1

    await bob.close()


@pytest.mark.asyncio
async def test_same_token_from_different_signers_are_separate_sessions(bus, pump):
    bob = SignalClient(bus)
    await bob.start()
    first = await raw_sender(bus)
    second = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)

    for sig_key, _, public_key in (first, second):
        await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER, "metadata": {}, "sessionId": "t1"},
                   sig_key, bob.identity.public_key)
    await pump()

    assert len(requests) == 2
    assert {r.session_id for r in requests} == {f"{first[1]}:t1", f"{second[1]}:t1"}

    await bob.close()


@pytest.mark.asyncio
async def test_incomplete_offer_is_dropped(bus, pump):
    bob = SignalClient(bus)
    await bob.start()
    sig_key, _, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)

    await send(bus, TOPIC_OFFER, {"signal": OFFER, "sessionId": "t1"}, sig_key, bob.identity.public_key)
    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "sessionId": "t1"}, sig_key, bob.identity.public_key)
    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER}, sig_key, bob.identity.public_key)
    await pump()
    assert requests == []
    assert len(bob.registry) == 0

    await bob.close()


@pytest.mark.asyncio
async def test_reject_before_decision_tears_down_silently(bus, pump):
    bob = SignalClient(bus)
    await bob.start()
    sig_key, signer, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)

    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER, "metadata": {}, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await pump()
    await send(bus, TOPIC_REJECT, {"metadata": {}, "sessionId": "t1"}, sig_key, bob.identity.public_key)
    await pump()

    assert len(bob.registry) == 0
    assert bob.registry.is_finalized(f"{signer}:t1")
    with pytest.raises(InvalidStateError):
        requests[0].accept()

    await bob.close()


@pytest.mark.asyncio
async def test_request_answers_exactly_once(bus, pump):
    bob = SignalClient(bus)
    await bob.start()
    sig_key, _, public_key = await raw_sender(bus)
    requests = []
    bob.on("request", requests.append)
    await send(bus, TOPIC_OFFER, {"pubKey": public_key, "signal": OFFER, "metadata": {}, "sessionId": "t1"},
               sig_key, bob.identity.public_key)
    await pump()

    requests[0].accept()
    with pytest.raises(InvalidStateError):
        requests[0].accept()
    with pytest.raises(InvalidStateError):
        requests[0].reject()
    assert len(bob.peers()) == 1

    await bob.close()


@pytest.mark.asyncio
async def test_premature_close(bus, pump):
    alice, bob = await start_pair(bus)
    bob.on("request", lambda request: None)

    pending = alice.connect(bob.identity)
    session = alice.registry.list_sessions()[0]
    session.peer.destroy()

    with pytest.raises(PrematureClose) as exc_info:
        await settle(pending)
    assert exc_info.value.code == ERR_PREMATURE_CLOSE
    assert len(alice.registry) == 0
    assert len(alice.timers) == 0

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_close_after_connect_only_tears_down(bus, pump):
    alice, bob = await start_pair(bus)
    bob.on("request", lambda request: request.accept())
    result = await settle(alice.connect(bob.identity))

    closed = []
    result.peer.on("close", lambda: closed.append(True))
    result.peer.destroy()
    await pump()

    assert closed == [True]
    assert alice.peers() == []
    assert result.peer.destroyed

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_failed_post_is_logged_and_session_survives(bus, pump):
    alice, bob = await start_pair(bus)
    with patch.object(bus, "post", AsyncMock(side_effect=SignalError("bus down"))):
        with patch("shhsignal.handshake.log_with_context") as log:
            pending = alice.connect(bob.identity)
            await pump()
            assert log.call_count >= 1
            assert "bus down" in log.call_args[0][0]
    assert not pending.done
    assert len(alice.registry) == 1

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_connect_before_stream_when_awaited_in_a_task(bus, pump):
    alice = SignalClient(bus, peer_factory=RecordingFactory(streams=["camera"]))
    bob = SignalClient(bus)
    await alice.start()
    await bob.start()
    bob.on("request", lambda request: request.accept())

    async def go():
        return await alice.connect(bob.identity)

    result = await asyncio.create_task(go())
    seen = []
    result.peer.on("connect", lambda: seen.append("connect"))
    result.peer.on("stream", lambda stream: seen.append(("stream", stream)))

    await pump(5)
    assert seen == ["connect", ("stream", "camera")]

    await alice.close()
    await bob.close()


class ScriptedPeer(PeerConnection):
    """Peer whose outbound signals are emitted by the test."""

    def __init__(self, **options):
        super().__init__(**options)
        self.received = []

    def signal(self, payload):
        self.received.append(payload)

    def destroy(self):
        if not self.destroyed:
            self.destroyed = True
            self.emit("close")


class ScriptedFactory:
    def __init__(self):
        self.created = []

    def __call__(self, **options):
        peer = ScriptedPeer(**options)
        self.created.append(peer)
        return peer


@pytest.mark.asyncio
async def test_initiator_sends_only_first_description_on_offer_topic(bus, pump):
    factory = ScriptedFactory()
    alice = SignalClient(bus, peer_factory=factory)
    bob = SignalClient(bus)
    await alice.start()
    await bob.start()
    requests = []
    bob.on("request", requests.append)

    alice.connect(bob.identity, {"name": "alice"})
    inner = factory.created[0]
    renegotiation = {"type": "offer", "sdp": "v=1\r\n"}
    inner.emit("signal", OFFER)
    inner.emit("signal", S1)
    inner.emit("signal", renegotiation)
    await alice.flush()
    await pump()

    assert [message.topic for message in bus.posted] == [TOPIC_OFFER, TOPIC_SIGNAL, TOPIC_SIGNAL]
    payloads = [decode(message.payload) for message in bus.posted]
    assert [payload["signal"] for payload in payloads] == [OFFER, S1, renegotiation]
    raw_id = alice.registry.list_sessions()[0].raw_id
    assert all(payload["sessionId"] == raw_id for payload in payloads)
    assert all(payload["pubKey"] == alice.identity.public_key for payload in payloads)
    assert all(payload["metadata"] == {"name": "alice"} for payload in payloads)
    assert len(requests) == 1
    assert requests[0].session.pending_signals == [OFFER, S1, renegotiation]

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_unawaited_failed_result_does_not_warn(pump):
    loop = asyncio.get_running_loop()
    handler = Mock()
    loop.set_exception_handler(handler)
    try:
        result = PendingResult("alice:token")
        assert result.fail(PrematureClose())
        await pump(2)
        del result
        gc.collect()
        await pump(2)
        handler.assert_not_called()
    finally:
        loop.set_exception_handler(None)


@pytest.mark.asyncio
async def test_awaiting_failed_result_still_raises():
    result = PendingResult("alice:token")
    result.fail(PrematureClose())
    with pytest.raises(PrematureClose):
        await result
