# tests/fakes.py
"""
In-process stand-ins for aiortc's peer connection and data channel.

Two FakePeerConnections link up when the offerer applies an answer produced
by the other: both channels open and the answerer receives its channel
through the "datachannel" event, already open, the way aiortc hands it over.
"""
import asyncio
import itertools

from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from nat.negotiator import TransportNegotiator

_ids = itertools.count(1)


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label: str):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent = []
        self.peer = None

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)
        if self.peer is not None and self.peer.readyState == "open":
            self.peer.emit("message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


class FakePeerConnection(AsyncIOEventEmitter):
    registry = {}
    auto_link = True
    created = []

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.n = next(_ids)
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channel = None
        self.added = []
        self.fail_add = False
        self.closed = False
        FakePeerConnection.created.append(self)

    @classmethod
    def reset(cls):
        cls.registry.clear()
        cls.created.clear()
        cls.auto_link = True

    def _sdp(self, kind: str) -> str:
        return (
            "v=0\r\n"
            f"o=- {self.n} 1 IN IP4 0.0.0.0\r\n"
            "s=-\r\n"
            "m=application 9 UDP/DTLS/SCTP webrtc-datachannel\r\n"
            "a=mid:0\r\n"
            f"a=candidate:{self.n} 1 udp 2130706431 10.0.0.{self.n % 250 + 1} 5000 typ host\r\n"
            f"a=x-kind:{kind}\r\n"
        )

    def createDataChannel(self, label):
        self.channel = FakeDataChannel(label)
        return self.channel

    async def createOffer(self):
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=self._sdp("offer"), type="offer")

    async def createAnswer(self):
        if self.signalingState != "have-remote-offer":
            raise RuntimeError(f"cannot answer in {self.signalingState}")
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=self._sdp("answer"), type="answer")

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"
        FakePeerConnection.registry[description.sdp] = self

    async def setRemoteDescription(self, description):
        await asyncio.sleep(0)
        if "m=application" not in description.sdp:
            raise ValueError("no data channel section in description")
        if description.type == "answer":
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"cannot apply answer in {self.signalingState}")
            self.remoteDescription = description
            self.signalingState = "stable"
            peer = FakePeerConnection.registry.get(description.sdp)
            if peer is not None and FakePeerConnection.auto_link:
                self._link(peer)
        else:
            self.remoteDescription = description
            self.signalingState = "have-remote-offer"

    def _link(self, peer):
        inbound = FakeDataChannel(self.channel.label)
        self.channel.peer = inbound
        inbound.peer = self.channel
        peer.channel = inbound
        for pc in (self, peer):
            pc.connectionState = "connected"
            pc.emit("connectionstatechange")
        self.channel.open()
        inbound.readyState = "open"
        peer.emit("datachannel", inbound)

    async def addIceCandidate(self, candidate):
        await asyncio.sleep(0)
        if self.fail_add:
            raise ValueError("candidate arrived after end-of-candidates")
        self.added.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.connectionState = "closed"
        if self.channel is not None:
            self.channel.close()

    def fail(self):
        self.connectionState = "failed"
        self.emit("connectionstatechange")


def make_negotiator(name: str = "", connected_delay: float = 0.01) -> TransportNegotiator:
    return TransportNegotiator(
        ice_servers=(),
        connected_delay=connected_delay,
        name=name,
        pc_factory=FakePeerConnection,
    )


def candidate_blob(host: str = "192.168.1.10", port: int = 50000, mid: str = "0") -> dict:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 {host} {port} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": 0,
    }


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(step)
