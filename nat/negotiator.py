# nat/negotiator.py
import asyncio
import json
import logging
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterable, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from pyee.asyncio import AsyncIOEventEmitter

from nat.candidates import (
    CandidateError,
    DescriptionError,
    PathKey,
    candidate_from_blob,
    candidates_from_sdp,
    description_from_blob,
    description_to_blob,
    path_key,
)
from util.config import CHANNEL_LABEL, CONNECTED_DELAY_S, DEFAULT_ICE_SERVERS
from util.events import Subscription, listen
from util.metrics import incr

logger = logging.getLogger(__name__)

STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_FAILED = "Connection failed"


class NegotiatorState(Enum):
    UNINITIALIZED = auto()
    NEGOTIATING = auto()
    CONNECTED = auto()
    CLOSED = auto()
    FAILED = auto()


class NegotiationError(Exception):
    pass


class TransportNegotiator:
    """
    One aiortc peer connection plus the single data channel carried on it.

    The offerer opens the channel itself in create_offer(); the answerer picks
    it up from the "datachannel" event. Local ICE candidates are reported
    through on_ice_candidate() as browser-style blobs so the coordinator can
    trickle them through the relay.
    """

    def __init__(
        self,
        ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS,
        channel_label: str = CHANNEL_LABEL,
        connected_delay: float = CONNECTED_DELAY_S,
        name: str = "",
        pc_factory: Callable[..., Any] = RTCPeerConnection,
    ):
        self.name = name
        self.ice_servers = tuple(ice_servers)
        self.channel_label = channel_label
        self.connected_delay = connected_delay
        self._pc_factory = pc_factory

        self._state = NegotiatorState.UNINITIALIZED
        self._pc: Optional[Any] = None
        self._channel: Optional[Any] = None
        self._events = AsyncIOEventEmitter()
        self._events.on("error", self._on_handler_error)
        self._answer_lock = asyncio.Lock()
        self._connected_timer: Optional[asyncio.TimerHandle] = None
        self._announced: Set[str] = set()
        self._remote_paths: Set[PathKey] = set()
        self._retired: Set[asyncio.Task] = set()

    # ---------------- state ----------------
    @property
    def state(self) -> NegotiatorState:
        return self._state

    @property
    def remote_paths(self) -> Set[PathKey]:
        return set(self._remote_paths)

    def is_channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    # ---------------- event subscriptions ----------------
    def on_status_change(self, cb: Callable[[bool, str], Any]) -> Subscription:
        return listen(self._events, "status", cb)

    def on_message(self, cb: Callable[[Dict[str, Any]], Any]) -> Subscription:
        return listen(self._events, "message", cb)

    def on_ice_candidate(self, cb: Callable[[Dict[str, Any]], Any]) -> Subscription:
        return listen(self._events, "ice_candidate", cb)

    def on_connected(self, cb: Callable[[], Any]) -> Subscription:
        return listen(self._events, "connected", cb)

    # ---------------- negotiation ----------------
    def initialize(self) -> None:
        if self._state in (NegotiatorState.CLOSED, NegotiatorState.FAILED):
            raise NegotiationError(f"[{self.name}] cannot initialize a {self._state.name.lower()} transport")
        if self._pc is not None:
            logger.info(f"[{self.name}] replacing existing peer connection")
            self._retire(self._pc, self._channel)
            self._channel = None
            self._cancel_connected_timer()

        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
        pc = self._pc_factory(configuration=config)
        self._pc = pc
        self._announced.clear()
        self._remote_paths.clear()
        self._state = NegotiatorState.NEGOTIATING

        @pc.on("datachannel")
        def _on_datachannel(channel):
            if pc is not self._pc:
                return
            logger.info(f"[{self.name}] inbound data channel '{channel.label}'")
            self._bind_channel(channel)

        @pc.on("connectionstatechange")
        def _on_connection_state():
            if pc is not self._pc:
                return
            logger.info(f"[{self.name}] connection state: {pc.connectionState}")
            if pc.connectionState == "failed":
                self._fail()

    def _require_negotiable(self, op: str) -> Any:
        if self._state not in (NegotiatorState.UNINITIALIZED, NegotiatorState.NEGOTIATING):
            raise NegotiationError(f"[{self.name}] {op} not allowed while {self._state.name.lower()}")
        if self._pc is None:
            self.initialize()
        return self._pc

    async def create_offer(self) -> Dict[str, str]:
        pc = self._require_negotiable("create_offer")
        if self._channel is None:
            self._bind_channel(pc.createDataChannel(self.channel_label))
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        self._announce_local_candidates()
        logger.info(f"[{self.name}] offer created")
        return description_to_blob(pc.localDescription)

    async def receive_offer(self, offer: Any) -> Dict[str, str]:
        remote = description_from_blob(offer, expected_type="offer")
        pc = self._require_negotiable("receive_offer")
        try:
            await pc.setRemoteDescription(remote)
        except ValueError as e:
            raise DescriptionError(f"offer rejected: {e}") from e
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        self._announce_local_candidates()
        logger.info(f"[{self.name}] answer created")
        return description_to_blob(pc.localDescription)

    async def receive_answer(self, answer: Any) -> bool:
        """Apply the remote answer once; later copies are ignored."""
        async with self._answer_lock:
            pc = self._pc
            if pc is None or self._state is not NegotiatorState.NEGOTIATING:
                logger.debug(f"[{self.name}] answer ignored while {self._state.name.lower()}")
                return False
            if pc.signalingState != "have-local-offer":
                logger.debug(f"[{self.name}] answer ignored in signaling state {pc.signalingState}")
                return False
            remote = description_from_blob(answer, expected_type="answer")
            try:
                await pc.setRemoteDescription(remote)
            except ValueError as e:
                raise DescriptionError(f"answer rejected: {e}") from e
            logger.info(f"[{self.name}] answer applied")
            return True

    async def add_ice_candidate(self, blob: Any) -> bool:
        pc = self._pc
        if pc is None or self._state in (NegotiatorState.CLOSED, NegotiatorState.FAILED):
            logger.debug(f"[{self.name}] candidate dropped, no live connection")
            return False
        try:
            candidate = candidate_from_blob(blob)
            key = path_key(blob)
            await pc.addIceCandidate(candidate)
        except CandidateError as e:
            incr("candidates_rejected", 1)
            logger.debug(f"[{self.name}] malformed candidate: {e}")
            return False
        except Exception as e:
            # late candidates after negotiation finished on another path
            incr("candidates_rejected", 1)
            logger.debug(f"[{self.name}] candidate not ingested: {e}")
            return False
        self._remote_paths.add(key)
        incr("candidates_ingested", 1)
        return True

    # ---------------- messaging ----------------
    def send_message(self, payload: Any) -> bool:
        if not self.is_channel_open():
            incr("messages_dropped", 1)
            return False
        try:
            data = json.dumps(payload, separators=(",", ":"))
            self._channel.send(data)
        except Exception as e:
            incr("messages_dropped", 1)
            logger.warning(f"[{self.name}] send failed: {e}")
            return False
        incr("messages_sent", 1)
        return True

    async def close(self) -> None:
        if self._state is NegotiatorState.CLOSED:
            return
        # failure was already reported; closing it only releases resources
        already_down = self._state in (NegotiatorState.UNINITIALIZED, NegotiatorState.FAILED)
        self._state = NegotiatorState.CLOSED
        self._cancel_connected_timer()
        channel, pc = self._channel, self._pc
        self._channel = None
        if channel is not None:
            channel.close()
        if pc is not None:
            await pc.close()
        if self._retired:
            await asyncio.gather(*self._retired, return_exceptions=True)
        if not already_down:
            self._emit_status(False, STATUS_DISCONNECTED)
        logger.info(f"[{self.name}] closed")

    # ---------------- internals ----------------
    def _bind_channel(self, channel) -> None:
        self._channel = channel

        @channel.on("open")
        def _on_open():
            self._on_channel_open(channel)

        @channel.on("close")
        def _on_close():
            self._on_channel_close(channel)

        @channel.on("message")
        def _on_message(raw):
            self._on_channel_message(raw)

        # inbound channels may already be open when handed over
        if channel.readyState == "open":
            self._on_channel_open(channel)

    def _on_channel_open(self, channel) -> None:
        if channel is not self._channel or self._state is not NegotiatorState.NEGOTIATING:
            return
        self._state = NegotiatorState.CONNECTED
        logger.info(f"[{self.name}] data channel open")
        self._emit_status(True, STATUS_CONNECTED)
        loop = asyncio.get_running_loop()
        self._connected_timer = loop.call_later(self.connected_delay, self._fire_connected)

    def _on_channel_close(self, channel) -> None:
        if channel is not self._channel or self._state is not NegotiatorState.CONNECTED:
            return
        self._state = NegotiatorState.CLOSED
        self._cancel_connected_timer()
        self._emit_status(False, STATUS_DISCONNECTED)

    def _on_channel_message(self, raw) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8", "replace")
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning(f"[{self.name}] undecodable message dropped: {e}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"[{self.name}] non-object message dropped")
            return
        incr("messages_received", 1)
        self._events.emit("message", payload)

    def _fire_connected(self) -> None:
        self._connected_timer = None
        if self._state is NegotiatorState.CONNECTED:
            self._events.emit("connected")

    def _fail(self) -> None:
        if self._state not in (NegotiatorState.NEGOTIATING, NegotiatorState.CONNECTED):
            return
        self._state = NegotiatorState.FAILED
        self._cancel_connected_timer()
        self._emit_status(False, STATUS_FAILED)

    def _cancel_connected_timer(self) -> None:
        if self._connected_timer is not None:
            self._connected_timer.cancel()
            self._connected_timer = None

    def _announce_local_candidates(self) -> None:
        description = self._pc.localDescription if self._pc else None
        if description is None:
            return
        for blob in candidates_from_sdp(description.sdp):
            if blob["candidate"] in self._announced:
                continue
            self._announced.add(blob["candidate"])
            self._events.emit("ice_candidate", blob)

    def _emit_status(self, connected: bool, reason: str) -> None:
        self._events.emit("status", connected, reason)

    def _retire(self, pc, channel) -> None:
        async def _close_old():
            if channel is not None:
                channel.close()
            await pc.close()

        task = asyncio.ensure_future(_close_old())
        self._retired.add(task)
        task.add_done_callback(self._retired.discard)

    def _on_handler_error(self, exc: Exception) -> None:
        logger.warning(f"[{self.name}] event handler failed: {exc!r}")
