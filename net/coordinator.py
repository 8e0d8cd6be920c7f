import asyncio
import secrets
import string
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from nat.candidates import CandidateEnvelope, CandidateError
from net.relay import RelayError, RelayStore
from util.config import CLEANUP_DELAY_S, RETRY_DELAY_S, SESSION_KEY
from util.events import Subscription
from util.log import log
from util.metrics import incr, now_ms

CANDIDATES = "candidates"
ANSWER = "answer"
_ID_ALPHABET = string.digits + string.ascii_lowercase


class Role(Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"
    STALE = "stale"


class CoordinatorState(Enum):
    IDLE = auto()
    OFFERING = auto()
    ANSWERING = auto()
    BACKOFF = auto()
    CLEANING = auto()
    DONE = auto()
    CLOSED = auto()


_FINISHED = (CoordinatorState.CLEANING, CoordinatorState.DONE, CoordinatorState.CLOSED)


class PairingError(Exception):
    pass


class Transport(Protocol):
    """The slice of TransportNegotiator the coordinator is allowed to drive."""

    def initialize(self) -> None: ...
    async def create_offer(self) -> Dict[str, Any]: ...
    async def receive_offer(self, offer: Any) -> Dict[str, Any]: ...
    async def receive_answer(self, answer: Any) -> bool: ...
    async def add_ice_candidate(self, blob: Any) -> bool: ...
    def on_ice_candidate(self, cb: Callable[[Dict[str, Any]], Any]) -> Subscription: ...
    def on_connected(self, cb: Callable[[], Any]) -> Subscription: ...


def generate_participant_id() -> str:
    return "user_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def _is_offer(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "offer" and isinstance(value.get("sdp"), str)


def decide_role(document: Any) -> Role:
    """
    Absent, invalid, or offer-less document -> offerer.
    Offer without answer -> answerer.
    Both present -> stale leftovers of an earlier attempt.
    """
    if not isinstance(document, dict) or not _is_offer(document.get("offer")):
        return Role.OFFERER
    if not document.get("answer"):
        return Role.ANSWERER
    return Role.STALE


class PairingCoordinator:
    """
    Drives one participant through the offer/answer handshake over the relay.

    Nothing here holds a lock on the session document: both participants
    read it once, pick a role from what they saw, and from then on only add
    to it (answer field, candidate children) until the winner of the
    transport deletes it.
    """

    def __init__(
        self,
        relay: RelayStore,
        transport: Transport,
        *,
        session_key: str = SESSION_KEY,
        participant_id: Optional[str] = None,
        retry_delay: float = RETRY_DELAY_S,
        cleanup_delay: float = CLEANUP_DELAY_S,
        exclusive_create: bool = False,
    ) -> None:
        self.relay = relay
        self.transport = transport
        self.session_key = session_key
        self.participant_id = participant_id or generate_participant_id()
        self.retry_delay = retry_delay
        self.cleanup_delay = cleanup_delay
        self.exclusive_create = exclusive_create

        self._state = CoordinatorState.IDLE
        self._role: Optional[Role] = None
        self._ready = False
        self._pending_local: List[Dict[str, Any]] = []
        self._pending_remote: List[Dict[str, Any]] = []
        self._seen_children: Set[str] = set()
        # bumped whenever the document we listen to is dropped or replaced
        self._generation = 0
        self._candidate_sub: Optional[Subscription] = None
        self._answer_sub: Optional[Subscription] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._transport_subs = [
            transport.on_ice_candidate(self._on_local_candidate),
            transport.on_connected(self._on_transport_connected),
        ]

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    # ---------------- entry points ----------------
    async def start_pairing(self) -> Optional[Role]:
        """Top-level entry: failures are logged and pairing stops there."""
        try:
            return await self.attempt_pairing()
        except Exception as e:
            incr("pairing_failures", 1)
            log("pairing_failed", participant=self.participant_id, error=repr(e))
            return None

    async def attempt_pairing(self) -> Role:
        if self._state not in (CoordinatorState.IDLE, CoordinatorState.BACKOFF):
            raise PairingError(f"cannot start pairing while {self._state.name.lower()}")
        if self._retry_task is not None and self._retry_task is not asyncio.current_task():
            self._retry_task.cancel()
        self._retry_task = None
        incr("pairing_attempts", 1)
        self._listen_for_candidates()

        try:
            while True:
                document = await self.relay.read(self.session_key)
                role = decide_role(document)
                log("pairing_role", participant=self.participant_id, role=role.value)
                if role is Role.OFFERER:
                    if not await self._become_offerer():
                        continue
                elif role is Role.ANSWERER:
                    await self._become_answerer(document["offer"])
                else:
                    await self._reset_stale()
                self._role = role
                return role
        except BaseException:
            if self._state not in _FINISHED:
                self._state = CoordinatorState.IDLE
            raise

    async def close(self) -> None:
        if self._state is CoordinatorState.CLOSED:
            return
        self._state = CoordinatorState.CLOSED
        self._stop_listening()
        for sub in self._transport_subs:
            sub.cancel()
        pending = [t for t in (self._retry_task, self._cleanup_task, *self._tasks) if t is not None]
        current = asyncio.current_task()
        for task in pending:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(t for t in pending if t is not current), return_exceptions=True)
        self._retry_task = self._cleanup_task = None
        log("pairing_closed", participant=self.participant_id)

    # ---------------- roles ----------------
    async def _become_offerer(self) -> bool:
        self._state = CoordinatorState.OFFERING
        self._ready = False
        self._pending_local.clear()
        self.transport.initialize()
        offer = await self.transport.create_offer()
        document = {
            "offer": offer,
            "answer": None,
            CANDIDATES: {},
            "created": now_ms(),
            "offerer": self.participant_id,
        }
        if self.exclusive_create:
            if not await self.relay.write_if_absent(self.session_key, document):
                # someone else's offer landed first; re-read and answer it
                incr("pairing_offer_race_lost", 1)
                log("offer_race_lost", participant=self.participant_id)
                self._pending_local.clear()
                return False
        else:
            await self.relay.write(self.session_key, document)
        incr("pairing_role_offerer", 1)
        # our full write erased whatever children the previous document had
        self._forget_document()
        self._listen_for_candidates()
        self._answer_sub = self.relay.subscribe_field(self.session_key, ANSWER, self._on_answer)
        self._mark_ready()
        return True

    async def _become_answerer(self, offer: Dict[str, Any]) -> None:
        self._state = CoordinatorState.ANSWERING
        self._ready = False
        self.transport.initialize()
        answer = await self.transport.receive_offer(offer)
        await self.relay.write_field(self.session_key, ANSWER, answer)
        incr("pairing_role_answerer", 1)
        self._mark_ready()

    async def _reset_stale(self) -> None:
        self._state = CoordinatorState.BACKOFF
        self._stop_listening()
        await self.relay.delete(self.session_key)
        incr("pairing_stale_resets", 1)
        log("stale_session_deleted", participant=self.participant_id, retry_in=self.retry_delay)
        if not self.retry_pending:
            self._retry_task = asyncio.ensure_future(self._retry_after_backoff())

    async def _retry_after_backoff(self) -> None:
        await asyncio.sleep(self.retry_delay)
        if self._state is CoordinatorState.BACKOFF:
            await self.start_pairing()

    # ---------------- relay events ----------------
    async def _on_answer(self, answer: Any) -> None:
        if answer is None or self._state is not CoordinatorState.OFFERING:
            return
        try:
            applied = await self.transport.receive_answer(answer)
        except ValueError as e:
            incr("answers_rejected", 1)
            log("answer_rejected", participant=self.participant_id, error=str(e))
            return
        if applied:
            log("answer_applied", participant=self.participant_id)

    async def _on_remote_candidate(self, child_id: str, record: Any) -> None:
        if self._state in _FINISHED:
            return
        if child_id in self._seen_children:
            incr("candidates_duplicate", 1)
            return
        self._seen_children.add(child_id)
        try:
            envelope = CandidateEnvelope.from_record(record)
        except CandidateError as e:
            incr("candidates_rejected", 1)
            log("candidate_malformed", participant=self.participant_id, child=child_id, error=str(e))
            return
        if envelope.sender == self.participant_id:
            incr("candidates_ignored_self", 1)
            return
        if not self._ready:
            self._pending_remote.append(envelope.candidate)
            return
        await self.transport.add_ice_candidate(envelope.candidate)

    # ---------------- transport events ----------------
    def _on_local_candidate(self, blob: Dict[str, Any]) -> None:
        if self._state in _FINISHED:
            return
        if not self._ready:
            self._pending_local.append(blob)
            return
        self._spawn(self._publish_candidate(blob))

    def _on_transport_connected(self) -> None:
        if self._state in _FINISHED:
            return
        self._state = CoordinatorState.CLEANING
        self._stop_listening()
        log("transport_connected", participant=self.participant_id, cleanup_in=self.cleanup_delay)
        self._cleanup_task = asyncio.ensure_future(self._delete_after_grace())

    # ---------------- internals ----------------
    def _listen_for_candidates(self) -> None:
        if self._candidate_sub is not None:
            return
        generation = self._generation

        async def on_child(child_id: str, record: Any) -> None:
            # deliveries already in flight when the document was dropped
            if generation == self._generation:
                await self._on_remote_candidate(child_id, record)

        self._candidate_sub = self.relay.subscribe_child_added(self.session_key, CANDIDATES, on_child)

    def _forget_document(self) -> None:
        """Drop the candidate subscription and anything buffered from it."""
        self._generation += 1
        self._pending_remote.clear()
        if self._candidate_sub is not None:
            self._candidate_sub.cancel()
            self._candidate_sub = None

    def _stop_listening(self) -> None:
        self._forget_document()
        if self._answer_sub is not None:
            self._answer_sub.cancel()
            self._answer_sub = None
        self.relay.unsubscribe_all(self.session_key)

    def _mark_ready(self) -> None:
        self._ready = True
        local, self._pending_local = self._pending_local, []
        remote, self._pending_remote = self._pending_remote, []
        for blob in local:
            self._spawn(self._publish_candidate(blob))
        for blob in remote:
            self._spawn(self.transport.add_ice_candidate(blob))

    async def _publish_candidate(self, blob: Dict[str, Any]) -> None:
        envelope = CandidateEnvelope(candidate=blob, sender=self.participant_id, timestamp=now_ms())
        try:
            await self.relay.append_child(self.session_key, CANDIDATES, envelope.to_record())
        except RelayError as e:
            log("candidate_publish_failed", participant=self.participant_id, error=str(e))
            return
        incr("candidates_published", 1)

    async def _delete_after_grace(self) -> None:
        await asyncio.sleep(self.cleanup_delay)
        try:
            await self.relay.delete(self.session_key)
            incr("session_deletes", 1)
            log("session_deleted", participant=self.participant_id)
        except RelayError as e:
            # ephemeral; the next attempt evicts it as stale anyway
            incr("session_delete_failures", 1)
            log("session_delete_failed", participant=self.participant_id, error=str(e))
        if self._state is CoordinatorState.CLEANING:
            self._state = CoordinatorState.DONE

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
