# net/session.py
from typing import Any, Callable, Dict, Optional

from pyee.asyncio import AsyncIOEventEmitter

from nat.negotiator import TransportNegotiator
from net.coordinator import PairingCoordinator, Role
from net.relay import RelayStore
from sync.editor import EditorState
from sync.messages import Message, MessageError, parse_message
from util.config import PairingConfig
from util.events import Subscription, listen
from util.log import log


class SharedSession:
    """
    One participant of a two-person shared text pad: the transport, the
    pairing coordinator and the editor state wired together.
    """

    def __init__(
        self,
        config: PairingConfig,
        relay: RelayStore,
        transport: Optional[TransportNegotiator] = None,
        editor: Optional[EditorState] = None,
        participant_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self.relay = relay
        self.transport = transport or TransportNegotiator(
            ice_servers=config.ice_servers,
            channel_label=config.channel_label,
            connected_delay=config.connected_delay,
        )
        self.editor = editor or EditorState()
        self.coordinator = PairingCoordinator(
            relay,
            self.transport,
            session_key=config.session_key,
            participant_id=participant_id,
            retry_delay=config.retry_delay,
            cleanup_delay=config.cleanup_delay,
            exclusive_create=config.exclusive_create,
        )
        if not self.transport.name:
            self.transport.name = self.coordinator.participant_id
        self.connected = False
        self.status_reason = "Waiting for peer"
        self._events = AsyncIOEventEmitter()
        self._events.on("error", lambda e: log("session_handler_error", error=repr(e)))
        self._subs = [
            self.transport.on_status_change(self._on_status),
            self.transport.on_message(self._on_message),
        ]

    @property
    def participant_id(self) -> str:
        return self.coordinator.participant_id

    def on_status_change(self, cb: Callable[[bool, str], Any]) -> Subscription:
        return listen(self._events, "status", cb)

    def on_remote_change(self, cb: Callable[[Message], Any]) -> Subscription:
        return listen(self._events, "remote", cb)

    async def start(self) -> Optional[Role]:
        return await self.coordinator.start_pairing()

    async def close(self) -> None:
        for sub in self._subs:
            sub.cancel()
        await self.transport.close()
        await self.coordinator.close()

    # ---------------- local edits ----------------
    def publish(self, message: Optional[Message]) -> bool:
        if message is None or not self.transport.is_channel_open():
            return False
        return self.transport.send_message(message.to_payload())

    def type_text(self, text: str) -> bool:
        return self.publish(self.editor.append_text(text))

    def set_content(self, content: str) -> bool:
        return self.publish(self.editor.set_content(content))

    def move_cursor(self, start: int, end: Optional[int] = None) -> bool:
        return self.publish(self.editor.move_cursor(start, end))

    def increase_font_size(self) -> bool:
        return self.publish(self.editor.increase_font_size())

    def decrease_font_size(self) -> bool:
        return self.publish(self.editor.decrease_font_size())

    def toggle_font(self) -> bool:
        return self.publish(self.editor.toggle_font())

    def toggle_dark_mode(self) -> bool:
        return self.publish(self.editor.toggle_dark_mode())

    def clear(self) -> bool:
        return self.publish(self.editor.clear())

    # ---------------- transport events ----------------
    def _on_status(self, connected: bool, reason: str) -> None:
        self.connected = connected
        self.status_reason = reason
        self.editor.enabled = connected
        log("session_status", participant=self.participant_id, connected=connected, reason=reason)
        self._events.emit("status", connected, reason)

    def _on_message(self, payload: Dict[str, Any]) -> None:
        try:
            message = parse_message(payload)
        except MessageError as e:
            log("message_dropped", participant=self.participant_id, error=str(e))
            return
        self.editor.apply_remote(message)
        self._events.emit("remote", message)
