from dataclasses import dataclass, field
from typing import Any, Callable

from pyee.asyncio import AsyncIOEventEmitter


@dataclass
class Subscription:
    """Handle returned by every ``on_*`` / ``subscribe_*`` call."""

    _cancel: Callable[[], None] = field(repr=False)
    active: bool = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._cancel()


def listen(emitter: AsyncIOEventEmitter, event: str, handler: Callable[..., Any]) -> Subscription:
    emitter.on(event, handler)
    return Subscription(lambda: emitter.remove_listener(event, handler))
