"""
Relay store: the shared, eventually-consistent document both participants
signal through.

``RelayStore`` is the narrow contract the pairing coordinator consumes.
``InMemoryRelay`` is a process-local backend; each participant talks to it
through its own ``InMemoryRelayStore`` client so that ``unsubscribe_all``
only drops that participant's listeners, the same way a hosted realtime
database scopes ``off()`` to one client.
"""
from __future__ import annotations

import abc
import asyncio
import copy
import inspect
import itertools
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from util.events import Subscription
from util.log import log
from util.metrics import now_ms

FieldCallback = Callable[[Any], Union[None, Awaitable[None]]]
ChildCallback = Callable[[str, Any], Union[None, Awaitable[None]]]


class RelayError(Exception):
    """Transient failure talking to the relay."""


def push_id() -> str:
    """Child ids sort in append order, like realtime-database push keys."""
    return f"{now_ms():013d}-{next(_push_seq):06d}-{uuid.uuid4().hex[:6]}"


_push_seq = itertools.count()


class RelayStore(abc.ABC):
    @abc.abstractmethod
    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def write(self, key: str, document: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def write_if_absent(self, key: str, document: Dict[str, Any]) -> bool:
        ...

    @abc.abstractmethod
    async def write_field(self, key: str, field: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def append_child(self, key: str, collection: str, value: Any) -> str:
        ...

    @abc.abstractmethod
    def subscribe_field(self, key: str, field: str, on_change: FieldCallback) -> Subscription:
        ...

    @abc.abstractmethod
    def subscribe_child_added(self, key: str, collection: str, on_add: ChildCallback) -> Subscription:
        ...

    @abc.abstractmethod
    def unsubscribe_all(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...


class CallbackRunner:
    """Runs relay callbacks on the loop, outside the writer's call stack."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, handler: Callable[..., Any], *args: Any) -> None:
        asyncio.get_running_loop().call_soon(self._run, handler, args)

    def _run(self, handler: Callable[..., Any], args: tuple) -> None:
        try:
            result = handler(*args)
        except Exception as e:
            log("relay_callback_error", error=repr(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log("relay_callback_error", error=repr(task.exception()))

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


@dataclass(eq=False)
class _FieldListener:
    key: str
    field: str
    callback: FieldCallback
    last: Any = None


@dataclass(eq=False)
class _ChildListener:
    key: str
    collection: str
    callback: ChildCallback


class InMemoryRelay:
    """Shared backend. Documents are plain dicts; collections are dicts of child id -> value."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._clients: List["InMemoryRelayStore"] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.generation: Dict[str, int] = {}

    def client(self) -> "InMemoryRelayStore":
        store = InMemoryRelayStore(self)
        self._clients.append(store)
        return store

    def fail_next(self, op: str, exc: Optional[Exception] = None) -> None:
        """Make the next ``op`` (read, write, write_field, append_child, delete) raise."""
        self._failures.setdefault(op, []).append(exc or RelayError(f"injected {op} failure"))

    def _check(self, op: str) -> None:
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def snapshot(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    # ---- mutations, fanned out to every client ----
    def _replace(self, key: str, document: Dict[str, Any]) -> None:
        before = self._docs.get(key)
        if before is None:
            self.generation[key] = self.generation.get(key, 0) + 1
        self._docs[key] = copy.deepcopy(document)
        self._notify(key, before)

    def _set_field(self, key: str, field: str, value: Any) -> None:
        before = copy.deepcopy(self._docs.get(key))
        doc = self._docs.get(key)
        if doc is None:
            self.generation[key] = self.generation.get(key, 0) + 1
            doc = self._docs[key] = {}
        doc[field] = copy.deepcopy(value)
        self._notify(key, before)

    def _append(self, key: str, collection: str, value: Any) -> str:
        doc = self._docs.get(key)
        if doc is None:
            raise RelayError(f"append {key}/{collection}: no such document")
        before = copy.deepcopy(doc)
        children = doc.get(collection)
        if not isinstance(children, dict):
            children = doc[collection] = {}
        child_id = push_id()
        children[child_id] = copy.deepcopy(value)
        self._notify(key, before)
        return child_id

    def _remove(self, key: str) -> None:
        before = self._docs.pop(key, None)
        if before is not None:
            self._notify(key, before)

    def _notify(self, key: str, before: Optional[Dict[str, Any]]) -> None:
        after = self._docs.get(key)
        for store in list(self._clients):
            store._observe(key, before, after)


class InMemoryRelayStore(RelayStore):
    def __init__(self, relay: InMemoryRelay) -> None:
        self._relay = relay
        self._fields: List[_FieldListener] = []
        self._children: List[_ChildListener] = []
        self._runner = CallbackRunner()

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        self._relay._check("read")
        await asyncio.sleep(0)
        return self._relay.snapshot(key)

    async def write(self, key: str, document: Dict[str, Any]) -> None:
        self._relay._check("write")
        await asyncio.sleep(0)
        self._relay._replace(key, document)

    async def write_if_absent(self, key: str, document: Dict[str, Any]) -> bool:
        self._relay._check("write")
        await asyncio.sleep(0)
        if self._relay.snapshot(key) is not None:
            return False
        self._relay._replace(key, document)
        return True

    async def write_field(self, key: str, field: str, value: Any) -> None:
        self._relay._check("write_field")
        await asyncio.sleep(0)
        self._relay._set_field(key, field, value)

    async def append_child(self, key: str, collection: str, value: Any) -> str:
        self._relay._check("append_child")
        await asyncio.sleep(0)
        return self._relay._append(key, collection, value)

    async def delete(self, key: str) -> None:
        self._relay._check("delete")
        await asyncio.sleep(0)
        self._relay._remove(key)

    def subscribe_field(self, key: str, field: str, on_change: FieldCallback) -> Subscription:
        doc = self._relay.snapshot(key) or {}
        listener = _FieldListener(key, field, on_change, last=doc.get(field))
        self._fields.append(listener)
        self._dispatch(listener, copy.deepcopy(listener.last))
        return Subscription(lambda: self._drop(self._fields, listener))

    def subscribe_child_added(self, key: str, collection: str, on_add: ChildCallback) -> Subscription:
        listener = _ChildListener(key, collection, on_add)
        self._children.append(listener)
        doc = self._relay.snapshot(key) or {}
        existing = doc.get(collection)
        if isinstance(existing, dict):
            for child_id in sorted(existing):
                self._dispatch(listener, child_id, copy.deepcopy(existing[child_id]))
        return Subscription(lambda: self._drop(self._children, listener))

    def unsubscribe_all(self, key: str) -> None:
        self._fields = [l for l in self._fields if l.key != key]
        self._children = [l for l in self._children if l.key != key]

    @property
    def listener_count(self) -> int:
        return len(self._fields) + len(self._children)

    @staticmethod
    def _drop(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _dispatch(self, listener: Any, *args: Any) -> None:
        self._runner.schedule(self._deliver, listener, args)

    def _deliver(self, listener: Any, args: tuple) -> Any:
        # cancelled between scheduling and delivery
        if listener not in self._fields and listener not in self._children:
            return None
        return listener.callback(*args)

    def _observe(self, key: str, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> None:
        before = before or {}
        after = after or {}
        for listener in list(self._fields):
            if listener.key != key:
                continue
            value = after.get(listener.field)
            if value != listener.last:
                listener.last = copy.deepcopy(value)
                self._dispatch(listener, copy.deepcopy(value))
        for listener in list(self._children):
            if listener.key != key:
                continue
            old = before.get(listener.collection)
            new = after.get(listener.collection)
            old = old if isinstance(old, dict) else {}
            new = new if isinstance(new, dict) else {}
            for child_id in sorted(new):
                if child_id not in old:
                    self._dispatch(listener, child_id, copy.deepcopy(new[child_id]))
