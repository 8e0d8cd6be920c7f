import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from net.relay import (
    CallbackRunner,
    ChildCallback,
    FieldCallback,
    RelayError,
    RelayStore,
    push_id,
)
from util.config import RELAY_POLL_INTERVAL
from util.events import Subscription
from util.log import log
from util.storage import create_snapshot, ensure_dir, load_snapshot, remove_tree, save_snapshot

DOC_FILE = "doc.json"


@dataclass(eq=False)
class _Watch:
    key: str
    name: str
    callback: Any
    child: bool
    primed: bool = False
    last: Any = None
    seen: Set[str] = field(default_factory=set)


class FileRelayStore(RelayStore):
    """
    Relay over a directory both participants can reach (same machine or a
    shared mount). Layout per session key:

        <root>/<key>/doc.json                    scalar fields
        <root>/<key>/<collection>/<child>.json   one file per appended child

    Children live in their own files so concurrent appends never clobber
    each other. Subscriptions are served by polling.
    """

    def __init__(
        self,
        root: str,
        poll_interval: float = RELAY_POLL_INTERVAL,
        collections: Iterable[str] = ("candidates",),
    ) -> None:
        self.root = root
        self.poll_interval = poll_interval
        self.collections = frozenset(collections)
        self._watches: List[_Watch] = []
        self._runner = CallbackRunner()
        self._poller: Optional[asyncio.Task] = None
        ensure_dir(root)

    # ---------------- paths ----------------
    def _key_dir(self, key: str) -> str:
        if not key or "/" in key or key.startswith("."):
            raise RelayError(f"invalid session key {key!r}")
        return os.path.join(self.root, key)

    def _doc_path(self, key: str) -> str:
        return os.path.join(self._key_dir(key), DOC_FILE)

    def _collection_dir(self, key: str, collection: str) -> str:
        return os.path.join(self._key_dir(key), collection)

    # ---------------- sync helpers ----------------
    def _load_children(self, key: str, collection: str) -> Dict[str, Any]:
        path = self._collection_dir(key, collection)
        try:
            names = sorted(os.listdir(path))
        except FileNotFoundError:
            return {}
        children: Dict[str, Any] = {}
        for name in names:
            if not name.endswith(".json"):
                continue
            value = load_snapshot(os.path.join(path, name))
            if value is not None:
                children[name[: -len(".json")]] = value
        return children

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        if not os.path.isdir(self._key_dir(key)):
            return None
        doc = load_snapshot(self._doc_path(key))
        out: Dict[str, Any] = dict(doc) if isinstance(doc, dict) else {}
        for collection in self.collections:
            children = self._load_children(key, collection)
            if children:
                out[collection] = children
        return out or None

    def _split(self, document: Dict[str, Any]):
        scalars = {k: v for k, v in document.items() if k not in self.collections}
        collections = {k: v for k, v in document.items() if k in self.collections}
        return scalars, collections

    def _write_children(self, key: str, collection: str, children: Any) -> None:
        path = self._collection_dir(key, collection)
        remove_tree(path)
        ensure_dir(path)
        if isinstance(children, dict):
            for child_id, value in children.items():
                save_snapshot(os.path.join(path, f"{child_id}.json"), value)

    # ---------------- RelayStore ----------------
    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return self._load(key)
        except OSError as e:
            raise RelayError(f"read {key}: {e}") from e

    async def write(self, key: str, document: Dict[str, Any]) -> None:
        scalars, collections = self._split(document)
        try:
            remove_tree(self._key_dir(key))
            save_snapshot(self._doc_path(key), scalars)
            for name, children in collections.items():
                self._write_children(key, name, children)
        except OSError as e:
            raise RelayError(f"write {key}: {e}") from e

    async def write_if_absent(self, key: str, document: Dict[str, Any]) -> bool:
        scalars, collections = self._split(document)
        try:
            if not create_snapshot(self._doc_path(key), scalars):
                return False
            for name, children in collections.items():
                self._write_children(key, name, children)
        except OSError as e:
            raise RelayError(f"write {key}: {e}") from e
        return True

    async def write_field(self, key: str, field: str, value: Any) -> None:
        try:
            if field in self.collections:
                self._write_children(key, field, value)
                return
            doc = load_snapshot(self._doc_path(key))
            doc = dict(doc) if isinstance(doc, dict) else {}
            doc[field] = value
            save_snapshot(self._doc_path(key), doc)
        except OSError as e:
            raise RelayError(f"write {key}/{field}: {e}") from e

    async def append_child(self, key: str, collection: str, value: Any) -> str:
        if not os.path.exists(self._doc_path(key)):
            # a deleted document must not come back as a candidates-only shell
            raise RelayError(f"append {key}/{collection}: no such document")
        child_id = push_id()
        try:
            save_snapshot(os.path.join(self._collection_dir(key, collection), f"{child_id}.json"), value)
        except OSError as e:
            raise RelayError(f"append {key}/{collection}: {e}") from e
        return child_id

    async def delete(self, key: str) -> None:
        try:
            remove_tree(self._key_dir(key))
        except OSError as e:
            raise RelayError(f"delete {key}: {e}") from e

    def subscribe_field(self, key: str, field: str, on_change: FieldCallback) -> Subscription:
        return self._watch(_Watch(key, field, on_change, child=False))

    def subscribe_child_added(self, key: str, collection: str, on_add: ChildCallback) -> Subscription:
        return self._watch(_Watch(key, collection, on_add, child=True))

    def unsubscribe_all(self, key: str) -> None:
        self._watches = [w for w in self._watches if w.key != key]

    async def close(self) -> None:
        self._watches.clear()
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        self._runner.cancel_all()

    # ---------------- polling ----------------
    def _watch(self, watch: _Watch) -> Subscription:
        self._watches.append(watch)
        if self._poller is None or self._poller.done():
            self._poller = asyncio.ensure_future(self._poll_loop())
        return Subscription(lambda: self._unwatch(watch))

    def _unwatch(self, watch: _Watch) -> None:
        if watch in self._watches:
            self._watches.remove(watch)

    async def _poll_loop(self) -> None:
        try:
            while self._watches:
                self.poll_once()
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            return

    def poll_once(self) -> None:
        docs: Dict[str, Optional[Dict[str, Any]]] = {}
        for watch in list(self._watches):
            if watch.key not in docs:
                try:
                    docs[watch.key] = self._load(watch.key)
                except OSError as e:
                    log("relay_poll_error", key=watch.key, error=str(e))
                    continue
            doc = docs[watch.key] or {}
            if watch.child:
                children = doc.get(watch.name)
                children = children if isinstance(children, dict) else {}
                for child_id in sorted(children):
                    if child_id not in watch.seen:
                        watch.seen.add(child_id)
                        self._dispatch(watch, child_id, children[child_id])
            else:
                value = doc.get(watch.name)
                if not watch.primed or value != watch.last:
                    watch.primed = True
                    watch.last = value
                    self._dispatch(watch, value)

    def _dispatch(self, watch: _Watch, *args: Any) -> None:
        self._runner.schedule(self._deliver, watch, args)

    def _deliver(self, watch: _Watch, args: tuple) -> Any:
        if watch not in self._watches:
            return None
        return watch.callback(*args)
