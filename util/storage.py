import os
import json
import shutil
import uuid
from typing import Any, Optional


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _tmp_path(path: str) -> str:
    return f"{path}.{uuid.uuid4().hex[:8]}.tmp"


def _dump(path: str, state: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(state, f, separators=(",", ":"), ensure_ascii=False)


def save_snapshot(path: str, state: Any) -> None:
    """Write ``state`` as JSON; readers never observe a half-written file."""
    ensure_dir(os.path.dirname(path))
    tmp = _tmp_path(path)
    _dump(tmp, state)
    os.replace(tmp, path)


def create_snapshot(path: str, state: Any) -> bool:
    """Like save_snapshot, but only when ``path`` does not exist yet."""
    ensure_dir(os.path.dirname(path))
    tmp = _tmp_path(path)
    _dump(tmp, state)
    try:
        os.link(tmp, path)
    except FileExistsError:
        return False
    finally:
        os.unlink(tmp)
    return True


def load_snapshot(path: str) -> Optional[Any]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        # a concurrent writer without atomic rename; treat as not there yet
        return None


def remove_tree(path: str) -> bool:
    if not os.path.isdir(path):
        return False
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        # the other participant removed it first
        pass
    return True
