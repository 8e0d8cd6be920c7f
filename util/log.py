import json
import logging
import sys
from typing import Any, Optional, TextIO

from util.metrics import now_ms

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

_stream: Optional[TextIO] = None
_enabled = True


def set_stream(stream: Optional[TextIO]) -> None:
    """Send event lines to ``stream``; ``None`` restores stderr."""
    global _stream
    _stream = stream


def set_enabled(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def log(event: str, **fields: Any) -> None:
    if not _enabled:
        return
    record = {"ts_ms": now_ms(), "event": event}
    record.update(fields)
    out = _stream if _stream is not None else sys.stderr
    print(json.dumps(record, separators=(",", ":"), default=str), file=out, flush=True)


def configure_logging(level: int = logging.INFO, format: Optional[str] = None) -> None:
    """
    Configure the root logger once. Existing handlers win.
    """
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
