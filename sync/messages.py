# sync/messages.py
"""
Application messages carried over the data channel.

Each message is one JSON object with a ``type`` discriminator and camelCase
fields, so a browser peer can read and write the same stream.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Union


class MessageError(ValueError):
    pass


@dataclass(frozen=True)
class ContentUpdate:
    content: str
    type = "contentUpdate"

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class CursorUpdate:
    selection_start: int
    selection_end: int
    type = "cursorUpdate"

    @property
    def cursor_position(self) -> int:
        return self.selection_start

    @property
    def has_selection(self) -> bool:
        return self.selection_start != self.selection_end

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "cursorPosition": self.cursor_position,
            "selectionStart": self.selection_start,
            "selectionEnd": self.selection_end,
            "hasSelection": self.has_selection,
        }


@dataclass(frozen=True)
class FontSizeUpdate:
    font_size: int
    type = "fontSizeUpdate"

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "fontSize": self.font_size}


@dataclass(frozen=True)
class FontUpdate:
    is_noto_font: bool
    type = "fontUpdate"

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "isNotoFont": self.is_noto_font}


@dataclass(frozen=True)
class DarkModeUpdate:
    is_dark_mode: bool
    type = "darkModeUpdate"

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "isDarkMode": self.is_dark_mode}


Message = Union[ContentUpdate, CursorUpdate, FontSizeUpdate, FontUpdate, DarkModeUpdate]


def _field(payload: Dict[str, Any], name: str, kind: type) -> Any:
    value = payload.get(name)
    # bool is an int subclass; keep the two apart
    if kind is int and isinstance(value, bool):
        raise MessageError(f"{payload.get('type')}.{name} must be an integer")
    if not isinstance(value, kind):
        raise MessageError(f"{payload.get('type')}.{name} must be {kind.__name__}, got {type(value).__name__}")
    return value


def _cursor(payload: Dict[str, Any]) -> CursorUpdate:
    start = payload.get("selectionStart", payload.get("cursorPosition"))
    end = payload.get("selectionEnd", start)
    return CursorUpdate(
        selection_start=_field({"type": "cursorUpdate", "selectionStart": start}, "selectionStart", int),
        selection_end=_field({"type": "cursorUpdate", "selectionEnd": end}, "selectionEnd", int),
    )


_PARSERS: Dict[str, Callable[[Dict[str, Any]], Message]] = {
    ContentUpdate.type: lambda p: ContentUpdate(_field(p, "content", str)),
    CursorUpdate.type: _cursor,
    FontSizeUpdate.type: lambda p: FontSizeUpdate(_field(p, "fontSize", int)),
    FontUpdate.type: lambda p: FontUpdate(_field(p, "isNotoFont", bool)),
    DarkModeUpdate.type: lambda p: DarkModeUpdate(_field(p, "isDarkMode", bool)),
}

MESSAGE_TYPES = tuple(_PARSERS)


def parse_message(payload: Any) -> Message:
    if not isinstance(payload, dict):
        raise MessageError("message must be an object")
    parser = _PARSERS.get(payload.get("type"))
    if parser is None:
        raise MessageError(f"unknown message type {payload.get('type')!r}")
    return parser(payload)
