# sync/editor.py
from dataclasses import dataclass
from typing import Optional, Tuple

from sync.messages import (
    ContentUpdate,
    CursorUpdate,
    DarkModeUpdate,
    FontSizeUpdate,
    FontUpdate,
    Message,
)

DEFAULT_FONT_SIZE = 16
FONT_SIZE_STEP = 2
MIN_FONT_SIZE = 10
MAX_FONT_SIZE = 24


@dataclass
class RemoteCursor:
    position: int
    selection: Optional[Tuple[int, int]] = None


class EditorState:
    """
    Headless split editor: our own pane (which we edit and broadcast) and the
    peer's pane (which only changes through apply_remote).

    Local operations return the message to send, or None when nothing changed
    or editing is disabled (no live channel).
    """

    def __init__(self) -> None:
        self.enabled = False
        self.content = ""
        self.selection: Tuple[int, int] = (0, 0)
        self.font_size = DEFAULT_FONT_SIZE
        self.noto_font = False
        self.dark_mode = False

        self.remote_content = ""
        self.remote_cursor: Optional[RemoteCursor] = None
        self.remote_font_size = DEFAULT_FONT_SIZE
        self.remote_noto_font = False

    # ---------------- local pane ----------------
    def set_content(self, content: str) -> Optional[ContentUpdate]:
        if not self.enabled or content == self.content:
            return None
        self.content = content
        start, end = self.selection
        self.selection = (min(start, len(content)), min(end, len(content)))
        return ContentUpdate(content)

    def append_text(self, text: str) -> Optional[ContentUpdate]:
        return self.set_content(self.content + text)

    def clear(self) -> Optional[ContentUpdate]:
        return self.set_content("")

    def move_cursor(self, start: int, end: Optional[int] = None) -> Optional[CursorUpdate]:
        if not self.enabled:
            return None
        end = start if end is None else end
        start = max(0, min(start, len(self.content)))
        end = max(0, min(end, len(self.content)))
        self.selection = (start, end)
        return CursorUpdate(selection_start=start, selection_end=end)

    def increase_font_size(self) -> Optional[FontSizeUpdate]:
        return self._set_font_size(min(self.font_size + FONT_SIZE_STEP, MAX_FONT_SIZE))

    def decrease_font_size(self) -> Optional[FontSizeUpdate]:
        return self._set_font_size(max(self.font_size - FONT_SIZE_STEP, MIN_FONT_SIZE))

    def _set_font_size(self, size: int) -> Optional[FontSizeUpdate]:
        if not self.enabled:
            return None
        self.font_size = size
        return FontSizeUpdate(size)

    def toggle_font(self) -> Optional[FontUpdate]:
        if not self.enabled:
            return None
        self.noto_font = not self.noto_font
        return FontUpdate(self.noto_font)

    def toggle_dark_mode(self) -> Optional[DarkModeUpdate]:
        if not self.enabled:
            return None
        self.dark_mode = not self.dark_mode
        return DarkModeUpdate(self.dark_mode)

    # ---------------- remote pane ----------------
    def apply_remote(self, message: Message) -> None:
        if isinstance(message, ContentUpdate):
            self.remote_content = message.content
        elif isinstance(message, CursorUpdate):
            self.remote_cursor = self._place_cursor(message)
        elif isinstance(message, FontSizeUpdate):
            self.remote_font_size = max(MIN_FONT_SIZE, min(message.font_size, MAX_FONT_SIZE))
        elif isinstance(message, FontUpdate):
            self.remote_noto_font = message.is_noto_font
        elif isinstance(message, DarkModeUpdate):
            # the theme is shared by both panes
            self.dark_mode = message.is_dark_mode

    def _place_cursor(self, message: CursorUpdate) -> Optional[RemoteCursor]:
        if not self.remote_content:
            return None
        limit = len(self.remote_content)
        position = max(0, min(message.cursor_position, limit))
        if message.has_selection:
            start = max(0, min(message.selection_start, limit))
            end = max(0, min(message.selection_end, limit))
            if start != end:
                return RemoteCursor(position=position, selection=(min(start, end), max(start, end)))
        return RemoteCursor(position=position)
