from __future__ import annotations

import asyncio
import os
from enum import Enum

import pyperclipfix as pyperclip
from pydotool import KEY_LEFTCTRL, KEY_LEFTSHIFT, KEY_V, key_combination
from pydotool import init as pydotool_init

from .log import debug, errprint


class TextOutput:
    """Types text into the focused window by pasting it through the clipboard."""

    CLIPBOARD_RESTORE_DELAY_S = 1.0
    KEY_DELAY_MS = 20

    class Combo(Enum):
        CTRL_V = (KEY_LEFTCTRL, KEY_V)
        CTRL_SHIFT_V = (KEY_LEFTCTRL, KEY_LEFTSHIFT, KEY_V)

    def __init__(self, ydotool_socket: str | None = None, use_shift_to_paste: bool = False):
        if ydotool_socket:
            os.environ["YDOTOOL_SOCKET"] = ydotool_socket
        pydotool_init()
        self.use_shift_to_paste = use_shift_to_paste
        self._previous_clipboard: str | None = None
        self._restore_clipboard_handle: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()

    async def output_text(self, text: str, restore_clipboard: bool = True, paste_delay_ms: int = 50) -> None:
        if not text:
            return
        async with self._lock:
            if restore_clipboard:
                self._ensure_previous_clipboard_saved()
            try:
                pyperclip.copy(text)
            except pyperclip.PyperclipException as exc:
                errprint(f"ERROR: Unable to copy text to the clipboard: {exc}")
                return
            await asyncio.sleep(paste_delay_ms / 1000)
            combo = self.Combo.CTRL_SHIFT_V.value if self.use_shift_to_paste else self.Combo.CTRL_V.value
            key_combination(list(combo), each_delay_ms=self.KEY_DELAY_MS, press_ms=self.KEY_DELAY_MS)
            debug(f"Pasted {len(text)} characters")
            if restore_clipboard:
                self._schedule_clipboard_restore()

    def _ensure_previous_clipboard_saved(self):
        if self._previous_clipboard is not None:
            return
        try:
            current = pyperclip.paste()
        except pyperclip.PyperclipException:
            return
        self._previous_clipboard = current or ""

    def _schedule_clipboard_restore(self):
        if self._previous_clipboard is None:
            return
        if self._restore_clipboard_handle is not None:
            self._restore_clipboard_handle.cancel()
        loop = asyncio.get_running_loop()
        self._restore_clipboard_handle = loop.call_later(self.CLIPBOARD_RESTORE_DELAY_S, self._restore_clipboard_if_needed)

    def _restore_clipboard_if_needed(self):
        self._restore_clipboard_handle = None
        if self._previous_clipboard is None:
            return
        try:
            pyperclip.copy(self._previous_clipboard)
        except pyperclip.PyperclipException:
            # retry later
            self._schedule_clipboard_restore()
            return
        self._previous_clipboard = None
