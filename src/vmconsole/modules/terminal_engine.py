"""Minimal terminal engine.

Full escape-sequence interpretation and screen emulation belong to the
presentation layer. Sessions only need the narrow contract "bytes in,
notifications out", which this engine provides:

- a bounded plain-text transcript (escape sequences stripped)
- window title from OSC 0 / OSC 2
- bell (BEL outside of an OSC string)
- clipboard text from OSC 52
- palette changes from OSC 4 / 10 / 11 / 104 / 110 / 111

Public API:
    TerminalClient: Protocol receiving engine notifications
    TranscriptEngine: The engine
"""

import base64
import binascii
import codecs
import logging
import threading
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPT_LIMIT = 64 * 1024

_TITLE_CODES = {"0", "2"}
_CLIPBOARD_CODE = "52"
_COLOR_CODES = {"4", "10", "11", "104", "110", "111"}


class TerminalClient(Protocol):
    """Receiver of engine notifications, called on the feeding thread."""

    def on_title_changed(self, title: str) -> None: ...

    def on_text_changed(self) -> None: ...

    def on_bell(self) -> None: ...

    def on_clipboard_text(self, text: str) -> None: ...

    def on_colors_changed(self) -> None: ...


class TranscriptEngine:
    """Feed terminal output, keep a transcript, raise notifications in order."""

    _NORMAL, _ESC, _CSI, _OSC, _OSC_ESC = range(5)

    def __init__(self, client: TerminalClient, transcript_limit: int = DEFAULT_TRANSCRIPT_LIMIT):
        self._client = client
        self._limit = transcript_limit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._state = self._NORMAL
        self._osc: list[str] = []
        self._transcript = ""
        self._title = ""
        self._lock = threading.Lock()

    @property
    def title(self) -> str:
        return self._title

    def transcript_text(self) -> str:
        """Plain text output seen so far (bounded)."""
        with self._lock:
            return self._transcript

    def feed(self, data: bytes) -> None:
        """Process a chunk of child output."""
        text = self._decoder.decode(data)
        plain: list[str] = []

        for ch in text:
            state = self._state
            if state == self._NORMAL:
                if ch == "\x07":
                    self._client.on_bell()
                elif ch == "\x1b":
                    self._state = self._ESC
                else:
                    plain.append(ch)
            elif state == self._ESC:
                if ch == "]":
                    self._osc = []
                    self._state = self._OSC
                elif ch == "[":
                    self._state = self._CSI
                else:
                    self._state = self._NORMAL
            elif state == self._CSI:
                if "@" <= ch <= "~":
                    self._state = self._NORMAL
            elif state == self._OSC:
                if ch == "\x07":
                    self._dispatch_osc()
                elif ch == "\x1b":
                    self._state = self._OSC_ESC
                else:
                    self._osc.append(ch)
            else:
                # ESC \ (string terminator) or an aborted OSC
                if ch == "\\":
                    self._dispatch_osc()
                else:
                    self._state = self._NORMAL

        if plain:
            with self._lock:
                self._transcript = (self._transcript + "".join(plain))[-self._limit :]
            self._client.on_text_changed()

    def _dispatch_osc(self) -> None:
        self._state = self._NORMAL
        code, _, payload = "".join(self._osc).partition(";")
        self._osc = []

        if code in _TITLE_CODES:
            self._title = payload
            self._client.on_title_changed(payload)
        elif code == _CLIPBOARD_CODE:
            _, _, encoded = payload.partition(";")
            try:
                text = base64.b64decode(encoded, validate=True).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError):
                logger.debug("Ignoring malformed OSC 52 clipboard payload")
                return
            self._client.on_clipboard_text(text)
        elif code in _COLOR_CODES:
            self._client.on_colors_changed()


__all__ = ["TerminalClient", "TranscriptEngine"]
