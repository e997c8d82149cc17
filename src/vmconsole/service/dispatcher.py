"""Event dispatcher - fans session notifications out to the observer.

Every session owns a SessionChannel; channels feed one queue consumed by a
single dispatcher thread, so observer callbacks never run re-entrantly from
inside a session and per-session ordering is preserved.

The observer is held through a weak reference and may come and go at any
time. Session-finished notifications raised while nobody is attached are
kept and replayed, in order, on the next attach.

Public API (Studs):
    EventDispatcher - Queue + thread delivering SessionEvents
    SessionChannel - Per-session posting endpoint
    SessionObserver - Protocol implemented by UIs
"""

import logging
import queue
import threading
import weakref
from collections.abc import Callable
from typing import Any, Protocol

from vmconsole.models import EventKind, SessionEvent

logger = logging.getLogger(__name__)

_STOP = object()
_FLUSH = object()

_OBSERVER_METHODS = {
    EventKind.TITLE_CHANGED: "on_title_changed",
    EventKind.SESSION_FINISHED: "on_session_finished",
    EventKind.TEXT_CHANGED: "on_text_changed",
    EventKind.BELL: "on_bell",
    EventKind.CLIPBOARD_TEXT: "on_clipboard_text",
    EventKind.COLORS_CHANGED: "on_colors_changed",
}


class SessionObserver(Protocol):
    """Callbacks a UI receives. All run on the dispatcher thread."""

    def on_title_changed(self, session: Any) -> None: ...

    def on_session_finished(self, session: Any) -> None: ...

    def on_text_changed(self, session: Any) -> None: ...

    def on_bell(self, session: Any) -> None: ...

    def on_clipboard_text(self, session: Any, text: str) -> None: ...

    def on_colors_changed(self, session: Any) -> None: ...


class SessionChannel:
    """Posting endpoint handed to one session."""

    def __init__(self, dispatcher: "EventDispatcher"):
        self._dispatcher = dispatcher
        self.session: Any = None

    def post(self, kind: EventKind, text: str | None = None) -> None:
        self._dispatcher.post(SessionEvent(kind=kind, session=self.session, text=text))


class EventDispatcher:
    """Deliver SessionEvents to the attached observer from one thread.

    Example:
        >>> dispatcher = EventDispatcher()
        >>> dispatcher.start()
        >>> dispatcher.attach(my_observer)
    """

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._observer_ref: weakref.ref | None = None
        self._pending_finished: list[SessionEvent] = []
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self._thread: threading.Thread | None = None

    def channel(self) -> SessionChannel:
        return SessionChannel(self)

    def add_listener(self, listener: Callable[[SessionEvent], None]) -> None:
        """Register an internal listener that sees every event before the observer."""
        self._listeners.append(listener)

    @property
    def observer(self) -> Any:
        with self._lock:
            return self._observer_ref() if self._observer_ref is not None else None

    def attach(self, observer: Any) -> None:
        """Attach an observer, replacing any previous one.

        Queued session-finished notifications are replayed to it.
        """
        with self._lock:
            self._observer_ref = weakref.ref(observer)
        self._queue.put(_FLUSH)

    def detach(self) -> None:
        with self._lock:
            self._observer_ref = None

    def post(self, event: SessionEvent) -> None:
        self._queue.put(event)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="session-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Deliver everything already queued, then stop the thread."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def wait_idle(self) -> None:
        """Block until every queued event has been delivered."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if item is _FLUSH:
                    self._flush_pending()
                else:
                    self._deliver(item)
            finally:
                self._queue.task_done()

    def _flush_pending(self) -> None:
        observer = self.observer
        if observer is None:
            return
        pending, self._pending_finished = self._pending_finished, []
        for event in pending:
            self._notify(observer, event)

    def _deliver(self, event: SessionEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed for {event.kind.value}: {e}")

        observer = self.observer
        if observer is None:
            if event.kind == EventKind.SESSION_FINISHED:
                self._pending_finished.append(event)
            return
        self._notify(observer, event)

    def _notify(self, observer: Any, event: SessionEvent) -> None:
        method = getattr(observer, _OBSERVER_METHODS[event.kind], None)
        if method is None:
            return
        try:
            if event.kind == EventKind.CLIPBOARD_TEXT:
                method(event.session, event.text)
            else:
                method(event.session)
        except Exception as e:
            logger.error(f"Observer failed handling {event.kind.value}: {e}")


__all__ = ["EventDispatcher", "SessionChannel", "SessionObserver"]
