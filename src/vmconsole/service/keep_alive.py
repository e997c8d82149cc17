"""Keep-Alive Controller - status indicator and optional wake lock.

The indicator is what keeps the process group alive: while it is shown the
service context keeps running; once it has to be withdrawn with no sessions
registered, the group is torn down.

Public API (Studs):
    KeepAliveController - Couples the lock pair to the registry state
    StatusIndicator - Rich-rendered status line
"""

import logging
import threading

from rich.console import Console

from vmconsole.models import EventKind, SessionEvent
from vmconsole.service.session_registry import SessionRegistry
from vmconsole.service.wake_lock import LockPair

logger = logging.getLogger(__name__)

TEXT_RUNNING = "Virtual machine is running."
TEXT_STOPPED = "Virtual machine has stopped."
TEXT_NOT_INITIALIZED = "Virtual machine is not initialized."
TEXT_LOCK_HELD = " Wake lock held."


class StatusIndicator:
    """Visible status line; renders only when the text changes."""

    def __init__(self, console: Console | None = None, title: str = "vmconsole"):
        self.console = console or Console(stderr=True)
        self.title = title
        self._text: str | None = None
        self._visible = False

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def text(self) -> str | None:
        return self._text

    def show(self, text: str) -> None:
        if self._visible and text == self._text:
            return
        self._text = text
        self._visible = True
        self.console.print(f"[bold]{self.title}[/bold]: {text}", highlight=False)

    def withdraw(self) -> None:
        if not self._visible:
            return
        self._visible = False
        logger.debug("Status indicator withdrawn")


class KeepAliveController:
    """Hold the lock pair on request and keep the indicator truthful.

    Example:
        >>> controller = KeepAliveController(registry, LockPair.for_runtime_dir(path))
        >>> controller.enable()
        >>> controller.indicator.text
        'Virtual machine is running. Wake lock held.'
    """

    def __init__(
        self,
        registry: SessionRegistry,
        lock_pair: LockPair,
        indicator: StatusIndicator | None = None,
    ):
        self._registry = registry
        self._lock_pair = lock_pair
        self.indicator = indicator or StatusIndicator()
        self._lock = threading.RLock()
        self._closed = False

    @property
    def lock_held(self) -> bool:
        return self._lock_pair.held

    def status_text(self) -> str:
        if self._registry.is_empty():
            text = TEXT_NOT_INITIALIZED
        elif self._registry.machine_running():
            text = TEXT_RUNNING
        else:
            text = TEXT_STOPPED
        if self.lock_held:
            text += TEXT_LOCK_HELD
        return text

    def enable(self) -> None:
        """Acquire the wake lock and network keepalive. Idempotent.

        Raises:
            LockTimeoutError: If another process holds the wake lock
        """
        with self._lock:
            if self.lock_held:
                return
            self._lock_pair.acquire()
            logger.info("Wake lock acquired")
            self.refresh()

    def disable(self) -> None:
        """Release the lock pair. Idempotent.

        With no sessions registered this tears the group down.
        """
        with self._lock:
            if not self.lock_held:
                return
            self._lock_pair.release()
            logger.info("Wake lock released")
            self.refresh()

    def toggle(self) -> None:
        with self._lock:
            if self.lock_held:
                self.disable()
            else:
                self.enable()

    def refresh(self) -> None:
        """Recompute the indicator after any state change."""
        with self._lock:
            if self._closed:
                return
            if self._registry.teardown_if_idle(self.lock_held):
                return
            self.indicator.show(self.status_text())

    def on_session_event(self, event: SessionEvent) -> None:
        """Dispatcher listener; finished sessions change the status text."""
        if event.kind == EventKind.SESSION_FINISHED:
            self.refresh()

    def shutdown(self) -> None:
        """Release the locks and withdraw the indicator for good."""
        with self._lock:
            self._closed = True
            self._lock_pair.release()
            self.indicator.withdraw()


__all__ = [
    "KeepAliveController",
    "StatusIndicator",
    "TEXT_LOCK_HELD",
    "TEXT_NOT_INITIALIZED",
    "TEXT_RUNNING",
    "TEXT_STOPPED",
]
