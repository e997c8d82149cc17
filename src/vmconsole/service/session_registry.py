"""Session Registry - the ordered, append-only list of sessions.

Philosophy:
- Single responsibility: Own the session sequence and decide teardown
- Slot index = creation order, stable for the process lifetime
- Finished sessions stay listed so their last output can be inspected

Public API (Studs):
    SessionRegistry - Creates, lists and terminates sessions
    MACHINE_SESSION_NAME - Name of the machine session
    bridge_session_name - Name of a bridge session
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from vmconsole.host_facts import HostFacts
from vmconsole.launch_builder import (
    BRIDGE_RETRY_INTERVAL,
    build_bridge_launch,
    build_machine_launch,
)
from vmconsole.models import LaunchSpec, SessionKind
from vmconsole.modules.pty_process import PtyProcessLauncher
from vmconsole.service.dispatcher import EventDispatcher
from vmconsole.service.session import Session

logger = logging.getLogger(__name__)

MACHINE_SESSION_NAME = "QEMU"

# Pause before a bridge relay that lost its peer is started again
BRIDGE_RELAUNCH_DELAY = float(BRIDGE_RETRY_INTERVAL)


def bridge_session_name(console_index: int) -> str:
    return f"/dev/ttyS{console_index}"


class SessionRegistry:
    """Ordered collection of every Session of this process.

    Example:
        >>> registry = SessionRegistry(PtyProcessLauncher(), dispatcher)
        >>> machine = registry.create_machine_session(facts)
        >>> registry.sessions()[0] is machine
        True
    """

    def __init__(
        self,
        launcher: PtyProcessLauncher,
        dispatcher: EventDispatcher,
        on_change: Callable[[], None] | None = None,
        on_terminate: Callable[[], None] | None = None,
    ):
        """Initialize registry.

        Args:
            launcher: Starts session processes
            dispatcher: Delivers session notifications
            on_change: Called after a session is appended
            on_terminate: Called once when the whole group must shut down
        """
        self._launcher = launcher
        self._dispatcher = dispatcher
        self._on_change = on_change
        self._on_terminate = on_terminate
        self._sessions: list[Session] = []
        self._lock = threading.Lock()
        self._wants_to_stop = False
        self._terminated = False

    @property
    def wants_to_stop(self) -> bool:
        return self._wants_to_stop

    def sessions(self) -> tuple[Session, ...]:
        """Snapshot of all sessions in creation order."""
        with self._lock:
            return tuple(self._sessions)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._sessions

    def index_of(self, session: Session) -> int:
        """Slot number of a session.

        Raises:
            ValueError: If the session is not registered
        """
        with self._lock:
            return self._sessions.index(session)

    def machine_session(self) -> Session | None:
        with self._lock:
            for session in self._sessions:
                if session.kind == SessionKind.MACHINE:
                    return session
        return None

    def machine_running(self) -> bool:
        machine = self.machine_session()
        return machine is not None and machine.is_running()

    def attach_observer(self, observer: Any) -> None:
        self._dispatcher.attach(observer)

    def detach_observer(self) -> None:
        self._dispatcher.detach()

    def _create(
        self,
        name: str,
        kind: SessionKind,
        spec: LaunchSpec,
        console_index: int | None = None,
    ) -> Session:
        session = Session(
            name,
            kind,
            spec,
            self._dispatcher.channel(),
            console_index=console_index,
            relaunch_delay=BRIDGE_RELAUNCH_DELAY if kind == SessionKind.BRIDGE else None,
        )

        # Listed before its child exists, so an exit during start() is never
        # observed against an empty registry
        with self._lock:
            self._sessions.append(session)
            slot = len(self._sessions) - 1
        logger.info(f"Registered session {name} in slot {slot}")

        try:
            session.start(self._launcher)
        finally:
            if self._on_change is not None:
                self._on_change()
        return session

    def create_machine_session(self, facts: HostFacts) -> Session:
        """Build, launch and register the machine session.

        Only one machine session per process is meaningful: a second one
        would open disk images the first still uses. Callers guard this.

        Raises:
            ConfigurationError: If the executable or runtime directory is missing
            LaunchError: If the process cannot be started; the session stays
                listed as FINISHED
        """
        spec = build_machine_launch(facts)
        return self._create(MACHINE_SESSION_NAME, SessionKind.MACHINE, spec)

    def create_bridge_session(self, console_index: int, facts: HostFacts) -> Session:
        """Build, launch and register the bridge of one machine console.

        Raises:
            ValueError: If console_index is not in 0..3
            ConfigurationError: If the executable or runtime directory is missing
            LaunchError: If the process cannot be started; the session stays
                listed as FINISHED
        """
        spec = build_bridge_launch(console_index, facts)
        return self._create(
            bridge_session_name(console_index),
            SessionKind.BRIDGE,
            spec,
            console_index=console_index,
        )

    def request_termination(self) -> None:
        """Finish every session and shut the group down. Idempotent."""
        with self._lock:
            if self._wants_to_stop:
                return
            self._wants_to_stop = True
            sessions = list(self._sessions)

        logger.info(f"Termination requested, finishing {len(sessions)} sessions")
        for session in sessions:
            session.finish_if_running()
        self._terminate()

    def teardown_if_idle(self, lock_held: bool) -> bool:
        """Terminate the group when nothing keeps it alive.

        Only an empty registry with no lock held qualifies; finished sessions
        still count, since their final output may be inspected.

        Returns:
            True if teardown was triggered
        """
        if lock_held or not self.is_empty():
            return False
        logger.info("No sessions and no lock held, shutting down")
        self._terminate()
        return True

    def _terminate(self) -> None:
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
        if self._on_terminate is not None:
            self._on_terminate()


__all__ = ["BRIDGE_RELAUNCH_DELAY", "MACHINE_SESSION_NAME", "SessionRegistry", "bridge_session_name"]
