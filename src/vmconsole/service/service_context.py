"""Service Context - process-wide owner of sessions that outlives any UI.

Philosophy:
- Explicit object passed by reference, no module-level globals
- Started lazily on the first session-creation request
- Stopped exactly once: on request_termination() or when the keep-alive
  controller finds nothing left to keep alive

Public API (Studs):
    ServiceContext - Registry + dispatcher + keep-alive wiring
    ServiceError - Context misuse
"""

import logging
import threading

from vmconsole.config_manager import ConsoleConfig
from vmconsole.host_facts import HostFacts
from vmconsole.launch_builder import CONSOLE_COUNT
from vmconsole.modules.pty_process import PtyProcessLauncher
from vmconsole.service.dispatcher import EventDispatcher
from vmconsole.service.keep_alive import KeepAliveController, StatusIndicator
from vmconsole.service.session import Session
from vmconsole.service.session_registry import SessionRegistry
from vmconsole.service.wake_lock import LockPair

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Raised when the service context is used incorrectly."""

    pass


class ServiceContext:
    """Own the session registry for the lifetime of the process.

    Example:
        >>> context = ServiceContext(ConfigManager.load_config())
        >>> context.bootstrap()
        >>> context.wait()  # Returns once the group has been torn down
    """

    def __init__(
        self,
        config: ConsoleConfig,
        launcher: PtyProcessLauncher | None = None,
        lock_pair: LockPair | None = None,
        indicator: StatusIndicator | None = None,
    ):
        self.config = config
        self.launcher = launcher or PtyProcessLauncher(timeout=config.launch_timeout)
        self.dispatcher = EventDispatcher()
        self.registry = SessionRegistry(
            self.launcher,
            self.dispatcher,
            on_change=self._on_registry_change,
            on_terminate=self.shutdown,
        )
        self.keep_alive = KeepAliveController(
            self.registry,
            lock_pair or LockPair.for_runtime_dir(config.runtime_data_dir),
            indicator,
        )
        self.dispatcher.add_listener(self.keep_alive.on_session_event)

        self._state_lock = threading.Lock()
        self._started = False
        self._stopped = threading.Event()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def _ensure_started(self) -> None:
        with self._state_lock:
            if self._stopped.is_set():
                raise ServiceError("Service context has already been shut down")
            if self._started:
                return
            self._started = True
        self.dispatcher.start()
        logger.info("Service context started")

    def _on_registry_change(self) -> None:
        self.keep_alive.refresh()

    def probe_host(self) -> HostFacts:
        return HostFacts.probe(self.config)

    def create_machine_session(self, facts: HostFacts | None = None) -> Session:
        self._ensure_started()
        return self.registry.create_machine_session(facts or self.probe_host())

    def create_bridge_session(self, console_index: int, facts: HostFacts | None = None) -> Session:
        self._ensure_started()
        return self.registry.create_bridge_session(console_index, facts or self.probe_host())

    def bootstrap(self) -> list[Session]:
        """Create the machine session, then one bridge per console.

        Host facts are probed once and shared by all five sessions. Stops
        early, returning what was created, if the context shuts down meanwhile.

        Returns:
            Sessions in slot order

        Raises:
            ServiceError: If sessions already exist
            ConfigurationError: If executables or runtime data are missing
            LaunchError: If a process cannot be started
        """
        self._ensure_started()
        if not self.registry.is_empty():
            raise ServiceError("Sessions already exist; the machine can only be started once")

        facts = self.probe_host()
        sessions = [self.registry.create_machine_session(facts)]
        for index in range(CONSOLE_COUNT):
            if self.stopped:
                logger.warning(
                    f"Service context stopped during bootstrap, skipping bridges {index}..{CONSOLE_COUNT - 1}"
                )
                break
            sessions.append(self.registry.create_bridge_session(index, facts))
        return sessions

    def request_termination(self) -> None:
        self.registry.request_termination()

    def shutdown(self) -> None:
        """Release locks, stop dispatching and wake up wait(). Idempotent."""
        with self._state_lock:
            if self._stopped.is_set():
                return
            self._stopped.set()
            started = self._started

        self.keep_alive.shutdown()
        if started:
            self.dispatcher.stop()
        self.launcher.shutdown()
        logger.info("Service context stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown.

        Returns:
            True if the context has stopped
        """
        return self._stopped.wait(timeout)


__all__ = ["ServiceContext", "ServiceError"]
