"""Session - one supervised child process plus its terminal engine.

Philosophy:
- Single responsibility: Own one process handle and its state machine
- RUNNING → FINISHED exactly once, never back
- A relaunching session stays RUNNING across clean exits of its child
- Notifications go out through the session channel, never directly to a UI

Public API (Studs):
    Session - Supervised process with identity and terminal binding
"""

import logging
import signal
import threading
import uuid

from vmconsole.models import EventKind, LaunchSpec, SessionKind, SessionState
from vmconsole.modules.pty_process import LaunchError, NotRunning, PtyProcess, PtyProcessLauncher
from vmconsole.modules.terminal_engine import TranscriptEngine
from vmconsole.service.dispatcher import SessionChannel

logger = logging.getLogger(__name__)

# Exit status recorded when a session is finished on request
FINISH_EXIT_CODE = -signal.SIGKILL

# Exit status recorded when the child could not be started
LAUNCH_FAILED_EXIT_CODE = 127


class _EngineClient:
    """Forwards engine notifications to the session channel."""

    def __init__(self, session: "Session"):
        self._session = session

    def on_title_changed(self, title: str) -> None:
        self._session._post(EventKind.TITLE_CHANGED)

    def on_text_changed(self) -> None:
        self._session._post(EventKind.TEXT_CHANGED)

    def on_bell(self) -> None:
        self._session._post(EventKind.BELL)

    def on_clipboard_text(self, text: str) -> None:
        self._session._post(EventKind.CLIPBOARD_TEXT, text)

    def on_colors_changed(self) -> None:
        self._session._post(EventKind.COLORS_CHANGED)


class Session:
    """A supervised child process addressable as a terminal session.

    Sessions are created by the SessionRegistry. A finished session keeps its
    transcript and exit status for inspection and is never restarted.

    With relaunch_delay set, a child that exits with status 0 is started
    again after that many seconds and the session stays RUNNING. Bridges use
    this: their relay exits cleanly once an established peer connection is
    lost, and the relaunched relay waits for the socket to come back.

    Example:
        >>> session = Session("QEMU", SessionKind.MACHINE, spec, channel)
        >>> session.start(PtyProcessLauncher())
        >>> session.write("info status\\n")
    """

    def __init__(
        self,
        name: str,
        kind: SessionKind,
        launch_spec: LaunchSpec,
        channel: SessionChannel,
        console_index: int | None = None,
        relaunch_delay: float | None = None,
    ):
        self.handle = uuid.uuid4().hex
        self.name = name
        self.kind = kind
        self.console_index = console_index
        self.launch_spec = launch_spec

        self._channel = channel
        self._channel.session = self
        self._lock = threading.Lock()
        self._state = SessionState.RUNNING
        self._exit_code: int | None = None
        self._process: PtyProcess | None = None
        self._engine = TranscriptEngine(_EngineClient(self))
        self._launcher: PtyProcessLauncher | None = None
        self._relaunch_delay = relaunch_delay
        self._relaunches = 0
        self._finish_requested = threading.Event()

    def __repr__(self) -> str:
        return f"Session(name={self.name!r}, kind={self.kind.value}, state={self._state.value})"

    @property
    def executable_path(self) -> str:
        return self.launch_spec.executable_path

    @property
    def argv(self) -> tuple[str, ...]:
        return self.launch_spec.argv

    @property
    def envp(self) -> dict[str, str]:
        return dict(self.launch_spec.envp)

    @property
    def working_directory(self) -> str:
        return self.launch_spec.working_directory

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def exit_code(self) -> int | None:
        """Exit status once FINISHED, else None."""
        return self._exit_code

    @property
    def title(self) -> str:
        """Most recent title reported by the terminal engine, or ""."""
        return self._engine.title

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def relaunches(self) -> int:
        """How many times the child was started again after a clean exit."""
        return self._relaunches

    def transcript_text(self) -> str:
        return self._engine.transcript_text()

    def start(self, launcher: PtyProcessLauncher) -> None:
        """Launch the child process.

        Raises:
            LaunchError: If the process cannot be started. The session is
                FINISHED with LAUNCH_FAILED_EXIT_CODE before this propagates.
        """
        self._launcher = launcher
        try:
            self._launch()
        except LaunchError:
            self._finish_with(LAUNCH_FAILED_EXIT_CODE)
            raise

    def _launch(self) -> None:
        spec = self.launch_spec
        logger.info(f"Initiating {self.name} session with arguments: {list(spec.argv)}")
        process = self._launcher.launch(
            spec.executable_path,
            spec.argv,
            spec.envp,
            spec.working_directory,
            label=self.name,
        )
        with self._lock:
            self._process = process
            finished = self._state != SessionState.RUNNING
        process.start(on_output=self._engine.feed, on_exit=self._on_process_exit)
        if finished:
            # finish_if_running() ran while the launch was in flight
            process.request_finish()

    def is_running(self) -> bool:
        return self._state == SessionState.RUNNING

    def write(self, data: str | bytes) -> None:
        """Send input to the child's terminal. Never blocks.

        Raises:
            NotRunning: If the session is FINISHED or the child already exited
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            if self._state != SessionState.RUNNING or self._process is None:
                raise NotRunning(f"Session {self.name} is not running")
            self._process.write(data)

    def finish_if_running(self) -> None:
        """Kill the child and mark the session FINISHED. No-op if already finished."""
        with self._lock:
            if self._state != SessionState.RUNNING:
                return
            self._finish_requested.set()
            if self._process is not None:
                self._process.request_finish()
            self._mark_finished(FINISH_EXIT_CODE)

    def _on_process_exit(self, exit_code: int) -> None:
        with self._lock:
            if self._state != SessionState.RUNNING:
                return
            if self._relaunch_delay is None or exit_code != 0:
                self._mark_finished(exit_code)
                return

        logger.info(f"Session {self.name} lost its peer, relaunching in {self._relaunch_delay}s")
        if self._finish_requested.wait(self._relaunch_delay):
            return
        try:
            self._launch()
        except LaunchError as e:
            logger.error(f"Failed to relaunch {self.name}: {e}")
            self._finish_with(LAUNCH_FAILED_EXIT_CODE)
            return
        self._relaunches += 1

    def _finish_with(self, exit_code: int) -> None:
        with self._lock:
            if self._state != SessionState.RUNNING:
                return
            self._mark_finished(exit_code)

    def _mark_finished(self, exit_code: int) -> None:
        # Caller holds self._lock
        self._state = SessionState.FINISHED
        self._exit_code = exit_code
        if exit_code != 0:
            logger.warning(f"Session {self.name} finished with exit code {exit_code}")
        else:
            logger.info(f"Session {self.name} finished")
        self._post(EventKind.SESSION_FINISHED)

    def _post(self, kind: EventKind, text: str | None = None) -> None:
        self._channel.post(kind, text)


__all__ = ["FINISH_EXIT_CODE", "LAUNCH_FAILED_EXIT_CODE", "Session"]
