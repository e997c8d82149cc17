"""Child processes attached to a pseudo-terminal.

Philosophy:
- Single responsibility: Start, feed, watch and kill one child process
- Standard library only (pty, subprocess, threading)
- Exactly-once exit notification
- No leaked file descriptors when a launch fails halfway
- Writers never block: input is queued and drained by a per-process thread

Public API (the "studs"):
    PtyProcessLauncher: Starts children on a fresh PTY
    PtyProcess: Handle to a running child
    LaunchError: The OS refused to start the child
    NotRunning: Write attempted after the child exited
"""

import fcntl
import logging
import os
import pty
import queue
import select
import signal
import subprocess
import termios
import threading
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

# How often a blocked input writer rechecks whether the child is gone
WRITE_POLL_INTERVAL = 0.1


class LaunchError(Exception):
    """Raised when a child process cannot be started."""

    pass


class NotRunning(Exception):
    """Raised when writing to a process that already exited."""

    pass


def _acquire_controlling_tty() -> None:
    """Make stdin (the PTY slave) the controlling terminal of the child.

    Runs in the child after setsid(); bridges open /dev/tty and need one.
    """
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """Handle to a child process whose stdio is a PTY slave.

    Output is pushed to the on_output callback from a watcher thread; the
    on_exit callback is invoked exactly once, with the exit status (negative
    signal number if the child was killed by a signal).

    The master descriptor is non-blocking. Input handed to write() is queued
    and drained by a writer thread, so a child that stops reading (a raw-mode
    terminal with nothing consuming it) never stalls the caller.

    Example:
        >>> process = PtyProcessLauncher().launch("/bin/echo", ["echo", "hi"], {}, "/")
        >>> process.start(on_output=print, on_exit=lambda code: None)
    """

    def __init__(self, process: subprocess.Popen, master_fd: int, label: str = ""):
        self._process = process
        self._master_fd = master_fd
        self._label = label or str(process.pid)
        self._lock = threading.Lock()
        self._exited = False
        self._finish_requested = False
        self._exit_code: int | None = None
        self._watcher: threading.Thread | None = None
        self._writer: threading.Thread | None = None
        self._input: queue.Queue[bytes | None] = queue.Queue()
        self._closing = threading.Event()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Exit status once the child has been reaped, else None."""
        return self._exit_code

    def start(
        self,
        on_output: Callable[[bytes], None],
        on_exit: Callable[[int], None],
    ) -> None:
        """Start the watcher and writer threads.

        Args:
            on_output: Called with every chunk read from the PTY
            on_exit: Called once with the exit status
        """
        if self._watcher is not None:
            raise RuntimeError(f"Process {self._label} already started")

        os.set_blocking(self._master_fd, False)
        self._writer = threading.Thread(
            target=self._drain_input,
            name=f"pty-write-{self._label}",
            daemon=True,
        )
        self._watcher = threading.Thread(
            target=self._watch,
            args=(on_output, on_exit),
            name=f"pty-watch-{self._label}",
            daemon=True,
        )
        self._writer.start()
        self._watcher.start()

    def _watch(self, on_output: Callable[[bytes], None], on_exit: Callable[[int], None]) -> None:
        while True:
            select.select([self._master_fd], [], [])
            try:
                data = os.read(self._master_fd, READ_CHUNK_SIZE)
            except BlockingIOError:
                continue
            except OSError:
                # EIO once every slave descriptor is closed
                break
            if not data:
                break
            try:
                on_output(data)
            except Exception as e:
                logger.error(f"Output handler failed for {self._label}: {e}")

        returncode = self._process.wait()

        with self._lock:
            self._exited = True
            self._exit_code = returncode
        self._closing.set()
        self._input.put(None)
        if self._writer is not None:
            self._writer.join()
        try:
            os.close(self._master_fd)
        except OSError:
            pass

        logger.debug(f"Process {self._label} (pid {self.pid}) exited with {returncode}")
        on_exit(returncode)

    def _drain_input(self) -> None:
        while True:
            data = self._input.get()
            if data is None:
                return
            view = memoryview(data)
            while view:
                if self._closing.is_set():
                    return
                _, writable, _ = select.select([], [self._master_fd], [], WRITE_POLL_INTERVAL)
                if not writable:
                    continue
                try:
                    written = os.write(self._master_fd, view)
                except BlockingIOError:
                    continue
                except OSError as e:
                    logger.debug(f"Input to {self._label} dropped: {e}")
                    return
                view = view[written:]

    def is_running(self) -> bool:
        with self._lock:
            if self._exited:
                return False
        return self._process.poll() is None

    def write(self, data: bytes) -> None:
        """Queue bytes for the child's terminal. Never blocks.

        Raises:
            NotRunning: If the child already exited
        """
        with self._lock:
            if self._exited or self._process.poll() is not None:
                raise NotRunning(f"Process {self._label} is not running")
            self._input.put(bytes(data))

    def request_finish(self) -> None:
        """Kill the child and everything in its process group.

        Idempotent, no-op once it exited. Returns without waiting; the exit
        is reported through on_exit.
        """
        with self._lock:
            if self._exited or self._finish_requested:
                return
            self._finish_requested = True
            try:
                # The child leads its own session; descendants holding the
                # PTY slave share its process group
                os.killpg(self._process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        logger.debug(f"Sent SIGKILL to process group of {self._label} (pid {self.pid})")

    def join(self, timeout: float | None = None) -> None:
        """Wait for the watcher thread (tests and shutdown only)."""
        if self._watcher is not None:
            self._watcher.join(timeout)


class PtyProcessLauncher:
    """Start child processes attached to a new pseudo-terminal.

    The fork/exec runs on a worker thread so a hung launch surfaces as a
    LaunchError after `timeout` seconds instead of blocking the caller.
    """

    def __init__(self, timeout: float | None = 10.0):
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pty-launch")

    @staticmethod
    def _spawn(
        executable_path: str,
        argv: Sequence[str],
        envp: Mapping[str, str],
        working_directory: str,
        slave_fd: int,
    ) -> subprocess.Popen:
        return subprocess.Popen(
            list(argv),
            executable=executable_path,
            env=dict(envp),
            cwd=working_directory,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
            close_fds=True,
        )

    @staticmethod
    def _abandon(master_fd: int, slave_fd: int, future: Future) -> None:
        """Release everything a timed-out launch created once it completes."""
        for fd in (master_fd, slave_fd):
            try:
                os.close(fd)
            except OSError:
                pass
        if future.exception() is None:
            process = future.result()
            process.kill()
            process.wait()
            logger.warning(f"Killed late-starting process {process.pid}")

    def launch(
        self,
        executable_path: str,
        argv: Sequence[str],
        envp: Mapping[str, str],
        working_directory: str,
        label: str = "",
    ) -> PtyProcess:
        """Start a child on a fresh PTY.

        Args:
            executable_path: Binary to execute
            argv: Argument vector, argv[0] included
            envp: Complete child environment
            working_directory: Child working directory
            label: Name used in log messages

        Returns:
            PtyProcess handle; call start() to begin relaying output

        Raises:
            LaunchError: If the OS failed to start the process
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise LaunchError(f"Failed to allocate a pseudo-terminal: {e}") from e

        try:
            future = self._executor.submit(
                self._spawn, executable_path, argv, envp, working_directory, slave_fd
            )
        except RuntimeError as e:
            # Executor already shut down
            os.close(master_fd)
            os.close(slave_fd)
            raise LaunchError(f"Cannot start {executable_path}: {e}") from e

        try:
            process = future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            future.add_done_callback(lambda f: self._abandon(master_fd, slave_fd, f))
            raise LaunchError(
                f"Timed out after {self.timeout}s starting {executable_path}"
            ) from None
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise LaunchError(f"Failed to start {executable_path}: {e}") from e

        # The child holds its own copy; keeping ours would hide EIO on exit
        os.close(slave_fd)

        logger.info(f"Started {label or executable_path} (pid {process.pid})")
        return PtyProcess(process, master_fd, label)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


__all__ = ["LaunchError", "NotRunning", "PtyProcess", "PtyProcessLauncher"]
