"""Wake lock and network keepalive, held as one pair.

The wake lock is an exclusive advisory lock on a file in the runtime data
directory, so only one vmconsole instance can claim to be keeping the machine
awake. The network keepalive is a systemd sleep inhibitor that keeps the host
(and its network links) from suspending under the guest.

Philosophy:
- Standard library only (fcntl, subprocess)
- Exponential backoff for contention handling
- Pair semantics: both held or neither

Public API:
    LockPair: Acquire/release wake lock and network keepalive together
    WakeLock: Exclusive file lock
    NetworkKeepalive: Sleep inhibitor process
    LockTimeoutError: Wake lock held by another process for too long
"""

import fcntl
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

WAKE_LOCK_FILE_NAME = ".wakelock"
INHIBITOR_WHO = "vmconsole"
INHIBITOR_WHY = "Virtual machine sessions are running"


class LockTimeoutError(Exception):
    """Raised when the wake lock cannot be acquired within timeout period."""


class WakeLock:
    """Exclusive flock() on <runtime>/.wakelock."""

    def __init__(self, lock_path: Path, timeout: float = 5.0):
        self.lock_path = lock_path
        self.timeout = timeout
        self._handle: BinaryIO | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Acquire the lock with exponential backoff: 0.1s → 0.2s → 0.4s → ...

        Raises:
            LockTimeoutError: If another process keeps the lock past timeout
        """
        if self._handle is not None:
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "ab")
        start_time = time.time()
        delay = 0.1

        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                elapsed = time.time() - start_time
                if elapsed >= self.timeout:
                    handle.close()
                    raise LockTimeoutError(
                        f"Failed to acquire wake lock after {self.timeout} seconds. "
                        f"File: {self.lock_path}. Another process may be holding the lock."
                    ) from None
                time.sleep(min(delay, self.timeout - elapsed))
                delay = min(delay * 2, 2.0)

        self._handle = handle
        logger.debug(f"Wake lock acquired: {self.lock_path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"Error during lock cleanup: {e}")
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Wake lock released: {self.lock_path}")


class NetworkKeepalive:
    """Hold a systemd-inhibit sleep/idle inhibitor while acquired.

    Hosts without systemd-inhibit get a no-op keepalive; the wake lock still
    works and the absence is logged once per acquisition.
    """

    def __init__(self, inhibit_command: str = "systemd-inhibit"):
        self.inhibit_command = inhibit_command
        self._process: subprocess.Popen | None = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        if self._held:
            return

        binary = shutil.which(self.inhibit_command)
        if binary is None:
            logger.warning(f"{self.inhibit_command} not found, host may still suspend")
        else:
            self._process = subprocess.Popen(
                [
                    binary,
                    "--what=sleep:idle",
                    f"--who={INHIBITOR_WHO}",
                    f"--why={INHIBITOR_WHY}",
                    "--mode=block",
                    "sleep",
                    "infinity",
                ],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            logger.debug(f"Sleep inhibitor started (pid {self._process.pid})")
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        if self._process is not None:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None
        self._held = False


class LockPair:
    """Wake lock + network keepalive, always acquired and released together."""

    def __init__(self, wake_lock: WakeLock, network_keepalive: NetworkKeepalive):
        self.wake_lock = wake_lock
        self.network_keepalive = network_keepalive

    @classmethod
    def for_runtime_dir(cls, runtime_data_dir: Path) -> "LockPair":
        return cls(WakeLock(runtime_data_dir / WAKE_LOCK_FILE_NAME), NetworkKeepalive())

    @property
    def held(self) -> bool:
        return self.wake_lock.held

    def acquire(self) -> None:
        """Acquire both locks, or neither.

        Raises:
            LockTimeoutError: If the wake lock is taken
            OSError: If the keepalive cannot be started
        """
        if self.held:
            return
        self.wake_lock.acquire()
        try:
            self.network_keepalive.acquire()
        except Exception:
            self.wake_lock.release()
            raise

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.network_keepalive.release()
        finally:
            self.wake_lock.release()


__all__ = ["LockPair", "LockTimeoutError", "NetworkKeepalive", "WakeLock"]
