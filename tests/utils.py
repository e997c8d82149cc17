"""
Test utilities for vmconsole tests.

This module provides helper functions and classes for
common test operations and assertions.
"""

import sys
import textwrap
import threading
import time
from collections.abc import Callable
from pathlib import Path

from vmconsole.host_facts import HostFacts

GIB = 1024**3


def make_facts(layout: dict, **overrides) -> HostFacts:
    """Build HostFacts for a runtime layout.

    Args:
        layout: Dict from the runtime_layout fixture
        **overrides: HostFacts fields to replace

    Returns:
        HostFacts of an 8 GiB host unless overridden
    """
    values = {
        "executable_dir": layout["bin_dir"],
        "runtime_data_dir": layout["runtime_dir"],
        "temp_dir": layout["temp_dir"],
        "total_memory_bytes": 8 * GIB,
    }
    values.update(overrides)
    return HostFacts(**values)


def write_image(path: Path) -> Path:
    """Create a small placeholder disk image."""
    path.write_bytes(b"\0" * 16)
    return path


RELAY_SOURCE = textwrap.dedent(
    """\
    import os
    import socket
    import sys
    import time

    path, *options = sys.argv[2].split(":", 1)[1].split(",")
    settings = dict(option.split("=", 1) for option in options if "=" in option)
    interval = float(settings.get("interval", "1"))

    while True:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
            break
        except OSError:
            sock.close()
            time.sleep(interval)

    while True:
        data = sock.recv(4096)
        if not data:
            break
        os.write(1, data)
    """
)


def write_relay_executable(path: Path) -> Path:
    """Install a stand-in for the console bridge relay.

    Like socat with UNIX-CONNECT:...,forever it retries the connect at the
    given interval, copies socket data to its terminal and exits 0 once an
    established connection is closed by the peer.
    """
    path.write_text(f"#!{sys.executable}\n{RELAY_SOURCE}")
    path.chmod(0o755)
    return path


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class RecordingObserver:
    """Observer that records every callback as (kind, session name[, text])."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.finished = threading.Event()

    def on_title_changed(self, session):
        self.calls.append(("title", session.name))

    def on_session_finished(self, session):
        self.calls.append(("finished", session.name))
        self.finished.set()

    def on_text_changed(self, session):
        self.calls.append(("text", session.name))

    def on_bell(self, session):
        self.calls.append(("bell", session.name))

    def on_clipboard_text(self, session, text):
        self.calls.append(("clipboard", session.name, text))

    def on_colors_changed(self, session):
        self.calls.append(("colors", session.name))

    def of_kind(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]
