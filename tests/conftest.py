"""
Shared test fixtures and configuration for vmconsole tests.

This module provides common fixtures used across all test types:
- A runtime data layout with stand-in executables
- HostFacts snapshots built from that layout
- Fake PTY launchers
- A recording observer
"""

import pytest

from tests.mocks.pty_mock import FakePtyLauncher
from tests.utils import RecordingObserver, make_facts
from vmconsole.config_manager import ConsoleConfig

# ============================================================================
# DIRECTORY FIXTURES
# ============================================================================


@pytest.fixture
def runtime_layout(tmp_path):
    """Runtime directory plus an executable directory with stand-in binaries.

    Returns:
        Dict with bin_dir, runtime_dir and temp_dir paths
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name in ("qemu-system-x86_64", "socat"):
        binary = bin_dir / name
        binary.write_text("#!/bin/sh\nexit 0\n")
        binary.chmod(0o755)

    runtime_dir = tmp_path / "runtime"
    runtime_dir.mkdir()
    (runtime_dir / "qemu-data").mkdir()

    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()

    return {"bin_dir": bin_dir, "runtime_dir": runtime_dir, "temp_dir": temp_dir}


@pytest.fixture
def console_config(runtime_layout, tmp_path):
    """ConsoleConfig pointing at the runtime layout."""
    return ConsoleConfig(
        data_dir=str(runtime_layout["runtime_dir"]),
        executable_dir=str(runtime_layout["bin_dir"]),
        log_file=str(tmp_path / "vmconsole.log"),
    )


# ============================================================================
# HOST FACTS FIXTURES
# ============================================================================


@pytest.fixture
def host_facts(runtime_layout):
    """HostFacts of an 8 GiB host without storage or custom images."""
    return make_facts(runtime_layout)


# ============================================================================
# PROCESS FIXTURES
# ============================================================================


@pytest.fixture
def fake_launcher():
    """Launcher returning FakePtyProcess handles."""
    return FakePtyLauncher()


@pytest.fixture
def recording_observer():
    """Observer that records all callbacks."""
    return RecordingObserver()
