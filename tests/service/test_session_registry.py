"""Tests for SessionRegistry.

Testing Strategy:
- Unit tests with a fake launcher (fast)
- Integration tests with a stand-in relay, and with real socat when installed
"""

import os
import shutil
import socket
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from tests.utils import make_facts, wait_until, write_relay_executable
from vmconsole.launch_builder import ConfigurationError, build_machine_launch, console_socket_path
from vmconsole.models import SessionKind, SessionState
from vmconsole.modules.pty_process import LaunchError, PtyProcessLauncher
from vmconsole.service.dispatcher import EventDispatcher
from vmconsole.service.session import FINISH_EXIT_CODE, LAUNCH_FAILED_EXIT_CODE
from vmconsole.service.session_registry import (
    MACHINE_SESSION_NAME,
    SessionRegistry,
    bridge_session_name,
)


@pytest.fixture
def dispatcher():
    dispatcher = EventDispatcher()
    dispatcher.start()
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def callbacks():
    return {"on_change": Mock(), "on_terminate": Mock()}


@pytest.fixture
def registry(fake_launcher, dispatcher, callbacks):
    return SessionRegistry(fake_launcher, dispatcher, **callbacks)


@pytest.fixture
def populated(registry, host_facts):
    """Registry holding the machine and all four bridges."""
    registry.create_machine_session(host_facts)
    for index in range(4):
        registry.create_bridge_session(index, host_facts)
    return registry


# =============================================================================
# UNIT TESTS - fake launcher
# =============================================================================


class TestSessionCreation:
    """Test creating and listing sessions."""

    def test_starts_empty(self, registry):
        """Test a new registry has no sessions."""
        assert registry.is_empty()
        assert registry.sessions() == ()
        assert registry.machine_session() is None
        assert not registry.machine_running()

    def test_machine_session(self, registry, host_facts, fake_launcher, callbacks):
        """Test the machine session is launched with the built argv."""
        session = registry.create_machine_session(host_facts)

        assert session.name == MACHINE_SESSION_NAME == "QEMU"
        assert session.kind == SessionKind.MACHINE
        assert registry.sessions() == (session,)
        assert registry.machine_session() is session
        assert registry.machine_running()
        assert fake_launcher.launches[0]["argv"] == list(build_machine_launch(host_facts).argv)
        callbacks["on_change"].assert_called_once()

    def test_slot_order(self, populated):
        """Test slots follow creation order."""
        names = [session.name for session in populated.sessions()]
        assert names == ["QEMU", "/dev/ttyS0", "/dev/ttyS1", "/dev/ttyS2", "/dev/ttyS3"]
        assert [populated.index_of(s) for s in populated.sessions()] == [0, 1, 2, 3, 4]

    def test_bridge_session_names(self):
        """Test bridge session naming."""
        assert bridge_session_name(0) == "/dev/ttyS0"
        assert bridge_session_name(3) == "/dev/ttyS3"

    def test_bridge_session_attributes(self, registry, host_facts):
        """Test a bridge knows its console."""
        session = registry.create_bridge_session(2, host_facts)

        assert session.kind == SessionKind.BRIDGE
        assert session.console_index == 2
        assert session.argv[1] == "/dev/tty,rawer"

    def test_bridge_index_out_of_range(self, registry, host_facts, fake_launcher):
        """Test invalid console indexes launch nothing."""
        with pytest.raises(ValueError):
            registry.create_bridge_session(4, host_facts)

        assert fake_launcher.launches == []
        assert registry.is_empty()

    def test_launch_failure_listed_as_finished(self, registry, host_facts, fake_launcher, callbacks):
        """Test a failed launch keeps its slot, marked finished."""
        fake_launcher.fail_on = "QEMU"

        with pytest.raises(LaunchError):
            registry.create_machine_session(host_facts)

        (machine,) = registry.sessions()
        assert machine.name == MACHINE_SESSION_NAME
        assert machine.state == SessionState.FINISHED
        assert machine.exit_code == LAUNCH_FAILED_EXIT_CODE
        callbacks["on_change"].assert_called_once()

        bridge = registry.create_bridge_session(0, host_facts)
        assert registry.index_of(bridge) == 1

    def test_listed_before_child_starts(self, registry, host_facts, fake_launcher):
        """Test the session is in the registry by the time its child is launched."""
        listed_at_launch = []
        launch = fake_launcher.launch

        def recording_launch(*args, **kwargs):
            listed_at_launch.append([s.name for s in registry.sessions()])
            return launch(*args, **kwargs)

        fake_launcher.launch = recording_launch
        registry.create_machine_session(host_facts)

        assert listed_at_launch == [[MACHINE_SESSION_NAME]]

    def test_exit_during_start_keeps_session(self, registry, host_facts, fake_launcher, callbacks):
        """Test a child that dies while starting is listed as finished."""
        fake_launcher.exit_on_start["QEMU"] = 1

        machine = registry.create_machine_session(host_facts)

        assert registry.sessions() == (machine,)
        assert machine.state == SessionState.FINISHED
        assert machine.exit_code == 1
        assert not registry.teardown_if_idle(lock_held=False)
        callbacks["on_terminate"].assert_not_called()

    def test_configuration_error_surfaces(self, registry, runtime_layout, fake_launcher):
        """Test missing executables are reported before launching."""
        (runtime_layout["bin_dir"] / "socat").unlink()

        with pytest.raises(ConfigurationError):
            registry.create_bridge_session(0, make_facts(runtime_layout))

        assert fake_launcher.launches == []

    def test_index_of_unknown_session(self, registry, populated):
        """Test index_of rejects foreign sessions."""
        other = SessionRegistry(Mock(), EventDispatcher())
        with pytest.raises(ValueError):
            other.index_of(populated.sessions()[0])

    def test_snapshot_is_immutable(self, populated):
        """Test sessions() returns a snapshot, not the live list."""
        snapshot = populated.sessions()
        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 5


class TestFinishedSessions:
    """Test finished sessions stay listed."""

    def test_finished_session_keeps_slot(self, populated, fake_launcher):
        """Test a finished bridge stays in its slot with its exit code."""
        bridge = populated.sessions()[2]
        fake_launcher.process_for("/dev/ttyS1").exit(1)

        assert populated.sessions()[2] is bridge
        assert bridge.state == SessionState.FINISHED
        assert bridge.exit_code == 1
        assert populated.index_of(bridge) == 2

    def test_all_finished_does_not_terminate(self, populated, fake_launcher, callbacks):
        """Test the group stays up when every session has exited on its own."""
        for process in list(fake_launcher.processes):
            process.exit(1)

        assert not populated.is_empty()
        assert not populated.teardown_if_idle(lock_held=False)
        callbacks["on_terminate"].assert_not_called()

    def test_machine_stopped(self, populated, fake_launcher):
        """Test machine_running follows the machine session."""
        fake_launcher.process_for("QEMU").exit(0)
        assert not populated.machine_running()


class TestTermination:
    """Test request_termination and teardown."""

    def test_request_termination_finishes_all(self, populated, fake_launcher, callbacks):
        """Test every running session is finished and the group shut down."""
        populated.request_termination()

        assert populated.wants_to_stop
        for session in populated.sessions():
            assert session.state == SessionState.FINISHED
            assert session.exit_code == FINISH_EXIT_CODE
        assert all(p.finish_requests == 1 for p in fake_launcher.processes)
        callbacks["on_terminate"].assert_called_once()

    def test_request_termination_is_idempotent(self, populated, fake_launcher, callbacks):
        """Test a second request changes nothing."""
        populated.request_termination()
        populated.request_termination()

        assert all(p.finish_requests == 1 for p in fake_launcher.processes)
        callbacks["on_terminate"].assert_called_once()

    def test_request_termination_delivers_finished_once(
        self, populated, dispatcher, recording_observer, fake_launcher
    ):
        """Test each session reports finished exactly once across kill and exit."""
        populated.attach_observer(recording_observer)
        populated.request_termination()
        for process in fake_launcher.processes:
            process.exit(FINISH_EXIT_CODE)
        dispatcher.wait_idle()

        finished = recording_observer.of_kind("finished")
        assert sorted(name for _, name in finished) == sorted(
            s.name for s in populated.sessions()
        )

    def test_teardown_if_idle_empty(self, registry, callbacks):
        """Test an empty registry with no lock tears down once."""
        assert registry.teardown_if_idle(lock_held=False)
        assert registry.teardown_if_idle(lock_held=False)
        callbacks["on_terminate"].assert_called_once()

    def test_teardown_if_idle_lock_held(self, registry, callbacks):
        """Test a held lock keeps an empty group alive."""
        assert not registry.teardown_if_idle(lock_held=True)
        callbacks["on_terminate"].assert_not_called()

    def test_teardown_if_idle_nonempty(self, populated, callbacks):
        """Test registered sessions keep the group alive."""
        assert not populated.teardown_if_idle(lock_held=False)
        callbacks["on_terminate"].assert_not_called()


class TestConcurrentAccess:
    """Test creation concurrent with snapshot reads."""

    def test_snapshots_never_torn(self, registry, host_facts):
        """Test readers always see a consistent prefix of creation order."""
        stop = threading.Event()
        bad = []

        def reader():
            while not stop.is_set():
                names = [s.name for s in registry.sessions()]
                expected = ["QEMU", "/dev/ttyS0", "/dev/ttyS1", "/dev/ttyS2", "/dev/ttyS3"]
                if names != expected[: len(names)]:
                    bad.append(names)

        thread = threading.Thread(target=reader)
        thread.start()
        registry.create_machine_session(host_facts)
        for index in range(4):
            registry.create_bridge_session(index, host_facts)
        stop.set()
        thread.join()

        assert bad == []


class TestBridgeRelaunch:
    """Test bridges stay RUNNING when their relay loses its peer."""

    def test_clean_exit_relaunches_bridge(self, populated, fake_launcher, dispatcher, recording_observer):
        """Test a relay exiting with 0 is started again in the same session."""
        bridge = populated.sessions()[1]
        populated.attach_observer(recording_observer)

        for _ in range(3):
            fake_launcher.processes_for("/dev/ttyS0")[-1].exit(0)
        dispatcher.wait_idle()

        relays = fake_launcher.processes_for("/dev/ttyS0")
        assert len(relays) == 4
        assert bridge.state == SessionState.RUNNING
        assert bridge.relaunches == 3
        assert bridge.pid == relays[-1].pid
        assert populated.sessions()[1] is bridge
        assert fake_launcher.launches[-1]["argv"] == list(bridge.argv)
        assert recording_observer.of_kind("finished") == []

    def test_input_goes_to_relaunched_relay(self, populated, fake_launcher):
        """Test writes after a relaunch reach the new child."""
        bridge = populated.sessions()[1]
        fake_launcher.process_for("/dev/ttyS0").exit(0)

        bridge.write(b"root\n")

        first, second = fake_launcher.processes_for("/dev/ttyS0")
        assert first.written == []
        assert second.written == [b"root\n"]

    def test_error_exit_finishes_bridge(self, populated, fake_launcher):
        """Test a relay failing with a nonzero status is not relaunched."""
        bridge = populated.sessions()[1]
        fake_launcher.process_for("/dev/ttyS0").exit(0)
        fake_launcher.processes_for("/dev/ttyS0")[-1].exit(1)

        assert bridge.state == SessionState.FINISHED
        assert bridge.exit_code == 1
        assert len(fake_launcher.processes_for("/dev/ttyS0")) == 2

    def test_machine_is_not_relaunched(self, populated, fake_launcher):
        """Test a clean machine exit finishes the machine session."""
        fake_launcher.process_for("QEMU").exit(0)

        assert populated.sessions()[0].state == SessionState.FINISHED
        assert len(fake_launcher.processes_for("QEMU")) == 1

    def test_relaunch_failure_finishes_bridge(self, populated, fake_launcher, dispatcher, recording_observer):
        """Test a relay that cannot be started again finishes the session once."""
        bridge = populated.sessions()[1]
        populated.attach_observer(recording_observer)
        fake_launcher.fail_on = "/dev/ttyS0"

        fake_launcher.process_for("/dev/ttyS0").exit(0)
        dispatcher.wait_idle()

        assert bridge.state == SessionState.FINISHED
        assert bridge.exit_code == LAUNCH_FAILED_EXIT_CODE
        assert recording_observer.of_kind("finished") == [("finished", "/dev/ttyS0")]

    def test_termination_during_relaunch_delay(self, populated, fake_launcher):
        """Test a termination request cancels a pending relaunch."""
        relay = fake_launcher.process_for("/dev/ttyS0")
        exiting = threading.Thread(target=relay.exit, args=(0,))
        exiting.start()

        populated.request_termination()
        exiting.join(5)

        assert not exiting.is_alive()
        assert populated.sessions()[1].state == SessionState.FINISHED
        assert len(fake_launcher.processes_for("/dev/ttyS0")) == 1


# =============================================================================
# INTEGRATION TESTS - real PTYs, stand-in relay and real socat
# =============================================================================


def _listen(path: Path) -> socket.socket:
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(str(path))
    server.listen(1)
    server.settimeout(10)
    return server


@pytest.mark.posix_pty
@pytest.mark.skipif(os.name != "posix", reason="PTYs require a POSIX host")
class TestBridgeReconnectIntegration:
    """Run a bridge against a console socket that comes and goes."""

    @pytest.fixture(
        params=[
            "relay",
            pytest.param(
                "socat",
                marks=pytest.mark.skipif(shutil.which("socat") is None, reason="socat not installed"),
            ),
        ]
    )
    def bridge_bin_dir(self, request, tmp_path):
        """Directory holding the bridge executable under test."""
        if request.param == "socat":
            return Path(shutil.which("socat")).parent
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        write_relay_executable(bin_dir / "socat")
        return bin_dir

    @pytest.fixture
    def live_registry(self):
        launcher = PtyProcessLauncher()
        dispatcher = EventDispatcher()
        dispatcher.start()
        registry = SessionRegistry(launcher, dispatcher)
        yield registry
        registry.request_termination()
        dispatcher.stop()
        launcher.shutdown()

    def test_bridge_survives_socket_close_and_reopen(self, bridge_bin_dir, live_registry, tmp_path):
        """Test the bridge stays RUNNING while its socket is absent, closed and reopened."""
        runtime = tmp_path / "rt"
        runtime.mkdir()
        facts = make_facts({"bin_dir": bridge_bin_dir, "runtime_dir": runtime, "temp_dir": tmp_path})
        socket_path = console_socket_path(runtime, 0)
        bridge = live_registry.create_bridge_session(0, facts)

        time.sleep(0.5)
        assert bridge.state == SessionState.RUNNING

        for greeting in ("first boot", "second boot"):
            server = _listen(socket_path)
            try:
                conn, _ = server.accept()
                conn.sendall(f"{greeting}\r\n".encode())
                assert wait_until(lambda: greeting in bridge.transcript_text(), timeout=10)
                conn.close()
            finally:
                server.close()
                socket_path.unlink()

            # Longer than the retry interval and the relay's close timeout
            time.sleep(1.0)
            assert bridge.state == SessionState.RUNNING
            assert bridge.exit_code is None
