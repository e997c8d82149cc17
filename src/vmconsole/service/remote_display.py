"""Remote display enablement.

The machine starts with a VGA adapter but VNC disabled. On request, pick a
free local port and tell QEMU, through its monitor console, to start serving
VNC there.

Public API:
    enable_remote_display: Turn on VNC, return the TCP port
    find_free_vnc_port: First bindable port in the VNC range
    RemoteDisplayError: No port or no running machine session
"""

import logging
import socket

from vmconsole.modules.pty_process import NotRunning
from vmconsole.service.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

VNC_BASE_PORT = 5900
VNC_PORT_ATTEMPTS = 32
VNC_HOST = "127.0.0.1"


class RemoteDisplayError(Exception):
    """Raised when remote display cannot be enabled."""

    pass


def find_free_vnc_port(host: str = VNC_HOST) -> int | None:
    """Return the first port in 5900..5931 that can be bound, or None."""
    for offset in range(VNC_PORT_ATTEMPTS):
        port = VNC_BASE_PORT + offset
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError as e:
                logger.warning(f"Cannot acquire port {port} for VNC: {e}")
                continue
            return port
    return None


def enable_remote_display(registry: SessionRegistry) -> int:
    """Start VNC on the machine session.

    Args:
        registry: Registry holding the machine session

    Returns:
        TCP port the VNC server listens on

    Raises:
        RemoteDisplayError: If no machine is running or no port is free
    """
    machine = registry.machine_session()
    if machine is None or not machine.is_running():
        raise RemoteDisplayError("Virtual machine is not running")

    port = find_free_vnc_port()
    if port is None:
        raise RemoteDisplayError("Failed to find a suitable port for VNC server")

    display = port - VNC_BASE_PORT
    try:
        machine.write(f"change vnc {VNC_HOST}:{display}\n")
    except NotRunning as e:
        raise RemoteDisplayError(f"Virtual machine stopped: {e}") from e

    logger.info(f"VNC enabled on {VNC_HOST}:{port}")
    return port


__all__ = ["RemoteDisplayError", "enable_remote_display", "find_free_vnc_port"]
