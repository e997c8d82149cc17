"""Launch builder module.

This module builds the exact command lines and environments for the two kinds
of launchable session: the emulated machine (QEMU) and the console bridges
(socat). Both builders are pure functions of HostFacts: identical facts always
produce identical LaunchSpecs.

Compatibility:
- The machine argv layout is consumed by a fixed engine binary; flag order
  and values must not drift
- Bridges connect to <runtime>/.qemu<N> and retry forever, so a bridge may be
  started before the machine is listening, or outlive a machine restart

Public API:
    build_machine_launch: LaunchSpec for the machine session
    build_bridge_launch: LaunchSpec for one console bridge
    compute_memory_allocation: RAM / TCG buffer sizing
    console_socket_path: Rendezvous socket of a console
    ConfigurationError: Raised when paths cannot be resolved
"""

import logging
import math
from pathlib import Path

from vmconsole.host_facts import HostFacts
from vmconsole.models import LaunchSpec

logger = logging.getLogger(__name__)

CONSOLE_COUNT = 4

# Files installed into the runtime data directory
CDROM_IMAGE_NAME = "alpine-x86_64.iso"
HDD_IMAGE_NAME = "userdata.qcow2"
QEMU_DATA_DIR_NAME = "qemu-data"

# Fractions of host memory given to guest RAM and to the TCG translation
# buffer. Going above ~40-50% of host memory in total risks the host
# reclaiming the whole process group; treat these as a ceiling.
RAM_FRACTION = 0.32
TCG_BUFFER_FRACTION = 0.08
FALLBACK_RAM_MIB = 256
FALLBACK_TCG_BUFFER_MIB = 64

SHARED_STORAGE_MOUNT_TAG = "shared_storage"

BRIDGE_RETRY_INTERVAL = "0.1"

LANG = "en_US.UTF-8"


class ConfigurationError(Exception):
    """Raised when an executable or required directory cannot be resolved."""

    pass


def compute_memory_allocation(total_memory_bytes: int | None) -> tuple[int, int]:
    """Size guest RAM and the TCG buffer from host memory.

    Args:
        total_memory_bytes: Host memory, None if unknown

    Returns:
        (ram_mib, tcg_buffer_mib)

    Example:
        >>> compute_memory_allocation(None)
        (256, 64)
    """
    if total_memory_bytes is None or total_memory_bytes < 0:
        return FALLBACK_RAM_MIB, FALLBACK_TCG_BUFFER_MIB

    ram_mib = math.floor(total_memory_bytes * RAM_FRACTION / 1048576)
    tcg_mib = math.floor(total_memory_bytes * TCG_BUFFER_FRACTION / 1048576)
    return ram_mib, tcg_mib


def console_socket_path(runtime_data_dir: Path, console_index: int) -> Path:
    """Path of the listening socket for one machine console."""
    return runtime_data_dir / f".qemu{console_index}"


def _resolve_executable(name: str, executable_dir: Path | None) -> Path:
    """Resolve an executable against the configured executable directory.

    Raises:
        ConfigurationError: If the executable does not exist
    """
    candidate = Path(name)
    if not candidate.is_absolute():
        if executable_dir is None:
            raise ConfigurationError(f"No executable directory configured for {name}")
        candidate = executable_dir / name

    if not candidate.is_file():
        raise ConfigurationError(
            f"Executable not found: {candidate}\n"
            "Set executable_dir in ~/.vmconsole/config.toml"
        )
    return candidate


def _require_runtime_dir(facts: HostFacts) -> None:
    if not facts.runtime_data_dir.is_dir():
        raise ConfigurationError(
            f"Runtime data directory does not exist: {facts.runtime_data_dir}\n"
            "Install the runtime data before starting sessions"
        )


def _machine_environment(facts: HostFacts, executable: Path, working_dir: Path) -> dict[str, str]:
    envp = {name: value for name, value in facts.inherited_env}
    envp.update(
        {
            "APP_RUNTIME_DIR": str(facts.runtime_data_dir),
            "LANG": LANG,
            "HOME": str(working_dir),
            "PATH": str(facts.executable_dir or executable.parent),
            "TMPDIR": str(facts.temp_dir),
            # Used by QEMU internal DNS
            "CONFIG_QEMU_DNS": facts.upstream_dns,
        }
    )
    return envp


def _storage_args(facts: HostFacts) -> list[str]:
    runtime = facts.runtime_data_dir
    cdrom = facts.custom_cdrom_image if facts.custom_cdrom_present else None
    hdd = facts.custom_hdd_image if facts.custom_hdd_present else None
    hdd_opts = "discard=unmap,detect-zeroes=unmap,cache=writeback"

    args = ["-drive", f"file={runtime / CDROM_IMAGE_NAME},if=none,media=cdrom,index=0,id=cd0"]
    if cdrom:
        args += ["-drive", f"file={cdrom},if=none,media=cdrom,index=1,id=cd1"]
    args += ["-drive", f"file={runtime / HDD_IMAGE_NAME},if=none,index=3,{hdd_opts},id=hd0"]
    if hdd:
        args += ["-drive", f"file={hdd},if=none,index=4,{hdd_opts},id=hd1"]

    args += ["-device", "virtio-scsi-pci,id=virtio-scsi-pci0"]
    args += ["-device", "scsi-cd,bus=virtio-scsi-pci0.0,id=scsi-cd0,drive=cd0"]
    if cdrom:
        args += ["-device", "scsi-cd,bus=virtio-scsi-pci0.0,id=scsi-cd1,drive=cd1"]
    args += ["-device", "scsi-hd,bus=virtio-scsi-pci0.0,id=scsi-hd0,drive=hd0"]
    if hdd:
        args += ["-device", "scsi-hd,bus=virtio-scsi-pci0.0,id=scsi-hd1,drive=hd1"]
    return args


def build_machine_launch(facts: HostFacts) -> LaunchSpec:
    """Build the launch specification of the machine session.

    Args:
        facts: Host snapshot

    Returns:
        LaunchSpec for the QEMU process

    Raises:
        ConfigurationError: If the executable or runtime directory is missing
    """
    executable = _resolve_executable(facts.machine_executable, facts.executable_dir)
    _require_runtime_dir(facts)

    runtime = facts.runtime_data_dir
    working_dir = facts.machine_working_dir
    ram_mib, tcg_mib = compute_memory_allocation(facts.total_memory_bytes)
    if facts.total_memory_bytes is None:
        logger.warning(
            f"Host memory unknown, using {FALLBACK_RAM_MIB}M RAM and {FALLBACK_TCG_BUFFER_MIB}M TCG buffer"
        )

    argv = [str(executable)]
    argv += ["-name", facts.machine_name]
    # Firmware & keymap files
    argv += ["-L", str(runtime / QEMU_DATA_DIR_NAME)]
    argv += ["-cpu", "max"]
    argv += ["-smp", "cpus=4,cores=4,threads=1,sockets=1"]
    argv += ["-m", f"{ram_mib}M", "-accel", f"tcg,tb-size={tcg_mib}"]
    argv += ["-device", "virtio-balloon"]
    argv += ["-nodefaults"]

    argv += _storage_args(facts)

    argv += ["-boot", "c,menu=on"]
    argv += ["-object", "rng-random,filename=/dev/urandom,id=rng0"]
    argv += ["-device", "virtio-rng-pci,rng=rng0,id=virtio-rng-pci0"]

    argv += ["-netdev", "user,id=vmnic0"]
    argv += ["-device", "virtio-net-pci,netdev=vmnic0,id=virtio-net-pci0"]

    if facts.external_storage_mounted and facts.external_storage_root is not None:
        argv += [
            "-fsdev",
            f"local,security_model=none,id=fsdev0,multidevs=remap,path={facts.external_storage_root}",
        ]
        argv += [
            "-device",
            f"virtio-9p-pci,fsdev=fsdev0,mount_tag={SHARED_STORAGE_MOUNT_TAG},id=virtio-9p-pci0",
        ]

    argv += ["-nographic"]
    # Graphics adapter for remote display tooling; VNC stays off until requested
    argv += ["-device", "VGA,id=vga-pci0,vgamem_mb=32", "-vnc", "none"]
    argv += ["-device", "qemu-xhci,id=qemu-xhci-pci0"]
    argv += ["-device", "usb-tablet,bus=qemu-xhci-pci0.0,id=usb-tablet0"]
    argv += ["-k", "en-us"]
    argv += ["-parallel", "none"]

    # Monitor console on the controlling terminal
    argv += ["-chardev", "stdio,id=monitor0,mux=off,signal=off"]
    argv += ["-monitor", "chardev:monitor0"]

    for index in range(CONSOLE_COUNT):
        socket_path = console_socket_path(runtime, index)
        argv += ["-chardev", f"socket,server,nowait,id=console{index},path={socket_path}"]
        argv += ["-serial", f"chardev:console{index}"]

    return LaunchSpec(
        executable_path=str(executable),
        argv=tuple(argv),
        envp=_machine_environment(facts, executable, working_dir),
        working_directory=str(working_dir),
    )


def build_bridge_launch(console_index: int, facts: HostFacts) -> LaunchSpec:
    """Build the launch specification of one console bridge.

    The bridge puts its controlling terminal in raw mode and connects it to
    the console socket, retrying forever when the socket is absent or drops.

    Args:
        console_index: Console number, 0..3
        facts: Host snapshot

    Returns:
        LaunchSpec for the socat process

    Raises:
        ValueError: If console_index is out of range
        ConfigurationError: If the executable or runtime directory is missing
    """
    if not 0 <= console_index < CONSOLE_COUNT:
        raise ValueError(f"console_index must be in 0..{CONSOLE_COUNT - 1}, got {console_index}")

    executable = _resolve_executable(facts.bridge_executable, facts.executable_dir)
    _require_runtime_dir(facts)

    runtime = facts.runtime_data_dir
    socket_path = console_socket_path(runtime, console_index)

    argv = (
        str(executable),
        "/dev/tty,rawer",
        f"UNIX-CONNECT:{socket_path},interval={BRIDGE_RETRY_INTERVAL},forever",
    )
    envp = {
        "PREFIX": str(runtime),
        "LANG": LANG,
        "HOME": str(runtime),
        "PATH": str(facts.executable_dir or executable.parent),
        "TMPDIR": str(facts.temp_dir),
    }

    return LaunchSpec(
        executable_path=str(executable),
        argv=argv,
        envp=envp,
        working_directory=str(runtime),
    )


__all__ = [
    "BRIDGE_RETRY_INTERVAL",
    "CDROM_IMAGE_NAME",
    "CONSOLE_COUNT",
    "HDD_IMAGE_NAME",
    "QEMU_DATA_DIR_NAME",
    "ConfigurationError",
    "build_bridge_launch",
    "build_machine_launch",
    "compute_memory_allocation",
    "console_socket_path",
]
