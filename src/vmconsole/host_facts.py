"""Host capability facts.

Collects everything the launch builders need to know about the host in one
place, so that building argv/envp stays a pure function. Every host side
effect (memory query, mount check, custom image existence checks, environment
lookups) happens exactly once, in HostFacts.probe().

Public API:
    HostFacts: Immutable snapshot of host capabilities
    query_total_memory: Total physical memory in bytes, or None
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from vmconsole.config_manager import ConsoleConfig

logger = logging.getLogger(__name__)

# User-supplied images are looked up in the machine working directory
CUSTOM_CDROM_IMAGE_NAME = "cdrom.iso"
CUSTOM_HDD_IMAGE_NAME = "hdd.qcow2"

# Host variables copied into the machine environment when present
PASSTHROUGH_ENV_VARS = ("TZ", "LD_LIBRARY_PATH", "XDG_RUNTIME_DIR")


def query_total_memory() -> int | None:
    """Return total physical memory in bytes.

    Returns:
        Memory size, or None if the host refuses to tell
    """
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        pages = os.sysconf("SC_PHYS_PAGES")
    except (AttributeError, ValueError, OSError) as e:
        logger.error(f"Failed to determine size of host memory: {e}")
        return None

    if page_size <= 0 or pages <= 0:
        logger.error("Failed to determine size of host memory: sysconf returned no value")
        return None
    return page_size * pages


@dataclass(frozen=True)
class HostFacts:
    """Immutable snapshot of the host as seen at session-build time."""

    executable_dir: Path | None
    runtime_data_dir: Path
    temp_dir: Path
    total_memory_bytes: int | None = None
    external_storage_mounted: bool = False
    external_storage_root: Path | None = None
    custom_cdrom_present: bool = False
    custom_hdd_present: bool = False
    machine_executable: str = "qemu-system-x86_64"
    bridge_executable: str = "socat"
    machine_name: str = "Alpine Term"
    upstream_dns: str = "8.8.8.8"
    inherited_env: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def machine_working_dir(self) -> Path:
        """Working directory of the machine session."""
        if self.external_storage_mounted and self.external_storage_root is not None:
            return self.external_storage_root
        return self.runtime_data_dir

    @property
    def custom_cdrom_image(self) -> Path:
        return self.machine_working_dir / CUSTOM_CDROM_IMAGE_NAME

    @property
    def custom_hdd_image(self) -> Path:
        return self.machine_working_dir / CUSTOM_HDD_IMAGE_NAME

    @classmethod
    def probe(cls, config: ConsoleConfig) -> "HostFacts":
        """Inspect the host once and freeze the result.

        Args:
            config: Loaded configuration

        Returns:
            HostFacts snapshot
        """
        storage_root = Path(config.shared_storage_path).expanduser() if config.shared_storage_path else None
        storage_mounted = storage_root is not None and storage_root.is_dir()
        if storage_root is not None and not storage_mounted:
            logger.info(f"Shared storage {storage_root} is not mounted, passthrough disabled")

        runtime_dir = config.runtime_data_dir
        workdir = storage_root if storage_mounted else runtime_dir

        cdrom_present = (workdir / CUSTOM_CDROM_IMAGE_NAME).is_file()
        hdd_present = (workdir / CUSTOM_HDD_IMAGE_NAME).is_file()
        logger.debug(
            f"Custom images in {workdir}: cdrom={cdrom_present}, hdd={hdd_present}"
        )

        inherited = tuple(
            (name, os.environ[name]) for name in PASSTHROUGH_ENV_VARS if name in os.environ
        )

        return cls(
            executable_dir=Path(config.executable_dir).expanduser() if config.executable_dir else None,
            runtime_data_dir=runtime_dir,
            temp_dir=config.temp_dir,
            total_memory_bytes=query_total_memory(),
            external_storage_mounted=storage_mounted,
            external_storage_root=storage_root if storage_mounted else None,
            custom_cdrom_present=cdrom_present,
            custom_hdd_present=hdd_present,
            machine_executable=config.machine_executable,
            bridge_executable=config.bridge_executable,
            machine_name=config.machine_name,
            upstream_dns=config.upstream_dns,
            inherited_env=inherited,
        )


__all__ = [
    "CUSTOM_CDROM_IMAGE_NAME",
    "CUSTOM_HDD_IMAGE_NAME",
    "HostFacts",
    "query_total_memory",
]
