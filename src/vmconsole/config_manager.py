"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores where runtime data and executables live, plus logging preferences.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation
- Unknown keys rejected on update
"""

import logging
import os
import tempfile
import tomllib  # Python 3.11+ (requires-python >= 3.11)
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomlkit

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".vmconsole"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class ConsoleConfig:
    """vmconsole configuration data."""

    data_dir: str = str(DEFAULT_HOME / "runtime")
    executable_dir: str = "/usr/bin"
    machine_executable: str = "qemu-system-x86_64"
    bridge_executable: str = "socat"
    machine_name: str = "Alpine Term"
    upstream_dns: str = "8.8.8.8"
    shared_storage_path: str | None = None  # 9p passthrough root, also the machine workdir
    log_level: str = "INFO"
    log_file: str = str(DEFAULT_HOME / "vmconsole.log")
    launch_timeout: float = 10.0

    @property
    def runtime_data_dir(self) -> Path:
        """Directory holding disk images, firmware and console sockets."""
        return Path(self.data_dir).expanduser()

    @property
    def temp_dir(self) -> Path:
        """Scratch directory handed to children as TMPDIR."""
        return self.runtime_data_dir.parent / "tmp"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # Filter out None values as TOML doesn't support them
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsoleConfig":
        """Create from dictionary."""
        defaults = cls()
        config = cls(
            data_dir=data.get("data_dir", defaults.data_dir),
            executable_dir=data.get("executable_dir", defaults.executable_dir),
            machine_executable=data.get("machine_executable", defaults.machine_executable),
            bridge_executable=data.get("bridge_executable", defaults.bridge_executable),
            machine_name=data.get("machine_name", defaults.machine_name),
            upstream_dns=data.get("upstream_dns", defaults.upstream_dns),
            shared_storage_path=data.get("shared_storage_path"),
            log_level=str(data.get("log_level", defaults.log_level)).upper(),
            log_file=data.get("log_file", defaults.log_file),
            launch_timeout=float(data.get("launch_timeout", defaults.launch_timeout)),
        )
        if config.log_level not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {config.log_level}. "
                f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        if config.launch_timeout <= 0:
            raise ConfigError("launch_timeout must be > 0")
        return config


class ConfigManager:
    """Manage vmconsole configuration file.

    Configuration is stored at ~/.vmconsole/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = DEFAULT_HOME
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _validate_config_path(cls, path: Path) -> Path:
        """Validate configuration file path for security.

        Args:
            path: Path to validate

        Returns:
            Validated, resolved path

        Raises:
            ConfigError: If path is outside allowed directories
        """
        resolved_path = path.resolve()

        allowed_dirs = [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),  # Allow pytest tmp_path
        ]

        for allowed_dir in allowed_dirs:
            try:
                resolved_path.relative_to(allowed_dir)
                return resolved_path
            except ValueError:
                continue

        raise ConfigError(
            f"Config path outside allowed directories: {resolved_path}\n"
            f"Allowed directories:\n"
            f"  - {cls.DEFAULT_CONFIG_DIR}\n"
            f"  - {Path.cwd()}"
        )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            Path to config file

        Raises:
            ConfigError: If path is invalid or outside allowed directories
        """
        if custom_path:
            return cls._validate_config_path(Path(custom_path).expanduser())

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> ConsoleConfig:
        """Load configuration from file.

        A missing file yields the defaults.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            ConsoleConfig object

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return ConsoleConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomllib.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            return ConsoleConfig.from_dict(data)

        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: ConsoleConfig, custom_path: str | None = None) -> Path:
        """Save configuration to file.

        Args:
            config: Configuration to save
            custom_path: Custom config file path (optional)

        Returns:
            Path the configuration was written to

        Raises:
            ConfigError: If saving fails
        """
        temp_path: Path | None = None
        try:
            config_path = cls.get_config_path(custom_path)
            config_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

            temp_path = config_path.with_suffix(".tmp")

            # Load existing file if it exists (preserves comments/formatting)
            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> ConsoleConfig:
        """Update configuration values.

        Args:
            custom_path: Custom config file path (optional)
            **updates: Configuration values to update

        Returns:
            Updated ConsoleConfig

        Raises:
            ConfigError: If a key is unknown or the result is invalid
        """
        known = {f.name for f in fields(ConsoleConfig)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise ConfigError(
                f"Unknown config key(s): {', '.join(unknown)}. "
                f"Valid keys: {', '.join(sorted(known))}"
            )

        data = cls.load_config(custom_path).to_dict()
        data.update(updates)
        config = ConsoleConfig.from_dict(data)
        cls.save_config(config, custom_path)
        return config


__all__ = ["VALID_LOG_LEVELS", "ConfigError", "ConfigManager", "ConsoleConfig"]
