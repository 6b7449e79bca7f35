"""
Collector Configuration Module

This module loads and validates the collector configuration. Settings
are read from the ``ipmi`` section of a YAML file and checked once, so
the rest of the collector only ever sees typed, validated values.

Example configuration:
    ipmi:
      mode: oob
      hosts: /etc/nmcollector/hosts
      user: ADMIN
      password: secret
      channel: "0x06"
      slave: "0x2c"
      sensors:
        inlet: 0x20
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

MODE_INBAND = "legacy_inband"
MODE_OOB = "oob"
MODE_OPENIPMI = "legacy_inband_openipmi"
MODES = (MODE_INBAND, MODE_OOB, MODE_OPENIPMI)


class ConfigurationError(Exception):
    """Raised when the configuration cannot produce a working collector"""
    pass


def _parse_address(name: str, value: Any) -> int:
    """Parse a channel/slave address given as int or string ("0x2c", "44")"""
    try:
        number = value if isinstance(value, int) else int(str(value), 0)
    except ValueError:
        raise ConfigurationError(f"Invalid {name} address: {value!r}")
    if not 0 <= number <= 0xFF:
        raise ConfigurationError(f"{name} address out of range: {value!r}")
    return number


def load_hosts(path: str) -> List[str]:
    """Load a newline-delimited host list.

    Blank lines and lines starting with '#' are skipped.

    Raises:
        ConfigurationError: If the file cannot be read or lists no hosts
    """
    try:
        with open(path) as f:
            hosts = [line.strip() for line in f]
    except OSError as e:
        raise ConfigurationError(f"Cannot read hosts file {path}: {e}")

    hosts = [h for h in hosts if h and not h.startswith("#")]
    if not hosts:
        raise ConfigurationError(f"Hosts file {path} lists no hosts")
    logger.info(f"Loaded {len(hosts)} host(s) from {path}")
    return hosts


@dataclass(frozen=True)
class CollectorConfig:
    """Validated collector settings

    Attributes:
        mode: Execution mode (legacy_inband, oob, legacy_inband_openipmi)
        vendor: Capability catalog name
        channel: Default bridging channel
        slave: Default bridging target (0 disables bridging)
        user: Out-of-band username
        password: Out-of-band password
        hosts: Path to the host list file (out-of-band mode)
        interface: ipmitool interface for out-of-band mode
        tool: ipmitool executable
        device: OpenIPMI device node
        timeout: Per-command timeout in seconds
        batch_timeout: Per-host batch deadline in seconds
        max_workers: Maximum number of hosts queried concurrently
        retries: Attempts when the device reports busy
        retry_delay: Delay between attempts in seconds
        sensors: Extra sensors to read, name -> sensor number
    """
    mode: str
    vendor: str = "generic"
    channel: int = 0x00
    slave: int = 0x00
    user: str = ""
    password: str = field(default="", repr=False)
    hosts: Optional[str] = None
    interface: str = "lanplus"
    tool: str = "ipmitool"
    device: str = "/dev/ipmi0"
    timeout: float = 10.0
    batch_timeout: float = 30.0
    max_workers: int = 16
    retries: int = 3
    retry_delay: float = 1.0
    sensors: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.mode not in MODES:
            raise ConfigurationError(
                f"Invalid mode {self.mode!r}, expected one of: {', '.join(MODES)}")
        if self.timeout <= 0 or self.batch_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.retries < 1:
            raise ConfigurationError("retries must be at least 1")
        if self.mode == MODE_OOB and not self.hosts:
            raise ConfigurationError("Mode 'oob' requires a hosts file")

    @classmethod
    def from_dict(cls, options: Optional[Mapping[str, Any]]) -> "CollectorConfig":
        """Build a configuration from a mapping of options.

        Args:
            options: Option values, typically the ``ipmi`` YAML section

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If an option is unknown, missing or invalid
        """
        options = dict(options or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {', '.join(unknown)}")
        if not options.get("mode"):
            raise ConfigurationError("No execution mode configured")

        kwargs: Dict[str, Any] = {"mode": str(options["mode"])}
        try:
            for name in ("vendor", "user", "password", "interface", "tool", "device"):
                if options.get(name) is not None:
                    kwargs[name] = str(options[name])
            for name in ("channel", "slave"):
                if options.get(name) is not None:
                    kwargs[name] = _parse_address(name, options[name])
            for name in ("timeout", "batch_timeout", "retry_delay"):
                if options.get(name) is not None:
                    kwargs[name] = float(options[name])
            for name in ("max_workers", "retries"):
                if options.get(name) is not None:
                    kwargs[name] = int(options[name])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid option value: {e}")

        if options.get("hosts"):
            kwargs["hosts"] = str(options["hosts"])
        if options.get("sensors"):
            if not isinstance(options["sensors"], Mapping):
                raise ConfigurationError("sensors must map sensor names to numbers")
            kwargs["sensors"] = {
                str(name): _parse_address("sensor", number)
                for name, number in options["sensors"].items()
            }
        return cls(**kwargs)

    @classmethod
    def load(cls, config_path: str) -> "CollectorConfig":
        """Load configuration from the ``ipmi`` section of a YAML file

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        try:
            with open(config_path) as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load configuration {config_path}: {e}")

        if not isinstance(document, Mapping):
            raise ConfigurationError(f"Configuration {config_path} is not a mapping")
        return cls.from_dict(document.get("ipmi"))

    def load_hosts(self) -> List[str]:
        """Read the configured host list"""
        if not self.hosts:
            raise ConfigurationError("No hosts file configured")
        return load_hosts(self.hosts)
