"""
Configuration loader for the MessageBox.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

try:
    import yaml
except ImportError:
    yaml = None

from ..core.exceptions import MessageBoxConfigError
from ..core.models import ErrorPolicy, RetentionPolicy
from ..runner.consumption_loop import LoopConfig


logger = logging.getLogger(__name__)


@dataclass
class AdapterConfig:
    """
    One adapter instance on an interface.

    Attributes:
        name: Instance name, unique within the interface (subscriber name
            for destinations)
        adapter: Registered connector name (csv, sqlserver, http, test)
        location: Connector-specific source or destination
        options: Connector constructor options
        enabled: Disabled instances are registered but never run
    """
    name: str
    adapter: str
    location: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any], context: str) -> "AdapterConfig":
        if not isinstance(data, dict):
            raise MessageBoxConfigError(f"{context}: adapter entry must be a mapping")
        missing = [key for key in ("name", "adapter") if not data.get(key)]
        if missing:
            raise MessageBoxConfigError(f"{context}: missing {', '.join(missing)}")
        return cls(
            name=str(data["name"]),
            adapter=str(data["adapter"]).lower(),
            location=str(data.get("location", "")),
            options=dict(data.get("options") or {}),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class InterfaceConfig:
    """
    One interface: a source feeding any number of destinations.

    Attributes:
        name: Interface name
        source: Source adapter (None when messages are written externally)
        destinations: Destination adapters
        fan_out: Deliver every message to every enabled destination
        consumer: Per-interface overrides of the consumer settings
        enabled: Disabled interfaces are skipped by the transport
    """
    name: str
    source: Optional[AdapterConfig] = None
    destinations: List[AdapterConfig] = field(default_factory=list)
    fan_out: bool = True
    consumer: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @property
    def enabled_destinations(self) -> List[AdapterConfig]:
        return [d for d in self.destinations if d.enabled]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterfaceConfig":
        if not isinstance(data, dict) or not data.get("name"):
            raise MessageBoxConfigError("Every interface needs a name")
        name = str(data["name"])

        source = None
        if data.get("source"):
            source = AdapterConfig.from_dict(data["source"], f"interface {name} source")

        destinations = [
            AdapterConfig.from_dict(d, f"interface {name} destination")
            for d in data.get("destinations") or []
        ]
        names = [d.name for d in destinations]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MessageBoxConfigError(
                f"Interface {name} has duplicate destination names: {duplicates}"
            )

        return cls(
            name=name,
            source=source,
            destinations=destinations,
            fan_out=bool(data.get("fan_out", True)),
            consumer=dict(data.get("consumer") or {}),
            enabled=bool(data.get("enabled", True)),
        )


class MessageBoxConfig:
    """
    Configuration for the MessageBox.

    Loads YAML configuration files and applies environment overrides.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = self._load_config() if self.config_path else self._default_config()
        self._apply_env_overrides()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file, layered over the defaults."""
        if yaml is None:
            raise ImportError(
                "pyyaml is required for config loading. "
                "Install with: pip install pyyaml"
            )

        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise MessageBoxConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise MessageBoxConfigError(f"Config root must be a mapping: {self.config_path}")

        return _deep_merge(self._default_config(), loaded)

    def _default_config(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "store": {
                "backend": "sqlite",
                "sqlite": {
                    "path": "local/messagebox/messagebox.db",
                },
                "sqlserver": {
                    "host": "localhost",
                    "port": 1433,
                    "database": "MessageBox",
                    "user": "sa",
                    "schema": "messagebox",
                    "driver": "ODBC Driver 18 for SQL Server",
                },
            },
            "consumer": {
                "lease_seconds": 300,
                "use_subscriptions": True,
                "page_size": None,
                "retention": RetentionPolicy.RETAIN.value,
                "error_policy": ErrorPolicy.QUARANTINE.value,
                "max_retries": 3,
                "poll_interval": 5.0,
            },
            "debatcher": {
                "batch_size": 1000,
            },
            "interfaces": [],
        }

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        store = self.config.setdefault("store", {})

        backend = os.environ.get("MESSAGEBOX_BACKEND")
        if backend:
            store["backend"] = backend.lower()

        sqlite_path = os.environ.get("MESSAGEBOX_SQLITE_PATH")
        if sqlite_path:
            store.setdefault("sqlite", {})["path"] = sqlite_path

        conn_str = os.environ.get("MESSAGEBOX_SQLSERVER_CONN_STR")
        if conn_str:
            store.setdefault("sqlserver", {})["connection_string"] = conn_str

        password = os.environ.get("MESSAGEBOX_SQLSERVER_PASSWORD")
        if password:
            store.setdefault("sqlserver", {})["password"] = password

        lease_seconds = os.environ.get("MESSAGEBOX_LEASE_SECONDS")
        if lease_seconds:
            try:
                self.config.setdefault("consumer", {})["lease_seconds"] = int(lease_seconds)
            except ValueError as e:
                raise MessageBoxConfigError(
                    f"MESSAGEBOX_LEASE_SECONDS must be an integer: {lease_seconds}"
                ) from e

    def get_store_config(self) -> Dict[str, Any]:
        """Get MessageBox store configuration."""
        return self.config.get("store", {})

    def get_consumer_config(self) -> Dict[str, Any]:
        """Get consumption loop configuration."""
        return self.config.get("consumer", {})

    def get_debatcher_config(self) -> Dict[str, Any]:
        """Get debatcher configuration."""
        return self.config.get("debatcher", {})

    def get_interfaces(self) -> List[InterfaceConfig]:
        """Get every configured interface."""
        interfaces = [InterfaceConfig.from_dict(i) for i in self.config.get("interfaces") or []]
        names = [i.name for i in interfaces]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MessageBoxConfigError(f"Duplicate interface names: {duplicates}")
        return interfaces

    def get_interface(self, name: str) -> InterfaceConfig:
        """
        Get one interface by name.

        Raises:
            MessageBoxConfigError: if the interface is not configured
        """
        for interface in self.get_interfaces():
            if interface.name == name:
                return interface
        raise MessageBoxConfigError(f"Unknown interface: {name}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def to_loop_config(self, interface: Optional[InterfaceConfig] = None) -> LoopConfig:
        """
        Build a LoopConfig from the consumer section.

        Args:
            interface: When given, its consumer overrides apply and, with
                fan-out on and more than one enabled destination, its
                destinations become the route subscribers

        Raises:
            MessageBoxConfigError: if a policy value is not recognised
        """
        settings = dict(self.get_consumer_config())
        route = None
        if interface is not None:
            settings.update(interface.consumer)
            destinations = interface.enabled_destinations
            if interface.fan_out and len(destinations) > 1:
                route = [d.name for d in destinations]

        try:
            retention = RetentionPolicy(str(settings.get("retention", "retain")).lower())
            error_policy = ErrorPolicy(str(settings.get("error_policy", "quarantine")).lower())
        except ValueError as e:
            raise MessageBoxConfigError(f"Invalid consumer policy: {e}") from e

        page_size = settings.get("page_size")
        return LoopConfig(
            lease_seconds=int(settings.get("lease_seconds", 300)),
            use_subscriptions=bool(settings.get("use_subscriptions", True)),
            page_size=int(page_size) if page_size is not None else None,
            retention=retention,
            error_policy=error_policy,
            max_retries=int(settings.get("max_retries", 3)),
            route_subscribers=route,
            owner=settings.get("owner"),
        )


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into ``base``; nested mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
