"""
Name-keyed registry of connector factories.
"""

import logging
from typing import Any, Callable, Dict, List

from ..core.connector import Connector
from ..core.exceptions import MessageBoxConfigError


logger = logging.getLogger(__name__)

ConnectorFactory = Callable[..., Connector]


class ConnectorRegistry:
    """
    Maps adapter names from configuration to connector factories.

    Example:
        >>> registry = ConnectorRegistry.with_defaults()
        >>> connector = registry.create("csv", name="orders-in", delimiter=";")
    """

    def __init__(self):
        self._factories: Dict[str, ConnectorFactory] = {}

    def register(self, adapter_name: str, factory: ConnectorFactory) -> None:
        """Register (or replace) the factory for an adapter name."""
        self._factories[adapter_name.lower()] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, adapter_name: str) -> bool:
        return adapter_name.lower() in self._factories

    def create(self, adapter_name: str, **options: Any) -> Connector:
        """
        Build a connector.

        Args:
            adapter_name: Registered adapter name
            **options: Passed to the factory

        Raises:
            MessageBoxConfigError: if the adapter is unknown or the options
                do not fit its factory
        """
        factory = self._factories.get(adapter_name.lower())
        if factory is None:
            raise MessageBoxConfigError(
                f"Unknown adapter: {adapter_name}. Registered adapters: {', '.join(self.names())}"
            )
        try:
            return factory(**options)
        except TypeError as e:
            raise MessageBoxConfigError(f"Invalid options for adapter {adapter_name}: {e}") from e

    @classmethod
    def with_defaults(cls) -> "ConnectorRegistry":
        """Registry with the built-in csv, sqlserver, http and test adapters."""
        from .csv import CsvConnector
        from .http import HttpJsonConnector
        from .sql import SqlServerTableConnector
        from .test_connector import TestConnector

        registry = cls()
        registry.register("csv", CsvConnector)
        registry.register("sqlserver", SqlServerTableConnector)
        registry.register("http", HttpJsonConnector)
        registry.register("test", TestConnector)
        return registry
