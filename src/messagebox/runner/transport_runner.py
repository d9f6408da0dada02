"""
Transport runner: moves records from each interface's source connector,
through the MessageBox, to its destination connectors.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..core.clock import utc_now
from ..core.connector import Connector
from ..core.debatcher import DEFAULT_BATCH_SIZE, Debatcher
from ..core.exceptions import ConnectorError, MessageBoxConfigError, MessageBoxStorageError
from ..core.logging import CorrelationContext
from ..core.message_box import MessageBox
from ..core.models import AdapterRole, Headers, Message, Record
from ..connectors.registry import ConnectorRegistry
from .consumption_loop import ConsumptionLoop, PollMetrics, WriteRecord

if TYPE_CHECKING:
    from ..config.config_loader import AdapterConfig, InterfaceConfig, MessageBoxConfig


logger = logging.getLogger(__name__)


@dataclass
class TransportResult:
    """Outcome of one source run followed by one destination poll."""
    interface_name: str
    message_ids: List[str] = field(default_factory=list)
    destinations: Dict[str, PollMetrics] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return sum(m.failed for m in self.destinations.values())


class TransportRunner:
    """
    Orchestrates sources and destinations for configured interfaces.

    Connectors are resolved through the registry when the runner is built,
    so an unknown adapter fails at start-up rather than mid-run.
    """

    def __init__(
        self,
        message_box: MessageBox,
        config: "MessageBoxConfig",
        registry: Optional[ConnectorRegistry] = None,
    ):
        """
        Initialize the transport runner.

        Args:
            message_box: Backing MessageBox
            config: Loaded configuration
            registry: Connector registry (defaults to the built-in adapters)

        Raises:
            MessageBoxConfigError: if an interface references an unknown adapter
        """
        self.message_box = message_box
        self.config = config
        self.registry = registry or ConnectorRegistry.with_defaults()
        self.debatcher = Debatcher(
            message_box,
            batch_size=int(config.get("debatcher.batch_size", DEFAULT_BATCH_SIZE)),
        )

        self.interfaces: Dict[str, "InterfaceConfig"] = {
            interface.name: interface for interface in config.get_interfaces()
        }
        self._sources: Dict[str, Tuple["AdapterConfig", Connector]] = {}
        self._destinations: Dict[str, List[Tuple["AdapterConfig", Connector]]] = {}
        self._instance_ids: Dict[Tuple[str, str, AdapterRole], str] = {}
        self._initialized = False

        for interface in self.interfaces.values():
            if interface.source:
                self._sources[interface.name] = (
                    interface.source,
                    self._build(interface.source),
                )
            self._destinations[interface.name] = [
                (dest, self._build(dest)) for dest in interface.destinations
            ]

    def _build(self, adapter: "AdapterConfig") -> Connector:
        return self.registry.create(adapter.adapter, name=adapter.name, **adapter.options)

    def _interface(self, interface_name: str) -> "InterfaceConfig":
        interface = self.interfaces.get(interface_name)
        if interface is None:
            raise MessageBoxConfigError(f"Unknown interface: {interface_name}")
        return interface

    def initialize(self) -> None:
        """
        One-time start-up work.

        Registers every adapter instance, initializes the connectors and
        prepares destination folders and tables from the source schema.
        Later calls do nothing.
        """
        if self._initialized:
            return

        for interface in self.interfaces.values():
            with CorrelationContext(interface_name=interface.name):
                column_types = {}
                source = self._sources.get(interface.name)
                if source:
                    adapter, connector = source
                    self._register(interface.name, adapter, AdapterRole.SOURCE)
                    connector.initialize()
                    try:
                        column_types = connector.get_schema(adapter.location)
                    except ConnectorError as e:
                        logger.warning(
                            f"Could not read schema of {adapter.location} for {interface.name}: {e}"
                        )

                for adapter, connector in self._destinations[interface.name]:
                    self._register(interface.name, adapter, AdapterRole.DESTINATION)
                    connector.initialize()
                    if adapter.enabled and interface.enabled:
                        connector.ensure_destination_structure(adapter.location, column_types)

        self._initialized = True
        logger.info(f"Initialized transport for {len(self.interfaces)} interfaces")

    def _register(self, interface_name: str, adapter: "AdapterConfig", role: AdapterRole) -> str:
        instance = self.message_box.ensure_adapter_instance(
            interface_name,
            adapter.name,
            adapter.adapter,
            role,
            is_enabled=adapter.enabled,
        )
        self._instance_ids[(interface_name, adapter.name, role)] = instance.adapter_instance_id
        return instance.adapter_instance_id

    def run_source(self, interface_name: str) -> List[str]:
        """
        Read the interface's source and debatch it into the MessageBox.

        Returns:
            IDs of the messages written

        Raises:
            MessageBoxConfigError: if the interface has no source
            ConnectorError: if the source cannot be read
            SchemaMismatchError / PartialWriteError: from the write path
        """
        interface = self._interface(interface_name)
        source = self._sources.get(interface_name)
        if source is None:
            raise MessageBoxConfigError(f"Interface {interface_name} has no source")
        adapter, connector = source
        if not (interface.enabled and adapter.enabled):
            logger.info(f"Source of {interface_name} is disabled, skipping")
            return []

        self.initialize()
        instance_id = self._instance_ids[(interface_name, adapter.name, AdapterRole.SOURCE)]

        with CorrelationContext(interface_name=interface_name, adapter_instance_id=instance_id):
            headers, records = connector.read(adapter.location)
            if not records:
                logger.info(f"Source {adapter.name} returned no records")
                return []
            return self.debatcher.write(
                interface_name,
                adapter.adapter,
                AdapterRole.SOURCE,
                instance_id,
                headers,
                records,
            )

    def _write_record_for(self, adapter: "AdapterConfig", connector: Connector) -> WriteRecord:
        def write_record(headers: Headers, record: Record, message: Message) -> None:
            connector.write(adapter.location, headers, [record])
        return write_record

    def run_destinations(self, interface_name: str) -> Dict[str, PollMetrics]:
        """
        Run one poll for every enabled destination of the interface.

        A storage error aborts that destination's poll; it is logged and
        recorded in the returned metrics, and the next destination still
        runs.

        Returns:
            PollMetrics per destination name
        """
        interface = self._interface(interface_name)
        if not interface.enabled:
            logger.info(f"Interface {interface_name} is disabled, skipping")
            return {}

        self.initialize()
        loop_config = self.config.to_loop_config(interface)
        results: Dict[str, PollMetrics] = {}

        for adapter, connector in self._destinations[interface_name]:
            if not adapter.enabled:
                continue
            loop = ConsumptionLoop(
                self.message_box,
                interface_name,
                adapter.name,
                self._write_record_for(adapter, connector),
                loop_config,
            )
            try:
                results[adapter.name] = loop.run_once()
            except MessageBoxStorageError as e:
                logger.error(f"Poll of {interface_name} by {adapter.name} aborted: {e}")
                metrics = PollMetrics(poll_id="aborted", started_at=utc_now())
                metrics.errors.append(str(e))
                results[adapter.name] = metrics

        return results

    def run_transport(self, interface_name: str) -> TransportResult:
        """Run the source, then poll every destination once."""
        message_ids = self.run_source(interface_name)
        destinations = self.run_destinations(interface_name)
        result = TransportResult(interface_name, message_ids, destinations)
        logger.info(
            f"Transport of {interface_name}: {len(message_ids)} messages written, "
            f"{sum(m.succeeded for m in destinations.values())} deliveries, "
            f"{result.failed} failures"
        )
        return result

    def close(self) -> None:
        """Close every connector."""
        for _, connector in self._sources.values():
            connector.close()
        for destinations in self._destinations.values():
            for _, connector in destinations:
                connector.close()
