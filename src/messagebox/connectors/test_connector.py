"""
Test connector for E2E testing.

Provides a deterministic, in-memory connector with no external
dependencies. Sources return a fixed dataset; destinations record what
they were handed, and can be told to fail for chosen record IDs.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

from ..core.connector import Connector
from ..core.exceptions import ConnectorError
from ..core.models import Headers, Record

logger = logging.getLogger(__name__)


SYNTHETIC_HEADERS = ["id", "name", "type", "homeworld"]

# Fixed synthetic dataset for testing
SYNTHETIC_RECORDS = [
    {"id": "1", "name": "Luke Skywalker", "type": "character", "homeworld": "Tatooine"},
    {"id": "2", "name": "Leia Organa", "type": "character", "homeworld": "Alderaan"},
    {"id": "3", "name": "Millennium Falcon", "type": "vehicle", "homeworld": ""},
    {"id": "4", "name": "Han Solo", "type": "character", "homeworld": "Corellia"},
    {"id": "5", "name": "R2-D2", "type": "droid", "homeworld": "Naboo"},
]


class TestConnector(Connector):
    """
    Deterministic test connector.

    Features:
    - Fixed or custom datasets per source location
    - Records every write per destination
    - Error simulation for specific record IDs or for the next N writes
    - Configurable latency simulation
    """

    # Not a pytest test class
    __test__ = False

    def __init__(
        self,
        name: str = "test",
        datasets: Optional[Dict[str, Tuple[Headers, List[Record]]]] = None,
        error_record_ids: Optional[List[str]] = None,
        fail_next_writes: int = 0,
        id_field: str = "id",
        simulate_latency_ms: int = 0,
    ):
        """
        Initialize the test connector.

        Args:
            name: Connector name
            datasets: (headers, records) per source location; unknown
                locations return the synthetic dataset
            error_record_ids: Values of ``id_field`` whose writes fail
            fail_next_writes: Number of upcoming writes that fail
            id_field: Field used to match ``error_record_ids``
            simulate_latency_ms: Simulated latency per call in milliseconds
        """
        self.name = name
        self.datasets = dict(datasets or {})
        self.error_record_ids = set(error_record_ids or [])
        self.fail_next_writes = fail_next_writes
        self.id_field = id_field
        self.simulate_latency_ms = simulate_latency_ms

        self.written: Dict[str, List[Record]] = {}
        self.prepared: Dict[str, Dict] = {}
        self.initialized = False
        self.closed = False
        self._lock = threading.Lock()

    def _sleep(self) -> None:
        if self.simulate_latency_ms > 0:
            time.sleep(self.simulate_latency_ms / 1000.0)

    def read(self, source: str) -> Tuple[Headers, List[Record]]:
        self._sleep()
        headers, records = self.datasets.get(source, (SYNTHETIC_HEADERS, SYNTHETIC_RECORDS))
        return list(headers), [dict(r) for r in records]

    def write(self, destination: str, headers: Headers, records: List[Record]) -> int:
        self._sleep()
        with self._lock:
            if self.fail_next_writes > 0:
                self.fail_next_writes -= 1
                raise ConnectorError(f"Simulated write failure to {destination}", connector=self.name)

            for record in records:
                if record.get(self.id_field) in self.error_record_ids:
                    logger.debug(f"Simulating error for record: {record.get(self.id_field)}")
                    raise ConnectorError(
                        f"Simulated error for record {record.get(self.id_field)}",
                        connector=self.name,
                    )

            self.written.setdefault(destination, []).extend(dict(r) for r in records)
        return len(records)

    def ensure_destination_structure(self, destination: str, column_types: Dict) -> None:
        self.prepared[destination] = dict(column_types)

    def initialize(self) -> None:
        self.initialized = True

    def close(self) -> None:
        self.closed = True

    def get_name(self) -> str:
        """Return connector name."""
        return self.name
