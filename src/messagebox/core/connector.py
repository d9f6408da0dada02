"""
Connector interface for the external systems on either side of the MessageBox.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .models import Headers, Record


@dataclass
class ColumnTypeInfo:
    """
    Inferred SQL type of one column.

    Attributes:
        data_type: Base SQL Server type (NVARCHAR, INT, DECIMAL, ...)
        max_length: Character length for NVARCHAR (-1 for MAX)
        precision: Total digits for DECIMAL
        scale: Fraction digits for DECIMAL
    """
    data_type: str = "NVARCHAR"
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None

    @property
    def sql_type_definition(self) -> str:
        """Column type as written in DDL, e.g. ``NVARCHAR(255)``."""
        if self.data_type == "NVARCHAR":
            if self.max_length is None or self.max_length < 0:
                return "NVARCHAR(MAX)"
            return f"NVARCHAR({self.max_length})"
        if self.data_type == "DECIMAL":
            return f"DECIMAL({self.precision or 18},{self.scale or 2})"
        return self.data_type


class Connector(ABC):
    """
    Abstract base class for all connectors.

    A connector wraps one external system. As a Source it reads batches
    that the Debatcher turns into messages; as a Destination it writes the
    records handed to it by the consumption loop.
    """

    @abstractmethod
    def read(self, source: str) -> Tuple[Headers, List[Record]]:
        """
        Read a batch from the external system.

        Args:
            source: Connector-specific location (file path, table, URL)

        Returns:
            Tuple of (headers, records)

        Raises:
            ConnectorError if the read fails
        """
        pass

    @abstractmethod
    def write(self, destination: str, headers: Headers, records: List[Record]) -> int:
        """
        Write records to the external system.

        Args:
            destination: Connector-specific location
            headers: Column names
            records: Records to write

        Returns:
            Number of records written

        Raises:
            ConnectorError (or any exception) if the write fails
        """
        pass

    def get_schema(self, source: str) -> Dict[str, ColumnTypeInfo]:
        """Column types of a source, if the connector can infer them."""
        return {}

    def ensure_destination_structure(
        self,
        destination: str,
        column_types: Dict[str, ColumnTypeInfo],
    ) -> None:
        """Create or extend the destination (folder, table) before writing."""
        pass

    @abstractmethod
    def get_name(self) -> str:
        """Return the connector name/identifier."""
        pass

    def initialize(self) -> None:
        """One-time start-up work."""
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass

    def __enter__(self) -> "Connector":
        return self

    def __exit__(self, *args) -> None:
        self.close()
