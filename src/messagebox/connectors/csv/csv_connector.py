"""
CSV connector for delimited files on the local file system.
"""

import csv
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ...core.connector import ColumnTypeInfo, Connector
from ...core.exceptions import ConnectorError
from ...core.models import Headers, Record
from .column_analyzer import analyze_columns


logger = logging.getLogger(__name__)

SNIFF_DELIMITERS = ",;|\t"


class CsvConnector(Connector):
    """
    Reads and writes delimited text files.

    Supports:
    - Fixed or sniffed delimiters
    - Relative locations resolved against a base directory
    - Appending records to an existing file with a matching header row
    - Column type inference for destination table creation
    """

    def __init__(
        self,
        name: str = "csv",
        base_dir: Optional[Union[str, Path]] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
    ):
        """
        Initialize the CSV connector.

        Args:
            name: Connector name
            base_dir: Directory relative locations are resolved against
            delimiter: Field delimiter, or "auto" to sniff it on read
            encoding: File encoding
        """
        self.name = name
        self.base_dir = Path(base_dir) if base_dir else None
        self.delimiter = delimiter
        self.encoding = encoding
        self._write_lock = threading.Lock()

    def _resolve(self, location: str) -> Path:
        path = Path(location)
        if self.base_dir and not path.is_absolute():
            path = self.base_dir / path
        return path

    def _detect_delimiter(self, sample: str) -> str:
        if self.delimiter != "auto":
            return self.delimiter
        try:
            return csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS).delimiter
        except csv.Error:
            return ","

    def read(self, source: str) -> Tuple[Headers, List[Record]]:
        """
        Read a delimited file.

        Rows shorter than the header are padded with empty strings; extra
        fields are dropped.
        """
        path = self._resolve(source)
        if not path.exists():
            raise ConnectorError(f"CSV file not found: {path}", connector=self.name)

        try:
            with open(path, "r", encoding=self.encoding, newline="") as f:
                delimiter = self._detect_delimiter(f.read(4096))
                f.seek(0)
                reader = csv.reader(f, delimiter=delimiter)
                try:
                    headers = [h.strip() for h in next(reader)]
                except StopIteration:
                    return [], []

                records: List[Record] = []
                for row in reader:
                    if not any(field.strip() for field in row):
                        continue
                    padded = list(row[:len(headers)]) + [""] * (len(headers) - len(row))
                    records.append(dict(zip(headers, padded)))
        except (OSError, csv.Error, UnicodeDecodeError) as e:
            raise ConnectorError(f"Failed to read CSV file {path}: {e}", connector=self.name) from e

        logger.info(f"Read {len(records)} records from {path}")
        return headers, records

    def write(self, destination: str, headers: Headers, records: List[Record]) -> int:
        """
        Append records to a delimited file, writing the header row first
        when the file is new or empty.
        """
        path = self._resolve(destination)
        delimiter = "," if self.delimiter == "auto" else self.delimiter

        with self._write_lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                is_new = not path.exists() or path.stat().st_size == 0
                if not is_new:
                    existing = self._read_header(path, delimiter)
                    if existing != list(headers):
                        raise ConnectorError(
                            f"Header mismatch for {path}: file has {existing}, "
                            f"records have {list(headers)}",
                            connector=self.name,
                        )

                with open(path, "a", encoding=self.encoding, newline="") as f:
                    writer = csv.DictWriter(f, fieldnames=list(headers), delimiter=delimiter)
                    if is_new:
                        writer.writeheader()
                    writer.writerows(records)
            except OSError as e:
                raise ConnectorError(f"Failed to write CSV file {path}: {e}", connector=self.name) from e

        logger.debug(f"Wrote {len(records)} records to {path}")
        return len(records)

    def _read_header(self, path: Path, delimiter: str) -> List[str]:
        with open(path, "r", encoding=self.encoding, newline="") as f:
            row = next(csv.reader(f, delimiter=delimiter), [])
        return [h.strip() for h in row]

    def get_schema(self, source: str) -> Dict[str, ColumnTypeInfo]:
        headers, records = self.read(source)
        return analyze_columns(headers, records)

    def ensure_destination_structure(
        self,
        destination: str,
        column_types: Dict[str, ColumnTypeInfo],
    ) -> None:
        """Create the destination folder."""
        path = self._resolve(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured destination folder {path.parent}")

    def get_name(self) -> str:
        """Return the connector name."""
        return self.name
