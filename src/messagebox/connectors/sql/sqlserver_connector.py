"""
SQL Server table connector.

Reads whole tables as sources and inserts records into destination tables,
creating or extending them from inferred column types.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ...core.connector import ColumnTypeInfo, Connector
from ...core.exceptions import ConnectorError
from ...core.models import Headers, Record


logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"

# Driver errors caught at the connector boundary
DRIVER_ERRORS: Tuple[type, ...] = (pyodbc.Error,) if pyodbc is not None else ()


def quote_identifier(name: str) -> str:
    """Bracket-quote a SQL Server identifier."""
    if not name or len(name) > 128:
        raise ConnectorError(f"Invalid SQL identifier: {name!r}", connector="sqlserver")
    return "[" + name.replace("]", "]]") + "]"


def split_table_name(location: str) -> Tuple[str, str]:
    """Split ``schema.table`` (or ``table``) into its parts."""
    parts = [p.strip().strip("[]") for p in location.split(".")]
    if len(parts) == 1:
        return DEFAULT_SCHEMA, parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ConnectorError(f"Invalid table location: {location}", connector="sqlserver")


class SqlServerTableConnector(Connector):
    """
    Connector for SQL Server tables.

    Supports:
    - Reading every row of a table as strings
    - Inserting records, empty strings stored as NULL
    - Creating a missing destination table and adding missing columns
    """

    def __init__(
        self,
        name: str = "sqlserver",
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "MessageBox",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        trust_server_certificate: bool = True,
        connection: Any = None,
    ):
        """
        Initialize the SQL Server connector.

        Args:
            name: Connector name
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            trust_server_certificate: Whether to trust self-signed certificates
            connection: Existing DB-API connection to use instead of connecting
        """
        self.name = name
        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )
        self._conn = connection

    def _get_conn(self):
        if self._conn is None:
            if pyodbc is None:
                raise ImportError(
                    "pyodbc is required for SqlServerTableConnector. "
                    "Install with: pip install pyodbc"
                )
            try:
                self._conn = pyodbc.connect(self.connection_string)
            except pyodbc.Error as e:
                logger.error(f"Failed to connect to SQL Server: {e}")
                raise ConnectorError(f"Failed to connect to SQL Server: {e}", connector=self.name) from e
        return self._conn

    def _qualified(self, location: str) -> str:
        schema, table = split_table_name(location)
        return f"{quote_identifier(schema)}.{quote_identifier(table)}"

    def read(self, source: str) -> Tuple[Headers, List[Record]]:
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT * FROM {self._qualified(source)}")
            headers = [column[0] for column in cursor.description]
            records = [
                {h: "" if v is None else str(v) for h, v in zip(headers, row)}
                for row in cursor.fetchall()
            ]
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to read table {source}: {e}")
            raise ConnectorError(f"Failed to read table {source}: {e}", connector=self.name) from e

        logger.info(f"Read {len(records)} records from {source}")
        return headers, records

    def write(self, destination: str, headers: Headers, records: List[Record]) -> int:
        if not records:
            return 0

        columns = ", ".join(quote_identifier(h) for h in headers)
        placeholders = ", ".join("?" for _ in headers)
        sql = f"INSERT INTO {self._qualified(destination)} ({columns}) VALUES ({placeholders})"
        rows = [
            tuple(None if record.get(h, "") == "" else record.get(h) for h in headers)
            for record in records
        ]

        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.executemany(sql, rows)
            conn.commit()
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to write to table {destination}: {e}")
            conn.rollback()
            raise ConnectorError(f"Failed to write to table {destination}: {e}", connector=self.name) from e

        logger.debug(f"Inserted {len(rows)} rows into {destination}")
        return len(rows)

    def _existing_columns(self, schema: str, table: str) -> List[str]:
        cursor = self._get_conn().cursor()
        cursor.execute(
            """
            SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?
            ORDER BY ORDINAL_POSITION
            """,
            (schema, table),
        )
        return [row[0] for row in cursor.fetchall()]

    def ensure_destination_structure(
        self,
        destination: str,
        column_types: Dict[str, ColumnTypeInfo],
    ) -> None:
        """
        Create the destination table, or add the columns it is missing.

        New columns are always nullable so existing rows stay valid.
        """
        if not column_types:
            logger.warning(f"No column types known for {destination}, leaving table as is")
            return

        schema, table = split_table_name(destination)
        qualified = self._qualified(destination)
        conn = self._get_conn()

        try:
            existing = self._existing_columns(schema, table)
            cursor = conn.cursor()
            if not existing:
                column_defs = ", ".join(
                    f"{quote_identifier(name)} {info.sql_type_definition} NULL"
                    for name, info in column_types.items()
                )
                cursor.execute(f"CREATE TABLE {qualified} ({column_defs})")
                logger.info(f"Created destination table {destination} with {len(column_types)} columns")
            else:
                known = {c.lower() for c in existing}
                missing = [name for name in column_types if name.lower() not in known]
                for name in missing:
                    cursor.execute(
                        f"ALTER TABLE {qualified} ADD {quote_identifier(name)} "
                        f"{column_types[name].sql_type_definition} NULL"
                    )
                if missing:
                    logger.info(f"Added columns {missing} to destination table {destination}")
            conn.commit()
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to prepare table {destination}: {e}")
            conn.rollback()
            raise ConnectorError(f"Failed to prepare table {destination}: {e}", connector=self.name) from e

    def get_schema(self, source: str) -> Dict[str, ColumnTypeInfo]:
        schema, table = split_table_name(source)
        cursor = self._get_conn().cursor()
        try:
            cursor.execute(
                """
                SELECT COLUMN_NAME, DATA_TYPE, CHARACTER_MAXIMUM_LENGTH,
                       NUMERIC_PRECISION, NUMERIC_SCALE
                FROM INFORMATION_SCHEMA.COLUMNS
                WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?
                ORDER BY ORDINAL_POSITION
                """,
                (schema, table),
            )
            rows = cursor.fetchall()
        except DRIVER_ERRORS as e:
            raise ConnectorError(f"Failed to read schema of {source}: {e}", connector=self.name) from e

        result = {}
        for name, data_type, max_length, precision, scale in rows:
            data_type = data_type.upper()
            if data_type == "DECIMAL":
                result[name] = ColumnTypeInfo(data_type=data_type, precision=precision, scale=scale)
            elif data_type == "NVARCHAR":
                result[name] = ColumnTypeInfo(data_type=data_type, max_length=max_length)
            else:
                result[name] = ColumnTypeInfo(data_type=data_type)
        return result

    def get_name(self) -> str:
        """Return the connector name."""
        return self.name

    def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
