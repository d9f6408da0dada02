"""
MessageBox backends.

SQL Server (SqlServerMessageBox) is the production backend. SQLite
(SqliteMessageBox) serves local runs and tests.

To select a backend, set the MESSAGEBOX_BACKEND environment variable:
    - MESSAGEBOX_BACKEND=sqlite (default)
    - MESSAGEBOX_BACKEND=sqlserver
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..core.clock import Clock
from ..core.message_box import MessageBox


logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = Path("local/messagebox/messagebox.db")


# Lazy imports to avoid import errors when dependencies are missing
def _get_sqlite_store():
    from .sqlite_store import SqliteMessageBox
    return SqliteMessageBox


def _get_sqlserver_store():
    from .sqlserver_store import SqlServerMessageBox
    return SqlServerMessageBox


def create_message_box(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    clock: Optional[Clock] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "MessageBox",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "messagebox",
    trust_server_certificate: bool = True,
    auto_init: bool = True,
) -> MessageBox:
    """
    Factory function to create the configured MessageBox backend.

    Args:
        backend: 'sqlite' or 'sqlserver'. Defaults to MESSAGEBOX_BACKEND or 'sqlite'.

        SQLite options:
            db_path: Path to the database file
            clock: Optional clock override

        SQL Server options:
            connection_string: Full ODBC connection string
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables
            trust_server_certificate: Trust self-signed certs
            auto_init: Auto-create schema/tables

    Returns:
        MessageBox instance

    Raises:
        ValueError: If backend is not recognized
        ImportError: If required dependencies are missing
    """
    if backend is None:
        backend = os.environ.get("MESSAGEBOX_BACKEND", "sqlite")
    backend = backend.lower()

    if backend == "sqlite":
        SqliteMessageBox = _get_sqlite_store()
        if db_path is None:
            db_path = os.environ.get("MESSAGEBOX_SQLITE_PATH") or DEFAULT_SQLITE_PATH
        logger.debug(f"Using SQLite MessageBox at {db_path}")
        return SqliteMessageBox(db_path=db_path, auto_init=auto_init, clock=clock)

    elif backend == "sqlserver":
        SqlServerMessageBox = _get_sqlserver_store()

        if password is None:
            password = os.environ.get("MESSAGEBOX_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("MESSAGEBOX_SQLSERVER_CONN_STR")

        return SqlServerMessageBox(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
        )

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


# pyodbc is checked when SqlServerMessageBox is constructed, not on import
from .sqlite_store import SqliteMessageBox
from .sqlserver_store import SqlServerMessageBox

__all__ = ["SqliteMessageBox", "SqlServerMessageBox", "create_message_box"]
