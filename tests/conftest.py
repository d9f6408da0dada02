"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from messagebox.core.clock import ManualClock
from messagebox.core.models import AdapterRole


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def _sqlserver_password():
    return os.environ.get("MESSAGEBOX_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    password = _sqlserver_password()
    if not password:
        return False

    try:
        import pyodbc

        host = os.environ.get("MESSAGEBOX_SQLSERVER_HOST", "localhost")
        port = int(os.environ.get("MESSAGEBOX_SQLSERVER_PORT", "1433"))
        database = os.environ.get("MESSAGEBOX_SQLSERVER_DATABASE",
                                  os.environ.get("MSSQL_DATABASE", "MessageBox"))
        username = os.environ.get("MESSAGEBOX_SQLSERVER_USER", "sa")
        driver = os.environ.get("MESSAGEBOX_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")

        conn_str = (
            f"Driver={{{driver}}};"
            f"Server={host},{port};"
            f"Database={database};"
            f"UID={username};"
            f"PWD={password};"
            f"TrustServerCertificate=yes"
        )

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def sqlserver_available() -> bool:
    """Session-scoped fixture to check if SQL Server is available."""
    return is_sqlserver_available()


@pytest.fixture(scope="session")
def sqlserver_config() -> dict:
    """Session-scoped fixture providing SQL Server configuration."""
    return {
        "host": os.environ.get("MESSAGEBOX_SQLSERVER_HOST", "localhost"),
        "port": int(os.environ.get("MESSAGEBOX_SQLSERVER_PORT", "1433")),
        "database": os.environ.get("MESSAGEBOX_SQLSERVER_DATABASE",
                                   os.environ.get("MSSQL_DATABASE", "MessageBox")),
        "username": os.environ.get("MESSAGEBOX_SQLSERVER_USER", "sa"),
        "password": _sqlserver_password(),
        "driver": os.environ.get("MESSAGEBOX_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server"),
        "schema": os.environ.get("MESSAGEBOX_SQLSERVER_SCHEMA", "test_messagebox"),
    }


@pytest.fixture
def clock() -> ManualClock:
    """Fixture providing a clock that only moves when advanced."""
    return ManualClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def message_box(tmp_path, clock):
    """Fixture providing a file-backed SQLite MessageBox driven by ``clock``."""
    from messagebox.state import SqliteMessageBox

    box = SqliteMessageBox(db_path=tmp_path / "messagebox.db", clock=clock)
    yield box
    box.close()


@pytest.fixture
def source_instance(message_box) -> str:
    """Fixture registering a source adapter instance, returning its id."""
    instance = message_box.ensure_adapter_instance(
        "characters", "characters-file", "csv", AdapterRole.SOURCE
    )
    return instance.adapter_instance_id


@pytest.fixture
def test_connector():
    """Fixture providing a test connector."""
    from messagebox.connectors.test_connector import TestConnector

    connector = TestConnector()
    yield connector
    connector.close()


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Restore the ``messagebox`` logger after tests that configure logging."""
    package_logger = logging.getLogger("messagebox")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    yield
    package_logger.handlers = handlers
    package_logger.setLevel(level)
