"""
SQL Server table connector.
"""

from .sqlserver_connector import SqlServerTableConnector, quote_identifier, split_table_name

__all__ = ["SqlServerTableConnector", "quote_identifier", "split_table_name"]
