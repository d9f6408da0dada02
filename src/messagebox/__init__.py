"""
MessageBox - shared message store for connector-to-connector data transport.

Source connectors debatch their rows into the MessageBox; destination
connectors independently poll, lease and consume from it.

Key components:
- core/: Models, exceptions, logging, the store/lease/subscription contracts
  and the Debatcher
- state/: SQLite and SQL Server implementations of the MessageBox
- runner/: The consumption loop and the transport orchestration
- connectors/: CSV, SQL Server, HTTP/JSON and test connectors
- config/: YAML configuration loading
"""

__version__ = "0.1.0"
