"""
Connector implementations for the external systems around the MessageBox.
"""

from .registry import ConnectorRegistry
from .test_connector import TestConnector

__all__ = ["ConnectorRegistry", "TestConnector"]
