"""
HTTP/JSON connector.
"""

from .http_connector import HttpJsonConnector

__all__ = ["HttpJsonConnector"]
