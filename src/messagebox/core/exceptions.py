"""
Custom exceptions for the MessageBox.
"""

from typing import List, Optional


class MessageBoxError(Exception):
    """Base exception for all MessageBox errors."""
    pass


class MessageBoxStorageError(MessageBoxError):
    """
    Error reaching or updating the backing store.

    Raised when:
    - The database is unreachable
    - A statement fails at the driver level

    Storage errors are fatal to the current operation. Callers are expected
    to log them and abort the current poll cycle.
    """
    pass


class PartialWriteError(MessageBoxStorageError):
    """
    A batch write failed partway through.

    Messages are independently addressable, so the records written before
    the failure stay persisted. The error carries enough detail for the
    caller to tell which records were and were not written.
    """

    def __init__(
        self,
        message: str,
        persisted_ids: Optional[List[str]] = None,
        failed_index: int = 0,
        total_records: int = 0,
    ):
        super().__init__(message)
        self.persisted_ids = persisted_ids or []
        self.failed_index = failed_index
        self.total_records = total_records

    @property
    def unpersisted_count(self) -> int:
        """Number of records from the failed index onward."""
        return self.total_records - self.failed_index


class DeserializationError(MessageBoxError):
    """
    A persisted payload could not be parsed against its own headers.

    Raised when:
    - The payload is not valid JSON
    - The headers or record sections are missing or malformed
    - The record keys do not match the headers
    - The payload hash does not match the stored hash
    """

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id


class SchemaMismatchError(MessageBoxError):
    """A record handed to the write path does not match the batch headers."""

    def __init__(self, message: str, record_index: Optional[int] = None):
        super().__init__(message)
        self.record_index = record_index


class MessageNotFoundError(MessageBoxError):
    """A lifecycle operation referenced a message that does not exist."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class MessageBoxConfigError(MessageBoxError):
    """
    Error in MessageBox configuration.

    Raised when:
    - The configuration file is invalid
    - An interface references an unknown adapter
    - A policy value is not recognised
    """
    pass


class ConnectorError(MessageBoxError):
    """
    Error raised by a connector talking to its external system.

    Destination write failures surface as this error (or any other
    exception) and are recorded on the message as its error text.
    """

    def __init__(self, message: str, connector: Optional[str] = None):
        super().__init__(message)
        self.connector = connector
