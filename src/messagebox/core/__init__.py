"""
Core abstractions and models for the MessageBox.
"""

from .clock import ManualClock, utc_now
from .connector import ColumnTypeInfo, Connector
from .debatcher import Debatcher
from .exceptions import (
    ConnectorError,
    DeserializationError,
    MessageBoxConfigError,
    MessageBoxError,
    MessageBoxStorageError,
    MessageNotFoundError,
    PartialWriteError,
    SchemaMismatchError,
)
from .lease_manager import DEFAULT_LEASE_SECONDS, LeaseManager
from .message_box import MessageBox
from .message_store import MessageStore
from .models import (
    AdapterInstance,
    AdapterRole,
    ErrorPolicy,
    Message,
    MessageStatus,
    QueueStats,
    RetentionPolicy,
    Subscription,
    SubscriptionStatus,
)
from .payload import decode_payload, encode_payload
from .subscription_tracker import SubscriptionTracker

__all__ = [
    "AdapterInstance",
    "AdapterRole",
    "ColumnTypeInfo",
    "Connector",
    "ConnectorError",
    "DEFAULT_LEASE_SECONDS",
    "Debatcher",
    "DeserializationError",
    "ErrorPolicy",
    "LeaseManager",
    "ManualClock",
    "Message",
    "MessageBox",
    "MessageBoxConfigError",
    "MessageBoxError",
    "MessageBoxStorageError",
    "MessageNotFoundError",
    "MessageStatus",
    "MessageStore",
    "PartialWriteError",
    "QueueStats",
    "RetentionPolicy",
    "SchemaMismatchError",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTracker",
    "decode_payload",
    "encode_payload",
    "utc_now",
]
