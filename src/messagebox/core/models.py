"""
Core data models for the MessageBox.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
import uuid


class MessageStatus(str, Enum):
    """Lifecycle status of a message."""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PROCESSED = "Processed"
    ERROR = "Error"


class SubscriptionStatus(str, Enum):
    """Status of one subscriber's claim on a message."""
    PENDING = "Pending"
    PROCESSED = "Processed"
    ERROR = "Error"


class AdapterRole(str, Enum):
    """Role an adapter instance plays on an interface."""
    SOURCE = "Source"
    DESTINATION = "Destination"


class RetentionPolicy(str, Enum):
    """
    What happens to a message once every subscription is Processed.

    RETAIN keeps the row for auditing; REMOVE deletes it.
    """
    RETAIN = "retain"
    REMOVE = "remove"


class ErrorPolicy(str, Enum):
    """
    What happens to Error messages.

    QUARANTINE leaves them for an operator to re-queue; REQUEUE moves them
    back to Pending at the start of each poll while retries remain.
    """
    QUARANTINE = "quarantine"
    REQUEUE = "requeue"


@dataclass
class Message:
    """
    One debatched unit of work.

    The record itself lives in ``payload`` as JSON text; use
    ``MessageStore.extract`` to get ``(headers, record)`` back.

    Attributes:
        interface_name: Logical route grouping one producer with its consumers
        producing_adapter_name: Adapter that wrote the message (e.g., 'csv')
        producing_role: Role of the writing adapter
        adapter_instance_id: Instance that wrote the message
        payload: Serialized headers and record
        payload_sha256: Hash of the payload computed at write time
        status: Current lifecycle status
        lease_expires_at: End of the current lease, only while InProgress
        locked_by: Optional owner tag of the current lease
        created_at: When the message was written
        locked_at: When the current or last lease was acquired
        processed_at: When the message reached Processed or Error
        error_message: Failure text when status is Error
        processing_details: Note recorded on successful processing
        retry_count: Number of times the message was marked Error
        sequence: Insertion order, breaks ties on created_at
        message_id: Globally unique identifier
    """
    interface_name: str
    producing_adapter_name: str
    producing_role: AdapterRole
    adapter_instance_id: str
    payload: str
    payload_sha256: Optional[str] = None
    status: MessageStatus = MessageStatus.PENDING
    lease_expires_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    locked_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    processing_details: Optional[str] = None
    retry_count: int = 0
    sequence: Optional[int] = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_lease_valid(self, now: datetime) -> bool:
        """Whether the message is held under a lease that has not expired."""
        return (
            self.status == MessageStatus.IN_PROGRESS
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


@dataclass
class Subscription:
    """
    One destination's claim on one message.

    At most one subscription exists per (message_id, subscriber_adapter_name).
    """
    message_id: str
    interface_name: str
    subscriber_adapter_name: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    error_detail: Optional[str] = None
    processing_details: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None


@dataclass
class AdapterInstance:
    """Registered adapter instance on an interface."""
    adapter_instance_id: str
    interface_name: str
    instance_name: str
    adapter_name: str
    role: AdapterRole
    is_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class QueueStats:
    """Message counts by status."""
    pending: int = 0
    in_progress: int = 0
    processed: int = 0
    error: int = 0
    total: int = 0
    oldest_pending_at: Optional[datetime] = None

    @classmethod
    def from_counts(
        cls,
        counts: Dict[str, int],
        oldest_pending_at: Optional[datetime] = None,
    ) -> "QueueStats":
        """Build stats from a status -> count mapping."""
        return cls(
            pending=counts.get(MessageStatus.PENDING.value, 0),
            in_progress=counts.get(MessageStatus.IN_PROGRESS.value, 0),
            processed=counts.get(MessageStatus.PROCESSED.value, 0),
            error=counts.get(MessageStatus.ERROR.value, 0),
            total=sum(counts.values()),
            oldest_pending_at=oldest_pending_at,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "pending": self.pending,
            "in_progress": self.in_progress,
            "processed": self.processed,
            "error": self.error,
            "total": self.total,
            "oldest_pending_at": (
                self.oldest_pending_at.isoformat() if self.oldest_pending_at else None
            ),
        }


Headers = List[str]
Record = Dict[str, str]
