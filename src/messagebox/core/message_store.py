"""
Message store interface: persistence of debatched messages.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import MessageBoxStorageError, PartialWriteError
from .models import (
    AdapterRole,
    Headers,
    Message,
    MessageStatus,
    QueueStats,
    Record,
)
from .payload import compute_payload_hash, decode_payload, encode_payload, validate_record


logger = logging.getLogger(__name__)


class MessageStore(ABC):
    """
    Abstract base class for message stores.

    A message store persists one message per record and hands them back by
    interface and status. Every message is independently addressable, so a
    failed batch write never rolls back the messages already written.
    """

    def write(
        self,
        interface_name: str,
        adapter_name: str,
        role: AdapterRole,
        adapter_instance_id: str,
        headers: Sequence[str],
        records: Sequence[Record],
    ) -> List[str]:
        """
        Persist one Pending message per record.

        Every record is checked against ``headers`` before anything is
        written, so a schema mismatch never leaves a partial batch behind.

        Args:
            interface_name: Interface the messages belong to
            adapter_name: Producing adapter (e.g., 'csv')
            role: Role of the producing adapter
            adapter_instance_id: Producing adapter instance
            headers: Column names shared by every record
            records: Records to persist, one message each

        Returns:
            Message IDs in input order

        Raises:
            SchemaMismatchError: if any record does not match ``headers``
            PartialWriteError: if the store fails partway through the batch
        """
        headers = list(headers)
        for index, record in enumerate(records):
            validate_record(headers, record, index)

        message_ids: List[str] = []
        for index, record in enumerate(records):
            payload = encode_payload(headers, record)
            message = Message(
                interface_name=interface_name,
                producing_adapter_name=adapter_name,
                producing_role=AdapterRole(role),
                adapter_instance_id=adapter_instance_id,
                payload=payload,
                payload_sha256=compute_payload_hash(payload),
            )
            try:
                self._insert_message(message)
            except MessageBoxStorageError as e:
                logger.error(
                    f"Write to interface {interface_name} failed at record "
                    f"{index} of {len(records)}: {e}"
                )
                raise PartialWriteError(
                    f"Failed to persist record {index} of {len(records)} "
                    f"for interface {interface_name}: {e}",
                    persisted_ids=message_ids,
                    failed_index=index,
                    total_records=len(records),
                ) from e
            message_ids.append(message.message_id)

        logger.debug(f"Wrote {len(message_ids)} messages to interface {interface_name}")
        return message_ids

    def extract(self, message: Message) -> Tuple[Headers, Record]:
        """
        Parse a message payload back into headers and record.

        Raises:
            DeserializationError: if the payload is corrupt
        """
        return decode_payload(
            message.payload,
            message_id=message.message_id,
            expected_hash=message.payload_sha256,
        )

    @abstractmethod
    def _insert_message(self, message: Message) -> None:
        """
        Insert one message row.

        Raises:
            MessageBoxStorageError: if the insert fails
        """
        pass

    def read(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """
        Get messages of an interface in a given status.

        Args:
            interface_name: Interface to read
            status: Status to filter on
            limit: Optional page size (None = all, 0 = none)

        Returns:
            Messages ordered by creation time, then insertion order

        Raises:
            ValueError: if ``limit`` is negative
        """
        if limit is not None:
            limit = int(limit)
            if limit < 0:
                raise ValueError(f"limit must be zero or positive, got {limit}")
        return self._select_messages(interface_name, MessageStatus(status), limit)

    def read_exhausted(self, interface_name: str, max_retries: int) -> List[Message]:
        """
        Error messages that have used up their retries.

        Under ErrorPolicy.REQUEUE these are the messages left in quarantine
        for an operator.
        """
        return [
            message
            for message in self.read(interface_name, MessageStatus.ERROR)
            if message.retry_count >= max_retries
        ]

    @abstractmethod
    def _select_messages(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: Optional[int],
    ) -> List[Message]:
        """Select messages ordered by creation time; ``limit`` is validated."""
        pass

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[Message]:
        """Get a message by ID, or None."""
        pass

    @abstractmethod
    def remove(self, message_id: str) -> bool:
        """
        Delete a message and its subscriptions.

        Returns:
            True if a message was deleted
        """
        pass

    @abstractmethod
    def get_stats(self, interface_name: Optional[str] = None) -> QueueStats:
        """Message counts by status for one interface, or all of them."""
        pass

    @abstractmethod
    def list_interfaces(self) -> List[str]:
        """Names of every interface that currently holds messages."""
        pass

    @abstractmethod
    def collect_garbage(self, interface_name: str) -> int:
        """
        Remove fully-consumed messages.

        Only Processed messages with at least one subscription, all of them
        Processed, are removed.

        Returns:
            Number of messages removed
        """
        pass

    def get_stats_by_interface(self) -> Dict[str, QueueStats]:
        """Stats for every interface keyed by name."""
        return {name: self.get_stats(name) for name in self.list_interfaces()}
