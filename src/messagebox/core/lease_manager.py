"""
Lease manager interface.

A lease is a time-bounded exclusive claim on a message. Acquisition must be
a single atomic conditional update in the backing store.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import MessageStatus


DEFAULT_LEASE_SECONDS = 300


class LeaseManager(ABC):
    """
    Abstract base class for lease management.

    The only concurrency guarantee of the MessageBox lives here: no two
    callers hold a valid lease on the same message at the same time.
    """

    @abstractmethod
    def acquire(
        self,
        message_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: Optional[str] = None,
    ) -> bool:
        """
        Try to lease a message.

        Succeeds only when the message is Pending, or InProgress with an
        expired lease. Otherwise nothing is changed.

        Args:
            message_id: Message to lease
            lease_seconds: Lease duration
            owner: Optional tag recorded as the lease holder

        Returns:
            True if this caller now holds the lease, False otherwise
            (including when the message does not exist)
        """
        pass

    @abstractmethod
    def release(
        self,
        message_id: str,
        result_status: MessageStatus,
        owner: Optional[str] = None,
    ) -> bool:
        """
        Clear the lease and set the message status.

        Args:
            message_id: Message to release
            result_status: Processed, Error, or Pending to abandon the lease
            owner: When given, only succeeds while ``owner`` still holds the lease

        Returns:
            True if the message was updated, False if the lease was lost to
            another consumer

        Raises:
            MessageNotFoundError: if the message does not exist
        """
        pass

    @abstractmethod
    def mark_processed(
        self,
        message_id: str,
        note: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> bool:
        """Set Processed, record the note and processed time, clear the lease.

        Fenced on ``owner`` the same way as ``release``.
        """
        pass

    @abstractmethod
    def mark_error(
        self,
        message_id: str,
        error_message: str,
        owner: Optional[str] = None,
    ) -> bool:
        """Set Error, record the error text, bump retry_count, clear the lease.

        Fenced on ``owner`` the same way as ``release``.
        """
        pass

    @abstractmethod
    def renew(
        self,
        message_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: Optional[str] = None,
    ) -> bool:
        """
        Extend a lease that is still valid.

        Args:
            message_id: Message whose lease to extend
            lease_seconds: New duration measured from now
            owner: When given, only the recorded owner may renew

        Returns:
            True if the lease was extended
        """
        pass

    @abstractmethod
    def recover_expired_leases(self, interface_name: Optional[str] = None) -> int:
        """
        Return InProgress messages with expired leases to Pending.

        Returns:
            Number of messages recovered
        """
        pass

    @abstractmethod
    def requeue(self, message_id: str) -> bool:
        """
        Move one Error message back to Pending.

        Returns:
            True if the message was re-queued, False if it was not in Error

        Raises:
            MessageNotFoundError: if the message does not exist
        """
        pass

    @abstractmethod
    def requeue_errors(self, interface_name: str, max_retries: int) -> int:
        """
        Move Error messages with ``retry_count < max_retries`` back to Pending.

        Returns:
            Number of messages re-queued
        """
        pass
