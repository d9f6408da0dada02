"""
Subscription tracker interface for per-destination completion.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import Subscription, SubscriptionStatus


class SubscriptionTracker(ABC):
    """
    Abstract base class for subscription tracking.

    Each destination adapter that touches a message gets one subscription
    row for it, so N destinations can record their own completion of the
    same message independently.
    """

    @abstractmethod
    def subscribe(self, message_id: str, interface_name: str, subscriber: str) -> None:
        """
        Create a Pending subscription.

        Creating the same (message_id, subscriber) pair twice is a no-op.

        Raises:
            MessageNotFoundError: if the message does not exist
        """
        pass

    @abstractmethod
    def resolve_processed(
        self,
        message_id: str,
        subscriber: str,
        detail: Optional[str] = None,
    ) -> None:
        """
        Mark one subscription Processed.

        Raises:
            MessageNotFoundError: if no such subscription exists
        """
        pass

    @abstractmethod
    def resolve_error(self, message_id: str, subscriber: str, detail: str) -> None:
        """
        Mark one subscription Error.

        Raises:
            MessageNotFoundError: if no such subscription exists
        """
        pass

    @abstractmethod
    def all_processed(self, message_id: str) -> bool:
        """
        Whether the message has at least one subscription and all are Processed.
        """
        pass

    @abstractmethod
    def get_subscriptions(self, message_id: str) -> List[Subscription]:
        """All subscriptions of a message, oldest first."""
        pass

    def pending_subscribers(self, message_id: str) -> List[str]:
        """Subscribers of a message that have not resolved Processed."""
        return [
            sub.subscriber_adapter_name
            for sub in self.get_subscriptions(message_id)
            if sub.status != SubscriptionStatus.PROCESSED
        ]

    def has_processed(self, message_id: str, subscriber: str) -> bool:
        """Whether this subscriber already resolved the message as Processed."""
        return any(
            sub.subscriber_adapter_name == subscriber and sub.status == SubscriptionStatus.PROCESSED
            for sub in self.get_subscriptions(message_id)
        )
