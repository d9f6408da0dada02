"""
The MessageBox: message store, lease manager and subscription tracker
behind one backing store.
"""

from abc import abstractmethod
from typing import List, Optional

from .lease_manager import LeaseManager
from .message_store import MessageStore
from .models import AdapterInstance, AdapterRole
from .subscription_tracker import SubscriptionTracker


class MessageBox(MessageStore, LeaseManager, SubscriptionTracker):
    """
    Abstract base class for MessageBox backends.

    Backends implement the three component contracts against one store and
    also keep the registry of adapter instances writing to it.
    """

    @abstractmethod
    def ensure_adapter_instance(
        self,
        interface_name: str,
        instance_name: str,
        adapter_name: str,
        role: AdapterRole,
        is_enabled: bool = True,
    ) -> AdapterInstance:
        """
        Register an adapter instance, or update the existing registration.

        Instances are keyed by (interface_name, instance_name, role), so
        calling this on every start-up returns the same instance ID.

        Returns:
            The stored AdapterInstance
        """
        pass

    @abstractmethod
    def get_adapter_instances(self, interface_name: Optional[str] = None) -> List[AdapterInstance]:
        """Registered adapter instances, optionally for one interface."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the backing store connection."""
        pass

    def __enter__(self) -> "MessageBox":
        return self

    def __exit__(self, *args) -> None:
        self.close()
