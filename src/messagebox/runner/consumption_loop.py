"""
Consumption loop: the read, lease, process, complete protocol that every
destination connector runs against the MessageBox.

The loop owns the protocol; the connector supplies only the per-record
write callback.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..core.exceptions import DeserializationError, MessageBoxStorageError
from ..core.lease_manager import DEFAULT_LEASE_SECONDS
from ..core.logging import CorrelationContext, log_with_context
from ..core.message_box import MessageBox
from ..core.models import (
    ErrorPolicy,
    Headers,
    Message,
    MessageStatus,
    Record,
    RetentionPolicy,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)


WriteRecord = Callable[[Headers, Record, Message], None]


@dataclass
class LoopConfig:
    """
    Configuration for a consumption loop.

    Attributes:
        lease_seconds: Lease taken on each message
        use_subscriptions: Track completion per subscriber
        page_size: Maximum Pending messages read per poll (None = all)
        retention: What to do with a message once all subscriptions are Processed
        error_policy: Quarantine Error messages or re-queue them each poll
        max_retries: Re-queue limit under ErrorPolicy.REQUEUE
        route_subscribers: Every destination of the interface; a message is
            only marked Processed once all of them have resolved it
        owner: Tag recorded on leases and checked on completion (defaults to
            the subscriber name plus a per-loop suffix)
    """
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    use_subscriptions: bool = True
    page_size: Optional[int] = None
    retention: RetentionPolicy = RetentionPolicy.RETAIN
    error_policy: ErrorPolicy = ErrorPolicy.QUARANTINE
    max_retries: int = 3
    route_subscribers: Optional[List[str]] = None
    owner: Optional[str] = None


@dataclass
class PollMetrics:
    """Counters for one poll cycle."""
    poll_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    read: int = 0
    acquired: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    already_processed: int = 0
    released: int = 0
    removed: int = 0
    recovered: int = 0
    requeued: int = 0
    lost_leases: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "PollMetrics") -> None:
        """Add another poll's counters to this one."""
        for name in ("read", "acquired", "skipped", "succeeded", "failed",
                     "already_processed", "released", "removed",
                     "recovered", "requeued", "lost_leases"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)


class ConsumptionLoop:
    """
    Drives one destination subscriber over one interface.

    Each poll:
    1. Recovers expired leases (and re-queues Error messages if configured)
    2. Reads Pending messages in creation order
    3. Leases each message; a lost race is skipped, not an error
    4. Subscribes, extracts and calls the write callback
    5. Resolves the subscription and completes or releases the message

    A failing record is marked Error and the poll moves on. Storage errors
    abort the poll. Completion is fenced on the lease owner, so a consumer
    whose lease expired and was taken over leaves the message alone.
    """

    def __init__(
        self,
        message_box: MessageBox,
        interface_name: str,
        subscriber_name: str,
        write_record: WriteRecord,
        config: Optional[LoopConfig] = None,
    ):
        """
        Initialize the consumption loop.

        Args:
            message_box: Backing MessageBox
            interface_name: Interface to consume
            subscriber_name: Destination instance name used for subscriptions
            write_record: Callback writing one record to the destination
            config: Loop configuration (uses defaults if not provided)
        """
        self.message_box = message_box
        self.interface_name = interface_name
        self.subscriber_name = subscriber_name
        self.write_record = write_record
        self.config = config or LoopConfig()

        route = self.config.route_subscribers
        if route and subscriber_name not in route:
            raise ValueError(
                f"Subscriber {subscriber_name} is not part of route {route}"
            )
        self._owner = self.config.owner or f"{subscriber_name}:{uuid.uuid4().hex[:8]}"

    @property
    def owner(self) -> str:
        return self._owner

    def run_once(self) -> PollMetrics:
        """
        Run one poll cycle.

        Returns:
            PollMetrics for the cycle

        Raises:
            MessageBoxStorageError: if the store fails; the cycle is aborted
        """
        metrics = PollMetrics(
            poll_id=uuid.uuid4().hex[:12],
            started_at=datetime.now(timezone.utc),
        )

        with CorrelationContext(
            interface_name=self.interface_name,
            subscriber=self.subscriber_name,
            poll_id=metrics.poll_id,
        ):
            metrics.recovered = self.message_box.recover_expired_leases(self.interface_name)
            if self.config.error_policy == ErrorPolicy.REQUEUE:
                metrics.requeued = self.message_box.requeue_errors(
                    self.interface_name, self.config.max_retries
                )

            messages = self.message_box.read(
                self.interface_name,
                MessageStatus.PENDING,
                limit=self.config.page_size,
            )
            metrics.read = len(messages)

            for message in messages:
                with CorrelationContext(message_id=message.message_id):
                    self._consume(message, metrics)

            metrics.ended_at = datetime.now(timezone.utc)
            log_with_context(
                logger,
                logging.INFO if metrics.read else logging.DEBUG,
                f"Poll complete: read={metrics.read} succeeded={metrics.succeeded} "
                f"failed={metrics.failed} skipped={metrics.skipped}",
            )
        return metrics

    def run(
        self,
        max_polls: Optional[int] = None,
        poll_interval: float = 5.0,
        stop_event: Optional[threading.Event] = None,
        stop_when_idle: bool = False,
    ) -> PollMetrics:
        """
        Poll repeatedly.

        A storage error is logged and ends only the current cycle; the next
        cycle tries again.

        Args:
            max_polls: Stop after this many cycles (None = until stopped)
            poll_interval: Seconds to wait between cycles
            stop_event: Set to stop between cycles
            stop_when_idle: Stop after a cycle that leased no messages

        Returns:
            Totals across every completed cycle
        """
        stop_event = stop_event or threading.Event()
        totals = PollMetrics(poll_id="total", started_at=datetime.now(timezone.utc))
        polls = 0

        while not stop_event.is_set():
            try:
                metrics = self.run_once()
                totals.merge(metrics)
                idle = metrics.acquired == 0
            except MessageBoxStorageError as e:
                logger.error(
                    f"Poll of {self.interface_name} by {self.subscriber_name} aborted: {e}"
                )
                totals.errors.append(str(e))
                idle = False

            polls += 1
            if max_polls is not None and polls >= max_polls:
                break
            if stop_when_idle and idle:
                break
            stop_event.wait(poll_interval)

        totals.ended_at = datetime.now(timezone.utc)
        return totals

    def _consume(self, message: Message, metrics: PollMetrics) -> None:
        mb = self.message_box
        message_id = message.message_id

        # Fan-out re-delivery: skip what this subscriber already wrote while
        # other subscribers of the route still have to
        if self._is_fan_out():
            waiting = self._waiting_subscribers(message_id)
            if waiting and self.subscriber_name not in waiting:
                metrics.skipped += 1
                return

        if not mb.acquire(message_id, self.config.lease_seconds, owner=self.owner):
            logger.debug(f"Lease on {message_id} held by another consumer, skipping")
            metrics.skipped += 1
            return
        metrics.acquired += 1

        if self.config.use_subscriptions:
            # Fan-out subscribes the whole route on first contact so
            # all_processed stays False until every destination is done
            for name in self._subscribers():
                mb.subscribe(message_id, self.interface_name, name)
            if mb.has_processed(message_id, self.subscriber_name):
                metrics.already_processed += 1
                self._finalize(message_id, metrics)
                return

        try:
            headers, record = mb.extract(message)
        except DeserializationError as e:
            self._fail(message_id, f"Deserialization failed: {e}", metrics)
            return

        try:
            self.write_record(headers, record, message)
        except MessageBoxStorageError:
            raise
        except Exception as e:
            self._fail(message_id, f"{type(e).__name__}: {e}", metrics)
            return

        if self.config.use_subscriptions:
            mb.resolve_processed(
                message_id,
                self.subscriber_name,
                detail=f"Written by {self.subscriber_name}",
            )
        metrics.succeeded += 1
        self._finalize(message_id, metrics)

    def _is_fan_out(self) -> bool:
        return bool(self.config.use_subscriptions and self.config.route_subscribers)

    def _subscribers(self) -> List[str]:
        return list(self.config.route_subscribers or [self.subscriber_name])

    def _waiting_subscribers(self, message_id: str) -> List[str]:
        """Route subscribers that have not resolved the message as Processed."""
        processed = {
            sub.subscriber_adapter_name
            for sub in self.message_box.get_subscriptions(message_id)
            if sub.status == SubscriptionStatus.PROCESSED
        }
        return [name for name in self._subscribers() if name not in processed]

    def _lost_lease(self, message_id: str, metrics: PollMetrics) -> None:
        log_with_context(
            logger,
            logging.WARNING,
            f"Lease on {message_id} was taken over by another consumer, leaving it alone",
        )
        metrics.lost_leases += 1

    def _fail(self, message_id: str, error: str, metrics: PollMetrics) -> None:
        log_with_context(logger, logging.WARNING, f"Failed to consume message: {error}")
        if not self.message_box.mark_error(message_id, error, owner=self.owner):
            self._lost_lease(message_id, metrics)
            return
        if self.config.use_subscriptions:
            self.message_box.resolve_error(message_id, self.subscriber_name, error)
        metrics.failed += 1
        metrics.errors.append(f"{message_id}: {error}")

    def _finalize(self, message_id: str, metrics: PollMetrics) -> None:
        """
        Complete the message, or hand it back to the rest of the route.
        """
        mb = self.message_box

        if not self.config.use_subscriptions:
            if not mb.mark_processed(
                message_id, note=f"Processed by {self.subscriber_name}", owner=self.owner
            ):
                self._lost_lease(message_id, metrics)
            return

        waiting = self._waiting_subscribers(message_id)
        if waiting:
            if not mb.release(message_id, MessageStatus.PENDING, owner=self.owner):
                self._lost_lease(message_id, metrics)
                return
            metrics.released += 1
            logger.debug(f"Message {message_id} released for {', '.join(waiting)}")
            return

        route = self._subscribers()
        if not mb.mark_processed(
            message_id, note=f"Processed by {', '.join(route)}", owner=self.owner
        ):
            self._lost_lease(message_id, metrics)
            return

        if self.config.retention == RetentionPolicy.REMOVE and mb.all_processed(message_id):
            if mb.remove(message_id):
                metrics.removed += 1
