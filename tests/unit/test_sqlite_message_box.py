"""
Unit tests for the SQLite MessageBox.

These tests run against a file-backed SQLite database in a temporary
directory. Lease expiry is driven by a ManualClock, never by sleeping.
"""

import threading

import pytest

from messagebox.core.exceptions import (
    DeserializationError,
    MessageBoxStorageError,
    MessageNotFoundError,
    PartialWriteError,
    SchemaMismatchError,
)
from messagebox.core.models import AdapterRole, MessageStatus, SubscriptionStatus
from messagebox.state import SqliteMessageBox, create_message_box


INTERFACE = "characters"


def _write(message_box, instance_id, records, headers=("id",), interface=INTERFACE):
    return message_box.write(
        interface,
        "csv",
        AdapterRole.SOURCE,
        instance_id,
        list(headers),
        records,
    )


class TestWriteAndRead:
    """Tests for persisting and reading messages."""

    def test_write_creates_pending_messages_in_order(self, message_box, source_instance):
        """Test three records become three Pending messages read back in creation order."""
        ids = _write(message_box, source_instance, [{"id": "1"}, {"id": "2"}, {"id": "3"}])

        assert len(ids) == 3
        messages = message_box.read(INTERFACE, MessageStatus.PENDING)
        assert [m.message_id for m in messages] == ids
        assert all(m.status == MessageStatus.PENDING for m in messages)
        assert [message_box.extract(m)[1]["id"] for m in messages] == ["1", "2", "3"]

    def test_write_records_producer(self, message_box, source_instance):
        """Test the producing adapter and instance are stored on the message."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        message = message_box.get_message(message_id)
        assert message.producing_adapter_name == "csv"
        assert message.producing_role == AdapterRole.SOURCE
        assert message.adapter_instance_id == source_instance
        assert message.payload_sha256 is not None
        assert message.sequence is not None

    def test_read_orders_by_created_at(self, message_box, source_instance, clock):
        """Test older messages come first regardless of write batch."""
        first = _write(message_box, source_instance, [{"id": "1"}])
        clock.advance(seconds=1)
        second = _write(message_box, source_instance, [{"id": "2"}, {"id": "3"}])

        messages = message_box.read(INTERFACE, MessageStatus.PENDING)
        assert [m.message_id for m in messages] == first + second

    def test_read_limit(self, message_box, source_instance):
        """Test the page size caps the result."""
        _write(message_box, source_instance, [{"id": str(i)} for i in range(5)])

        assert len(message_box.read(INTERFACE, MessageStatus.PENDING, limit=2)) == 2

    def test_read_limit_zero_and_negative(self, message_box, source_instance):
        """Test a zero page is empty and a negative page is rejected."""
        _write(message_box, source_instance, [{"id": "1"}])

        assert message_box.read(INTERFACE, MessageStatus.PENDING, limit=0) == []
        with pytest.raises(ValueError):
            message_box.read(INTERFACE, MessageStatus.PENDING, limit=-1)

    def test_read_is_scoped_to_interface(self, message_box, source_instance):
        """Test messages of other interfaces are not returned."""
        _write(message_box, source_instance, [{"id": "1"}])
        _write(message_box, source_instance, [{"id": "2"}], interface="vehicles")

        assert len(message_box.read(INTERFACE, MessageStatus.PENDING)) == 1
        assert message_box.list_interfaces() == ["characters", "vehicles"]

    def test_empty_batch_writes_nothing(self, message_box, source_instance):
        """Test an empty record list is not an error."""
        assert _write(message_box, source_instance, []) == []

    def test_schema_mismatch_writes_nothing(self, message_box, source_instance):
        """Test a bad record anywhere in the batch rejects the whole batch."""
        with pytest.raises(SchemaMismatchError) as exc_info:
            _write(message_box, source_instance, [{"id": "1"}, {"id": "2"}, {"name": "x"}])

        assert exc_info.value.record_index == 2
        assert message_box.read(INTERFACE, MessageStatus.PENDING) == []

    def test_partial_write_reports_persisted_ids(self, tmp_path, clock):
        """Test a store failure mid-batch keeps earlier messages and reports them."""

        class FailingMessageBox(SqliteMessageBox):
            inserts = 0

            def _insert_message(self, message):
                self.inserts += 1
                if self.inserts == 3:
                    raise MessageBoxStorageError("disk full")
                super()._insert_message(message)

        box = FailingMessageBox(tmp_path / "partial.db", clock=clock)
        try:
            with pytest.raises(PartialWriteError) as exc_info:
                _write(box, "instance-1", [{"id": str(i)} for i in range(5)])

            error = exc_info.value
            assert error.failed_index == 2
            assert error.total_records == 5
            assert error.unpersisted_count == 3
            assert len(error.persisted_ids) == 2

            pending = box.read(INTERFACE, MessageStatus.PENDING)
            assert [m.message_id for m in pending] == error.persisted_ids
        finally:
            box.close()

    def test_get_message_unknown(self, message_box):
        """Test an unknown id returns None."""
        assert message_box.get_message("missing") is None

    def test_extract_corrupt_payload(self, message_box, source_instance):
        """Test a payload changed in storage fails to deserialize."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.conn.execute(
            "UPDATE messages SET payload = ? WHERE message_id = ?",
            ("{broken", message_id),
        )

        with pytest.raises(DeserializationError) as exc_info:
            message_box.extract(message_box.get_message(message_id))
        assert exc_info.value.message_id == message_id

    def test_remove(self, message_box, source_instance):
        """Test removing a message deletes it and its subscriptions."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.subscribe(message_id, INTERFACE, "characters-table")

        assert message_box.remove(message_id) is True
        assert message_box.get_message(message_id) is None
        assert message_box.get_subscriptions(message_id) == []
        assert message_box.remove(message_id) is False


class TestLeases:
    """Tests for lease acquisition, expiry and release."""

    def test_acquire_sets_in_progress(self, message_box, source_instance, clock):
        """Test a successful acquire leases the message."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        assert message_box.acquire(message_id, 300, owner="worker-a") is True

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.IN_PROGRESS
        assert message.locked_by == "worker-a"
        assert message.is_lease_valid(clock())

    def test_acquire_held_lease_fails(self, message_box, source_instance):
        """Test a second acquire during a valid lease fails."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        assert message_box.acquire(message_id, 300)
        assert message_box.acquire(message_id, 300) is False

    def test_acquire_after_crash_and_expiry(self, message_box, source_instance, clock):
        """Test a lease abandoned without release can be taken once it expires."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        assert message_box.acquire(message_id, 300, owner="crashed")

        clock.advance(seconds=299)
        assert message_box.acquire(message_id, 300, owner="other") is False

        clock.advance(seconds=1)
        assert message_box.acquire(message_id, 300, owner="other") is True
        assert message_box.get_message(message_id).locked_by == "other"

    def test_acquire_unknown_message(self, message_box):
        """Test acquiring an unknown id fails without raising."""
        assert message_box.acquire("missing", 300) is False

    def test_acquire_processed_message_fails(self, message_box, source_instance):
        """Test terminal messages cannot be leased."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300)
        message_box.mark_processed(message_id)

        assert message_box.acquire(message_id, 300) is False

    def test_concurrent_acquire_single_winner(self, message_box, source_instance):
        """Test many threads racing for one message produce exactly one winner."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def contend(n):
            barrier.wait()
            acquired = message_box.acquire(message_id, 300, owner=f"worker-{n}")
            with results_lock:
                results.append(acquired)

        threads = [threading.Thread(target=contend, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7

    def test_acquire_across_connections(self, tmp_path, clock):
        """Test two stores on the same file cannot both lease a message."""
        db_path = tmp_path / "shared.db"
        first = SqliteMessageBox(db_path, clock=clock)
        second = SqliteMessageBox(db_path, clock=clock)
        try:
            message_id = _write(first, "instance-1", [{"id": "1"}])[0]

            assert first.acquire(message_id, 300) is True
            assert second.acquire(message_id, 300) is False
        finally:
            first.close()
            second.close()

    def test_release_to_pending_clears_lease(self, message_box, source_instance):
        """Test releasing hands the message back for leasing."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300, owner="worker-a")

        message_box.release(message_id, MessageStatus.PENDING)

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.PENDING
        assert message.lease_expires_at is None
        assert message.locked_by is None
        assert message_box.acquire(message_id, 300) is True

    def test_release_to_in_progress_rejected(self, message_box, source_instance):
        """Test InProgress is not a release target."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        with pytest.raises(ValueError):
            message_box.release(message_id, MessageStatus.IN_PROGRESS)

    def test_release_unknown_message(self, message_box):
        """Test releasing an unknown id raises."""
        with pytest.raises(MessageNotFoundError):
            message_box.release("missing", MessageStatus.PENDING)

    def test_mark_processed(self, message_box, source_instance):
        """Test completion records the note and clears the lease."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300)

        message_box.mark_processed(message_id, note="written to table")

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.PROCESSED
        assert message.processing_details == "written to table"
        assert message.lease_expires_at is None
        assert message.processed_at is not None

    def test_mark_error_increments_retry_count(self, message_box, source_instance):
        """Test each failure is counted."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300)

        message_box.mark_error(message_id, "constraint violation")

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.ERROR
        assert message.error_message == "constraint violation"
        assert message.retry_count == 1
        assert message.lease_expires_at is None

    def test_mark_unknown_message(self, message_box):
        """Test completing an unknown id raises."""
        with pytest.raises(MessageNotFoundError):
            message_box.mark_processed("missing")
        with pytest.raises(MessageNotFoundError):
            message_box.mark_error("missing", "boom")

    def test_owner_fenced_completion(self, message_box, source_instance):
        """Test the lease holder can complete the message it holds."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300, owner="worker-a")

        assert message_box.mark_processed(message_id, owner="worker-a") is True
        assert message_box.get_message(message_id).status == MessageStatus.PROCESSED

    def test_expired_holder_cannot_release_new_lease(self, message_box, source_instance, clock):
        """Test a consumer that lost its lease cannot hand the message to a third one."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300, owner="worker-a")
        clock.advance(seconds=301)
        assert message_box.acquire(message_id, 300, owner="worker-b")

        assert message_box.release(message_id, MessageStatus.PENDING, owner="worker-a") is False
        assert message_box.mark_processed(message_id, owner="worker-a") is False
        assert message_box.mark_error(message_id, "late failure", owner="worker-a") is False

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.IN_PROGRESS
        assert message.locked_by == "worker-b"
        assert message.retry_count == 0
        assert message_box.acquire(message_id, 300, owner="worker-c") is False

    def test_recovered_lease_cannot_be_completed_by_old_holder(
        self, message_box, source_instance, clock
    ):
        """Test completion after recovery back to Pending is refused."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300, owner="worker-a")
        clock.advance(seconds=301)
        message_box.recover_expired_leases()

        assert message_box.mark_processed(message_id, owner="worker-a") is False
        assert message_box.get_message(message_id).status == MessageStatus.PENDING

    def test_fenced_completion_unknown_message(self, message_box):
        """Test an owner-fenced completion still reports unknown ids."""
        with pytest.raises(MessageNotFoundError):
            message_box.release("missing", MessageStatus.PENDING, owner="worker-a")

    def test_renew_extends_lease(self, message_box, source_instance, clock):
        """Test the holder can extend a valid lease."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300, owner="worker-a")
        clock.advance(seconds=200)

        assert message_box.renew(message_id, 300, owner="worker-b") is False
        assert message_box.renew(message_id, 300, owner="worker-a") is True

        clock.advance(seconds=200)
        assert message_box.acquire(message_id, 300) is False

    def test_renew_expired_lease_fails(self, message_box, source_instance, clock):
        """Test an expired lease cannot be renewed."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300)
        clock.advance(seconds=301)

        assert message_box.renew(message_id, 300) is False

    def test_recover_expired_leases(self, message_box, source_instance, clock):
        """Test expired leases go back to Pending and valid ones stay."""
        expired, held = _write(message_box, source_instance, [{"id": "1"}, {"id": "2"}])
        message_box.acquire(expired, 60)
        message_box.acquire(held, 600)
        clock.advance(seconds=120)

        assert message_box.recover_expired_leases(INTERFACE) == 1

        assert message_box.get_message(expired).status == MessageStatus.PENDING
        assert message_box.get_message(held).status == MessageStatus.IN_PROGRESS


class TestScenarios:
    """End-to-end lifecycle scenarios."""

    def test_failed_message_only_visible_as_error(self, message_box, source_instance):
        """Test a failed downstream write quarantines the message."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        assert message_box.acquire(message_id, 300)
        message_box.subscribe(message_id, INTERFACE, "characters-table")

        message_box.mark_error(message_id, "destination rejected record")
        message_box.resolve_error(message_id, "characters-table", "destination rejected record")

        assert message_box.read(INTERFACE, MessageStatus.PENDING) == []
        errors = message_box.read(INTERFACE, MessageStatus.ERROR)
        assert [m.message_id for m in errors] == [message_id]
        subscription = message_box.get_subscriptions(message_id)[0]
        assert subscription.status == SubscriptionStatus.ERROR
        assert subscription.error_detail == "destination rejected record"


class TestSubscriptions:
    """Tests for subscription tracking."""

    def test_all_processed_requires_every_subscriber(self, message_box, source_instance):
        """Test completion waits for both subscribers."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.subscribe(message_id, INTERFACE, "X")
        message_box.subscribe(message_id, INTERFACE, "Y")

        message_box.resolve_processed(message_id, "X")
        assert message_box.all_processed(message_id) is False
        assert message_box.pending_subscribers(message_id) == ["Y"]

        message_box.resolve_processed(message_id, "Y", detail="done")
        assert message_box.all_processed(message_id) is True
        assert message_box.pending_subscribers(message_id) == []

    def test_all_processed_false_without_subscriptions(self, message_box, source_instance):
        """Test a message nobody subscribed to is not complete."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        assert message_box.all_processed(message_id) is False

    def test_subscribe_is_idempotent(self, message_box, source_instance):
        """Test subscribing twice keeps one subscription and its status."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.subscribe(message_id, INTERFACE, "X")
        message_box.resolve_processed(message_id, "X")

        message_box.subscribe(message_id, INTERFACE, "X")

        subscriptions = message_box.get_subscriptions(message_id)
        assert len(subscriptions) == 1
        assert subscriptions[0].status == SubscriptionStatus.PROCESSED
        assert message_box.has_processed(message_id, "X")

    def test_subscribe_unknown_message(self, message_box):
        """Test subscribing to an unknown id raises."""
        with pytest.raises(MessageNotFoundError):
            message_box.subscribe("missing", INTERFACE, "X")

    def test_resolve_without_subscription(self, message_box, source_instance):
        """Test resolving a subscriber that never subscribed raises."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        with pytest.raises(MessageNotFoundError):
            message_box.resolve_processed(message_id, "X")

    def test_error_subscription_blocks_completion(self, message_box, source_instance):
        """Test an Error subscription keeps the message incomplete."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.subscribe(message_id, INTERFACE, "X")
        message_box.subscribe(message_id, INTERFACE, "Y")
        message_box.resolve_processed(message_id, "X")
        message_box.resolve_error(message_id, "Y", "timeout")

        assert message_box.all_processed(message_id) is False
        assert message_box.has_processed(message_id, "Y") is False


class TestRequeue:
    """Tests for moving Error messages back to Pending."""

    def test_requeue_error_message(self, message_box, source_instance):
        """Test an Error message is re-queued and keeps its retry count."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]
        message_box.acquire(message_id, 300)
        message_box.mark_error(message_id, "boom")

        assert message_box.requeue(message_id) is True

        message = message_box.get_message(message_id)
        assert message.status == MessageStatus.PENDING
        assert message.retry_count == 1

    def test_requeue_non_error_message(self, message_box, source_instance):
        """Test only Error messages move."""
        message_id = _write(message_box, source_instance, [{"id": "1"}])[0]

        assert message_box.requeue(message_id) is False

    def test_requeue_unknown_message(self, message_box):
        """Test re-queueing an unknown id raises."""
        with pytest.raises(MessageNotFoundError):
            message_box.requeue("missing")

    def test_requeue_errors_respects_max_retries(self, message_box, source_instance):
        """Test messages that used up their retries stay in Error."""
        fresh, exhausted = _write(message_box, source_instance, [{"id": "1"}, {"id": "2"}])
        message_box.mark_error(fresh, "boom")
        for _ in range(3):
            message_box.mark_error(exhausted, "boom")

        assert message_box.requeue_errors(INTERFACE, max_retries=3) == 1

        assert message_box.get_message(fresh).status == MessageStatus.PENDING
        assert message_box.get_message(exhausted).status == MessageStatus.ERROR

    def test_read_exhausted(self, message_box, source_instance):
        """Test only Error messages out of retries are reported as exhausted."""
        fresh, exhausted, pending = _write(
            message_box, source_instance, [{"id": "1"}, {"id": "2"}, {"id": "3"}]
        )
        message_box.mark_error(fresh, "boom")
        for _ in range(3):
            message_box.mark_error(exhausted, "boom")

        messages = message_box.read_exhausted(INTERFACE, max_retries=3)

        assert [m.message_id for m in messages] == [exhausted]
        assert message_box.requeue_errors(INTERFACE, max_retries=3) == 1
        assert [m.message_id for m in message_box.read_exhausted(INTERFACE, 3)] == [exhausted]


class TestGarbageCollection:
    """Tests for removing fully consumed messages."""

    def test_collect_garbage_removes_only_fully_processed(self, message_box, source_instance):
        """Test only Processed messages with every subscription Processed are removed."""
        done, partial, unsubscribed = _write(
            message_box, source_instance, [{"id": "1"}, {"id": "2"}, {"id": "3"}]
        )
        for message_id in (done, partial):
            message_box.subscribe(message_id, INTERFACE, "X")
            message_box.subscribe(message_id, INTERFACE, "Y")
            message_box.mark_processed(message_id)
        message_box.resolve_processed(done, "X")
        message_box.resolve_processed(done, "Y")
        message_box.resolve_processed(partial, "X")
        message_box.mark_processed(unsubscribed)

        assert message_box.collect_garbage(INTERFACE) == 1

        assert message_box.get_message(done) is None
        assert message_box.get_message(partial) is not None
        assert message_box.get_message(unsubscribed) is not None


class TestStatsAndInstances:
    """Tests for queue stats and adapter instance registration."""

    def test_stats(self, message_box, source_instance, clock):
        """Test counts per status and the oldest Pending time."""
        first_time = clock()
        ids = _write(message_box, source_instance, [{"id": "1"}, {"id": "2"}, {"id": "3"}])
        clock.advance(seconds=5)
        _write(message_box, source_instance, [{"id": "4"}], interface="vehicles")
        message_box.acquire(ids[0], 300)
        message_box.mark_error(ids[1], "boom")

        stats = message_box.get_stats(INTERFACE)
        assert stats.pending == 1
        assert stats.in_progress == 1
        assert stats.error == 1
        assert stats.total == 3
        assert stats.oldest_pending_at == first_time

        assert message_box.get_stats().total == 4
        by_interface = message_box.get_stats_by_interface()
        assert set(by_interface) == {"characters", "vehicles"}
        assert by_interface["vehicles"].pending == 1

    def test_ensure_adapter_instance_is_stable(self, message_box):
        """Test registering the same instance twice keeps its id."""
        first = message_box.ensure_adapter_instance(
            INTERFACE, "characters-table", "sqlserver", AdapterRole.DESTINATION
        )
        second = message_box.ensure_adapter_instance(
            INTERFACE, "characters-table", "sqlserver", AdapterRole.DESTINATION, is_enabled=False
        )

        assert first.adapter_instance_id == second.adapter_instance_id
        assert second.is_enabled is False
        assert len(message_box.get_adapter_instances(INTERFACE)) == 1

    def test_same_name_different_role(self, message_box):
        """Test source and destination instances are registered separately."""
        source = message_box.ensure_adapter_instance(INTERFACE, "shared", "csv", AdapterRole.SOURCE)
        destination = message_box.ensure_adapter_instance(
            INTERFACE, "shared", "csv", AdapterRole.DESTINATION
        )

        assert source.adapter_instance_id != destination.adapter_instance_id
        assert len(message_box.get_adapter_instances()) == 2


class TestLifecycle:
    """Tests for opening and closing the store."""

    def test_closed_store_raises_storage_error(self, tmp_path, clock):
        """Test operations on a closed store fail as storage errors."""
        box = SqliteMessageBox(tmp_path / "closed.db", clock=clock)
        box.close()

        with pytest.raises(MessageBoxStorageError):
            box.read(INTERFACE, MessageStatus.PENDING)

    def test_context_manager_closes(self, tmp_path):
        """Test the store closes at the end of a with block."""
        with SqliteMessageBox(tmp_path / "ctx.db") as box:
            assert box.conn is not None
        assert box.conn is None

    def test_data_survives_reopen(self, tmp_path, clock):
        """Test messages persist across store instances."""
        db_path = tmp_path / "persist.db"
        with SqliteMessageBox(db_path, clock=clock) as box:
            ids = _write(box, "instance-1", [{"id": "1"}])

        with SqliteMessageBox(db_path, clock=clock) as box:
            assert [m.message_id for m in box.read(INTERFACE, MessageStatus.PENDING)] == ids


class TestCreateMessageBox:
    """Tests for the backend factory."""

    def test_sqlite_backend(self, tmp_path):
        """Test the factory builds a SQLite store at the given path."""
        box = create_message_box(backend="sqlite", db_path=tmp_path / "factory.db")
        try:
            assert isinstance(box, SqliteMessageBox)
            assert (tmp_path / "factory.db").exists()
        finally:
            box.close()

    def test_sqlite_path_from_environment(self, tmp_path, monkeypatch):
        """Test MESSAGEBOX_SQLITE_PATH picks the database file."""
        monkeypatch.setenv("MESSAGEBOX_BACKEND", "sqlite")
        monkeypatch.setenv("MESSAGEBOX_SQLITE_PATH", str(tmp_path / "env.db"))

        box = create_message_box()
        try:
            assert (tmp_path / "env.db").exists()
        finally:
            box.close()

    def test_unknown_backend(self):
        """Test an unknown backend name is rejected."""
        with pytest.raises(ValueError):
            create_message_box(backend="redis")
