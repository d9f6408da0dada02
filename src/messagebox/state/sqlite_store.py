"""
SQLite-based MessageBox.

Used for local runs and tests. Every status and lease mutation is one
UPDATE statement in autocommit mode, so two processes sharing the same
database file still cannot both acquire a message.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..core.clock import Clock, from_db_text, to_db_text, utc_now
from ..core.exceptions import MessageBoxStorageError, MessageNotFoundError
from ..core.lease_manager import DEFAULT_LEASE_SECONDS
from ..core.message_box import MessageBox
from ..core.models import (
    AdapterInstance,
    AdapterRole,
    Message,
    MessageStatus,
    QueueStats,
    Subscription,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

_RELEASE_STATUSES = (
    MessageStatus.PENDING,
    MessageStatus.PROCESSED,
    MessageStatus.ERROR,
)


class SqliteMessageBox(MessageBox):
    """
    SQLite-based implementation of the MessageBox.

    One connection is shared by every thread of the process and guarded by
    a lock. Lease times are compared against the injected clock, which
    defaults to UTC now.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        auto_init: bool = True,
        clock: Optional[Clock] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the SQLite MessageBox.

        Args:
            db_path: Path to the database file, or ":memory:"
            auto_init: Whether to create tables automatically
            clock: Callable returning the current UTC time
            timeout: Seconds to wait on a database locked by another process
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.timeout = timeout
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self.conn: Optional[sqlite3.Connection] = None
        self._connect()

        if auto_init:
            self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=self.timeout,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            logger.error(f"Failed to open SQLite MessageBox at {self.db_path}: {e}")
            raise MessageBoxStorageError(f"Failed to open SQLite MessageBox: {e}") from e
        logger.debug(f"Connected to SQLite MessageBox: {self.db_path}")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS messages (
                sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL UNIQUE,
                interface_name TEXT NOT NULL,
                producing_adapter_name TEXT NOT NULL,
                producing_role TEXT NOT NULL,
                adapter_instance_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                payload_sha256 TEXT,
                status TEXT NOT NULL,
                lease_expires_at TEXT,
                locked_by TEXT,
                created_at TEXT NOT NULL,
                locked_at TEXT,
                processed_at TEXT,
                error_message TEXT,
                processing_details TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS ix_messages_interface_status
            ON messages (interface_name, status, created_at, sequence)
            """,
            """
            CREATE INDEX IF NOT EXISTS ix_messages_lease
            ON messages (status, lease_expires_at)
            """,
            """
            CREATE TABLE IF NOT EXISTS message_subscriptions (
                message_id TEXT NOT NULL
                    REFERENCES messages (message_id) ON DELETE CASCADE,
                subscriber_adapter_name TEXT NOT NULL,
                interface_name TEXT NOT NULL,
                status TEXT NOT NULL,
                error_detail TEXT,
                processing_details TEXT,
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                PRIMARY KEY (message_id, subscriber_adapter_name)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS adapter_instances (
                adapter_instance_id TEXT PRIMARY KEY,
                interface_name TEXT NOT NULL,
                instance_name TEXT NOT NULL,
                adapter_name TEXT NOT NULL,
                role TEXT NOT NULL,
                is_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (interface_name, instance_name, role)
            )
            """,
        ]
        for statement in statements:
            self._execute(statement, (), "initialize schema")
        logger.debug("Initialized MessageBox schema")

    def _now_text(self, offset_seconds: float = 0.0) -> str:
        return to_db_text(self._clock() + timedelta(seconds=offset_seconds))

    def _execute(self, sql: str, params: Sequence[Any], operation: str) -> sqlite3.Cursor:
        """
        Run one statement under the connection lock.

        Raises:
            MessageBoxStorageError: if the statement fails
        """
        if self.conn is None:
            raise MessageBoxStorageError("SQLite MessageBox is closed")
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params))
            except sqlite3.Error as e:
                logger.error(f"Failed to {operation}: {e}")
                raise MessageBoxStorageError(f"Failed to {operation}: {e}") from e

    def _fetchall(self, sql: str, params: Sequence[Any], operation: str) -> List[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params, operation).fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any], operation: str) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params, operation).fetchone()

    def _require_message(self, message_id: str) -> None:
        row = self._fetchone(
            "SELECT 1 FROM messages WHERE message_id = ?",
            (message_id,),
            "look up message",
        )
        if row is None:
            raise MessageNotFoundError(message_id)

    # ------------------------------------------------------------------
    # MessageStore
    # ------------------------------------------------------------------

    def _insert_message(self, message: Message) -> None:
        message.created_at = self._clock()
        cursor = self._execute(
            """
            INSERT INTO messages (
                message_id, interface_name, producing_adapter_name, producing_role,
                adapter_instance_id, payload, payload_sha256, status,
                created_at, retry_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.message_id,
                message.interface_name,
                message.producing_adapter_name,
                message.producing_role.value,
                message.adapter_instance_id,
                message.payload,
                message.payload_sha256,
                message.status.value,
                to_db_text(message.created_at),
                message.retry_count,
            ),
            "insert message",
        )
        message.sequence = cursor.lastrowid

    def _select_messages(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: Optional[int],
    ) -> List[Message]:
        sql = """
            SELECT * FROM messages
            WHERE interface_name = ? AND status = ?
            ORDER BY created_at, sequence
        """
        params: List[Any] = [interface_name, status.value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._fetchall(sql, params, "read messages")
        return [self._row_to_message(row) for row in rows]

    def get_message(self, message_id: str) -> Optional[Message]:
        row = self._fetchone(
            "SELECT * FROM messages WHERE message_id = ?",
            (message_id,),
            "get message",
        )
        return self._row_to_message(row) if row else None

    def remove(self, message_id: str) -> bool:
        cursor = self._execute(
            "DELETE FROM messages WHERE message_id = ?",
            (message_id,),
            "remove message",
        )
        removed = cursor.rowcount == 1
        if removed:
            logger.debug(f"Removed message {message_id}")
        return removed

    def get_stats(self, interface_name: Optional[str] = None) -> QueueStats:
        where = "WHERE interface_name = ?" if interface_name else ""
        params = (interface_name,) if interface_name else ()

        rows = self._fetchall(
            f"SELECT status, COUNT(*) AS cnt FROM messages {where} GROUP BY status",
            params,
            "get queue stats",
        )
        counts: Dict[str, int] = {row["status"]: row["cnt"] for row in rows}

        pending_filter = "AND interface_name = ?" if interface_name else ""
        oldest = self._fetchone(
            f"SELECT MIN(created_at) AS oldest FROM messages "
            f"WHERE status = ? {pending_filter}",
            (MessageStatus.PENDING.value,) + tuple(params),
            "get queue stats",
        )
        return QueueStats.from_counts(counts, from_db_text(oldest["oldest"]) if oldest else None)

    def list_interfaces(self) -> List[str]:
        rows = self._fetchall(
            "SELECT DISTINCT interface_name FROM messages ORDER BY interface_name",
            (),
            "list interfaces",
        )
        return [row["interface_name"] for row in rows]

    def collect_garbage(self, interface_name: str) -> int:
        cursor = self._execute(
            """
            DELETE FROM messages
            WHERE interface_name = ?
              AND status = ?
              AND EXISTS (
                  SELECT 1 FROM message_subscriptions s
                  WHERE s.message_id = messages.message_id
              )
              AND NOT EXISTS (
                  SELECT 1 FROM message_subscriptions s
                  WHERE s.message_id = messages.message_id AND s.status <> ?
              )
            """,
            (
                interface_name,
                MessageStatus.PROCESSED.value,
                SubscriptionStatus.PROCESSED.value,
            ),
            "collect garbage",
        )
        if cursor.rowcount:
            logger.info(f"Removed {cursor.rowcount} consumed messages from {interface_name}")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # LeaseManager
    # ------------------------------------------------------------------

    def acquire(
        self,
        message_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: Optional[str] = None,
    ) -> bool:
        now = self._clock()
        cursor = self._execute(
            """
            UPDATE messages
            SET status = ?,
                lease_expires_at = ?,
                locked_at = ?,
                locked_by = ?
            WHERE message_id = ?
              AND (status = ? OR (status = ? AND lease_expires_at <= ?))
            """,
            (
                MessageStatus.IN_PROGRESS.value,
                to_db_text(now + timedelta(seconds=lease_seconds)),
                to_db_text(now),
                owner,
                message_id,
                MessageStatus.PENDING.value,
                MessageStatus.IN_PROGRESS.value,
                to_db_text(now),
            ),
            "acquire lease",
        )
        acquired = cursor.rowcount == 1
        if acquired:
            logger.debug(f"Acquired lease on {message_id} for {lease_seconds}s")
        return acquired

    def _finish(
        self,
        assignments: str,
        params: Sequence[Any],
        message_id: str,
        owner: Optional[str],
        operation: str,
    ) -> bool:
        """
        Apply a completion update, fenced on the lease holder when ``owner`` is given.

        Returns:
            True if the message was updated, False if ``owner`` no longer holds the lease

        Raises:
            MessageNotFoundError: if the message does not exist
        """
        sql = f"UPDATE messages SET {assignments} WHERE message_id = ?"
        params = list(params) + [message_id]
        if owner is not None:
            sql += " AND status = ? AND locked_by = ?"
            params += [MessageStatus.IN_PROGRESS.value, owner]

        cursor = self._execute(sql, params, operation)
        if cursor.rowcount:
            return True
        self._require_message(message_id)
        logger.warning(f"Lease on {message_id} is no longer held by {owner}, cannot {operation}")
        return False

    def release(
        self,
        message_id: str,
        result_status: MessageStatus,
        owner: Optional[str] = None,
    ) -> bool:
        result_status = MessageStatus(result_status)
        if result_status not in _RELEASE_STATUSES:
            raise ValueError(f"Cannot release a message to status {result_status.value}")

        processed_at = None if result_status == MessageStatus.PENDING else self._now_text()
        return self._finish(
            "status = ?, lease_expires_at = NULL, locked_by = NULL, processed_at = ?",
            (result_status.value, processed_at),
            message_id,
            owner,
            "release lease",
        )

    def mark_processed(
        self,
        message_id: str,
        note: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> bool:
        return self._finish(
            "status = ?, lease_expires_at = NULL, locked_by = NULL, "
            "processed_at = ?, processing_details = ?",
            (MessageStatus.PROCESSED.value, self._now_text(), note),
            message_id,
            owner,
            "mark message processed",
        )

    def mark_error(
        self,
        message_id: str,
        error_message: str,
        owner: Optional[str] = None,
    ) -> bool:
        return self._finish(
            "status = ?, lease_expires_at = NULL, locked_by = NULL, "
            "processed_at = ?, error_message = ?, retry_count = retry_count + 1",
            (MessageStatus.ERROR.value, self._now_text(), error_message),
            message_id,
            owner,
            "mark message error",
        )

    def renew(
        self,
        message_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: Optional[str] = None,
    ) -> bool:
        sql = """
            UPDATE messages
            SET lease_expires_at = ?
            WHERE message_id = ? AND status = ? AND lease_expires_at > ?
        """
        params: List[Any] = [
            self._now_text(lease_seconds),
            message_id,
            MessageStatus.IN_PROGRESS.value,
            self._now_text(),
        ]
        if owner is not None:
            sql += " AND locked_by = ?"
            params.append(owner)

        cursor = self._execute(sql, params, "renew lease")
        return cursor.rowcount == 1

    def recover_expired_leases(self, interface_name: Optional[str] = None) -> int:
        sql = """
            UPDATE messages
            SET status = ?, lease_expires_at = NULL, locked_by = NULL
            WHERE status = ? AND lease_expires_at <= ?
        """
        params: List[Any] = [
            MessageStatus.PENDING.value,
            MessageStatus.IN_PROGRESS.value,
            self._now_text(),
        ]
        if interface_name:
            sql += " AND interface_name = ?"
            params.append(interface_name)

        cursor = self._execute(sql, params, "recover expired leases")
        if cursor.rowcount:
            logger.warning(f"Recovered {cursor.rowcount} messages with expired leases")
        return cursor.rowcount

    def requeue(self, message_id: str) -> bool:
        cursor = self._execute(
            """
            UPDATE messages
            SET status = ?, processed_at = NULL
            WHERE message_id = ? AND status = ?
            """,
            (MessageStatus.PENDING.value, message_id, MessageStatus.ERROR.value),
            "requeue message",
        )
        if cursor.rowcount == 1:
            logger.info(f"Re-queued message {message_id}")
            return True
        self._require_message(message_id)
        return False

    def requeue_errors(self, interface_name: str, max_retries: int) -> int:
        cursor = self._execute(
            """
            UPDATE messages
            SET status = ?, processed_at = NULL
            WHERE interface_name = ? AND status = ? AND retry_count < ?
            """,
            (
                MessageStatus.PENDING.value,
                interface_name,
                MessageStatus.ERROR.value,
                max_retries,
            ),
            "requeue error messages",
        )
        if cursor.rowcount:
            logger.info(f"Re-queued {cursor.rowcount} error messages on {interface_name}")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # SubscriptionTracker
    # ------------------------------------------------------------------

    def subscribe(self, message_id: str, interface_name: str, subscriber: str) -> None:
        with self._lock:
            self._require_message(message_id)
            self._execute(
                """
                INSERT OR IGNORE INTO message_subscriptions (
                    message_id, subscriber_adapter_name, interface_name,
                    status, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    subscriber,
                    interface_name,
                    SubscriptionStatus.PENDING.value,
                    self._now_text(),
                ),
                "subscribe",
            )

    def _resolve(
        self,
        message_id: str,
        subscriber: str,
        status: SubscriptionStatus,
        processing_details: Optional[str],
        error_detail: Optional[str],
    ) -> None:
        cursor = self._execute(
            """
            UPDATE message_subscriptions
            SET status = ?, processing_details = ?, error_detail = ?, resolved_at = ?
            WHERE message_id = ? AND subscriber_adapter_name = ?
            """,
            (
                status.value,
                processing_details,
                error_detail,
                self._now_text(),
                message_id,
                subscriber,
            ),
            "resolve subscription",
        )
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message_id)

    def resolve_processed(
        self,
        message_id: str,
        subscriber: str,
        detail: Optional[str] = None,
    ) -> None:
        self._resolve(message_id, subscriber, SubscriptionStatus.PROCESSED, detail, None)

    def resolve_error(self, message_id: str, subscriber: str, detail: str) -> None:
        self._resolve(message_id, subscriber, SubscriptionStatus.ERROR, None, detail)

    def all_processed(self, message_id: str) -> bool:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS processed
            FROM message_subscriptions
            WHERE message_id = ?
            """,
            (SubscriptionStatus.PROCESSED.value, message_id),
            "check subscriptions",
        )
        total = row["total"] or 0
        return total > 0 and row["processed"] == total

    def get_subscriptions(self, message_id: str) -> List[Subscription]:
        rows = self._fetchall(
            """
            SELECT * FROM message_subscriptions
            WHERE message_id = ?
            ORDER BY created_at, subscriber_adapter_name
            """,
            (message_id,),
            "get subscriptions",
        )
        return [self._row_to_subscription(row) for row in rows]

    # ------------------------------------------------------------------
    # Adapter instances
    # ------------------------------------------------------------------

    def ensure_adapter_instance(
        self,
        interface_name: str,
        instance_name: str,
        adapter_name: str,
        role: AdapterRole,
        is_enabled: bool = True,
    ) -> AdapterInstance:
        role = AdapterRole(role)
        now = self._now_text()
        with self._lock:
            row = self._fetchone(
                """
                SELECT adapter_instance_id FROM adapter_instances
                WHERE interface_name = ? AND instance_name = ? AND role = ?
                """,
                (interface_name, instance_name, role.value),
                "look up adapter instance",
            )
            if row:
                instance_id = row["adapter_instance_id"]
                self._execute(
                    """
                    UPDATE adapter_instances
                    SET adapter_name = ?, is_enabled = ?, updated_at = ?
                    WHERE adapter_instance_id = ?
                    """,
                    (adapter_name, int(is_enabled), now, instance_id),
                    "update adapter instance",
                )
            else:
                instance_id = str(uuid.uuid4())
                self._execute(
                    """
                    INSERT INTO adapter_instances (
                        adapter_instance_id, interface_name, instance_name,
                        adapter_name, role, is_enabled, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance_id, interface_name, instance_name,
                        adapter_name, role.value, int(is_enabled), now, now,
                    ),
                    "register adapter instance",
                )
                logger.info(
                    f"Registered {role.value} adapter instance {instance_name} "
                    f"on {interface_name}: {instance_id}"
                )

            stored = self._fetchone(
                "SELECT * FROM adapter_instances WHERE adapter_instance_id = ?",
                (instance_id,),
                "get adapter instance",
            )
        return self._row_to_adapter_instance(stored)

    def get_adapter_instances(self, interface_name: Optional[str] = None) -> List[AdapterInstance]:
        if interface_name:
            rows = self._fetchall(
                "SELECT * FROM adapter_instances WHERE interface_name = ? ORDER BY instance_name",
                (interface_name,),
                "list adapter instances",
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM adapter_instances ORDER BY interface_name, instance_name",
                (),
                "list adapter instances",
            )
        return [self._row_to_adapter_instance(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Closed SQLite MessageBox")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            message_id=row["message_id"],
            interface_name=row["interface_name"],
            producing_adapter_name=row["producing_adapter_name"],
            producing_role=AdapterRole(row["producing_role"]),
            adapter_instance_id=row["adapter_instance_id"],
            payload=row["payload"],
            payload_sha256=row["payload_sha256"],
            status=MessageStatus(row["status"]),
            lease_expires_at=from_db_text(row["lease_expires_at"]),
            locked_by=row["locked_by"],
            created_at=from_db_text(row["created_at"]),
            locked_at=from_db_text(row["locked_at"]),
            processed_at=from_db_text(row["processed_at"]),
            error_message=row["error_message"],
            processing_details=row["processing_details"],
            retry_count=row["retry_count"],
            sequence=row["sequence"],
        )

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            message_id=row["message_id"],
            interface_name=row["interface_name"],
            subscriber_adapter_name=row["subscriber_adapter_name"],
            status=SubscriptionStatus(row["status"]),
            error_detail=row["error_detail"],
            processing_details=row["processing_details"],
            created_at=from_db_text(row["created_at"]),
            resolved_at=from_db_text(row["resolved_at"]),
        )

    def _row_to_adapter_instance(self, row: sqlite3.Row) -> AdapterInstance:
        return AdapterInstance(
            adapter_instance_id=row["adapter_instance_id"],
            interface_name=row["interface_name"],
            instance_name=row["instance_name"],
            adapter_name=row["adapter_name"],
            role=AdapterRole(row["role"]),
            is_enabled=bool(row["is_enabled"]),
            created_at=from_db_text(row["created_at"]),
            updated_at=from_db_text(row["updated_at"]),
        )
