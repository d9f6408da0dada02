"""
SQL Server-based MessageBox.

This is the production backend. Lease times are computed and compared with
SYSUTCDATETIME() inside each statement, so every host polling the same
database shares one clock.
"""

import logging
import re
import threading
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.clock import ensure_utc
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

_RESERVED_WORDS = {
    'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
    'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
    'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
}


def is_valid_identifier(name: str) -> bool:
    """
    Validate that a name is a safe SQL identifier.

    - Must start with a letter or underscore
    - Can only contain letters, digits, and underscores
    - Maximum length of 128 characters (SQL Server limit)
    - Cannot be a SQL reserved word
    """
    if not name or len(name) > 128:
        return False
    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
        return False
    return name.lower() not in _RESERVED_WORDS


class SqlServerMessageBox(MessageBox):
    """
    SQL Server-based implementation of the MessageBox.

    Features:
    - Lease acquisition as one conditional UPDATE against SYSUTCDATETIME()
    - Thread-local connections for concurrent consumers in one process
    - Idempotent schema creation
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "MessageBox",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "messagebox",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
    ):
        """
        Initialize the SQL Server MessageBox.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'messagebox')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerMessageBox. "
                "Install with: pip install pyodbc"
            )

        if not is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        self.schema = schema

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self.conn = _ThreadLocalConnectionProxy(self)
        self._connect()

        if auto_init:
            self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._get_conn()
            logger.debug(f"Connected to SQL Server MessageBox (schema: {self.schema})")
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise MessageBoxStorageError(f"Failed to connect to SQL Server: {e}") from e

    def _get_conn(self):
        """Get (or create) a thread-local connection."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            conn = pyodbc.connect(self.connection_string)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _table(self, name: str) -> str:
        return f"[{self.schema}].[{name}]"

    def _init_schema(self) -> None:
        """Initialize database schema and tables."""
        # The schema name is validated in __init__; CREATE SCHEMA cannot be parameterized.
        statements = [
            (f"""
                IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
                BEGIN
                    EXEC('CREATE SCHEMA [{self.schema}]')
                END
            """, (self.schema,)),
            (f"""
                IF OBJECT_ID(N'{self.schema}.messages', N'U') IS NULL
                BEGIN
                    CREATE TABLE {self._table('messages')} (
                        sequence BIGINT IDENTITY(1,1) NOT NULL,
                        message_id NVARCHAR(36) NOT NULL PRIMARY KEY NONCLUSTERED,
                        interface_name NVARCHAR(200) NOT NULL,
                        producing_adapter_name NVARCHAR(100) NOT NULL,
                        producing_role NVARCHAR(20) NOT NULL,
                        adapter_instance_id NVARCHAR(36) NOT NULL,
                        payload NVARCHAR(MAX) NOT NULL,
                        payload_sha256 CHAR(64) NULL,
                        status NVARCHAR(20) NOT NULL,
                        lease_expires_at DATETIME2 NULL,
                        locked_by NVARCHAR(200) NULL,
                        created_at DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(),
                        locked_at DATETIME2 NULL,
                        processed_at DATETIME2 NULL,
                        error_message NVARCHAR(MAX) NULL,
                        processing_details NVARCHAR(MAX) NULL,
                        retry_count INT NOT NULL DEFAULT 0,
                        CONSTRAINT CK_messages_lease CHECK (
                            (status = 'InProgress' AND lease_expires_at IS NOT NULL)
                            OR (status <> 'InProgress' AND lease_expires_at IS NULL)
                        )
                    );
                    CREATE CLUSTERED INDEX IX_messages_sequence
                        ON {self._table('messages')} (sequence);
                    CREATE INDEX IX_messages_interface_status
                        ON {self._table('messages')} (interface_name, status, created_at, sequence);
                END
            """, ()),
            (f"""
                IF OBJECT_ID(N'{self.schema}.message_subscriptions', N'U') IS NULL
                BEGIN
                    CREATE TABLE {self._table('message_subscriptions')} (
                        message_id NVARCHAR(36) NOT NULL
                            REFERENCES {self._table('messages')} (message_id) ON DELETE CASCADE,
                        subscriber_adapter_name NVARCHAR(200) NOT NULL,
                        interface_name NVARCHAR(200) NOT NULL,
                        status NVARCHAR(20) NOT NULL,
                        error_detail NVARCHAR(MAX) NULL,
                        processing_details NVARCHAR(MAX) NULL,
                        created_at DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(),
                        resolved_at DATETIME2 NULL,
                        CONSTRAINT PK_message_subscriptions
                            PRIMARY KEY (message_id, subscriber_adapter_name)
                    );
                END
            """, ()),
            (f"""
                IF OBJECT_ID(N'{self.schema}.adapter_instances', N'U') IS NULL
                BEGIN
                    CREATE TABLE {self._table('adapter_instances')} (
                        adapter_instance_id NVARCHAR(36) NOT NULL PRIMARY KEY,
                        interface_name NVARCHAR(200) NOT NULL,
                        instance_name NVARCHAR(200) NOT NULL,
                        adapter_name NVARCHAR(100) NOT NULL,
                        role NVARCHAR(20) NOT NULL,
                        is_enabled BIT NOT NULL DEFAULT 1,
                        created_at DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(),
                        updated_at DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(),
                        CONSTRAINT UQ_adapter_instances UNIQUE (interface_name, instance_name, role)
                    );
                END
            """, ()),
        ]
        for sql, params in statements:
            self._run(sql, params, "initialize schema")
        logger.debug("Initialized MessageBox schema")

    def _run(
        self,
        sql: str,
        params: Sequence[Any],
        operation: str,
        fetch: Optional[str] = None,
    ) -> Any:
        """
        Execute one statement and commit.

        Args:
            sql: Statement text
            params: Positional parameters
            operation: Description used in log and error messages
            fetch: None for rowcount, 'one' or 'all' for dict rows

        Raises:
            MessageBoxStorageError: if the statement fails
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(sql, tuple(params))
            if fetch is None:
                result = cursor.rowcount
            else:
                columns = [c[0] for c in cursor.description] if cursor.description else []
                rows = cursor.fetchall() if fetch == "all" else [cursor.fetchone()]
                result = [dict(zip(columns, row)) for row in rows if row is not None]
                if fetch == "one":
                    result = result[0] if result else None
            self.conn.commit()
            return result
        except pyodbc.Error as e:
            logger.error(f"Failed to {operation}: {e}")
            self.conn.rollback()
            raise MessageBoxStorageError(f"Failed to {operation}: {e}") from e

    def _require_message(self, message_id: str) -> None:
        row = self._run(
            f"SELECT 1 AS found FROM {self._table('messages')} WHERE message_id = ?",
            (message_id,),
            "look up message",
            fetch="one",
        )
        if row is None:
            raise MessageNotFoundError(message_id)

    # =========================================================================
    # MessageStore
    # =========================================================================

    def _insert_message(self, message: Message) -> None:
        row = self._run(f"""
            INSERT INTO {self._table('messages')} (
                message_id, interface_name, producing_adapter_name, producing_role,
                adapter_instance_id, payload, payload_sha256, status, retry_count
            )
            OUTPUT INSERTED.sequence, INSERTED.created_at
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            message.message_id,
            message.interface_name,
            message.producing_adapter_name,
            message.producing_role.value,
            message.adapter_instance_id,
            message.payload,
            message.payload_sha256,
            message.status.value,
            message.retry_count,
        ), "insert message", fetch="one")
        if row:
            message.sequence = row["sequence"]
            message.created_at = ensure_utc(row["created_at"])

    def _select_messages(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: Optional[int],
    ) -> List[Message]:
        top = f"TOP ({limit})" if limit is not None else ""
        rows = self._run(f"""
            SELECT {top} * FROM {self._table('messages')}
            WHERE interface_name = ? AND status = ?
            ORDER BY created_at, sequence
        """, (interface_name, status.value), "read messages", fetch="all")
        return [self._row_to_message(row) for row in rows]

    def get_message(self, message_id: str) -> Optional[Message]:
        row = self._run(
            f"SELECT * FROM {self._table('messages')} WHERE message_id = ?",
            (message_id,),
            "get message",
            fetch="one",
        )
        return self._row_to_message(row) if row else None

    def remove(self, message_id: str) -> bool:
        count = self._run(
            f"DELETE FROM {self._table('messages')} WHERE message_id = ?",
            (message_id,),
            "remove message",
        )
        return count == 1

    def get_stats(self, interface_name: Optional[str] = None) -> QueueStats:
        where = "WHERE interface_name = ?" if interface_name else ""
        params = (interface_name,) if interface_name else ()

        rows = self._run(f"""
            SELECT status, COUNT(*) AS cnt
            FROM {self._table('messages')}
            {where}
            GROUP BY status
        """, params, "get queue stats", fetch="all")
        counts = {row["status"]: row["cnt"] for row in rows}

        pending_filter = "AND interface_name = ?" if interface_name else ""
        oldest = self._run(f"""
            SELECT MIN(created_at) AS oldest
            FROM {self._table('messages')}
            WHERE status = ? {pending_filter}
        """, (MessageStatus.PENDING.value,) + tuple(params), "get queue stats", fetch="one")
        return QueueStats.from_counts(counts, ensure_utc(oldest["oldest"]) if oldest else None)

    def list_interfaces(self) -> List[str]:
        rows = self._run(
            f"SELECT DISTINCT interface_name FROM {self._table('messages')} ORDER BY interface_name",
            (),
            "list interfaces",
            fetch="all",
        )
        return [row["interface_name"] for row in rows]

    def collect_garbage(self, interface_name: str) -> int:
        count = self._run(f"""
            DELETE m FROM {self._table('messages')} m
            WHERE m.interface_name = ?
              AND m.status = ?
              AND EXISTS (
                  SELECT 1 FROM {self._table('message_subscriptions')} s
                  WHERE s.message_id = m.message_id
              )
              AND NOT EXISTS (
                  SELECT 1 FROM {self._table('message_subscriptions')} s
                  WHERE s.message_id = m.message_id AND s.status <> ?
              )
        """, (
            interface_name,
            MessageStatus.PROCESSED.value,
            SubscriptionStatus.PROCESSED.value,
        ), "collect garbage")
        if count:
            logger.info(f"Removed {count} consumed messages from {interface_name}")
        return count

    # =========================================================================
    # LeaseManager
    # =========================================================================

    def acquire(
        self,
        message_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        owner: Optional[str] = None,
    ) -> bool:
        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET status = ?,
                lease_expires_at = DATEADD(second, ?, SYSUTCDATETIME()),
                locked_at = SYSUTCDATETIME(),
                locked_by = ?
            WHERE message_id = ?
              AND (
                  status = ?
                  OR (status = ? AND lease_expires_at <= SYSUTCDATETIME())
              )
        """, (
            MessageStatus.IN_PROGRESS.value,
            int(lease_seconds),
            owner,
            message_id,
            MessageStatus.PENDING.value,
            MessageStatus.IN_PROGRESS.value,
        ), "acquire lease")
        if count == 1:
            logger.debug(f"Acquired lease on {message_id} for {lease_seconds}s")
        return count == 1

    def _finish(
        self,
        assignments: str,
        params: List[Any],
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
        owner_clause = "AND status = ? AND locked_by = ?" if owner is not None else ""
        params = params + [message_id]
        if owner is not None:
            params += [MessageStatus.IN_PROGRESS.value, owner]

        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET {assignments}
            WHERE message_id = ?
              {owner_clause}
        """, params, operation)
        if count:
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
        if result_status == MessageStatus.IN_PROGRESS:
            raise ValueError("Cannot release a message to status InProgress")

        processed_at = "NULL" if result_status == MessageStatus.PENDING else "SYSUTCDATETIME()"
        return self._finish(
            f"status = ?, lease_expires_at = NULL, locked_by = NULL, processed_at = {processed_at}",
            [result_status.value],
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
            "processed_at = SYSUTCDATETIME(), processing_details = ?",
            [MessageStatus.PROCESSED.value, note],
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
            "processed_at = SYSUTCDATETIME(), error_message = ?, "
            "retry_count = retry_count + 1",
            [MessageStatus.ERROR.value, error_message],
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
        owner_clause = "AND locked_by = ?" if owner is not None else ""
        params: List[Any] = [
            int(lease_seconds),
            message_id,
            MessageStatus.IN_PROGRESS.value,
        ]
        if owner is not None:
            params.append(owner)

        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET lease_expires_at = DATEADD(second, ?, SYSUTCDATETIME())
            WHERE message_id = ?
              AND status = ?
              AND lease_expires_at > SYSUTCDATETIME()
              {owner_clause}
        """, params, "renew lease")

        if count == 0:
            logger.warning(f"Failed to renew lease on {message_id} (lease may have expired)")
        return count == 1

    def recover_expired_leases(self, interface_name: Optional[str] = None) -> int:
        interface_clause = "AND interface_name = ?" if interface_name else ""
        params: List[Any] = [MessageStatus.PENDING.value, MessageStatus.IN_PROGRESS.value]
        if interface_name:
            params.append(interface_name)

        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET status = ?, lease_expires_at = NULL, locked_by = NULL
            WHERE status = ?
              AND lease_expires_at <= SYSUTCDATETIME()
              {interface_clause}
        """, params, "recover expired leases")
        if count:
            logger.warning(f"Recovered {count} messages with expired leases")
        return count

    def requeue(self, message_id: str) -> bool:
        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET status = ?, processed_at = NULL
            WHERE message_id = ? AND status = ?
        """, (MessageStatus.PENDING.value, message_id, MessageStatus.ERROR.value), "requeue message")
        if count == 1:
            logger.info(f"Re-queued message {message_id}")
            return True
        self._require_message(message_id)
        return False

    def requeue_errors(self, interface_name: str, max_retries: int) -> int:
        count = self._run(f"""
            UPDATE {self._table('messages')}
            SET status = ?, processed_at = NULL
            WHERE interface_name = ? AND status = ? AND retry_count < ?
        """, (
            MessageStatus.PENDING.value,
            interface_name,
            MessageStatus.ERROR.value,
            int(max_retries),
        ), "requeue error messages")
        if count:
            logger.info(f"Re-queued {count} error messages on {interface_name}")
        return count

    # =========================================================================
    # SubscriptionTracker
    # =========================================================================

    def subscribe(self, message_id: str, interface_name: str, subscriber: str) -> None:
        self._require_message(message_id)
        self._run(f"""
            IF NOT EXISTS (
                SELECT 1 FROM {self._table('message_subscriptions')} WITH (UPDLOCK, HOLDLOCK)
                WHERE message_id = ? AND subscriber_adapter_name = ?
            )
            INSERT INTO {self._table('message_subscriptions')} (
                message_id, subscriber_adapter_name, interface_name, status
            ) VALUES (?, ?, ?, ?)
        """, (
            message_id,
            subscriber,
            message_id,
            subscriber,
            interface_name,
            SubscriptionStatus.PENDING.value,
        ), "subscribe")

    def _resolve(
        self,
        message_id: str,
        subscriber: str,
        status: SubscriptionStatus,
        processing_details: Optional[str],
        error_detail: Optional[str],
    ) -> None:
        count = self._run(f"""
            UPDATE {self._table('message_subscriptions')}
            SET status = ?, processing_details = ?, error_detail = ?,
                resolved_at = SYSUTCDATETIME()
            WHERE message_id = ? AND subscriber_adapter_name = ?
        """, (
            status.value,
            processing_details,
            error_detail,
            message_id,
            subscriber,
        ), "resolve subscription")
        if count == 0:
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
        row = self._run(f"""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS processed
            FROM {self._table('message_subscriptions')}
            WHERE message_id = ?
        """, (SubscriptionStatus.PROCESSED.value, message_id), "check subscriptions", fetch="one")
        total = row["total"] or 0
        return total > 0 and row["processed"] == total

    def get_subscriptions(self, message_id: str) -> List[Subscription]:
        rows = self._run(f"""
            SELECT * FROM {self._table('message_subscriptions')}
            WHERE message_id = ?
            ORDER BY created_at, subscriber_adapter_name
        """, (message_id,), "get subscriptions", fetch="all")
        return [self._row_to_subscription(row) for row in rows]

    # =========================================================================
    # Adapter instances
    # =========================================================================

    def ensure_adapter_instance(
        self,
        interface_name: str,
        instance_name: str,
        adapter_name: str,
        role: AdapterRole,
        is_enabled: bool = True,
    ) -> AdapterInstance:
        role = AdapterRole(role)
        self._run(f"""
            MERGE {self._table('adapter_instances')} WITH (HOLDLOCK) AS target
            USING (SELECT ? AS interface_name, ? AS instance_name, ? AS role) AS source
            ON target.interface_name = source.interface_name
               AND target.instance_name = source.instance_name
               AND target.role = source.role
            WHEN MATCHED THEN
                UPDATE SET adapter_name = ?, is_enabled = ?, updated_at = SYSUTCDATETIME()
            WHEN NOT MATCHED THEN
                INSERT (adapter_instance_id, interface_name, instance_name, adapter_name, role, is_enabled)
                VALUES (?, ?, ?, ?, ?, ?);
        """, (
            interface_name, instance_name, role.value,
            adapter_name, int(is_enabled),
            str(uuid.uuid4()), interface_name, instance_name, adapter_name, role.value, int(is_enabled),
        ), "register adapter instance")

        row = self._run(f"""
            SELECT * FROM {self._table('adapter_instances')}
            WHERE interface_name = ? AND instance_name = ? AND role = ?
        """, (interface_name, instance_name, role.value), "get adapter instance", fetch="one")
        return self._row_to_adapter_instance(row)

    def get_adapter_instances(self, interface_name: Optional[str] = None) -> List[AdapterInstance]:
        where = "WHERE interface_name = ?" if interface_name else ""
        params = (interface_name,) if interface_name else ()
        rows = self._run(f"""
            SELECT * FROM {self._table('adapter_instances')}
            {where}
            ORDER BY interface_name, instance_name
        """, params, "list adapter instances", fetch="all")
        return [self._row_to_adapter_instance(row) for row in rows]

    def close(self) -> None:
        """Close every thread's database connection."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except pyodbc.Error as e:
                    logger.debug(f"Ignoring error while closing connection: {e}")
            self._connections.clear()
        self._thread_local = threading.local()
        logger.debug("Closed SQL Server MessageBox connections")

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _parse_datetime(self, value: Any) -> Optional[datetime]:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return ensure_utc(value) if isinstance(value, datetime) else None

    def _row_to_message(self, row: dict) -> Message:
        return Message(
            message_id=row["message_id"],
            interface_name=row["interface_name"],
            producing_adapter_name=row["producing_adapter_name"],
            producing_role=AdapterRole(row["producing_role"]),
            adapter_instance_id=row["adapter_instance_id"],
            payload=row["payload"],
            payload_sha256=row.get("payload_sha256"),
            status=MessageStatus(row["status"]),
            lease_expires_at=self._parse_datetime(row.get("lease_expires_at")),
            locked_by=row.get("locked_by"),
            created_at=self._parse_datetime(row.get("created_at")),
            locked_at=self._parse_datetime(row.get("locked_at")),
            processed_at=self._parse_datetime(row.get("processed_at")),
            error_message=row.get("error_message"),
            processing_details=row.get("processing_details"),
            retry_count=row.get("retry_count") or 0,
            sequence=row.get("sequence"),
        )

    def _row_to_subscription(self, row: dict) -> Subscription:
        return Subscription(
            message_id=row["message_id"],
            interface_name=row["interface_name"],
            subscriber_adapter_name=row["subscriber_adapter_name"],
            status=SubscriptionStatus(row["status"]),
            error_detail=row.get("error_detail"),
            processing_details=row.get("processing_details"),
            created_at=self._parse_datetime(row.get("created_at")),
            resolved_at=self._parse_datetime(row.get("resolved_at")),
        )

    def _row_to_adapter_instance(self, row: dict) -> AdapterInstance:
        return AdapterInstance(
            adapter_instance_id=row["adapter_instance_id"],
            interface_name=row["interface_name"],
            instance_name=row["instance_name"],
            adapter_name=row["adapter_name"],
            role=AdapterRole(row["role"]),
            is_enabled=bool(row["is_enabled"]),
            created_at=self._parse_datetime(row.get("created_at")),
            updated_at=self._parse_datetime(row.get("updated_at")),
        )


class _ThreadLocalConnectionProxy:
    """Proxy that routes cursor/commit/rollback to a thread-local connection."""
    def __init__(self, store: "SqlServerMessageBox"):
        self._store = store

    def cursor(self):
        return self._store._get_conn().cursor()

    def commit(self):
        return self._store._get_conn().commit()

    def rollback(self):
        return self._store._get_conn().rollback()
