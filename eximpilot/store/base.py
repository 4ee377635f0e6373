import datetime as dt
import logging
from abc import ABC, abstractmethod

from eximpilot.models import (
    AuditLogEntry,
    DeliveryAttempt,
    EventKind,
    LogEvent,
    LogSource,
    MessageRecord,
    QueueSnapshot,
)

logger = logging.getLogger("eximpilot.store")

# Tables the retention purge may prune, keyed by name
PURGEABLE_TABLES = (
    "log_events",
    "delivery_attempts",
    "audit_log",
    "queue_snapshots",
)


class Repository(ABC):
    """Abstract persistence interface for events, attempts, statuses and audit.

    Implementations must make ``write_batch`` atomic: either every row of the
    batch is stored or none is. Audit rows are append-only; the only way to
    remove them is ``purge_older_than``.
    """

    @abstractmethod
    def insert_events(self, events: list[LogEvent]) -> int:
        """Store events in one transaction.

        Args:
            events (list[LogEvent]): The events to store.

        Returns:
            int: Number of rows written.
        """

    @abstractmethod
    def write_batch(
        self,
        events: list[LogEvent],
        attempts: list[DeliveryAttempt],
        records: list[MessageRecord],
    ) -> None:
        """Store events, delivery attempts and status updates atomically.

        Status updates are applied with the same forward-only rule as
        ``upsert_message_status``.

        Raises:
            StoreError: If the transaction failed and was rolled back.
        """

    @abstractmethod
    def upsert_message_status(self, record: MessageRecord) -> MessageRecord:
        """Create or advance the cached status row for a message.

        The status only moves forward along the status rank; ``last_seen``
        only grows; ``sender`` and ``size`` are filled in when still unknown.

        Returns:
            MessageRecord: The row as stored after the update.
        """

    @abstractmethod
    def insert_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        """Store a single delivery attempt."""

    @abstractmethod
    def next_attempt_sequence(self, message_id: str, recipient: str) -> int:
        """Sequence number the next attempt for this recipient should get."""

    @abstractmethod
    def insert_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an audit row and return it with its id set."""

    @abstractmethod
    def insert_snapshot(self, snapshot: QueueSnapshot) -> None:
        """Store a queue snapshot."""

    @abstractmethod
    def get_events(
        self,
        source: LogSource | None = None,
        kind: EventKind | None = None,
        since: dt.datetime | None = None,
        until: dt.datetime | None = None,
        limit: int = 100,
    ) -> list[LogEvent]:
        """Return events matching the filters, newest first."""

    @abstractmethod
    def get_events_for_message(self, message_id: str) -> list[LogEvent]:
        """Return every event for a message id in log order."""

    @abstractmethod
    def get_attempts_for_message(
        self, message_id: str
    ) -> list[DeliveryAttempt]:
        """Return delivery attempts ordered by time and sequence."""

    @abstractmethod
    def get_message(self, message_id: str) -> MessageRecord | None:
        """Return the cached status row, if any."""

    @abstractmethod
    def get_audit_entries(
        self,
        message_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Return audit rows, newest first."""

    @abstractmethod
    def get_snapshots(
        self, since: dt.datetime | None = None, limit: int = 100
    ) -> list[QueueSnapshot]:
        """Return queue snapshots, newest first."""

    @abstractmethod
    def count_events(self, kind: EventKind | None = None) -> int:
        """Count stored events, optionally of one kind."""

    @abstractmethod
    def purge_older_than(self, table: str, cutoff: dt.datetime) -> int:
        """Delete rows of ``table`` with a timestamp before ``cutoff``.

        Args:
            table (str): One of ``PURGEABLE_TABLES``.
            cutoff (datetime): Rows strictly older than this are removed.

        Returns:
            int: Number of rows deleted.

        Raises:
            ValueError: If the table cannot be purged.
        """

    def close(self) -> None:
        """Release any resources held by the repository."""
