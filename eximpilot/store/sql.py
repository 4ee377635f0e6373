import datetime as dt
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eximpilot.config import DatabaseConfig
from eximpilot.errors import StoreError
from eximpilot.models import (
    AttemptOutcome,
    AuditLogEntry,
    DeliveryAttempt,
    EventKind,
    LogEvent,
    LogSource,
    MessageRecord,
    MessageStatus,
    QueueSnapshot,
)
from eximpilot.store.base import PURGEABLE_TABLES, Repository
from eximpilot.store.tables import (
    AuditLogRow,
    Base,
    DeliveryAttemptRow,
    LogEventRow,
    MessageRow,
    QueueSnapshotRow,
)

logger = logging.getLogger("eximpilot.store")

_IN_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}

_PURGE_TARGETS = {
    "log_events": (LogEventRow, LogEventRow.timestamp),
    "delivery_attempts": (DeliveryAttemptRow, DeliveryAttemptRow.timestamp),
    "audit_log": (AuditLogRow, AuditLogRow.timestamp),
    "queue_snapshots": (QueueSnapshotRow, QueueSnapshotRow.timestamp),
}


def _to_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _from_db(value: dt.datetime | None) -> dt.datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    return _to_utc(value)


def _event_to_row(event: LogEvent) -> LogEventRow:
    return LogEventRow(
        timestamp=_to_utc(event.timestamp),
        message_id=event.message_id,
        source=event.source.value,
        kind=event.kind.value,
        host=event.host,
        ip_address=event.ip_address,
        sender=event.sender,
        recipients=list(event.recipients) if event.recipients is not None else None,
        size=event.size,
        status=event.status,
        error_code=event.error_code,
        error_text=event.error_text,
        router=event.router,
        transport=event.transport,
        smtp_code=event.smtp_code,
        raw_line=event.raw_line,
        created_at=_to_utc(event.created_at),
    )


def _row_to_event(row: LogEventRow) -> LogEvent:
    return LogEvent(
        timestamp=_from_db(row.timestamp),
        source=LogSource(row.source),
        kind=EventKind(row.kind),
        raw_line=row.raw_line,
        message_id=row.message_id,
        host=row.host,
        ip_address=row.ip_address,
        sender=row.sender,
        recipients=tuple(row.recipients) if row.recipients is not None else None,
        size=row.size,
        status=row.status,
        error_code=row.error_code,
        error_text=row.error_text,
        router=row.router,
        transport=row.transport,
        smtp_code=row.smtp_code,
        created_at=_from_db(row.created_at),
    )


def _attempt_to_row(attempt: DeliveryAttempt) -> DeliveryAttemptRow:
    return DeliveryAttemptRow(
        message_id=attempt.message_id,
        recipient=attempt.recipient,
        timestamp=_to_utc(attempt.timestamp),
        host=attempt.host,
        ip_address=attempt.ip_address,
        smtp_code=attempt.smtp_code,
        error_message=attempt.error_message,
        outcome=attempt.outcome.value,
        sequence=attempt.sequence,
    )


def _row_to_attempt(row: DeliveryAttemptRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        message_id=row.message_id,
        recipient=row.recipient,
        timestamp=_from_db(row.timestamp),
        outcome=AttemptOutcome(row.outcome),
        sequence=row.sequence,
        host=row.host,
        ip_address=row.ip_address,
        smtp_code=row.smtp_code,
        error_message=row.error_message,
    )


def _row_to_record(row: MessageRow) -> MessageRecord:
    return MessageRecord(
        message_id=row.message_id,
        status=MessageStatus(row.status),
        first_seen=_from_db(row.first_seen),
        last_seen=_from_db(row.last_seen),
        sender=row.sender,
        size=row.size,
    )


def _row_to_audit(row: AuditLogRow) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        timestamp=_from_db(row.timestamp),
        action=row.action,
        message_id=row.message_id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        details=json.loads(row.details) if row.details else {},
    )


def _row_to_snapshot(row: QueueSnapshotRow) -> QueueSnapshot:
    return QueueSnapshot(
        timestamp=_from_db(row.timestamp),
        total_messages=row.total_messages,
        deferred_messages=row.deferred_messages,
        frozen_messages=row.frozen_messages,
        oldest_message_age=row.oldest_message_age,
    )


def _apply_status(session: Session, record: MessageRecord) -> MessageRow:
    """Insert or advance a message row inside an open transaction."""
    row = session.get(MessageRow, record.message_id)
    if row is None:
        row = MessageRow(
            message_id=record.message_id,
            status=record.status.value,
            first_seen=_to_utc(record.first_seen),
            last_seen=_to_utc(record.last_seen),
            sender=record.sender,
            size=record.size,
        )
        session.add(row)
        session.flush()
        return row

    current = MessageStatus(row.status)
    if record.status.advances(current):
        row.status = record.status.value
    first_seen = _to_utc(record.first_seen)
    if first_seen < _from_db(row.first_seen):
        row.first_seen = first_seen
    last_seen = _to_utc(record.last_seen)
    if last_seen > _from_db(row.last_seen):
        row.last_seen = last_seen
    if row.sender is None and record.sender is not None:
        row.sender = record.sender
    if row.size is None and record.size is not None:
        row.size = record.size
    return row


def create_sql_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine usable from the watcher, flusher and CLI threads."""
    if url in _IN_MEMORY_URLS:
        # A single shared connection, or each thread sees its own empty DB
        return create_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    if url.startswith("sqlite"):
        return create_engine(
            url, echo=echo, connect_args={"check_same_thread": False}
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SQLRepository(Repository):
    """Repository backed by any database SQLAlchemy can talk to.

    Tables are created on construction when they do not exist yet.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_sql_engine(url, echo=echo)
        self._session_factory = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        Base.metadata.create_all(self.engine)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "SQLRepository":
        return cls(config.url, echo=config.echo)

    @contextmanager
    def _transaction(self, what: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to {what}: {e}") from e

    def insert_events(self, events: list[LogEvent]) -> int:
        if not events:
            return 0
        with self._transaction("insert events") as session:
            session.add_all([_event_to_row(event) for event in events])
        return len(events)

    def write_batch(
        self,
        events: list[LogEvent],
        attempts: list[DeliveryAttempt],
        records: list[MessageRecord],
    ) -> None:
        with self._transaction("write batch") as session:
            session.add_all([_event_to_row(event) for event in events])
            session.add_all([_attempt_to_row(attempt) for attempt in attempts])
            for record in records:
                _apply_status(session, record)

    def upsert_message_status(self, record: MessageRecord) -> MessageRecord:
        with self._transaction("update message status") as session:
            row = _apply_status(session, record)
            session.flush()
            return _row_to_record(row)

    def insert_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        with self._transaction("insert delivery attempt") as session:
            session.add(_attempt_to_row(attempt))

    def next_attempt_sequence(self, message_id: str, recipient: str) -> int:
        with self._transaction("read attempt sequence") as session:
            current = session.scalar(
                select(func.max(DeliveryAttemptRow.sequence)).where(
                    DeliveryAttemptRow.message_id == message_id,
                    DeliveryAttemptRow.recipient == recipient,
                )
            )
        return (current or 0) + 1

    def insert_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        row = AuditLogRow(
            timestamp=_to_utc(entry.timestamp),
            action=entry.action,
            message_id=entry.message_id,
            user_id=entry.user_id,
            ip_address=entry.ip_address,
            details=json.dumps(entry.details, default=str),
        )
        with self._transaction("insert audit entry") as session:
            session.add(row)
            session.flush()
            return _row_to_audit(row)

    def insert_snapshot(self, snapshot: QueueSnapshot) -> None:
        with self._transaction("insert queue snapshot") as session:
            session.add(
                QueueSnapshotRow(
                    timestamp=_to_utc(snapshot.timestamp),
                    total_messages=snapshot.total_messages,
                    deferred_messages=snapshot.deferred_messages,
                    frozen_messages=snapshot.frozen_messages,
                    oldest_message_age=snapshot.oldest_message_age,
                )
            )

    def get_events(
        self,
        source: LogSource | None = None,
        kind: EventKind | None = None,
        since: dt.datetime | None = None,
        until: dt.datetime | None = None,
        limit: int = 100,
    ) -> list[LogEvent]:
        query = select(LogEventRow)
        if source is not None:
            query = query.where(LogEventRow.source == source.value)
        if kind is not None:
            query = query.where(LogEventRow.kind == kind.value)
        if since is not None:
            query = query.where(LogEventRow.timestamp >= _to_utc(since))
        if until is not None:
            query = query.where(LogEventRow.timestamp < _to_utc(until))
        query = query.order_by(
            LogEventRow.timestamp.desc(), LogEventRow.id.desc()
        ).limit(limit)
        with self._transaction("read events") as session:
            return [_row_to_event(row) for row in session.scalars(query)]

    def get_events_for_message(self, message_id: str) -> list[LogEvent]:
        query = (
            select(LogEventRow)
            .where(LogEventRow.message_id == message_id)
            .order_by(LogEventRow.timestamp, LogEventRow.id)
        )
        with self._transaction("read message events") as session:
            return [_row_to_event(row) for row in session.scalars(query)]

    def get_attempts_for_message(
        self, message_id: str
    ) -> list[DeliveryAttempt]:
        query = (
            select(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.message_id == message_id)
            .order_by(
                DeliveryAttemptRow.timestamp,
                DeliveryAttemptRow.recipient,
                DeliveryAttemptRow.sequence,
            )
        )
        with self._transaction("read delivery attempts") as session:
            return [_row_to_attempt(row) for row in session.scalars(query)]

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._transaction("read message") as session:
            row = session.get(MessageRow, message_id)
            return _row_to_record(row) if row is not None else None

    def get_audit_entries(
        self,
        message_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        query = select(AuditLogRow)
        if message_id is not None:
            query = query.where(AuditLogRow.message_id == message_id)
        if action is not None:
            query = query.where(AuditLogRow.action == action)
        query = query.order_by(
            AuditLogRow.timestamp.desc(), AuditLogRow.id.desc()
        ).limit(limit)
        with self._transaction("read audit log") as session:
            return [_row_to_audit(row) for row in session.scalars(query)]

    def get_snapshots(
        self, since: dt.datetime | None = None, limit: int = 100
    ) -> list[QueueSnapshot]:
        query = select(QueueSnapshotRow)
        if since is not None:
            query = query.where(QueueSnapshotRow.timestamp >= _to_utc(since))
        query = query.order_by(
            QueueSnapshotRow.timestamp.desc(), QueueSnapshotRow.id.desc()
        ).limit(limit)
        with self._transaction("read queue snapshots") as session:
            return [_row_to_snapshot(row) for row in session.scalars(query)]

    def count_events(self, kind: EventKind | None = None) -> int:
        query = select(func.count()).select_from(LogEventRow)
        if kind is not None:
            query = query.where(LogEventRow.kind == kind.value)
        with self._transaction("count events") as session:
            return session.scalar(query) or 0

    def purge_older_than(self, table: str, cutoff: dt.datetime) -> int:
        if table not in PURGEABLE_TABLES:
            raise ValueError(f"Table cannot be purged: {table}")
        row_class, column = _PURGE_TARGETS[table]
        with self._transaction(f"purge {table}") as session:
            result = session.execute(
                delete(row_class).where(column < _to_utc(cutoff))
            )
            deleted = result.rowcount or 0
        logger.debug("Purged %d rows from %s older than %s", deleted, table, cutoff)
        return deleted

    def close(self) -> None:
        self.engine.dispose()
