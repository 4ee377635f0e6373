"""SQLAlchemy table definitions for the eximpilot store."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class LogEventRow(Base):
    __tablename__ = "log_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    message_id = Column(String(32), nullable=True, index=True)
    source = Column(String(16), nullable=False)
    kind = Column(String(16), nullable=False, index=True)
    host = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)
    sender = Column(String(512), nullable=True)
    recipients = Column(JSON, nullable=True)
    size = Column(BigInteger, nullable=True)
    status = Column(String(32), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_text = Column(Text, nullable=True)
    router = Column(String(128), nullable=True)
    transport = Column(String(128), nullable=True)
    smtp_code = Column(String(8), nullable=True)
    raw_line = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DeliveryAttemptRow(Base):
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("message_id", "recipient", "sequence"),
        Index("ix_delivery_attempts_message_recipient", "message_id", "recipient"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(32), nullable=False)
    recipient = Column(String(512), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    host = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)
    smtp_code = Column(String(8), nullable=True)
    error_message = Column(Text, nullable=True)
    outcome = Column(String(16), nullable=False)
    sequence = Column(Integer, nullable=False)


class MessageRow(Base):
    """Denormalized current status per message id."""

    __tablename__ = "messages"

    message_id = Column(String(32), primary_key=True)
    status = Column(String(16), nullable=False, index=True)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    sender = Column(String(512), nullable=True)
    size = Column(BigInteger, nullable=True)


class AuditLogRow(Base):
    """Append-only audit trail; rows are only ever removed by retention."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)
    message_id = Column(String(32), nullable=True, index=True)
    user_id = Column(String(128), nullable=True)
    ip_address = Column(String(45), nullable=True)
    details = Column(Text, nullable=True)


class QueueSnapshotRow(Base):
    __tablename__ = "queue_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    total_messages = Column(Integer, nullable=False)
    deferred_messages = Column(Integer, nullable=False)
    frozen_messages = Column(Integer, nullable=False)
    oldest_message_age = Column(Integer, nullable=True)
