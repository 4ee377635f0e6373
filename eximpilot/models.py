import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class LogSource(Enum):
    """Exim log file a line was read from."""

    MAIN = "main"
    REJECT = "reject"
    PANIC = "panic"


class EventKind(Enum):
    """Kind of occurrence a log line describes."""

    ARRIVAL = "arrival"
    DELIVERY = "delivery"
    DEFER = "defer"
    BOUNCE = "bounce"
    REJECT = "reject"
    PANIC = "panic"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


class MessageStatus(Enum):
    """Message status, ordered by how far along the message is."""

    RECEIVED = "received"
    QUEUED = "queued"
    DEFERRED = "deferred"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FROZEN = "frozen"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK

    def advances(self, current: "MessageStatus | None") -> bool:
        """Whether moving from ``current`` to this status goes forward.

        Terminal states share one rank and never replace each other.
        """
        if current is None:
            return True
        return self.rank > current.rank


_TERMINAL_RANK = 3
_STATUS_RANK = {
    MessageStatus.RECEIVED: 0,
    MessageStatus.QUEUED: 1,
    MessageStatus.DEFERRED: 2,
    MessageStatus.DELIVERED: _TERMINAL_RANK,
    MessageStatus.BOUNCED: _TERMINAL_RANK,
    MessageStatus.FROZEN: _TERMINAL_RANK,
    MessageStatus.COMPLETED: _TERMINAL_RANK,
}

# Status implied by an event kind, if any
EVENT_STATUS: dict[EventKind, MessageStatus] = {
    EventKind.ARRIVAL: MessageStatus.RECEIVED,
    EventKind.DEFER: MessageStatus.DEFERRED,
    EventKind.DELIVERY: MessageStatus.DELIVERED,
    EventKind.BOUNCE: MessageStatus.BOUNCED,
    EventKind.COMPLETED: MessageStatus.COMPLETED,
}


class AttemptOutcome(Enum):
    SUCCESS = "success"
    DEFER = "defer"
    BOUNCE = "bounce"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class LogEvent:
    """One parsed occurrence from an Exim log line.

    Optional fields are ``None`` when the line did not carry them. For
    ``recipients``, ``None`` means unknown while ``()`` means none.

    Attributes:
        timestamp: Time taken from the line (UTC)
        source: Log file the line came from
        kind: Kind of event the line describes
        raw_line: The original line, verbatim
        message_id: Exim message id, if the line names one
        host: Remote host name or address
        ip_address: Remote IP address
        sender: Envelope sender
        recipients: Envelope recipients
        size: Message size in bytes
        status: Status label attached by the pattern
        error_code: Error classification (e.g. ``T=remote_smtp``)
        error_text: Error or rejection text
        router: Exim router that handled a delivery
        transport: Exim transport that handled a delivery
        smtp_code: SMTP confirmation code, when present
        created_at: Time the event was ingested
    """

    timestamp: dt.datetime
    source: LogSource
    kind: EventKind
    raw_line: str
    message_id: str | None = None
    host: str | None = None
    ip_address: str | None = None
    sender: str | None = None
    recipients: tuple[str, ...] | None = None
    size: int | None = None
    status: str | None = None
    error_code: str | None = None
    error_text: str | None = None
    router: str | None = None
    transport: str | None = None
    smtp_code: str | None = None
    created_at: dt.datetime = field(default_factory=utcnow)

    @property
    def implied_status(self) -> MessageStatus | None:
        return EVENT_STATUS.get(self.kind)

    def __str__(self) -> str:
        return f"{self.timestamp:%Y-%m-%d %H:%M:%S} [{self.source.value}] {self.kind.value} {self.message_id or '-'}"


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of one delivery attempt for one recipient."""

    message_id: str
    recipient: str
    timestamp: dt.datetime
    outcome: AttemptOutcome
    sequence: int
    host: str | None = None
    ip_address: str | None = None
    smtp_code: str | None = None
    error_message: str | None = None


@dataclass
class MessageRecord:
    """Cached current status for a message id.

    This is a denormalized view for query speed. The event history and the
    live spool remain the source of truth.
    """

    message_id: str
    status: MessageStatus
    first_seen: dt.datetime
    last_seen: dt.datetime
    sender: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class AuditLogEntry:
    timestamp: dt.datetime
    action: str
    user_id: str | None
    ip_address: str | None
    message_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass(frozen=True)
class QueueSnapshot:
    timestamp: dt.datetime
    total_messages: int
    deferred_messages: int
    frozen_messages: int
    oldest_message_age: int | None = None  # seconds


@dataclass
class QueueMessage:
    """A message currently in the Exim spool, as listed by ``exim -bp``."""

    message_id: str
    size: int
    age_seconds: int
    sender: str
    recipients: list[str] = field(default_factory=list)
    delivered_recipients: list[str] = field(default_factory=list)
    frozen: bool = False

    @property
    def status(self) -> MessageStatus:
        return MessageStatus.FROZEN if self.frozen else MessageStatus.QUEUED


@dataclass
class QueueListing:
    messages: list[QueueMessage] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.messages)

    @property
    def frozen(self) -> int:
        return sum(1 for m in self.messages if m.frozen)

    @property
    def oldest_message_age(self) -> int | None:
        if not self.messages:
            return None
        return max(m.age_seconds for m in self.messages)

    def get(self, message_id: str) -> QueueMessage | None:
        for message in self.messages:
            if message.message_id == message_id:
                return message
        return None
