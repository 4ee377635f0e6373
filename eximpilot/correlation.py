import datetime as dt
import logging
import re
from dataclasses import dataclass, field

from eximpilot.models import (
    AttemptOutcome,
    DeliveryAttempt,
    EventKind,
    LogEvent,
    MessageRecord,
    MessageStatus,
    QueueListing,
    QueueMessage,
)
from eximpilot.store.base import Repository

logger = logging.getLogger("eximpilot.correlation")

_ATTEMPT_OUTCOMES = {
    EventKind.DELIVERY: AttemptOutcome.SUCCESS,
    EventKind.DEFER: AttemptOutcome.DEFER,
    EventKind.BOUNCE: AttemptOutcome.BOUNCE,
}

_TIMEOUT_RE = re.compile(r"time(?:d)? ?out", re.IGNORECASE)


def attempt_outcome(event: LogEvent) -> AttemptOutcome | None:
    """Classify a delivery-related event, or None for other kinds."""
    outcome = _ATTEMPT_OUTCOMES.get(event.kind)
    if outcome is AttemptOutcome.DEFER and event.error_text:
        if _TIMEOUT_RE.search(event.error_text):
            return AttemptOutcome.TIMEOUT
    return outcome


def pending_attempts(event: LogEvent) -> list[DeliveryAttempt]:
    """
    Build the delivery attempts an event describes, one per recipient.

    The returned attempts carry ``sequence=0``; the writer numbers them.

    Args:
        event: A parsed log event

    Returns:
        list[DeliveryAttempt]: Empty unless the event is a delivery, defer or
            bounce with a message id
    """
    outcome = attempt_outcome(event)
    if outcome is None or not event.message_id or not event.recipients:
        return []
    return [
        DeliveryAttempt(
            message_id=event.message_id,
            recipient=recipient,
            timestamp=event.timestamp,
            outcome=outcome,
            sequence=0,
            host=event.host,
            ip_address=event.ip_address,
            smtp_code=event.smtp_code,
            error_message=event.error_text,
        )
        for recipient in event.recipients
    ]


def derive_status(events: list[LogEvent]) -> MessageStatus | None:
    """Fold events in order into a status, never moving backwards."""
    status = None
    for event in events:
        implied = event.implied_status
        if implied is not None and implied.advances(status):
            status = implied
    return status


@dataclass
class TimelineEntry:
    timestamp: dt.datetime
    kind: EventKind
    description: str
    recipient: str | None = None


def _describe(event: LogEvent) -> str:
    via = f" via {event.host}" if event.host else ""
    if event.ip_address and event.ip_address != event.host:
        via += f" [{event.ip_address}]"
    if event.kind is EventKind.ARRIVAL:
        size = f", {event.size} bytes" if event.size is not None else ""
        return f"Received from {event.sender or '<unknown>'}{via}{size}"
    if event.kind is EventKind.DELIVERY:
        code = f" ({event.smtp_code})" if event.smtp_code else ""
        return f"Delivered{via}{code}"
    if event.kind is EventKind.DEFER:
        return f"Deferred{via}: {event.error_text or 'no reason given'}"
    if event.kind is EventKind.BOUNCE:
        return f"Bounced{via}: {event.error_text or 'no reason given'}"
    if event.kind is EventKind.COMPLETED:
        return "Completed"
    if event.kind is EventKind.REJECT:
        return f"Rejected{via}: {event.error_text or ''}".rstrip(": ")
    return event.raw_line


def build_timeline(events: list[LogEvent]) -> list[TimelineEntry]:
    """Chronological, per-recipient view of a message's events."""
    entries = []
    for event in sorted(events, key=lambda e: e.timestamp):
        recipients = event.recipients or (None,)
        for recipient in recipients:
            entries.append(
                TimelineEntry(
                    timestamp=event.timestamp,
                    kind=event.kind,
                    description=_describe(event),
                    recipient=recipient,
                )
            )
    return entries


@dataclass
class MessageTrace:
    """Everything known about one message id.

    The event history and the live spool are authoritative; ``record`` is the
    cached status row and may lag behind them.
    """

    message_id: str
    status: MessageStatus | None
    events: list[LogEvent] = field(default_factory=list)
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    record: MessageRecord | None = None
    queue_entry: QueueMessage | None = None

    @property
    def found(self) -> bool:
        return bool(self.events or self.record or self.queue_entry)

    @property
    def timeline(self) -> list[TimelineEntry]:
        return build_timeline(self.events)

    @property
    def sender(self) -> str | None:
        if self.queue_entry is not None:
            return self.queue_entry.sender
        for event in self.events:
            if event.kind is EventKind.ARRIVAL and event.sender:
                return event.sender
        return self.record.sender if self.record else None

    def recipient_outcomes(self) -> dict[str, AttemptOutcome]:
        """Outcome of the latest attempt for each recipient."""
        latest: dict[str, DeliveryAttempt] = {}
        for attempt in self.attempts:
            current = latest.get(attempt.recipient)
            if current is None or attempt.sequence > current.sequence:
                latest[attempt.recipient] = attempt
        return {recipient: a.outcome for recipient, a in latest.items()}


def trace_message(
    repository: Repository,
    message_id: str,
    queue_listing: QueueListing | None = None,
) -> MessageTrace:
    """
    Correlate stored history and the live queue for one message id.

    Args:
        repository: Store to read events, attempts and the cached record from
        message_id: The Exim message id
        queue_listing: Current spool listing, if available

    Returns:
        MessageTrace: The derived view; ``found`` is False when nothing is known
    """
    events = repository.get_events_for_message(message_id)
    attempts = repository.get_attempts_for_message(message_id)
    record = repository.get_message(message_id)
    queue_entry = queue_listing.get(message_id) if queue_listing else None

    status = derive_status(events)
    if queue_entry is not None and queue_entry.status.advances(status):
        status = queue_entry.status
    if status is None and record is not None:
        status = record.status
    if record is not None and status is not None and record.status != status:
        logger.debug(
            "Cached status %s for %s differs from derived %s",
            record.status.value,
            message_id,
            status.value,
        )

    return MessageTrace(
        message_id=message_id,
        status=status,
        events=events,
        attempts=attempts,
        record=record,
        queue_entry=queue_entry,
    )
