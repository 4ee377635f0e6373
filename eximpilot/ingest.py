import logging
import queue
import threading
import time
from collections.abc import Callable

from eximpilot.bus import LOG_ENTRY_TOPIC, MessageBus
from eximpilot.config import IngestionConfig
from eximpilot.correlation import pending_attempts
from eximpilot.errors import StoreError
from eximpilot.models import (
    DeliveryAttempt,
    EventKind,
    LogEvent,
    LogSource,
    MessageRecord,
)
from eximpilot.parser import EximParser
from eximpilot.store.base import Repository
from eximpilot.utils import backoff_delays

logger = logging.getLogger("eximpilot.ingest")


def status_updates(events: list[LogEvent]) -> list[MessageRecord]:
    """Collapse a batch into one forward-only status update per message."""
    records: dict[str, MessageRecord] = {}
    for event in events:
        status = event.implied_status
        if not event.message_id or status is None:
            continue
        record = records.get(event.message_id)
        if record is None:
            records[event.message_id] = MessageRecord(
                message_id=event.message_id,
                status=status,
                first_seen=event.timestamp,
                last_seen=event.timestamp,
                sender=event.sender if event.kind is EventKind.ARRIVAL else None,
                size=event.size,
            )
            continue
        if status.advances(record.status):
            record.status = status
        record.first_seen = min(record.first_seen, event.timestamp)
        record.last_seen = max(record.last_seen, event.timestamp)
        if record.sender is None and event.kind is EventKind.ARRIVAL:
            record.sender = event.sender
        if record.size is None:
            record.size = event.size
    return list(records.values())


class BatchWriter:
    """
    Writes batches of events to the repository, one transaction per batch.

    Each batch stores the events, the delivery attempts they imply (numbered
    per message and recipient) and the forward-only status updates. A failed
    transaction is retried ``max_retries`` times with exponential backoff;
    after that the batch is logged and dropped.

    Calls are serialized, so live ingestion and backlog processing can share
    one writer without racing on attempt sequence numbers.
    """

    def __init__(
        self,
        repository: Repository,
        max_retries: int = 3,
        retry_backoff: float = 0.1,
        bus: MessageBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.bus = bus
        self._sleep = sleep
        self._lock = threading.Lock()
        self.events_written = 0
        self.events_dropped = 0
        self.batches_failed = 0
        self.last_error: str | None = None

    def write(self, events: list[LogEvent]) -> bool:
        """
        Persist a batch.

        Args:
            events: Parsed events, in log order

        Returns:
            bool: True when the batch was stored, False when it was dropped
        """
        if not events:
            return True
        with self._lock:
            records = status_updates(events)
            delays = backoff_delays(self.retry_backoff, self.max_retries)
            for attempt in range(self.max_retries):
                try:
                    attempts = self._number_attempts(events)
                    self.repository.write_batch(events, attempts, records)
                except StoreError as e:
                    self.last_error = str(e)
                    if attempt < len(delays):
                        logger.warning(
                            "Batch of %d events failed (attempt %d/%d), retrying in %.2fs: %s",
                            len(events),
                            attempt + 1,
                            self.max_retries,
                            delays[attempt],
                            e,
                        )
                        self._sleep(delays[attempt])
                    continue
                self.events_written += len(events)
                break
            else:
                self.batches_failed += 1
                self.events_dropped += len(events)
                logger.error(
                    "Dropping batch of %d events after %d attempts: %s",
                    len(events),
                    self.max_retries,
                    self.last_error,
                )
                return False

        self._publish(events)
        return True

    def _number_attempts(self, events: list[LogEvent]) -> list[DeliveryAttempt]:
        next_sequence: dict[tuple[str, str], int] = {}
        numbered = []
        for event in events:
            for attempt in pending_attempts(event):
                key = (attempt.message_id, attempt.recipient)
                if key not in next_sequence:
                    next_sequence[key] = self.repository.next_attempt_sequence(
                        *key
                    )
                numbered.append(
                    DeliveryAttempt(
                        message_id=attempt.message_id,
                        recipient=attempt.recipient,
                        timestamp=attempt.timestamp,
                        outcome=attempt.outcome,
                        sequence=next_sequence[key],
                        host=attempt.host,
                        ip_address=attempt.ip_address,
                        smtp_code=attempt.smtp_code,
                        error_message=attempt.error_message,
                    )
                )
                next_sequence[key] += 1
        return numbered

    def _publish(self, events: list[LogEvent]) -> None:
        if self.bus is None:
            return
        for event in events:
            self.bus.publish(LOG_ENTRY_TOPIC, event)


class IngestionService:
    """
    Parses live log lines and feeds them to a ``BatchWriter``.

    Lines are parsed on the caller's thread and queued on a bounded queue. A
    single flusher thread writes a batch when ``batch_size`` events are
    waiting or ``flush_interval`` seconds have passed. When the queue is full
    ``ingest`` waits up to ``put_timeout`` seconds and then drops the event,
    so memory use stays bounded.
    """

    def __init__(
        self,
        writer: BatchWriter,
        parser: EximParser | None = None,
        batch_size: int = 500,
        flush_interval: float = 2.0,
        queue_size: int = 10000,
        put_timeout: float = 1.0,
        shutdown_timeout: float = 10.0,
        unknown_warn_ratio: float = 0.5,
        unknown_window: int = 1000,
    ):
        self.writer = writer
        self.parser = parser or EximParser()
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.put_timeout = put_timeout
        self.shutdown_timeout = shutdown_timeout
        self.unknown_warn_ratio = unknown_warn_ratio
        self.unknown_window = unknown_window

        self._queue: queue.Queue[LogEvent] = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stats_lock = threading.Lock()

        self.lines_received = 0
        self.events_dropped = 0
        self.unknown_events = 0
        self._window_total = 0
        self._window_unknown = 0

    @classmethod
    def from_config(
        cls,
        config: IngestionConfig,
        writer: BatchWriter,
        parser: EximParser | None = None,
    ) -> "IngestionService":
        return cls(
            writer,
            parser=parser,
            batch_size=config.batch_size,
            flush_interval=config.flush_interval,
            queue_size=config.queue_size,
            put_timeout=config.put_timeout,
            shutdown_timeout=config.shutdown_timeout,
            unknown_warn_ratio=config.unknown_warn_ratio,
            unknown_window=config.unknown_window,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="ingest-flusher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the flusher, writing what is queued within ``shutdown_timeout``."""
        self._stop_event.set()
        if self._thread is not None:
            # Allow one more flush interval for a write already in progress
            self._thread.join(self.shutdown_timeout + self.flush_interval)
            if self._thread.is_alive():
                logger.warning("Flusher did not finish within the shutdown timeout")
            self._thread = None

    def ingest(self, raw_line: str, source: LogSource) -> bool:
        """
        Parse a line and queue the resulting event.

        Args:
            raw_line: One complete log line
            source: Log file the line came from

        Returns:
            bool: False if the event was dropped because the queue stayed full
        """
        event = self.parser.parse_line(raw_line, source)
        self._count(event)
        try:
            self._queue.put(event, timeout=self.put_timeout)
        except queue.Full:
            with self._stats_lock:
                self.events_dropped += 1
            logger.warning(
                "Ingestion queue full, dropping event from %s log", source.value
            )
            return False
        return True

    def _count(self, event: LogEvent) -> None:
        warn = None
        with self._stats_lock:
            self.lines_received += 1
            self._window_total += 1
            if event.kind is EventKind.UNKNOWN:
                self.unknown_events += 1
                self._window_unknown += 1
            if self._window_total >= self.unknown_window:
                ratio = self._window_unknown / self._window_total
                if ratio > self.unknown_warn_ratio:
                    warn = ratio
                self._window_total = 0
                self._window_unknown = 0
        if warn is not None:
            logger.info(
                "%.0f%% of the last %d lines did not match any pattern; "
                "check the Exim log_selector settings",
                warn * 100,
                self.unknown_window,
            )

    def _run(self) -> None:
        batch: list[LogEvent] = []
        deadline = time.monotonic() + self.flush_interval
        while not self._stop_event.is_set():
            # Wake up regularly so stop() is noticed quickly
            timeout = min(max(deadline - time.monotonic(), 0.0), 0.25)
            try:
                batch.append(self._queue.get(timeout=timeout))
            except queue.Empty:
                pass
            if len(batch) >= self.batch_size or time.monotonic() >= deadline:
                self._flush(batch)
                batch = []
                deadline = time.monotonic() + self.flush_interval
        self._drain(batch)

    def _drain(self, batch: list[LogEvent]) -> None:
        deadline = time.monotonic() + self.shutdown_timeout
        while time.monotonic() < deadline:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
            if len(batch) >= self.batch_size:
                self._flush(batch)
                batch = []
        if batch and time.monotonic() < deadline:
            self._flush(batch)
            batch = []

        left = len(batch) + self._queue.qsize()
        if left:
            with self._stats_lock:
                self.events_dropped += left
            logger.warning("Shutdown timeout reached, dropping %d queued events", left)

    def _flush(self, batch: list[LogEvent]) -> None:
        if not batch:
            return
        try:
            self.writer.write(batch)
        except Exception:
            # Keep the flusher alive whatever the repository throws
            logger.exception("Unexpected error writing batch of %d events", len(batch))
