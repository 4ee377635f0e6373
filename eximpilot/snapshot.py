import logging
import threading

from eximpilot.errors import EximPilotError
from eximpilot.exim import EximCommand
from eximpilot.models import MessageStatus, QueueListing, QueueSnapshot, utcnow
from eximpilot.store.base import Repository

logger = logging.getLogger("eximpilot.snapshot")


def build_snapshot(listing: QueueListing, repository: Repository) -> QueueSnapshot:
    """Summarize a spool listing.

    ``exim -bp`` does not say whether a message was deferred, so that count
    comes from the cached message status.
    """
    deferred = 0
    for message in listing.messages:
        if message.frozen:
            continue
        record = repository.get_message(message.message_id)
        if record is not None and record.status is MessageStatus.DEFERRED:
            deferred += 1
    return QueueSnapshot(
        timestamp=utcnow(),
        total_messages=listing.total,
        deferred_messages=deferred,
        frozen_messages=listing.frozen,
        oldest_message_age=listing.oldest_message_age,
    )


class QueueSampler:
    """Stores a queue snapshot every ``interval`` seconds on its own thread."""

    def __init__(
        self, exim: EximCommand, repository: Repository, interval: float = 300.0
    ):
        self.exim = exim
        self.repository = repository
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def sample(self) -> QueueSnapshot:
        """Take and store one snapshot.

        Raises:
            EximError: If the queue could not be listed
            StoreError: If the snapshot could not be stored
        """
        snapshot = build_snapshot(self.exim.list_queue(), self.repository)
        self.repository.insert_snapshot(snapshot)
        logger.debug(
            "Queue snapshot: %d total, %d deferred, %d frozen",
            snapshot.total_messages,
            snapshot.deferred_messages,
            snapshot.frozen_messages,
        )
        return snapshot

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="queue-sampler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sample()
            except EximPilotError as e:
                logger.warning("Queue snapshot failed: %s", e)
            self._stop_event.wait(self.interval)
