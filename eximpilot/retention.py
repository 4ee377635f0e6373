import datetime as dt
import logging
import threading

from eximpilot.audit import AuditRecorder
from eximpilot.config import RetentionConfig
from eximpilot.errors import EximPilotError, StoreError
from eximpilot.models import utcnow
from eximpilot.store.base import Repository

logger = logging.getLogger("eximpilot.retention")

RETENTION_PURGE_ACTION = "retention_purge"


class RetentionService:
    """Deletes rows that are older than their configured horizon.

    A horizon of 0 days keeps that table forever.
    """

    def __init__(
        self,
        repository: Repository,
        config: RetentionConfig,
        audit: AuditRecorder | None = None,
    ):
        self.repository = repository
        self.config = config
        self.audit = audit

    def horizons(self) -> dict[str, int]:
        return {
            "log_events": self.config.log_days,
            "delivery_attempts": self.config.attempt_days,
            "audit_log": self.config.audit_days,
            "queue_snapshots": self.config.snapshot_days,
        }

    def purge(self, now: dt.datetime | None = None) -> dict[str, int]:
        """
        Apply every horizon once.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            dict[str, int]: Rows deleted per table; disabled tables are omitted

        Raises:
            StoreError: If a table could not be purged. Tables handled before
                the failing one stay purged and the audit row lists them.
        """
        now = now or utcnow()
        deleted: dict[str, int] = {}
        try:
            for table, days in self.horizons().items():
                if days <= 0:
                    continue
                cutoff = now - dt.timedelta(days=days)
                deleted[table] = self.repository.purge_older_than(table, cutoff)
                logger.info(
                    "Purged %d rows from %s older than %d days",
                    deleted[table],
                    table,
                    days,
                )
        except StoreError as e:
            logger.error("Retention purge failed after %s: %s", deleted, e)
            self._record({"deleted": deleted, "result": "failure", "error": str(e)})
            raise
        self._record({"deleted": deleted, "result": "success"})
        return deleted

    def _record(self, details: dict) -> None:
        if self.audit is not None:
            self.audit.record_system_action(RETENTION_PURGE_ACTION, details)


class RetentionScheduler:
    """Runs ``RetentionService.purge`` every ``interval`` seconds on its own thread."""

    def __init__(self, service: RetentionService, interval: float = 86400.0):
        self.service = service
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="retention", daemon=True
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
                self.service.purge()
            except EximPilotError as e:
                logger.warning("Scheduled retention purge failed: %s", e)
            self._stop_event.wait(self.interval)
