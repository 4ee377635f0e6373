import logging
import threading
from dataclasses import dataclass, field

from eximpilot.backlog import BacklogProcessor, BacklogResult
from eximpilot.bus import InProcessBus, MessageBus
from eximpilot.config import Config
from eximpilot.ingest import BatchWriter, IngestionService
from eximpilot.parser import EximParser
from eximpilot.store.base import Repository
from eximpilot.watcher import FileState, FileWatcher

logger = logging.getLogger("eximpilot.service")


@dataclass
class LogServiceStatus:
    running: bool
    lines_received: int
    events_flushed: int
    events_dropped: int
    batches_failed: int
    unknown_events: int
    pending: int
    last_error: str | None = None
    files: dict[str, FileState] = field(default_factory=dict)
    backlog: dict[str, BacklogResult] = field(default_factory=dict)


class LogService:
    """
    Ties the file watcher, live ingestion and startup backlog together.

    The watcher starts before the backlog so no line written during startup
    is missed; a line written in that window may be stored twice.
    """

    def __init__(
        self,
        config: Config,
        repository: Repository,
        bus: MessageBus | None = None,
        parser: EximParser | None = None,
    ):
        self.config = config
        self.repository = repository
        self._owns_bus = bus is None
        self.bus = bus or InProcessBus()
        parser = parser or EximParser()

        self.writer = BatchWriter(
            repository,
            max_retries=config.ingestion.max_retries,
            retry_backoff=config.ingestion.retry_backoff,
            bus=self.bus,
        )
        self.ingestion = IngestionService.from_config(
            config.ingestion, self.writer, parser=parser
        )
        self.watcher = FileWatcher(
            config.watcher.log_files,
            self.ingestion.ingest,
            poll_interval=config.watcher.poll_interval,
            retry_interval=config.watcher.retry_interval,
            start_at_end=config.watcher.start_at_end,
        )
        self.backlog = BacklogProcessor.from_config(
            config.backlog, self.writer, parser=parser
        )
        self._backlog_thread: threading.Thread | None = None
        self._backlog_results: dict[str, BacklogResult] = {}
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        if self._owns_bus:
            self.bus.start()
        self.ingestion.start()
        self.watcher.start()
        if self.config.backlog.on_startup:
            self._backlog_thread = threading.Thread(
                target=self._run_backlog, name="startup-backlog", daemon=True
            )
            self._backlog_thread.start()
        self._running = True
        logger.info("Log service started")

    def stop(self, timeout: float | None = None) -> None:
        """Stop watching, then flush what has been read."""
        if not self._running:
            return
        self.backlog.cancel()
        self.watcher.stop(timeout)
        if self._backlog_thread is not None:
            self._backlog_thread.join(timeout)
            self._backlog_thread = None
        self.ingestion.stop()
        if self._owns_bus:
            self.bus.stop()
        self._running = False
        logger.info("Log service stopped")

    def status(self) -> LogServiceStatus:
        return LogServiceStatus(
            running=self._running,
            lines_received=self.ingestion.lines_received,
            events_flushed=self.writer.events_written,
            events_dropped=self.ingestion.events_dropped + self.writer.events_dropped,
            batches_failed=self.writer.batches_failed,
            unknown_events=self.ingestion.unknown_events,
            pending=self.ingestion.pending,
            last_error=self.writer.last_error,
            files=self.watcher.status(),
            backlog=dict(self._backlog_results),
        )

    def _run_backlog(self) -> None:
        try:
            self._backlog_results = self.backlog.process_backlogs(
                self.config.watcher.log_files
            )
        except Exception:
            logger.exception("Startup backlog processing failed")
