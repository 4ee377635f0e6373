import getpass
import signal
import sys
import threading

import click
from pydantic import ValidationError as PydanticValidationError

from eximpilot.audit import ActorContext, AuditRecorder
from eximpilot.backlog import BacklogProcessor
from eximpilot.config import Config, load_config
from eximpilot.correlation import trace_message
from eximpilot.errors import EximError, EximPilotError
from eximpilot.exim import EximCommand
from eximpilot.ingest import BatchWriter
from eximpilot.log import init_logger, logger
from eximpilot.mediator import OperationResult, QueueMediator
from eximpilot.retention import RetentionScheduler, RetentionService
from eximpilot.service import LogService
from eximpilot.snapshot import QueueSampler
from eximpilot.store import SQLRepository
from eximpilot.utils import format_age, print_blue, print_red, warn_if_root
from eximpilot.validation import ActorInput, BulkOperationRequest, QueueOperation

config_option = click.option(
    "-c",
    "--config-path",
    "config_path",
    type=click.Path(exists=True),
    required=False,
    help="Path to configuration file",
)


def actor_options(func):
    func = click.option(
        "--ip",
        "ip_address",
        type=str,
        required=False,
        help="IP address the request came from",
    )(func)
    func = click.option(
        "--user",
        "user_id",
        type=str,
        default=getpass.getuser,
        show_default="current user",
        help="User the operation is recorded for",
    )(func)
    return func


def setup(config_path: str | None) -> Config:
    config = load_config(config_path)
    init_logger(config)
    return config


def make_actor(user_id: str | None, ip_address: str | None) -> ActorContext:
    try:
        actor = ActorInput(user_id=user_id, ip_address=ip_address)
    except PydanticValidationError as e:
        raise click.BadParameter(str(e)) from e
    return ActorContext(
        user_id=actor.user_id,
        ip_address=str(actor.ip_address) if actor.ip_address else None,
    )


def make_mediator(config: Config, repository: SQLRepository) -> QueueMediator:
    return QueueMediator(
        EximCommand.from_config(config.queue), AuditRecorder(repository)
    )


def print_result(result: OperationResult) -> None:
    if result.success:
        print(f"{result.message_id}: {result.message}")
    else:
        print_red(
            f"{result.message_id}: {result.outcome.value}: {result.error or result.message}"
        )


@click.group()
def cli():
    pass


@cli.command()
@config_option
def watch(config_path: str | None):
    """
    Tail the Exim logs and store every event until interrupted.
    """
    config = setup(config_path)
    warn_if_root()
    repository = SQLRepository.from_config(config.database)
    service = LogService(config, repository)
    sampler = None
    if config.snapshot.enabled:
        sampler = QueueSampler(
            EximCommand.from_config(config.queue),
            repository,
            interval=config.snapshot.interval,
        )
    retention = None
    if config.retention.interval_hours > 0:
        retention = RetentionScheduler(
            RetentionService(repository, config.retention, AuditRecorder(repository)),
            interval=config.retention.interval_hours * 3600,
        )

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())

    service.start()
    if sampler is not None:
        sampler.start()
    if retention is not None:
        retention.start()
    logger.info("Running eximpilot...")
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        if retention is not None:
            retention.stop(timeout=5.0)
        if sampler is not None:
            sampler.stop(timeout=5.0)
        service.stop(timeout=config.ingestion.shutdown_timeout)
        status = service.status()
        logger.info(
            "Received %d lines, stored %d events, dropped %d",
            status.lines_received,
            status.events_flushed,
            status.events_dropped,
        )
        repository.close()


@cli.command()
@config_option
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option(
    "--dedup/--no-dedup",
    default=None,
    help="Drop identical lines within a batch (default from config)",
)
def backlog(config_path: str | None, paths: tuple[str, ...], dedup: bool | None):
    """
    Process existing log files from the beginning.
    """
    config = setup(config_path)
    if dedup is not None:
        config.backlog.deduplicate = dedup
    repository = SQLRepository.from_config(config.database)
    writer = BatchWriter(
        repository,
        max_retries=config.ingestion.max_retries,
        retry_backoff=config.ingestion.retry_backoff,
    )
    processor = BacklogProcessor.from_config(config.backlog, writer)
    try:
        results = processor.process_backlogs(list(paths))
    except KeyboardInterrupt:
        processor.cancel()
        raise
    finally:
        repository.close()

    failed = False
    for path, result in results.items():
        if result.ok:
            print(f"{path}: {result.lines_processed} lines")
        else:
            failed = True
            print_red(
                f"{path}: {result.lines_processed} lines, "
                f"{result.batches_failed} batches failed, error: {result.error or '-'}"
            )
    if failed:
        sys.exit(1)


@cli.group()
def queue():
    """Inspect and operate on the Exim queue."""


@queue.command("list")
@config_option
def list_queue(config_path: str | None):
    """List the messages in the spool."""
    config = setup(config_path)
    try:
        listing = EximCommand.from_config(config.queue).list_queue()
    except EximError as e:
        print_red(str(e))
        sys.exit(1)
    for message in listing.messages:
        frozen = " *** frozen ***" if message.frozen else ""
        print(
            f"{format_age(message.age_seconds):>5} {message.size:>8} "
            f"{message.message_id} <{message.sender}>{frozen}"
        )
        for recipient in message.recipients:
            print(f"          {recipient}")
        for recipient in message.delivered_recipients:
            print(f"        D {recipient}")
    print_blue(
        f"{listing.total} messages, {listing.frozen} frozen, "
        f"oldest {format_age(listing.oldest_message_age)}"
    )


@queue.command()
@config_option
@click.argument("message_id")
def inspect(config_path: str | None, message_id: str):
    """Show headers, body preview and message log of a message."""
    config = setup(config_path)
    try:
        details = EximCommand.from_config(config.queue).inspect_message(message_id)
    except EximPilotError as e:
        print_red(str(e))
        sys.exit(1)
    print_blue("== Headers ==")
    for header in details.headers:
        print(header)
    print_blue("== Body ==")
    print(details.body_preview or "")
    if details.body_truncated:
        print_blue("(truncated)")
    print_blue("== Message log ==")
    print(details.message_log or "")


def _operation_command(operation: QueueOperation):
    @config_option
    @click.argument("message_id")
    @actor_options
    def command(
        config_path: str | None,
        message_id: str,
        user_id: str | None,
        ip_address: str | None,
    ):
        config = setup(config_path)
        actor = make_actor(user_id, ip_address)
        repository = SQLRepository.from_config(config.database)
        try:
            result = make_mediator(config, repository).execute(
                operation, message_id, actor
            )
        finally:
            repository.close()
        print_result(result)
        if not result.success:
            sys.exit(1)

    command.__doc__ = f"{operation.value.capitalize()} a queued message."
    return queue.command(operation.value)(command)


for _operation in QueueOperation:
    _operation_command(_operation)


@queue.command()
@config_option
@click.argument(
    "operation", type=click.Choice([op.value for op in QueueOperation])
)
@click.argument("message_ids", nargs=-1, required=True)
@actor_options
def bulk(
    config_path: str | None,
    operation: str,
    message_ids: tuple[str, ...],
    user_id: str | None,
    ip_address: str | None,
):
    """Apply one operation to several messages."""
    config = setup(config_path)
    actor = make_actor(user_id, ip_address)
    try:
        request = BulkOperationRequest(
            operation=operation, message_ids=list(message_ids)
        )
    except PydanticValidationError as e:
        raise click.BadParameter(str(e)) from e

    repository = SQLRepository.from_config(config.database)
    try:
        result = make_mediator(config, repository).execute_bulk(
            request.operation, request.message_ids, actor
        )
    finally:
        repository.close()
    for item in result.results:
        print_result(item)
    print_blue(
        f"{result.successful_count} succeeded, {result.failed_count} failed"
    )
    if result.failed_count:
        sys.exit(1)


@cli.command()
@config_option
@click.argument("message_id")
@click.option(
    "--no-queue",
    is_flag=True,
    help="Do not ask Exim for the live queue state",
)
def trace(config_path: str | None, message_id: str, no_queue: bool):
    """
    Print everything known about a message.
    """
    config = setup(config_path)
    listing = None
    if not no_queue:
        try:
            listing = EximCommand.from_config(config.queue).list_queue()
        except EximError as e:
            logger.warning("Live queue unavailable: %s", e)

    repository = SQLRepository.from_config(config.database)
    try:
        message = trace_message(repository, message_id, listing)
    finally:
        repository.close()
    if not message.found:
        print_red(f"Message {message_id} not found")
        sys.exit(1)

    status = message.status.value if message.status else "unknown"
    print_blue(f"{message_id} from {message.sender or '<unknown>'}: {status}")
    if message.queue_entry is not None:
        print(f"In queue for {format_age(message.queue_entry.age_seconds)}")
    for entry in message.timeline:
        recipient = f" {entry.recipient}" if entry.recipient else ""
        print(
            f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.kind.value:<9}"
            f"{recipient} {entry.description}"
        )
    for recipient, outcome in message.recipient_outcomes().items():
        print(f"{recipient}: {outcome.value}")


@cli.command()
@config_option
def purge(config_path: str | None):
    """
    Delete rows older than the configured retention horizons.
    """
    config = setup(config_path)
    repository = SQLRepository.from_config(config.database)
    try:
        deleted = RetentionService(
            repository, config.retention, AuditRecorder(repository)
        ).purge()
    finally:
        repository.close()
    for table, count in deleted.items():
        print(f"{table}: {count} rows deleted")


@cli.command()
@config_option
def snapshot(config_path: str | None):
    """
    Record one queue snapshot.
    """
    config = setup(config_path)
    repository = SQLRepository.from_config(config.database)
    sampler = QueueSampler(EximCommand.from_config(config.queue), repository)
    try:
        result = sampler.sample()
    except EximPilotError as e:
        print_red(str(e))
        sys.exit(1)
    finally:
        repository.close()
    print(
        f"{result.total_messages} messages, {result.deferred_messages} deferred, "
        f"{result.frozen_messages} frozen, oldest {format_age(result.oldest_message_age)}"
    )


if __name__ == "__main__":
    cli()
