import logging
import re
import subprocess
from dataclasses import dataclass, field

from eximpilot.config import QueueConfig
from eximpilot.errors import EximError
from eximpilot.models import QueueListing, QueueMessage
from eximpilot.parser import MESSAGE_ID_PATTERN
from eximpilot.utils import time_range_to_timedelta
from eximpilot.validation import QueueOperation, validate_message_id

logger = logging.getLogger("eximpilot.exim")

LIST_QUEUE_FLAG = "-bp"
VIEW_HEADERS_FLAG = "-Mvh"
VIEW_BODY_FLAG = "-Mvb"
VIEW_LOG_FLAG = "-Mvl"

OPERATION_FLAGS = {
    QueueOperation.DELIVER: "-M",
    QueueOperation.FREEZE: "-Mf",
    QueueOperation.THAW: "-Mt",
    QueueOperation.DELETE: "-Mrm",
}

BODY_PREVIEW_CHARS = 4096

# "25m  2.9K 1aBcDe-000123-Xy <sender@example.com> *** frozen ***"
_QUEUE_HEADER_RE = re.compile(
    r"^\s*(?P<age>\d+[smhd])\s+(?P<size>\d+(?:\.\d+)?[KMG]?)\s+"
    rf"(?P<message_id>{MESSAGE_ID_PATTERN})\s+<(?P<sender>[^>]*)>"
    r"(?P<frozen>\s+\*\*\* frozen \*\*\*)?"
)
# "        D delivered@example.com" or "          pending@example.com"
_QUEUE_RECIPIENT_RE = re.compile(r"^\s+(?P<flag>\+?D\s+)?(?P<address>\S+)\s*$")
# Spool header lines from -Mvh: "043P Received: from ..."
_SPOOL_HEADER_RE = re.compile(r"^\d{3}[A-Z* ] (?P<header>.*)$")

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def parse_size(value: str) -> int:
    """Convert an ``exim -bp`` size such as ``2.9K`` to bytes."""
    unit = value[-1] if value[-1] in "KMG" else ""
    number = value[:-1] if unit else value
    return int(float(number) * _SIZE_UNITS[unit])


def parse_queue_listing(output: str) -> QueueListing:
    """
    Parse the output of ``exim -bp``.

    Args:
        output: Text printed by ``exim -bp``

    Returns:
        QueueListing: One entry per spooled message, in listing order
    """
    messages: list[QueueMessage] = []
    current: QueueMessage | None = None
    for line in output.splitlines():
        if not line.strip():
            current = None
            continue
        header = _QUEUE_HEADER_RE.match(line)
        if header:
            current = QueueMessage(
                message_id=header.group("message_id"),
                size=parse_size(header.group("size")),
                age_seconds=int(
                    time_range_to_timedelta(header.group("age")).total_seconds()
                ),
                sender=header.group("sender"),
                frozen=header.group("frozen") is not None,
            )
            messages.append(current)
            continue
        recipient = _QUEUE_RECIPIENT_RE.match(line)
        if current is None or not recipient:
            logger.debug("Ignoring unexpected queue listing line: %r", line)
            continue
        if recipient.group("flag"):
            current.delivered_recipients.append(recipient.group("address"))
        else:
            current.recipients.append(recipient.group("address"))
    return QueueListing(messages=messages)


def parse_spool_headers(output: str) -> list[str]:
    """Extract the RFC 822 headers from ``exim -Mvh`` output."""
    headers: list[str] = []
    for line in output.splitlines():
        match = _SPOOL_HEADER_RE.match(line)
        if match:
            headers.append(match.group("header"))
        elif headers and line[:1] in (" ", "\t"):
            headers[-1] += "\n" + line
    return headers


@dataclass
class CommandResult:
    """What came back from one Exim invocation."""

    argv: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.error is None

    @property
    def output(self) -> str:
        """Everything Exim printed, stderr first."""
        return "\n".join(p for p in (self.stderr.strip(), self.stdout.strip()) if p)


@dataclass
class MessageDetails:
    message_id: str
    headers: list[str] = field(default_factory=list)
    body_preview: str | None = None
    message_log: str | None = None
    body_truncated: bool = False


class EximCommand:
    """
    Runs the Exim binary with a fixed argument vector.

    Arguments are always passed as a list and never through a shell. Only
    the flags defined in this module are used; anything that ends up after
    the flag must already be validated.
    """

    def __init__(self, exim_path: str = "/usr/sbin/exim4", timeout: float = 30.0):
        self.exim_path = exim_path
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: QueueConfig) -> "EximCommand":
        return cls(config.exim_path, timeout=config.command_timeout)

    def run(self, flag: str, message_id: str | None = None) -> CommandResult:
        """
        Invoke Exim once.

        Args:
            flag: One of the Exim flags defined in this module
            message_id: Validated message id, for per-message flags

        Returns:
            CommandResult: Never raises for a failed or missing binary
        """
        argv = [self.exim_path, flag]
        if message_id is not None:
            argv.append(message_id)
        logger.debug("Running %s", argv)
        try:
            completed = subprocess.run(
                argv,
                shell=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("%s timed out after %ss", " ".join(argv), self.timeout)
            return CommandResult(
                argv,
                None,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr),
                timed_out=True,
                error=f"command timed out after {self.timeout}s",
            )
        except FileNotFoundError:
            logger.error("Exim binary not found: %s", self.exim_path)
            return CommandResult(
                argv, None, error=f"Exim binary not found: {self.exim_path}"
            )
        except OSError as e:
            logger.error("Cannot run %s: %s", self.exim_path, e)
            return CommandResult(argv, None, error=str(e))
        return CommandResult(
            argv,
            completed.returncode,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
        )

    def run_operation(
        self, operation: QueueOperation, message_id: str
    ) -> CommandResult:
        return self.run(OPERATION_FLAGS[operation], message_id)

    def list_queue(self) -> QueueListing:
        """
        List the messages currently in the spool.

        Raises:
            EximError: If ``exim -bp`` failed
        """
        result = self.run(LIST_QUEUE_FLAG)
        if not result.ok:
            raise EximError(
                f"Listing the queue failed: {result.error or result.output or result.returncode}"
            )
        return parse_queue_listing(result.stdout)

    def inspect_message(self, message_id: str) -> MessageDetails:
        """
        Read the headers, a body preview and the message log of a message.

        Raises:
            ValidationError: If the message id is malformed
            EximError: If the headers could not be read
        """
        validate_message_id(message_id)
        headers = self.run(VIEW_HEADERS_FLAG, message_id)
        if not headers.ok:
            raise EximError(
                f"Cannot read message {message_id}: {headers.error or headers.output}"
            )
        details = MessageDetails(
            message_id=message_id, headers=parse_spool_headers(headers.stdout)
        )

        body = self.run(VIEW_BODY_FLAG, message_id)
        if body.ok:
            details.body_truncated = len(body.stdout) > BODY_PREVIEW_CHARS
            details.body_preview = body.stdout[:BODY_PREVIEW_CHARS]
        else:
            logger.debug("No body for %s: %s", message_id, body.error or body.output)

        message_log = self.run(VIEW_LOG_FLAG, message_id)
        if message_log.ok:
            details.message_log = message_log.stdout
        else:
            logger.debug(
                "No message log for %s: %s",
                message_id,
                message_log.error or message_log.output,
            )
        return details
