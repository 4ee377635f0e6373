import datetime as dt
import logging
import os
import re
from collections.abc import Callable
from typing import Any, NamedTuple

from eximpilot.models import EventKind, LogEvent, LogSource, utcnow

logger = logging.getLogger("eximpilot.parser")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Exim message id: base-62 time, pid and sub-second fields
MESSAGE_ID_PATTERN = r"[0-9A-Za-z]{6}-[0-9A-Za-z]{6}-[0-9A-Za-z]{2,6}"

_MESSAGE_ID_VALID_RE = re.compile(rf"^{MESSAGE_ID_PATTERN}$")
_MESSAGE_ID_SEARCH_RE = re.compile(rf"\b({MESSAGE_ID_PATTERN})\b")

# Leading "YYYY-MM-DD HH:MM:SS", optionally followed by an Exim pid "[1234]"
_PREFIX = r"^(?P<timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})(?: \[\d+\])? "
_ID = rf"(?P<message_id>{MESSAGE_ID_PATTERN})"

# Lenient timestamp for lines no rule understood
_LEADING_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})"
)

# H=mx.example.com (helo) [192.0.2.1]:25, host and helo are both optional
_HOST_RE = re.compile(
    r"\bH=(?:(?P<host>[^\s(\[]+)\s*)?(?:\((?P<helo>[^)]*)\)\s*)?\[(?P<ip>[^\]]+)\]"
)
_SIZE_RE = re.compile(r"\bS=(\d+)")
_ROUTER_RE = re.compile(r"\bR=([^\s:]+)")
_TRANSPORT_RE = re.compile(r"\bT=([^\s:\"]+)")
_CONFIRMATION_RE = re.compile(r'\bC="(\d{3})')
_DEFER_RE = re.compile(
    r"defer \((?P<errno>-?\d+)\)"
    r"(?:\s+H=\S+(?:\s+\([^)]*\))?\s+\[[^\]]*\](?::\d+)?)?"
    r":\s*(?P<text>.*)$"
)
_SMTP_REPLY_RE = re.compile(r"\b([245]\d{2})[ -]")


class PatternRule(NamedTuple):
    """An ordered parsing rule.

    Attributes:
        name: Short name used in debug logging
        kind: Event kind produced when the rule matches
        regex: Compiled pattern; must define a ``timestamp`` group
        handler: Turns the match into the optional ``LogEvent`` fields
    """

    name: str
    kind: EventKind
    regex: re.Pattern
    handler: Callable[[re.Match], dict[str, Any]]


def check_message_id_valid(message_id: str) -> bool:
    """
    Check if a string is a well-formed Exim message id.

    Args:
        message_id: The candidate message id

    Returns:
        bool: True if the whole string has the message id shape
    """
    return bool(_MESSAGE_ID_VALID_RE.match(message_id))


def extract_message_id(text: str) -> str | None:
    """Return the first message id found anywhere in ``text``."""
    match = _MESSAGE_ID_SEARCH_RE.search(text)
    return match.group(1) if match else None


def parse_timestamp(value: str) -> dt.datetime:
    """Parse an Exim log timestamp, interpreted as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    return dt.datetime.strptime(value, TIMESTAMP_FORMAT).replace(
        tzinfo=dt.timezone.utc
    )


def log_source_for_path(path: str) -> LogSource:
    """Guess the log source from a log file name."""
    name = os.path.basename(path).lower()
    if "reject" in name:
        return LogSource.REJECT
    if "panic" in name:
        return LogSource.PANIC
    return LogSource.MAIN


def _host_fields(text: str) -> dict[str, Any]:
    match = _HOST_RE.search(text)
    if not match:
        return {}
    return {
        "host": match.group("host") or match.group("helo"),
        "ip_address": match.group("ip"),
    }


def _route_fields(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    router = _ROUTER_RE.search(text)
    if router:
        fields["router"] = router.group(1)
    transport = _TRANSPORT_RE.search(text)
    if transport:
        fields["transport"] = transport.group(1)
    return fields


def _handle_arrival(match: re.Match) -> dict[str, Any]:
    rest = match.group("rest")
    fields: dict[str, Any] = {
        "sender": match.group("sender"),
        "status": "received",
    }
    fields.update(_host_fields(rest))
    size = _SIZE_RE.search(rest)
    if size:
        fields["size"] = int(size.group(1))
    recipients = _arrival_recipients(rest)
    if recipients:
        fields["recipients"] = recipients
    return fields


def _arrival_recipients(rest: str) -> tuple[str, ...] | None:
    """Addresses after the last `` for `` of an arrival line.

    Only the last occurrence counts, since a logged subject (``T="..."``)
    can contain the word too.
    """
    _, found, tail = f" {rest}".rpartition(" for ")
    if not found:
        return None
    addresses = tail.split()
    if not addresses or not all("@" in a and '"' not in a for a in addresses):
        return None
    return tuple(addresses)


def _handle_delivery(match: re.Match) -> dict[str, Any]:
    rest = match.group("rest")
    fields: dict[str, Any] = {
        "recipients": (match.group("recipient"),),
        "status": "delivered",
    }
    fields.update(_route_fields(rest))
    fields.update(_host_fields(rest))
    confirmation = _CONFIRMATION_RE.search(rest)
    if confirmation:
        fields["smtp_code"] = confirmation.group(1)
    return fields


def _handle_defer(match: re.Match) -> dict[str, Any]:
    rest = match.group("rest")
    fields: dict[str, Any] = {
        "recipients": (match.group("recipient"),),
        "status": "deferred",
    }
    fields.update(_route_fields(rest))
    fields.update(_host_fields(rest))
    defer = _DEFER_RE.search(rest)
    if defer:
        fields["error_code"] = defer.group("errno")
        fields["error_text"] = defer.group("text") or None
    else:
        # "routing defer" and friends carry no errno
        text = rest.split(": ", 1)
        if len(text) == 2:
            fields["error_text"] = text[1]
    if fields.get("error_text"):
        reply = _SMTP_REPLY_RE.search(fields["error_text"])
        if reply:
            fields["smtp_code"] = reply.group(1)
    return fields


def _handle_bounce(match: re.Match) -> dict[str, Any]:
    rest = match.group("rest")
    fields: dict[str, Any] = {
        "recipients": (match.group("recipient"),),
        "status": "bounced",
    }
    fields.update(_route_fields(rest))
    fields.update(_host_fields(rest))
    # The host address may be IPv6, so drop it before looking for ": "
    parts = _HOST_RE.sub("", rest).split(": ", 1)
    if len(parts) == 2 and parts[1]:
        fields["error_text"] = parts[1]
        reply = _SMTP_REPLY_RE.search(parts[1])
        if reply:
            fields["smtp_code"] = reply.group(1)
    return fields


def _handle_completed(match: re.Match) -> dict[str, Any]:
    return {"status": "completed"}


def _handle_connection_rejected(match: re.Match) -> dict[str, Any]:
    return {
        "host": match.group("ip"),
        "ip_address": match.group("ip"),
        "status": "rejected",
        "error_text": match.group("reason"),
    }


def _handle_smtp_rejected(match: re.Match) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "status": "rejected",
        "error_text": match.group("reason"),
    }
    fields.update(_host_fields(match.group("client")))
    address = match.group("address")
    if address:
        if match.group("command") == "MAIL":
            fields["sender"] = address
        else:
            fields["recipients"] = (address,)
    return fields


def _handle_panic(match: re.Match) -> dict[str, Any]:
    return {"status": match.group("level"), "error_text": match.group("text")}


# Rules are tried in order and the first match wins. The main log markers
# (<= => -> == **) are mutually exclusive, so the order only matters for the
# generic rules further down.
MAIN_RULES: tuple[PatternRule, ...] = (
    # 1. arrival: "<= sender ... S=size"
    PatternRule(
        "arrival",
        EventKind.ARRIVAL,
        re.compile(_PREFIX + _ID + r" <= (?P<sender>\S+)(?P<rest>.*)$"),
        _handle_arrival,
    ),
    # 2. defer: "== rcpt ... defer (errno): text", before any delivery rule
    PatternRule(
        "defer",
        EventKind.DEFER,
        re.compile(_PREFIX + _ID + r" == (?P<recipient>\S+)(?P<rest>.*)$"),
        _handle_defer,
    ),
    # 3. bounce: "** rcpt ...: text"
    PatternRule(
        "bounce",
        EventKind.BOUNCE,
        re.compile(
            _PREFIX + _ID + r" \*\* (?P<recipient>[^\s:]+)(?P<rest>.*)$"
        ),
        _handle_bounce,
    ),
    # 4. delivery: "=> rcpt R=router T=transport [H=host [ip]]"
    PatternRule(
        "delivery",
        EventKind.DELIVERY,
        re.compile(_PREFIX + _ID + r" => (?P<recipient>\S+)(?P<rest>.*)$"),
        _handle_delivery,
    ),
    # 5. additional delivery of the same message: "-> rcpt ..."
    PatternRule(
        "additional_delivery",
        EventKind.DELIVERY,
        re.compile(_PREFIX + _ID + r" -> (?P<recipient>\S+)(?P<rest>.*)$"),
        _handle_delivery,
    ),
    # 6. completed: "Completed"
    PatternRule(
        "completed",
        EventKind.COMPLETED,
        re.compile(_PREFIX + _ID + r" Completed\b"),
        _handle_completed,
    ),
)

REJECT_RULES: tuple[PatternRule, ...] = (
    # 1. connection rejected before any SMTP dialogue
    PatternRule(
        "connection_rejected",
        EventKind.REJECT,
        re.compile(
            _PREFIX
            + r"rejected connection from .*?\[(?P<ip>[^\]]+)\](?::\d+)?"
            r"(?::\s*(?P<reason>.*))?$"
        ),
        _handle_connection_rejected,
    ),
    # 2. SMTP command rejected: "H=host [ip] ... rejected RCPT <addr>: reason"
    PatternRule(
        "smtp_rejected",
        EventKind.REJECT,
        re.compile(
            _PREFIX
            + r"(?:" + _ID + r" )?(?P<client>H=.*?) rejected "
            r"(?P<command>[A-Z]+)(?: <(?P<address>[^>]*)>)?:\s*(?P<reason>.*)$"
        ),
        _handle_smtp_rejected,
    ),
)

PANIC_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "panic",
        EventKind.PANIC,
        re.compile(_PREFIX + r"exim: (?P<level>panic|error): (?P<text>.*)$"),
        _handle_panic,
    ),
)

RULES: dict[LogSource, tuple[PatternRule, ...]] = {
    LogSource.MAIN: MAIN_RULES,
    LogSource.REJECT: REJECT_RULES,
    LogSource.PANIC: PANIC_RULES,
}


class EximParser:
    """
    Converts raw Exim log lines into ``LogEvent`` objects.

    Each log source has its own ordered list of rules. The first rule whose
    pattern matches and whose timestamp parses wins. Lines no rule
    understands become ``unknown`` events that keep the raw text, so nothing
    read from disk is lost.
    """

    def __init__(
        self, rules: dict[LogSource, tuple[PatternRule, ...]] | None = None
    ):
        self.rules = rules if rules is not None else RULES

    def parse_line(self, raw_line: str, source: LogSource) -> LogEvent:
        """
        Parse one log line.

        Args:
            raw_line: The line as read from the log, without its newline
            source: The log file the line came from

        Returns:
            LogEvent: The parsed event; never raises
        """
        line = raw_line.rstrip("\r\n")
        for rule in self.rules.get(source, ()):
            match = rule.regex.match(line)
            if not match:
                continue
            try:
                timestamp = parse_timestamp(match.group("timestamp"))
            except ValueError:
                logger.debug(
                    "Rule %s matched with a bad timestamp: %r", rule.name, line
                )
                break
            try:
                fields = rule.handler(match)
            except (ValueError, IndexError) as e:
                logger.debug("Rule %s failed on %r: %s", rule.name, line, e)
                break
            return LogEvent(
                timestamp=timestamp,
                source=source,
                kind=rule.kind,
                raw_line=raw_line,
                message_id=match.groupdict().get("message_id"),
                **fields,
            )
        return self._unknown_event(raw_line, source)

    @staticmethod
    def _unknown_event(raw_line: str, source: LogSource) -> LogEvent:
        timestamp = None
        match = _LEADING_TIMESTAMP_RE.match(raw_line)
        if match:
            try:
                timestamp = parse_timestamp(f"{match.group(1)} {match.group(2)}")
            except ValueError:
                timestamp = None
        return LogEvent(
            timestamp=timestamp or utcnow(),
            source=source,
            kind=EventKind.UNKNOWN,
            raw_line=raw_line,
        )
