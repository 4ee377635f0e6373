import logging
from dataclasses import dataclass, field
from enum import Enum

from eximpilot.audit import ActorContext, AuditRecorder
from eximpilot.errors import ValidationError
from eximpilot.exim import CommandResult, EximCommand
from eximpilot.validation import (
    QueueOperation,
    validate_operation,
    validate_operation_request,
)

logger = logging.getLogger("eximpilot.mediator")


class OperationOutcome(Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_IN_STATE = "already_in_state"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_FAILURE = "unknown_failure"


# Lower-cased fragments of Exim's error output, checked in this order
_FAILURE_MARKERS: tuple[tuple[OperationOutcome, tuple[str, ...]], ...] = (
    (
        OperationOutcome.NOT_FOUND,
        ("spool file not found", "no such message", "not found"),
    ),
    (
        OperationOutcome.PERMISSION_DENIED,
        ("permission denied", "not permitted", "must be root"),
    ),
    (
        OperationOutcome.ALREADY_IN_STATE,
        ("already frozen", "is not frozen", "not frozen"),
    ),
)

_SUCCESS_MESSAGES = {
    QueueOperation.DELIVER: "Delivery attempt started",
    QueueOperation.FREEZE: "Message frozen",
    QueueOperation.THAW: "Message thawed",
    QueueOperation.DELETE: "Message removed from the queue",
}

# Audit action used when the operation itself is not in the allow-list
INVALID_OPERATION_ACTION = "queue_invalid"


def classify_failure(output: str) -> OperationOutcome:
    """Map the text of a failed Exim invocation to an outcome."""
    text = output.lower()
    for outcome, markers in _FAILURE_MARKERS:
        if any(marker in text for marker in markers):
            return outcome
    return OperationOutcome.UNKNOWN_FAILURE


@dataclass
class OperationResult:
    """Result of one queue operation; failures are values, not exceptions."""

    operation: str
    message_id: str
    outcome: OperationOutcome
    message: str = ""
    error: str | None = None
    exit_code: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome is OperationOutcome.SUCCESS


@dataclass
class BulkOperationResult:
    operation: str
    results: list[OperationResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return self.total - self.successful_count

    @property
    def errors(self) -> list[str]:
        return [
            f"{r.message_id}: {r.error or r.outcome.value}"
            for r in self.results
            if not r.success
        ]


class QueueMediator:
    """
    The only path from a user request to a mutation of the Exim spool.

    Every request is validated before anything is spawned, runs as a fresh
    ``exim`` process with a fixed argument vector, and produces exactly one
    audit entry whatever its outcome.
    """

    def __init__(self, exim: EximCommand, audit: AuditRecorder):
        self.exim = exim
        self.audit = audit

    def execute(
        self,
        operation: QueueOperation | str,
        message_id: str,
        actor: ActorContext | None = None,
    ) -> OperationResult:
        """
        Run one queue operation.

        Args:
            operation: deliver, freeze, thaw or delete
            message_id: Target Exim message id
            actor: Who asked for the operation

        Returns:
            OperationResult: The outcome; this method does not raise for
                invalid input or failed commands
        """
        actor = actor or ActorContext()
        try:
            op, message_id = validate_operation_request(operation, message_id)
        except ValidationError as e:
            return self._reject(operation, message_id, actor, e)

        command = self.exim.run_operation(op, message_id)
        result = self._result_for(op, message_id, command)
        if result.success:
            logger.info("%s %s by %s", op.value, message_id, actor)
        else:
            logger.warning(
                "%s %s by %s failed: %s (%s)",
                op.value,
                message_id,
                actor,
                result.outcome.value,
                result.error,
            )
        self.audit.record_queue_operation(
            op.value,
            message_id,
            actor,
            result.success,
            {
                "outcome": result.outcome.value,
                "message": result.message,
                "error": result.error,
                "exit_code": result.exit_code,
            },
        )
        return result

    def execute_bulk(
        self,
        operation: QueueOperation | str,
        message_ids: list[str],
        actor: ActorContext | None = None,
    ) -> BulkOperationResult:
        """Run one operation for each id; every id is audited on its own."""
        actor = actor or ActorContext()
        name = (
            operation.value
            if isinstance(operation, QueueOperation)
            else str(operation)
        )
        bulk = BulkOperationResult(operation=name)
        for message_id in message_ids:
            bulk.results.append(self.execute(operation, message_id, actor))
        logger.info(
            "Bulk %s by %s: %d of %d succeeded, %d failed",
            name,
            actor,
            bulk.successful_count,
            bulk.total,
            bulk.failed_count,
        )
        return bulk

    @staticmethod
    def _result_for(
        op: QueueOperation, message_id: str, command: CommandResult
    ) -> OperationResult:
        if command.ok:
            return OperationResult(
                operation=op.value,
                message_id=message_id,
                outcome=OperationOutcome.SUCCESS,
                message=_SUCCESS_MESSAGES[op],
                exit_code=command.returncode,
            )
        if command.timed_out or command.error:
            outcome = OperationOutcome.UNKNOWN_FAILURE
        else:
            outcome = classify_failure(command.output)
        return OperationResult(
            operation=op.value,
            message_id=message_id,
            outcome=outcome,
            message=f"{op.value} failed",
            error=command.error or command.output or f"exit code {command.returncode}",
            exit_code=command.returncode,
        )

    def _reject(
        self,
        operation: QueueOperation | str,
        message_id: str,
        actor: ActorContext,
        error: ValidationError,
    ) -> OperationResult:
        try:
            op = validate_operation(operation)
        except ValidationError:
            name = str(operation)
            action = INVALID_OPERATION_ACTION
        else:
            name = op.value
            action = op.audit_action
        logger.warning("Rejected %r for %r by %s: %s", name, message_id, actor, error)
        # The raw values may be hostile; keep them out of indexed columns
        self.audit.record(
            action,
            None,
            actor,
            {
                "operation": name,
                "result": "failure",
                "outcome": OperationOutcome.VALIDATION_ERROR.value,
                "error": str(error),
                "rejected_message_id": message_id,
            },
        )
        return OperationResult(
            operation=name,
            message_id=message_id,
            outcome=OperationOutcome.VALIDATION_ERROR,
            message="Request rejected",
            error=str(error),
        )
