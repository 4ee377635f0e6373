"""Tests for eximpilot.mediator module."""

import subprocess
from unittest.mock import MagicMock

import pytest

from eximpilot.audit import AuditRecorder
from eximpilot.mediator import (
    INVALID_OPERATION_ACTION,
    OperationOutcome,
    QueueMediator,
    classify_failure,
)
from eximpilot.validation import QueueOperation

MESSAGE_ID = "1rABCD-123456-78"


@pytest.fixture
def mediator(exim, audit):
    return QueueMediator(exim, audit)


class TestClassifyFailure:
    """Tests for mapping Exim error text to outcomes."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ("Spool file not found: 1rABCD-123456-78-H", OperationOutcome.NOT_FOUND),
            ("exim: Permission denied", OperationOutcome.PERMISSION_DENIED),
            ("Message 1rABCD-123456-78 is already frozen", OperationOutcome.ALREADY_IN_STATE),
            ("Message 1rABCD-123456-78 is not frozen", OperationOutcome.ALREADY_IN_STATE),
            ("something odd happened", OperationOutcome.UNKNOWN_FAILURE),
        ],
    )
    def test_classify(self, output, expected):
        assert classify_failure(output) is expected


class TestExecute:
    """Tests for single queue operations."""

    def test_deliver_success(self, mediator, mock_run, repository, actor):
        """A successful deliver runs exim -M and writes one audit row."""
        result = mediator.execute("deliver", MESSAGE_ID, actor)

        assert result.success
        assert result.outcome is OperationOutcome.SUCCESS
        assert result.message == "Delivery attempt started"
        mock_run.assert_called_once()
        argv = mock_run.call_args.args[0]
        assert argv == ["/usr/sbin/exim4", "-M", MESSAGE_ID]
        assert mock_run.call_args.kwargs["shell"] is False

        (entry,) = repository.get_audit_entries()
        assert entry.action == "queue_deliver"
        assert entry.message_id == MESSAGE_ID
        assert entry.user_id == "alice"
        assert entry.ip_address == "198.51.100.7"
        assert entry.details["result"] == "success"

    @pytest.mark.parametrize(
        "operation,flag",
        [
            (QueueOperation.FREEZE, "-Mf"),
            (QueueOperation.THAW, "-Mt"),
            (QueueOperation.DELETE, "-Mrm"),
        ],
    )
    def test_operation_flags(self, mediator, mock_run, actor, operation, flag):
        """Each operation maps to its own fixed flag."""
        mediator.execute(operation, MESSAGE_ID, actor)
        assert mock_run.call_args.args[0][1:] == [flag, MESSAGE_ID]

    def test_not_found(self, mediator, mock_run, repository, actor, make_completed):
        """A missing message is a failure with its own outcome, still audited."""
        mock_run.return_value = make_completed(
            1, stderr="exim: spool file not found: 1rABCD-123456-78-H"
        )
        result = mediator.execute("freeze", MESSAGE_ID, actor)

        assert not result.success
        assert result.outcome is OperationOutcome.NOT_FOUND
        assert result.exit_code == 1
        (entry,) = repository.get_audit_entries()
        assert entry.action == "queue_freeze"
        assert entry.details["result"] == "failure"
        assert entry.details["outcome"] == "not_found"

    def test_timeout(self, mediator, mock_run, repository, actor):
        """A command that times out is an unknown failure."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="exim", timeout=5)
        result = mediator.execute("deliver", MESSAGE_ID, actor)
        assert result.outcome is OperationOutcome.UNKNOWN_FAILURE
        assert "timed out" in result.error
        assert len(repository.get_audit_entries()) == 1

    def test_missing_binary(self, mediator, mock_run, actor):
        """A missing Exim binary is reported as a failure."""
        mock_run.side_effect = FileNotFoundError()
        result = mediator.execute("thaw", MESSAGE_ID, actor)
        assert not result.success
        assert "not found" in result.error

    @pytest.mark.parametrize(
        "message_id",
        [
            "1rABCD-123456-78; rm -rf /",
            "$(reboot)",
            "../../etc/passwd",
            "not-a-message-id",
            "",
        ],
    )
    def test_malformed_id_never_runs_exim(
        self, mediator, mock_run, repository, actor, message_id
    ):
        """Invalid ids are rejected before any process is spawned."""
        result = mediator.execute("delete", message_id, actor)

        assert result.outcome is OperationOutcome.VALIDATION_ERROR
        mock_run.assert_not_called()
        (entry,) = repository.get_audit_entries()
        assert entry.action == "queue_delete"
        assert entry.message_id is None
        assert entry.details["rejected_message_id"] == message_id
        assert entry.details["result"] == "failure"

    def test_unknown_operation(self, mediator, mock_run, repository, actor):
        """Operations outside the allow-list are rejected and audited."""
        result = mediator.execute("purge", MESSAGE_ID, actor)
        assert result.outcome is OperationOutcome.VALIDATION_ERROR
        mock_run.assert_not_called()
        (entry,) = repository.get_audit_entries()
        assert entry.action == INVALID_OPERATION_ACTION
        assert entry.details["operation"] == "purge"

    def test_audit_failure_does_not_fail_operation(self, exim, mock_run, actor):
        """The operation result stands even if the audit row is lost."""
        repository = MagicMock()
        repository.insert_audit.side_effect = RuntimeError("database is locked")
        mediator = QueueMediator(exim, AuditRecorder(repository))
        result = mediator.execute("deliver", MESSAGE_ID, actor)
        assert result.success
        repository.insert_audit.assert_called_once()


class TestExecuteBulk:
    """Tests for bulk operations."""

    def test_one_audit_row_per_id(self, mediator, mock_run, repository, actor, make_completed):
        """Each id is run and audited on its own; failures are counted."""
        ids = ["1rAAAA-111111-11", "1rBBBB-222222-22", "bad id", "1rCCCC-333333-33"]
        mock_run.side_effect = [
            make_completed(0),
            make_completed(1, stderr="spool file not found"),
            make_completed(0),
        ]

        bulk = mediator.execute_bulk(QueueOperation.FREEZE, ids, actor)

        assert bulk.total == 4
        assert bulk.successful_count == 2
        assert bulk.failed_count == 2
        assert mock_run.call_count == 3
        assert len(bulk.errors) == 2
        assert bulk.errors[0].startswith("1rBBBB-222222-22")
        entries = repository.get_audit_entries()
        assert len(entries) == 4
        assert {e.action for e in entries} == {"queue_freeze"}

    def test_empty_bulk(self, mediator, mock_run, actor):
        """An empty list does nothing."""
        bulk = mediator.execute_bulk("deliver", [], actor)
        assert bulk.total == 0
        mock_run.assert_not_called()
