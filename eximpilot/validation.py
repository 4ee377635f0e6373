"""Input validation for anything that ends up on an Exim command line."""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator

from eximpilot.errors import ValidationError
from eximpilot.parser import check_message_id_valid

logger = logging.getLogger("eximpilot.validation")

# Characters with a meaning to a shell, plus newline and NUL
DANGEROUS_CHARACTERS = frozenset(";&|`$()<>\"'\n\0")

MAX_BULK_MESSAGES = 100


class QueueOperation(Enum):
    """Operations that may be run against the Exim spool."""

    DELIVER = "deliver"
    FREEZE = "freeze"
    THAW = "thaw"
    DELETE = "delete"

    @property
    def audit_action(self) -> str:
        return f"queue_{self.value}"


def validate_operation(operation: QueueOperation | str) -> QueueOperation:
    """Return the operation if it is in the allow-list."""
    if isinstance(operation, QueueOperation):
        return operation
    try:
        return QueueOperation(operation)
    except ValueError:
        allowed = ", ".join(op.value for op in QueueOperation)
        raise ValidationError(
            "operation", f"invalid operation (allowed: {allowed})", operation
        ) from None


def validate_argument(field: str, value: str) -> str:
    """
    Reject values that could change the meaning of a command line.

    Args:
        field: Name used in the error
        value: The argument to check

    Returns:
        str: The value unchanged

    Raises:
        ValidationError: If the value contains a shell metacharacter or ``..``
    """
    bad = sorted(set(value) & DANGEROUS_CHARACTERS)
    if bad:
        raise ValidationError(
            field, f"contains forbidden characters: {''.join(bad)!r}", value
        )
    if ".." in value:
        raise ValidationError(field, "contains a path traversal sequence", value)
    return value


def validate_message_id(message_id: str) -> str:
    """
    Check a message id before it is passed to Exim.

    Raises:
        ValidationError: If the id is empty, unsafe or not a message id
    """
    if not message_id:
        raise ValidationError("message_id", "message ID is required")
    validate_argument("message_id", message_id)
    if not check_message_id_valid(message_id):
        raise ValidationError(
            "message_id", "invalid message ID format", message_id
        )
    return message_id


def validate_operation_request(
    operation: QueueOperation | str, message_id: str
) -> tuple[QueueOperation, str]:
    """Validate an operation and its target, raising on the first problem."""
    return validate_operation(operation), validate_message_id(message_id)


class OperationRequest(BaseModel):
    """A single queue operation as received from a user interface."""

    model_config = ConfigDict(frozen=True)

    operation: QueueOperation
    message_id: str = Field(..., min_length=1)

    @field_validator("message_id")
    @classmethod
    def check_message_id(cls, v: str) -> str:
        try:
            return validate_message_id(v)
        except ValidationError as e:
            raise ValueError(e.message) from e


class BulkOperationRequest(BaseModel):
    """A queue operation applied to several messages.

    Only the shape of the request is checked here; each id is validated (and
    audited) on its own when the operation runs.
    """

    model_config = ConfigDict(frozen=True)

    operation: QueueOperation
    message_ids: list[str] = Field(
        ..., min_length=1, max_length=MAX_BULK_MESSAGES
    )


class ActorInput(BaseModel):
    """Who asked for an operation."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: Optional[str] = Field(default=None, max_length=128)
    ip_address: Optional[IPvAnyAddress] = None

    @field_validator("user_id")
    @classmethod
    def check_user_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        if set(v) & DANGEROUS_CHARACTERS:
            raise ValueError("user id contains forbidden characters")
        return v or None
