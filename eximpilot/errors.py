class EximPilotError(Exception):
    """Base class for eximpilot errors."""


class ValidationError(EximPilotError, ValueError):
    """A request was rejected before reaching the Exim binary.

    Attributes:
        field: Name of the offending input
        message: Human readable reason
        value: The rejected value, if any
    """

    def __init__(self, field: str, message: str, value: object = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class StoreError(EximPilotError):
    """The repository could not complete a read or write."""


class EximError(EximPilotError):
    """The Exim binary could not be run or reported a failure."""


class ConfigError(EximPilotError, ValueError):
    """Configuration is missing or invalid."""
