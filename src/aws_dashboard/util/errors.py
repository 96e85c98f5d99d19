from __future__ import annotations

from enum import Enum, IntEnum
from typing import Iterable


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    AWS_ERROR = 4
    RUNTIME_ERROR = 5
    CANCELLED = 6


class ErrorKind(str, Enum):
    """
    Classification attached to executor failures.

    SKIPPABLE failures are confined to one region (rejected credentials or an
    unreachable regional endpoint) and may be dropped from a multi-region
    aggregate. Everything else is FATAL.
    """

    SKIPPABLE = "skippable"
    FATAL = "fatal"


# Matched case-insensitively against the CLI's stderr.
SKIPPABLE_ERROR_PHRASES = (
    "authfailure",
    "not able to validate the provided access credentials",
    "invalidclienttokenid",
    "could not connect to the endpoint url",
)


class DashboardError(Exception):
    """Base error for the dashboard backend."""


class ConfigError(DashboardError):
    """Raised for configuration or argument issues."""


class CommandError(DashboardError):
    """Raised when an aws CLI invocation fails."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.FATAL) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def skippable(self) -> bool:
        return self.kind is ErrorKind.SKIPPABLE


class OutputParseError(DashboardError):
    """Raised when aws CLI output cannot be parsed."""


class OperationCancelled(DashboardError):
    """Raised when a cancel token fires or its deadline passes."""


class CostExplorerDisabledError(DashboardError):
    """Raised when Cost Explorer is not enabled for the account."""

    def __init__(self, message: str = "aws cost explorer is not enabled for this account") -> None:
        super().__init__(message)


class ProfileError(DashboardError):
    """Raised for invalid profile operations or rejected credentials."""


class UnknownCommandError(DashboardError):
    """Raised when a configured command id does not exist."""


def classify_error_message(message: str, phrases: Iterable[str] = SKIPPABLE_ERROR_PHRASES) -> ErrorKind:
    lowered = (message or "").lower()
    if any(p in lowered for p in phrases):
        return ErrorKind.SKIPPABLE
    return ErrorKind.FATAL


def is_skippable(exc: BaseException) -> bool:
    return isinstance(exc, CommandError) and exc.skippable


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, ProfileError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, OperationCancelled):
        return int(ExitCode.CANCELLED)
    if isinstance(exc, (CommandError, CostExplorerDisabledError)):
        return int(ExitCode.AWS_ERROR)
    if isinstance(exc, DashboardError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def http_status_for(exc: BaseException) -> int:
    if isinstance(exc, CostExplorerDisabledError):
        return 503
    if isinstance(exc, (ProfileError, UnknownCommandError, ConfigError)):
        return 400
    return 500
