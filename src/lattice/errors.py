"""Error taxonomy and process exit codes.

Every failure that reaches the command line is a LatticeError subclass
carrying the exit code the process should end with.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes shared by ltc and the cell helpers."""

    SUCCESS = 0
    INVALID_SYNTAX = 1
    COMMAND_FAILED = 2
    HELPER_ABORT = 3
    SIGNAL = 130


# Exit code aliases used by the cell helpers.
FILE_SYSTEM_ERROR = ExitCode.COMMAND_FAILED
CHILD_FAILED = ExitCode.HELPER_ABORT


class LatticeError(Exception):
    """Base class for every error surfaced to the user."""

    exit_code: ExitCode = ExitCode.COMMAND_FAILED

    def __init__(self, message: str, exit_code: ExitCode | None = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class UsageError(LatticeError):
    """Missing or malformed argument or flag."""

    exit_code = ExitCode.INVALID_SYNTAX


class ConfigMissingError(LatticeError):
    """The config file does not exist. Callers treat this as defaults."""


class ConfigMalformedError(LatticeError):
    """The config file exists but cannot be read or parsed."""


class NetworkError(LatticeError):
    """Transport failure talking to the orchestrator, blob store or log bus."""


class NetworkTimeoutError(NetworkError):
    """A call ran past its deadline. Never retried: the caller gets it at once."""


# Orchestrator error type names, as sent in the "name" field of error bodies.
DESIRED_LRP_NOT_FOUND = "DesiredLRPNotFound"
DESIRED_LRP_ALREADY_EXISTS = "DesiredLRPAlreadyExists"
ACTUAL_LRP_NOT_FOUND = "ActualLRPNotFound"
TASK_NOT_FOUND = "TaskNotFound"
UNAUTHORIZED = "Unauthorized"
INVALID_RESPONSE = "InvalidResponse"
ROUTER_ERROR = "RouterError"
UNKNOWN_ERROR = "UnknownError"


class OrchestratorError(LatticeError):
    """Typed error returned by the orchestrator API."""

    def __init__(self, error_type: str, message: str):
        super().__init__(message)
        self.error_type = error_type

    @property
    def is_not_found(self) -> bool:
        return self.error_type in (DESIRED_LRP_NOT_FOUND, ACTUAL_LRP_NOT_FOUND, TASK_NOT_FOUND)

    def __str__(self) -> str:
        return self.message


class AppNotFoundError(LatticeError):
    """Neither a desired record nor any instances exist for an app."""

    def __init__(self, message: str = "App not found."):
        super().__init__(message)


class BlobStatusError(LatticeError):
    """Non-success HTTP status from a blob backend.

    The URL must already be sanitized; the message is shown to the user.
    """

    def __init__(self, operation: str, url: str, status: str):
        super().__init__(f"Error {operation} {url}: {status}")
        self.operation = operation
        self.url = url
        self.status = status


class ChildFailedError(LatticeError):
    """A supervised child process exited non-zero or failed to start."""

    exit_code = ExitCode.HELPER_ABORT

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode
