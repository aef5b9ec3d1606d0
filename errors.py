"""Error taxonomy shared by the job manager and the HTTP layer."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    SERVER_BUSY = "server_busy"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    FILESYSTEM_ERROR = "filesystem_error"
    NOT_FOUND = "not_found"


STATUS_CODES = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.SERVER_BUSY: 429,
    ErrorKind.UPSTREAM_UNAVAILABLE: 500,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.PROCESS_FAILURE: 500,
    ErrorKind.FILESYSTEM_ERROR: 500,
    ErrorKind.NOT_FOUND: 404,
}


class JobError(Exception):
    """Base error carrying a kind and the message shown to the caller."""

    kind = ErrorKind.PROCESS_FAILURE

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]


class InvalidInputError(JobError):
    kind = ErrorKind.INVALID_INPUT


class ServerBusyError(JobError):
    kind = ErrorKind.SERVER_BUSY


class UpstreamUnavailableError(JobError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class JobTimeoutError(JobError):
    kind = ErrorKind.TIMEOUT


class MetadataTimeoutError(JobTimeoutError):
    pass


class ProcessFailureError(JobError):
    kind = ErrorKind.PROCESS_FAILURE


class ArtifactNotFoundError(JobError):
    kind = ErrorKind.NOT_FOUND


def error_for(kind: ErrorKind, message: str) -> JobError:
    """Build the most specific exception for ``kind``."""
    classes = {
        ErrorKind.INVALID_INPUT: InvalidInputError,
        ErrorKind.SERVER_BUSY: ServerBusyError,
        ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
        ErrorKind.TIMEOUT: JobTimeoutError,
        ErrorKind.PROCESS_FAILURE: ProcessFailureError,
        ErrorKind.NOT_FOUND: ArtifactNotFoundError,
    }
    cls = classes.get(kind)
    if cls is None:
        return JobError(message, kind)
    return cls(message)
