"""
Exception taxonomy for the upload engine.

Every error raised out of a network step carries an ``ErrorClass`` so the
retry policy can decide whether to try again. Errors tied to one part also
carry that part's index.
"""

from enum import Enum


class ErrorClass(Enum):
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    SERVER_ERROR = "server_error"
    THROTTLED = "throttled"
    AUTHORIZATION = "authorization"
    BAD_REQUEST = "bad_request"
    CHECKSUM_MISMATCH = "checksum_mismatch"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = {
    ErrorClass.TIMEOUT,
    ErrorClass.CONNECTION_RESET,
    ErrorClass.SERVER_ERROR,
    ErrorClass.THROTTLED,
}


class UploadError(Exception):
    """Base class for every error surfaced by the engine."""

    def __init__(
        self,
        message: str,
        error_class: ErrorClass | None = None,
        part_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_class = error_class
        self.part_index = part_index

    @property
    def retryable(self) -> bool:
        return self.error_class is not None and self.error_class.retryable


class FileAccessError(UploadError):
    """The source cannot be opened or read."""


class InvalidInputError(UploadError, ValueError):
    """Bad file size or part size."""


class ConfigError(UploadError, ValueError):
    """Configuration failed validation. ``problems`` lists every issue found."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Invalid upload configuration: " + "; ".join(problems))
        self.problems = list(problems)


class ServiceError(UploadError):
    """A remote call failed."""

    def __init__(
        self,
        message: str,
        error_class: ErrorClass,
        part_index: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, error_class=error_class, part_index=part_index)
        self.status_code = status_code


class StartError(ServiceError):
    pass


class CredentialError(ServiceError):
    pass


class TransferError(ServiceError):
    pass


class CommitError(ServiceError):
    pass


class CompleteError(ServiceError):
    pass


class UploadCancelled(UploadError):
    """A part noticed the cancel signal. Never surfaced to callers."""


class PartialUploadFailure(UploadError):
    """One part failed for good, so the whole upload was abandoned."""

    def __init__(self, cause: UploadError, committed_parts: int, total_parts: int) -> None:
        msg = (
            f"Upload failed on part {cause.part_index} "
            f"({committed_parts}/{total_parts} parts committed): {cause}"
        )
        super().__init__(msg, error_class=cause.error_class, part_index=cause.part_index)
        self.cause = cause
        self.committed_parts = committed_parts
        self.total_parts = total_parts
