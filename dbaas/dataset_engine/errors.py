"""
Error kinds raised by the dataset engine.

Every error surfaced by a service is a DatasetError carrying a stable
string code. Background workers additionally wrap errors in RetryableError
to ask the job worker to redeliver the message.

Invariants:
    - Codes are stable identifiers; messages are free text
    - RetryableError never wraps another RetryableError
    - Item-level ingestion errors are aggregated into job error groups,
      they are raised only by foreground single-item operations

How to change safely:
    - Add new codes, never rename existing ones
    - Keep is_retryable() as the only place that classifies retryability
"""

from __future__ import annotations


class DatasetError(Exception):
    """Base exception for dataset engine errors.

    Attributes:
        code: Stable error code
        message: Human-readable message
    """

    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidParamError(DatasetError):
    """Client supplied an invalid argument (bad SemVer, bad schema, ...)."""

    code = "invalid_param"


class NotFoundError(DatasetError):
    """Dataset, version, item or job does not exist."""

    code = "not_found"


class ConcurrentDatasetOperationsError(DatasetError):
    """Optimistic-lock mismatch or operation barrier wait elapsed."""

    code = "concurrent_dataset_operations"


class ItemDataSizeExceededError(DatasetError):
    code = "item_data_size_exceeded"


class SchemaMismatchError(DatasetError):
    code = "schema_mismatch"


class DatasetCapacityFullError(DatasetError):
    code = "dataset_capacity_full"


class IllegalContentError(DatasetError):
    code = "illegal_content"


class MalformedFileError(DatasetError):
    code = "malformed_file"


class EmptyDataError(DatasetError):
    code = "empty_data"


class IncompatibleDatasetSchemaError(DatasetError):
    """Schema change is incompatible and the dataset is not empty."""

    code = "incompatible_dataset_schema"


class DatasetNotEditableError(DatasetError):
    """Dataset status forbids item writes (deleted or expired)."""

    code = "dataset_not_editable"


class InternalError(DatasetError):
    """Unrecoverable or unclassified failure."""

    code = "internal_error"


class RetryableError(DatasetError):
    """Marks a failure that should cause the job message to be redelivered.

    Attributes:
        cause: The wrapped exception
    """

    code = "retryable"

    def __init__(self, cause: BaseException | str) -> None:
        if isinstance(cause, RetryableError):
            cause = cause.cause
        self.cause = cause
        super().__init__(str(cause))


def is_retryable(exc: BaseException) -> bool:
    """Whether an exception asks for message redelivery."""
    return isinstance(exc, RetryableError)


def error_code(exc: BaseException) -> str:
    """Return the code of a DatasetError, looking through RetryableError."""
    if isinstance(exc, RetryableError) and isinstance(exc.cause, BaseException):
        return error_code(exc.cause)
    if isinstance(exc, DatasetError):
        return exc.code
    return InternalError.code
