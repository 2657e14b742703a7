"""Error taxonomy shared by the aggregator operations and front ends."""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Classification of operation failures."""
    IN_PROGRESS = "in_progress"
    NOT_FOUND = "not_found"
    FAILED_PRECONDITION = "failed_precondition"
    INTERNAL = "internal"


class AggregatorError(Exception):
    """Base class for classified aggregator failures."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InProgressError(AggregatorError):
    """An operation of the requested type is already running."""
    code = ErrorCode.IN_PROGRESS


class NotFoundError(AggregatorError):
    """A referenced entity does not exist."""
    code = ErrorCode.NOT_FOUND


class FailedPreconditionError(AggregatorError):
    """The request is structurally invalid."""
    code = ErrorCode.FAILED_PRECONDITION


def error_code(error: BaseException) -> ErrorCode:
    """Return the classification of any exception."""
    if isinstance(error, AggregatorError):
        return error.code
    return ErrorCode.INTERNAL
