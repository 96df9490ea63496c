"""
Result-or-error types shared by the service layer.

Service operations never raise for expected failures. They return a
ServiceResult whose error_code places the failure in the error taxonomy,
and whose error string is safe to show to the end user.
"""

from enum import Enum
from typing import Any, NamedTuple, Optional, Tuple


class ErrorCode(Enum):
    """Failure taxonomy for service operations"""
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION = "validation"
    EXTERNAL_FAILURE = "external_failure"
    DATABASE = "database"


class ServiceResult(NamedTuple):
    """Outcome of a service operation"""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    warnings: Tuple[str, ...] = ()


def ok(data: Any = None, warnings=()) -> ServiceResult:
    return ServiceResult(success=True, data=data, warnings=tuple(warnings))


def fail(error_code: ErrorCode, error: str, data: Any = None) -> ServiceResult:
    return ServiceResult(success=False, data=data, error=error, error_code=error_code)


def not_found(entity: str) -> ServiceResult:
    return fail(ErrorCode.NOT_FOUND, f"{entity} not found")


DATABASE_ERROR_MESSAGE = "A database error occurred. Please try again."
