"""
Railway-oriented error handling for the renewal engine.

    from cert_renewal.railway import Result, ErrorCode

    def require_email(email: str | None) -> Result[str]:
        return Result.from_optional(email, "Contact email not configured", ErrorCode.CAPABILITY_ERROR)
"""

from cert_renewal.railway.assertions import ResultAssertions
from cert_renewal.railway.execution import (
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
)
from cert_renewal.railway.failure import ErrorCode, FailureDescription
from cert_renewal.railway.result import Failure, Result, Success

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]
