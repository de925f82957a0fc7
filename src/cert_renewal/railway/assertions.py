"""
Test assertions for Result values.

    value = ResultAssertions.assert_success(result)
    error = ResultAssertions.assert_failure(result, ErrorCode.CAPABILITY_ERROR)
"""

from __future__ import annotations

from typing import TypeVar

from cert_renewal.railway.failure import ErrorCode, FailureDescription
from cert_renewal.railway.result import Result

T = TypeVar("T")


def _suffix(message: str) -> str:
    return f" ({message})" if message else ""


class ResultAssertions:
    @staticmethod
    def assert_success(result: Result[T], message: str = "") -> T:
        """Fail the test unless `result` is a Success; return its value."""
        if result.is_failure():
            error = result.error()
            raise AssertionError(
                f"expected Success, got {error.code.value}: {error.describe()!r}{_suffix(message)}"
            )
        return result.value()

    @staticmethod
    def assert_failure(
        result: Result[T],
        expected_code: ErrorCode | None = None,
        message: str = "",
    ) -> FailureDescription:
        """Fail the test unless `result` is a Failure (with `expected_code`, if given)."""
        if result.is_success():
            raise AssertionError(f"expected Failure, got Success({result.value()!r}){_suffix(message)}")
        error = result.error()
        if expected_code is not None and error.code is not expected_code:
            raise AssertionError(
                f"expected {expected_code.value}, got {error.code.value}: "
                f"{error.message!r}{_suffix(message)}"
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        error = ResultAssertions.assert_failure(result)
        if substring.lower() not in error.message.lower():
            raise AssertionError(f"{substring!r} not found in failure message {error.message!r}")
