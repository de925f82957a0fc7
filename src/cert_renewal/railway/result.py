"""
Result type — the failure track every renewal step travels on.

A Result[T] is either Success(value: T) or Failure(error: FailureDescription).
Steps return Result instead of raising, so the orchestrator chains them with
.flat_map() and the first failing step short-circuits the rest:

    load_directory ──Success──▶ ensure_account ──Success──▶ create_order ──▶ ...
          │ Failure                   │ Failure                  │ Failure
          └───────────────────────────┴──────────────────────────┴──▶ Result[T]

Each track implements every operation itself; Result only declares them and
holds the static factories.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from cert_renewal.railway.failure import ErrorCode, FailureDescription

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


class Result(Generic[T]):
    """
    Either Success(value) or Failure(FailureDescription).

        >>> Result.success(42).map(lambda x: x * 2).value()
        84
        >>> Result.failure(ErrorCode.ORDER_ERROR, "boom").map(lambda x: x * 2).is_failure()
        True
    """

    def is_success(self) -> bool:
        raise NotImplementedError

    def is_failure(self) -> bool:
        return not self.is_success()

    def value(self) -> T:
        """Extract the success value. Raises ValueError on a Failure."""
        raise NotImplementedError

    def error(self) -> FailureDescription:
        """Extract the failure description. Raises ValueError on a Success."""
        raise NotImplementedError

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        """Collapse both tracks into one value."""
        raise NotImplementedError

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        raise NotImplementedError

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """Chain a Result-returning step. Short-circuits on failure."""
        raise NotImplementedError

    def ensure(self, predicate: Callable[[T], bool], code: ErrorCode, message: str) -> Result[T]:
        """Move to the failure track when the success value fails `predicate`."""
        return self.flat_map(
            lambda v: self if predicate(v) else Result.failure(code, message)
        )

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Run a side effect on the success value (logging, state tracking)."""
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        return self

    def recover(self, recovery_fn: Callable[[FailureDescription], T]) -> Result[T]:
        return self

    def get_or_else(self, default: T) -> T:
        return self.either(lambda v: v, lambda _: default)

    def __bool__(self) -> bool:
        return self.is_success()

    # ─────────────────────── Factories ───────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        """
        Create a failed Result.

            Result.failure(ErrorCode.CAPABILITY_ERROR, "Contact email not configured")
        """
        return Failure(FailureDescription(code=code, message=message, exception=exception))

    @staticmethod
    def failure_from(error: FailureDescription) -> Result[T]:
        return Failure(error)

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Run a computation that may raise and capture any exception as a Failure.

            return Result.from_computation(
                lambda: json.loads(raw),
                ErrorCode.STORAGE_ERROR,
                "Renewal history document is not valid JSON",
            )
        """
        try:
            return Success(computation())
        except Exception as e:
            return Result.failure(error_code, error_message, e)

    @staticmethod
    def from_optional(
        value: T | None,
        error_message: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> Result[T]:
        if value is None:
            return Result.failure(error_code, error_message)
        return Success(value)


@dataclass(frozen=True, slots=True, init=False)
class Success(Result[T]):
    """The success track. Never wraps None."""

    _value: T

    __match_args__ = ("_value",)

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)

    def is_success(self) -> bool:
        return True

    def value(self) -> T:
        return self._value

    def error(self) -> FailureDescription:
        raise ValueError(f"Cannot get error from a Success: {self._value!r}")

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        return on_success(self._value)

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        return Success(mapper(self._value))

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        return mapper(self._value)

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        action(self._value)
        return self

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


@dataclass(frozen=True, slots=True, init=False, eq=False)
class Failure(Result[T]):
    """The failure track. Equal to another Failure with the same code and message."""

    _error: FailureDescription

    __match_args__ = ("_error",)

    def __init__(self, error: FailureDescription) -> None:
        if error is None:
            raise TypeError("Failure error must not be None")
        object.__setattr__(self, "_error", error)

    def is_success(self) -> bool:
        return False

    def value(self) -> T:
        raise ValueError(f"Cannot get value from a Failure: {self._error.message}")

    def error(self) -> FailureDescription:
        return self._error

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        return on_failure(self._error)

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        return Failure(self._error)

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        return Failure(self._error)

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        action(self._error)
        return self

    def recover(self, recovery_fn: Callable[[FailureDescription], T]) -> Result[T]:
        return Success(recovery_fn(self._error))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Failure):
            return NotImplemented
        return (self._error.code, self._error.message) == (other._error.code, other._error.message)

    def __hash__(self) -> int:
        return hash((self._error.code, self._error.message))

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"
