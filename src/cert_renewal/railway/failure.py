"""
Failure description — structured error information for the failure track.

Every renewal step reports problems as an ErrorCode plus a human-readable
message. The code, not the message text, decides how the orchestrator
classifies a failure:

  - requires_manual_action=True  → the attempt ends as `manual_required`
  - requires_manual_action=False → the attempt ends as `failure`
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """
    Error codes for the renewal failure track.

    Grouped by where the failure originates:
    - Pre-network: CAPABILITY, VALIDATION
    - ACME protocol: DIRECTORY, ACCOUNT, ORDER, AUTHORIZATION_PENDING, FINALIZE
    - Local infrastructure: STORAGE, NOTIFICATION, TECHNICAL
    """

    CAPABILITY_ERROR = "CAPABILITY_ERROR"
    """Account key, contact email, private key or domain list missing."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Rejected input, e.g. a policy document outside its allowed ranges."""

    DIRECTORY_ERROR = "DIRECTORY_ERROR"
    """ACME directory could not be fetched or parsed."""

    ACCOUNT_ERROR = "ACCOUNT_ERROR"
    """Account registration or lookup failed."""

    ORDER_ERROR = "ORDER_ERROR"
    """New order creation or authorization lookup failed."""

    AUTHORIZATION_PENDING = "AUTHORIZATION_PENDING"
    """A domain lacks a valid (cached) authorization; a human must validate it."""

    FINALIZE_ERROR = "FINALIZE_ERROR"
    """Order finalization or certificate download failed."""

    STORAGE_ERROR = "STORAGE_ERROR"
    """Persisted document unavailable or malformed."""

    NOTIFICATION_ERROR = "NOTIFICATION_ERROR"
    """Outbound notification could not be delivered."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Unexpected failure with no better classification."""

    @property
    def requires_manual_action(self) -> bool:
        """True when the failure can only be resolved by a human completing validation."""
        return self is ErrorCode.AUTHORIZATION_PENDING


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.ORDER_ERROR, "newOrder returned 500")
    >>> desc.code
    <ErrorCode.ORDER_ERROR: 'ORDER_ERROR'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"

    def describe(self) -> str:
        """Message with the underlying exception text appended, for audit records."""
        if self.exception is None or str(self.exception) in self.message:
            return self.message
        return f"{self.message}: {self.exception}"
