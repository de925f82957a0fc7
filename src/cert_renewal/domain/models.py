"""
Domain models — certificate records, policy, history and renewal outcomes.

Two kinds of model live here:

  - Persisted documents (CertificateRecord, RenewalPolicyConfig, HistoryRecord)
    are pydantic models. Each field states its own defaulting rule, so a
    partially broken document degrades field by field instead of failing
    as a whole.
  - Ephemeral values (RenewalJob, RenewalOutcome, AcmeAccount, ...) are plain
    dataclasses that never leave the process.

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_validator,
)

from cert_renewal.railway.failure import ErrorCode

DEFAULT_THRESHOLD_DAYS = 30
DEFAULT_CHECK_INTERVAL_MS = 24 * 60 * 60 * 1000


def utcnow() -> datetime:
    return datetime.now(UTC)


def coerce_timestamp(value: Any) -> datetime | None:
    """
    Parse a persisted timestamp, returning None when it is missing or malformed.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings and
    epoch milliseconds.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def field_spellings(model: type[BaseModel], name: str) -> tuple[str, ...]:
    """Every key a stored document may use for `name`, preferred spelling first."""
    alias = model.model_fields[name].validation_alias
    if isinstance(alias, AliasChoices):
        return tuple(choice for choice in alias.choices if isinstance(choice, str))
    return (name,)


def normalize_domains(value: Any) -> list[str]:
    """Accept "a.com, b.com" or ["a.com", "b.com"] and return a clean list."""
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        items = list(value)
    else:
        return []
    return [str(item).strip() for item in items if item is not None and str(item).strip()]


# ─────────────────────── Enumerations ───────────────────────


class RenewalStatus(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"
    MANUAL_REQUIRED = "manual_required"


class CertificateStatus(StrEnum):
    VALID = "valid"
    NEEDS_RENEWAL = "needs_renewal"
    EXPIRED = "expired"


class HistoryStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    IN_PROGRESS = "in_progress"
    MANUAL_REQUIRED = "manual_required"


class JobStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MANUAL_REQUIRED = "manual_required"
    FAILURE = "failure"


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    MANUAL_REQUIRED = "manual_required"
    FAILURE = "failure"
    IN_PROGRESS = "in_progress"


class OrchestratorState(StrEnum):
    """Per-attempt states of the renewal orchestrator."""

    IDLE = "idle"
    CHECKING_CAPABILITY = "checking_capability"
    LOADING_DIRECTORY = "loading_directory"
    ENSURING_ACCOUNT = "ensuring_account"
    CREATING_ORDER = "creating_order"
    CHECKING_AUTHORIZATIONS = "checking_authorizations"
    FINALIZING = "finalizing"
    DOWNLOADING = "downloading"
    SUCCESS = "success"
    MANUAL_REQUIRED = "manual_required"
    FAILED = "failed"


# ─────────────────────── Persisted documents ───────────────────────


class CertificateRecord(BaseModel):
    """
    One issued certificate as kept in the certificate store.

    `identity` is the record's position in the stored collection and is
    assigned by the store on read; it is never serialized. The PEM blobs are
    opaque: only their presence is ever checked.

    Older documents used short keys (`cert`, `key`, `time`, ...); those are
    still accepted on read, and to_document(original) writes a field back
    under whichever spelling the stored entry used. Keys the model does not
    know about (a host's `autoRenewal` flag, say) are kept the same way.
    """

    model_config = ConfigDict(extra="ignore")

    identity: int = Field(default=0, exclude=True)
    domains: list[str] = Field(default_factory=list)
    certificate_pem: str = Field(
        default="", validation_alias=AliasChoices("certificate_pem", "cert")
    )
    private_key_pem: str = Field(
        default="", validation_alias=AliasChoices("private_key_pem", "key")
    )
    issued_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("issued_at", "time")
    )
    renewal_status: RenewalStatus = Field(
        default=RenewalStatus.IDLE,
        validation_alias=AliasChoices("renewal_status", "renewalStatus"),
    )
    last_renewal_attempt_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_renewal_attempt_at", "lastRenewalAttempt"),
    )
    last_renewal_success_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_renewal_success_at", "lastRenewalSuccess"),
    )
    manual_action_url: str | None = Field(
        default=None, validation_alias=AliasChoices("manual_action_url", "renewalUrl")
    )

    @field_validator("domains", mode="before")
    @classmethod
    def _parse_domains(cls, value: Any) -> list[str]:
        return normalize_domains(value)

    @field_validator("certificate_pem", "private_key_pem", mode="before")
    @classmethod
    def _parse_blob(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator(
        "issued_at", "last_renewal_attempt_at", "last_renewal_success_at", mode="before"
    )
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime | None:
        return coerce_timestamp(value)

    @field_validator("renewal_status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> RenewalStatus:
        try:
            return RenewalStatus(value)
        except ValueError:
            return RenewalStatus.IDLE

    @field_validator("manual_action_url", mode="before")
    @classmethod
    def _parse_url(cls, value: Any) -> str | None:
        return value if isinstance(value, str) and value else None

    @property
    def domain_key(self) -> str:
        """Comma-joined domain set — the key used by policy and history."""
        return ",".join(self.domains)

    def to_document(self, original: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """JSON-ready representation for the persisted collection, laid over `original`."""
        values = self.model_dump(mode="json")
        if original is None:
            return values
        document = dict(original)
        if isinstance(document.get("domains"), str):
            values["domains"] = self.domain_key
        for name, value in values.items():
            present = [key for key in field_spellings(type(self), name) if key in document]
            for duplicate in present[1:]:
                del document[duplicate]
            document[present[0] if present else name] = value
        return document


class DomainSetting(BaseModel):
    """Per-domain override. Absence of an entry means "inherit global"."""

    model_config = ConfigDict(extra="ignore")

    enabled: StrictBool = True
    last_check: datetime | None = Field(
        default=None, validation_alias=AliasChoices("last_check", "lastCheck")
    )
    last_renewal: datetime | None = Field(
        default=None, validation_alias=AliasChoices("last_renewal", "lastRenewal")
    )

    @field_validator("last_check", "last_renewal", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime | None:
        return coerce_timestamp(value)


class RenewalPolicyConfig(BaseModel):
    """
    Persisted auto-renewal policy.

    Field defaults:
      enabled        → False (explicit opt-in)
      threshold      → 30 days, must lie in [1, 60]
      check_interval → 24h in milliseconds, at least one second
      per_domain     → {} (every domain inherits the global switch)

    The camelCase keys of older documents (`checkInterval`, `certSettings`,
    `lastCheck`, `lastRenewal`) are accepted on read; writes use the names
    above.
    """

    model_config = ConfigDict(extra="ignore")

    enabled: StrictBool = False
    threshold: int = Field(default=DEFAULT_THRESHOLD_DAYS, ge=1, le=60)
    check_interval: int = Field(
        default=DEFAULT_CHECK_INTERVAL_MS,
        ge=1000,
        validation_alias=AliasChoices("check_interval", "checkInterval"),
    )
    per_domain: dict[str, DomainSetting] = Field(
        default_factory=dict, validation_alias=AliasChoices("per_domain", "certSettings")
    )

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval / 1000


class HistoryRecord(BaseModel):
    """One audit entry. Created by the history log and never mutated."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    domain: str
    timestamp: datetime
    status: HistoryStatus
    error: str | None = None
    old_expiry: datetime | None = None
    new_expiry: datetime | None = None


# ─────────────────────── Ephemeral values ───────────────────────


@dataclass(frozen=True, slots=True)
class AcmeAccount:
    """Account material the orchestrator needs before touching the network."""

    directory_url: str
    account_key: str | None = field(default=None, repr=False)
    contact_email: str | None = None


@dataclass(frozen=True, slots=True)
class OrderHandle:
    """Opaque reference to an ACME order, produced and consumed by the engine."""

    url: str
    domains: tuple[str, ...]
    payload: Any = field(default=None, repr=False, compare=False)


@dataclass(slots=True)
class RenewalJob:
    """
    One renewal attempt for one certificate.

    Lives for the duration of a single scheduler tick; only its history
    entries outlast it.
    """

    domain: str
    identity: int
    id: str = field(default_factory=lambda: f"renewal-{uuid4().hex[:12]}")
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result_certificate: str | None = field(default=None, repr=False)
    manual_action_url: str | None = None

    def start(self, now: datetime) -> None:
        self.status = JobStatus.IN_PROGRESS
        self.started_at = now

    def finish(self, status: JobStatus, now: datetime, error: str | None = None) -> None:
        self.status = status
        self.completed_at = now
        self.error = error


@dataclass(frozen=True, slots=True)
class RenewalOutcome:
    """
    Result of one orchestrator attempt.

    Only SUCCESS carries certificate material; MANUAL_REQUIRED carries the
    domains still awaiting validation and where the user can complete it.
    """

    kind: OutcomeKind
    message: str = ""
    certificate_pem: str | None = field(default=None, repr=False)
    private_key_pem: str | None = field(default=None, repr=False)
    completed_at: datetime | None = None
    pending_domains: tuple[str, ...] = ()
    manual_action_url: str | None = None
    error_code: ErrorCode | None = None

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True, slots=True)
class RenewalStatistics:
    total: int = 0
    success: int = 0
    failure: int = 0
    in_progress: int = 0
    manual_required: int = 0


@dataclass(frozen=True, slots=True)
class SchedulerStatus:
    """Read-only snapshot returned by RenewalScheduler.get_status()."""

    is_running: bool
    config: RenewalPolicyConfig
    statistics: RenewalStatistics
