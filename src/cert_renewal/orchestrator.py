"""
Renewal orchestrator — one renewal attempt for one certificate.

Sequences the ACME engine steps on the Result track and turns the end of the
track into a RenewalOutcome:

  check capability
    → load directory
      → ensure account
        → create order
          → check authorizations ── any domain not `valid` ──▶ MANUAL_REQUIRED
            → finalize order + download                      ▶ SUCCESS

Any failing step short-circuits to FAILURE, except failures whose ErrorCode
requires manual action (a lapsed authorization), which become
MANUAL_REQUIRED. Challenge completion is never attempted: when the issuer no
longer holds a cached authorization, a human has to validate the domain.

The orchestrator never writes to the certificate store; the caller persists
whatever the outcome implies. A call made while another attempt is running on
the same instance returns an IN_PROGRESS outcome immediately. Callers that
must not touch shared state for a busy orchestrator take the guard first:

    with orchestrator.reserve() as reserved:
        if reserved:
            ...  # mark in_progress, then
            outcome = orchestrator.attempt(record)
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar
from urllib.parse import quote

import structlog

from cert_renewal.domain.models import (
    AcmeAccount,
    CertificateRecord,
    OrchestratorState,
    OrderHandle,
    OutcomeKind,
    RenewalOutcome,
    utcnow,
)
from cert_renewal.domain.ports import AcmeEngine
from cert_renewal.railway import ErrorCode, FailureDescription, Result

T = TypeVar("T")
log = structlog.get_logger()

DEFAULT_MANUAL_RENEWAL_URL = "/?autoRenew=1&domain={domains}"
AUTHORIZATION_VALID = "valid"

ProgressCallback = Callable[[OrchestratorState, str], None]


class AuthorizationPendingError(Exception):
    """Carries the domains whose authorization is not (or no longer) valid."""

    def __init__(self, domains: list[str]) -> None:
        super().__init__(f"Domain validation required for: {', '.join(domains)}")
        self.domains = tuple(domains)


class RenewalOrchestrator:
    """
    Drive a single renewal attempt through the injected AcmeEngine.

    Args:
        engine: ACME protocol engine implementing the step contract.
        account: Directory URL, account key and contact email.
        manual_url_template: Where a user completes validation by hand;
            `{domains}` is replaced with the URL-quoted domain set.
        clock: Source of "now" for the completion timestamp.
        on_progress: Optional hook called on every state transition.
    """

    def __init__(
        self,
        engine: AcmeEngine,
        account: AcmeAccount,
        manual_url_template: str = DEFAULT_MANUAL_RENEWAL_URL,
        clock: Callable[[], datetime] = utcnow,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._engine = engine
        self._account = account
        self._manual_url_template = manual_url_template
        self._clock = clock
        self._on_progress = on_progress
        self._lock = threading.Lock()
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_renewing(self) -> bool:
        return self._lock.locked()

    def manual_action_url(self, record: CertificateRecord) -> str:
        # Only `{domains}` is a placeholder; any other brace is literal text.
        return self._manual_url_template.replace(
            "{domains}", quote(record.domain_key, safe="")
        )

    @contextmanager
    def reserve(self) -> Iterator[bool]:
        """
        Hold the re-entrancy guard for the duration of the block.

        Yields False, without waiting, when another attempt holds it.
        """
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()

    def renew(self, record: CertificateRecord) -> RenewalOutcome:
        """Attempt one renewal. Never raises."""
        with self.reserve() as reserved:
            if not reserved:
                log.info("orchestrator.already_running", domain=record.domain_key)
                return RenewalOutcome(
                    kind=OutcomeKind.IN_PROGRESS, message="Renewal already in progress"
                )
            return self.attempt(record)

    # ─────────────────────── Pipeline ───────────────────────

    def attempt(self, record: CertificateRecord) -> RenewalOutcome:
        """Run the pipeline. The caller must already hold reserve()."""
        log.info("orchestrator.started", domain=record.domain_key)
        account = self._account
        private_key = record.private_key_pem
        return (
            self._check_capability(record)
            .flat_map(
                lambda _: self._step(
                    OrchestratorState.LOADING_DIRECTORY,
                    ErrorCode.DIRECTORY_ERROR,
                    lambda: self._engine.load_directory(account.directory_url),
                )
            )
            .flat_map(
                lambda _: self._step(
                    OrchestratorState.ENSURING_ACCOUNT,
                    ErrorCode.ACCOUNT_ERROR,
                    lambda: self._engine.ensure_account(
                        account.account_key or "", account.contact_email or ""
                    ),
                )
            )
            .flat_map(
                lambda _: self._step(
                    OrchestratorState.CREATING_ORDER,
                    ErrorCode.ORDER_ERROR,
                    lambda: self._engine.create_order(list(record.domains), private_key),
                )
            )
            .flat_map(lambda order: self._check_authorizations(record, order))
            .flat_map(lambda order: self._finalize(order, private_key))
            .either(
                on_success=lambda pem: self._succeeded(record, pem),
                on_failure=lambda err: self._classify_failure(record, err),
            )
        )

    def _check_capability(self, record: CertificateRecord) -> Result[CertificateRecord]:
        self._transition(OrchestratorState.CHECKING_CAPABILITY, record.domain_key)
        missing: list[str] = []
        if not self._account.account_key:
            missing.append("ACME account key not configured")
        if not self._account.contact_email:
            missing.append("contact email not configured")
        if not record.private_key_pem:
            missing.append("certificate has no private key")
        if not record.domains:
            missing.append("certificate has no domains")
        if missing:
            return Result.failure(
                ErrorCode.CAPABILITY_ERROR,
                f"Automatic renewal not possible: {'; '.join(missing)}",
            )
        return Result.success(record)

    def _check_authorizations(
        self, record: CertificateRecord, order: OrderHandle
    ) -> Result[OrderHandle]:
        return self._step(
            OrchestratorState.CHECKING_AUTHORIZATIONS,
            ErrorCode.ORDER_ERROR,
            lambda: self._engine.authorization_status(order),
        ).flat_map(lambda statuses: self._require_cached_authorizations(record, order, statuses))

    @staticmethod
    def _require_cached_authorizations(
        record: CertificateRecord,
        order: OrderHandle,
        statuses: Mapping[str, str],
    ) -> Result[OrderHandle]:
        normalized = {domain.lower(): str(status).lower() for domain, status in statuses.items()}
        pending = [
            domain
            for domain in record.domains
            if normalized.get(domain.lower()) != AUTHORIZATION_VALID
        ]
        if pending:
            error = AuthorizationPendingError(pending)
            return Result.failure(ErrorCode.AUTHORIZATION_PENDING, str(error), error)
        log.info("orchestrator.authorizations_cached", domains=list(record.domains))
        return Result.success(order)

    def _finalize(self, order: OrderHandle, private_key: str) -> Result[str]:
        return (
            self._step(
                OrchestratorState.FINALIZING,
                ErrorCode.FINALIZE_ERROR,
                lambda: self._engine.finalize_order(order, private_key),
            )
            .peek(lambda _: self._transition(OrchestratorState.DOWNLOADING, order.url))
            .ensure(
                lambda pem: isinstance(pem, str) and bool(pem.strip()),
                ErrorCode.FINALIZE_ERROR,
                "Finalized order returned an empty certificate",
            )
        )

    def _step(
        self,
        state: OrchestratorState,
        code: ErrorCode,
        call: Callable[[], Result[T]],
    ) -> Result[T]:
        """Run one engine step; an exception raised by the engine lands on the failure track."""
        self._transition(state)
        return Result.from_computation(
            call, code, f"ACME engine raised while {state.value.replace('_', ' ')}"
        ).flat_map(_flatten)

    # ─────────────────────── Terminal states ───────────────────────

    def _succeeded(self, record: CertificateRecord, certificate_pem: str) -> RenewalOutcome:
        self._transition(OrchestratorState.SUCCESS, record.domain_key)
        return RenewalOutcome(
            kind=OutcomeKind.SUCCESS,
            message="Certificate renewed using cached authorizations",
            certificate_pem=certificate_pem,
            private_key_pem=record.private_key_pem,
            completed_at=self._clock(),
        )

    def _classify_failure(
        self, record: CertificateRecord, err: FailureDescription
    ) -> RenewalOutcome:
        if err.code.requires_manual_action:
            self._transition(OrchestratorState.MANUAL_REQUIRED, err.message)
            pending = getattr(err.exception, "domains", None) or tuple(record.domains)
            return RenewalOutcome(
                kind=OutcomeKind.MANUAL_REQUIRED,
                message=err.describe(),
                pending_domains=tuple(pending),
                manual_action_url=self.manual_action_url(record),
                error_code=err.code,
            )

        self._transition(OrchestratorState.FAILED, err.message)
        log.warning(
            "orchestrator.failed",
            domain=record.domain_key,
            code=err.code.value,
            error=err.describe(),
        )
        return RenewalOutcome(
            kind=OutcomeKind.FAILURE,
            message=err.describe(),
            error_code=err.code,
        )

    def _transition(self, state: OrchestratorState, detail: str = "") -> None:
        self._state = state
        log.debug("orchestrator.state", state=state.value, detail=detail)
        if self._on_progress is not None:
            try:
                self._on_progress(state, detail)
            except Exception:
                log.exception("orchestrator.progress_callback_failed", state=state.value)


def _flatten(result: Any) -> Result[Any]:
    if isinstance(result, Result):
        return result
    return Result.failure(
        ErrorCode.TECHNICAL_ERROR,
        f"ACME engine returned {type(result).__name__} instead of a Result",
    )
