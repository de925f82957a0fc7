"""
Renewal scheduler — periodic check-and-renew driver.

Infrastructure layer — uses APScheduler (3.x) BackgroundScheduler with an
IntervalTrigger at the policy's `check_interval`. The host calls start(),
stop() and get_status(); everything else happens on the scheduler thread.

Each tick:
  1. skip entirely when the policy is globally disabled (one config read)
  2. list certificates and pick the due ones (threshold from the policy)
  3. skip domains the policy denies and records already `in_progress`
  4. for each remaining certificate: reserve the orchestrator, mark
     `in_progress`, record history, run the attempt, then persist the
     outcome and notify. A busy orchestrator leaves store and history
     untouched.
  5. touch the domain's last-check timestamp

Ticks never overlap: APScheduler runs at most one instance of the job and a
non-blocking lock guards check_and_renew() against direct concurrent calls.
Certificates inside one tick are processed sequentially.

Notifications: success is silent; failure and manual_required send one
message each; a plain expiry warning goes out once per domain (until that
domain renews successfully) when a due certificate was not attempted.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cert_renewal.domain.models import (
    CertificateRecord,
    HistoryStatus,
    JobStatus,
    OutcomeKind,
    RenewalJob,
    RenewalOutcome,
    RenewalPolicyConfig,
    RenewalStatus,
    SchedulerStatus,
    utcnow,
)
from cert_renewal.expiry import ExpiryCalculator
from cert_renewal.history import HistoryLog
from cert_renewal.notifications import RenewalNotifications
from cert_renewal.orchestrator import RenewalOrchestrator
from cert_renewal.policy import RenewalPolicy
from cert_renewal.railway import ErrorCode, LoggingExecutionContext, Result
from cert_renewal.store import CertificateStore

log = structlog.get_logger()

JOB_ID = "certificate_renewal_check"


class RenewalScheduler:
    """
    Owns the timer, the per-process notified-domains set and the tick logic.

    Args:
        store: Certificate collection.
        policy: Persisted auto-renewal policy.
        history: Audit trail of attempts.
        orchestrator: Performs one renewal attempt per due certificate.
        notifications: Outbound messages for expiry, failure and manual action.
        calculator: Expiry arithmetic; built from `clock` when omitted.
        clock: Source of "now" for job and store timestamps.
        run_on_startup: Run one check immediately inside start().
    """

    def __init__(
        self,
        store: CertificateStore,
        policy: RenewalPolicy,
        history: HistoryLog,
        orchestrator: RenewalOrchestrator,
        notifications: RenewalNotifications,
        calculator: ExpiryCalculator | None = None,
        clock: Callable[[], datetime] = utcnow,
        run_on_startup: bool = True,
    ) -> None:
        self._store = store
        self._policy = policy
        self._history = history
        self._orchestrator = orchestrator
        self._notifications = notifications
        self._calculator = calculator or ExpiryCalculator(clock)
        self._clock = clock
        self._run_on_startup = run_on_startup
        self._context = LoggingExecutionContext(operation="RenewalCheck")
        self._lifecycle_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None
        self._interval_ms: int | None = None
        self._notified: set[str] = set()

    # ─────────────────────── Lifecycle ───────────────────────

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def notified_domains(self) -> frozenset[str]:
        return frozenset(self._notified)

    def start(self) -> None:
        """Run one check, then repeat every `check_interval`. No-op when already running."""
        with self._lifecycle_lock:
            if self._scheduler is not None:
                log.info("scheduler.already_running")
                return
            config = self._policy.config()
            scheduler = BackgroundScheduler(timezone="UTC")
            scheduler.add_job(
                self._run_tick,
                trigger=IntervalTrigger(seconds=config.check_interval_seconds),
                id=JOB_ID,
                name="Certificate renewal check",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler = scheduler
            self._interval_ms = config.check_interval

        log.info(
            "scheduler.starting",
            interval_seconds=config.check_interval_seconds,
            run_on_startup=self._run_on_startup,
        )
        if self._run_on_startup:
            self._run_tick()

        with self._lifecycle_lock:
            # stop() may have been called during the startup check
            if self._scheduler is scheduler:
                scheduler.start()

    def stop(self) -> None:
        """Cancel future ticks. An in-flight tick runs to completion. Idempotent."""
        with self._lifecycle_lock:
            scheduler, self._scheduler = self._scheduler, None
            self._interval_ms = None
        if scheduler is None:
            return
        if scheduler.running:
            scheduler.shutdown(wait=False)
        log.info("scheduler.stopped")

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running,
            config=self._policy.config(),
            statistics=self._history.statistics(),
        )

    # ─────────────────────── Tick ───────────────────────

    def check_and_renew(self) -> Result[int]:
        """
        Run one check. Returns the number of renewal attempts made.

        A call that arrives while another check is still running is skipped.
        """
        if not self._tick_lock.acquire(blocking=False):
            log.warning("scheduler.tick_skipped", reason="previous check still running")
            return Result.success(0)
        try:
            return self._check_and_renew()
        finally:
            self._tick_lock.release()

    def _run_tick(self) -> None:
        result = self._context.execute(self.check_and_renew)
        if result.is_success():
            log.info("scheduler.tick_completed", attempts=result.value())
        else:
            log.error("scheduler.tick_failed", failure=result.error().describe())

    def _check_and_renew(self) -> Result[int]:
        config = self._policy.config()
        if not config.enabled:
            log.info("scheduler.disabled", reason="auto-renewal is disabled globally")
            return Result.success(0)
        self._follow_interval(config)

        due = self._calculator.due(self._store.list(), config.threshold)
        log.info("scheduler.due_certificates", count=len(due), threshold=config.threshold)

        attempts = 0
        for record, days in due:
            domain = record.domain_key
            if not self._policy.is_domain_eligible(domain):
                log.info("scheduler.domain_disabled", domain=domain)
                continue
            if record.renewal_status is RenewalStatus.IN_PROGRESS or self._orchestrator.is_renewing:
                log.info("scheduler.renewal_in_progress", domain=domain)
                self._warn_expiring(domain, days)
                continue
            if self._execute(record, days).status is not JobStatus.PENDING:
                attempts += 1
        return Result.success(attempts)

    def _execute(self, record: CertificateRecord, days: int) -> RenewalJob:
        domain = record.domain_key
        job = RenewalJob(domain=domain, identity=record.identity)
        now = self._clock()
        job.start(now)

        with self._orchestrator.reserve() as reserved:
            if not reserved:
                # Nothing is written for a busy orchestrator.
                self._on_already_running(job, days)
                return job
            old_expiry = self._calculator.expiry_date(record.issued_at)
            self._store.update(
                record.identity,
                {"renewal_status": RenewalStatus.IN_PROGRESS, "last_renewal_attempt_at": now},
            )
            self._history.record(domain, HistoryStatus.IN_PROGRESS, old_expiry=old_expiry)
            log.info("scheduler.renewal_started", domain=domain, job_id=job.id, days_left=days)

            try:
                outcome = self._orchestrator.attempt(record)
            except Exception as e:
                log.exception("scheduler.renewal_crashed", domain=domain, job_id=job.id)
                outcome = RenewalOutcome(
                    kind=OutcomeKind.FAILURE,
                    message=f"Unexpected renewal error: {e}",
                    error_code=ErrorCode.TECHNICAL_ERROR,
                )

            match outcome.kind:
                case OutcomeKind.SUCCESS:
                    self._on_success(job, record, outcome, old_expiry)
                case OutcomeKind.MANUAL_REQUIRED:
                    self._on_manual_required(job, record, outcome, old_expiry)
                case _:
                    self._on_failure(job, record, outcome, old_expiry)

        self._policy.touch_last_check(domain)
        log.info("scheduler.renewal_finished", domain=domain, job_id=job.id, status=job.status.value)
        return job

    def _on_success(
        self,
        job: RenewalJob,
        record: CertificateRecord,
        outcome: RenewalOutcome,
        old_expiry: datetime,
    ) -> None:
        completed = outcome.completed_at or self._clock()
        self._store.update(
            record.identity,
            {
                "renewal_status": RenewalStatus.SUCCESS,
                "certificate_pem": outcome.certificate_pem,
                "private_key_pem": outcome.private_key_pem or record.private_key_pem,
                "issued_at": completed,
                "last_renewal_success_at": completed,
                "manual_action_url": None,
            },
        )
        self._history.record(
            job.domain,
            HistoryStatus.SUCCESS,
            old_expiry=old_expiry,
            new_expiry=self._calculator.expiry_date(completed),
        )
        self._notified.discard(job.domain)
        self._policy.touch_last_renewal(job.domain)
        job.result_certificate = outcome.certificate_pem
        job.finish(JobStatus.COMPLETED, completed)

    def _on_manual_required(
        self,
        job: RenewalJob,
        record: CertificateRecord,
        outcome: RenewalOutcome,
        old_expiry: datetime,
    ) -> None:
        self._store.update(
            record.identity,
            {
                "renewal_status": RenewalStatus.MANUAL_REQUIRED,
                "manual_action_url": outcome.manual_action_url,
            },
        )
        self._history.record(
            job.domain,
            HistoryStatus.MANUAL_REQUIRED,
            error=outcome.message,
            old_expiry=old_expiry,
        )
        self._notifications.manual_required(
            job.domain, outcome.message, outcome.manual_action_url, outcome.pending_domains
        )
        self._notified.add(job.domain)
        job.manual_action_url = outcome.manual_action_url
        job.finish(JobStatus.MANUAL_REQUIRED, self._clock(), outcome.message)

    def _on_failure(
        self,
        job: RenewalJob,
        record: CertificateRecord,
        outcome: RenewalOutcome,
        old_expiry: datetime,
    ) -> None:
        error = outcome.message or "Unknown error occurred"
        self._store.update(record.identity, {"renewal_status": RenewalStatus.FAILURE})
        self._history.record(job.domain, HistoryStatus.FAILURE, error=error, old_expiry=old_expiry)
        self._notifications.renewal_failed(job.domain, error)
        self._notified.add(job.domain)
        job.finish(JobStatus.FAILURE, self._clock(), error)

    def _on_already_running(self, job: RenewalJob, days: int) -> None:
        log.info("scheduler.renewal_in_progress", domain=job.domain, job_id=job.id)
        self._warn_expiring(job.domain, days)
        job.finish(JobStatus.PENDING, self._clock(), "Renewal already in progress")

    def _warn_expiring(self, domain: str, days: int) -> None:
        if domain in self._notified or days <= 0:
            return
        self._notifications.expiring(domain, days)
        self._notified.add(domain)

    def _follow_interval(self, config: RenewalPolicyConfig) -> None:
        """Re-arm the timer when the persisted check interval changed."""
        with self._lifecycle_lock:
            scheduler = self._scheduler
            if scheduler is None or not scheduler.running or config.check_interval == self._interval_ms:
                return
            scheduler.reschedule_job(
                JOB_ID, trigger=IntervalTrigger(seconds=config.check_interval_seconds)
            )
            self._interval_ms = config.check_interval
        log.info("scheduler.interval_changed", interval_seconds=config.check_interval_seconds)
