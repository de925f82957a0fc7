"""
Unit tests for the renewal scheduler.

Ticks are driven directly through check_and_renew() against real store,
policy and history objects over an in-memory key-value store, with the fake
ACME engine behind the orchestrator. Lifecycle tests start the real
BackgroundScheduler with a one-day interval and always stop it again.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import nullcontext
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from cert_renewal.domain.models import (
    AcmeAccount,
    CertificateRecord,
    HistoryStatus,
    RenewalStatus,
)
from cert_renewal.expiry import ExpiryCalculator
from cert_renewal.history import HistoryLog
from cert_renewal.notifications import RenewalNotifications
from cert_renewal.orchestrator import RenewalOrchestrator
from cert_renewal.policy import POLICY_KEY, RenewalPolicy
from cert_renewal.railway import ErrorCode, Result, ResultAssertions
from cert_renewal.scheduler import JOB_ID, RenewalScheduler
from cert_renewal.store import CERTIFICATES_KEY, CertificateStore
from tests.conftest import (
    NEW_CERT_PEM,
    NOW,
    CountingKeyValueStore,
    FakeAcmeEngine,
    RecordingNotifier,
    certificate_document,
    fixed_clock,
    seed_certificates,
    seed_policy,
)


def build_scheduler(
    kv: CountingKeyValueStore,
    notifier: RecordingNotifier,
    orchestrator: RenewalOrchestrator,
    run_on_startup: bool = False,
) -> RenewalScheduler:
    return RenewalScheduler(
        store=CertificateStore(kv),
        policy=RenewalPolicy(kv, clock=fixed_clock),
        history=HistoryLog(kv, clock=fixed_clock),
        orchestrator=orchestrator,
        notifications=RenewalNotifications(notifier),
        calculator=ExpiryCalculator(fixed_clock),
        clock=fixed_clock,
        run_on_startup=run_on_startup,
    )


@pytest.fixture()
def orchestrator(engine: FakeAcmeEngine, account: AcmeAccount) -> RenewalOrchestrator:
    return RenewalOrchestrator(engine, account, clock=fixed_clock)


@pytest.fixture()
def scheduler(
    kv: CountingKeyValueStore, notifier: RecordingNotifier, orchestrator: RenewalOrchestrator
) -> Iterator[RenewalScheduler]:
    scheduler = build_scheduler(kv, notifier, orchestrator)
    yield scheduler
    scheduler.stop()


def stored_record(kv: CountingKeyValueStore, identity: int = 0) -> CertificateRecord:
    record = CertificateStore(kv).get(identity)
    assert record is not None
    return record


# ═══════════════════════════════════════════════════════════════════════
# Tick outcomes
# ═══════════════════════════════════════════════════════════════════════


class TestSuccessfulRenewal:
    def test_due_certificate_is_renewed(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, scheduler: RenewalScheduler
    ) -> None:
        """
        GIVEN a certificate issued 65 days ago and a 30-day threshold
        WHEN a tick runs and every authorization is cached
        THEN the store holds the new chain with a refreshed issue time,
        history shows in_progress then success, and nothing is sent.
        """
        seed_policy(kv, enabled=True, threshold=30)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        assert ExpiryCalculator(fixed_clock).days_until_expiry(stored_record(kv)) == 25

        attempts = ResultAssertions.assert_success(scheduler.check_and_renew())

        assert attempts == 1
        record = stored_record(kv)
        assert record.renewal_status is RenewalStatus.SUCCESS
        assert record.certificate_pem == NEW_CERT_PEM
        assert record.issued_at == NOW
        assert record.last_renewal_attempt_at == NOW
        assert record.last_renewal_success_at == NOW
        assert record.manual_action_url is None

        history = HistoryLog(kv).records()
        assert [h.status for h in history[:2]] == [HistoryStatus.SUCCESS, HistoryStatus.IN_PROGRESS]
        assert history[0].new_expiry == NOW + timedelta(days=90)
        assert history[0].old_expiry == NOW + timedelta(days=25)

        assert notifier.messages == []
        assert "example.com" not in scheduler.notified_domains

    def test_policy_timestamps_are_touched(self, kv: CountingKeyValueStore, scheduler: RenewalScheduler) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))

        scheduler.check_and_renew()

        setting = RenewalPolicy(kv).config().per_domain["example.com"]
        assert setting.last_check == NOW
        assert setting.last_renewal == NOW

    def test_valid_certificates_are_left_alone(
        self, kv: CountingKeyValueStore, engine: FakeAcmeEngine, scheduler: RenewalScheduler
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=10))
        kv.sets.clear()

        assert scheduler.check_and_renew().value() == 0
        assert engine.calls == []
        assert CERTIFICATES_KEY not in kv.sets


class TestManualRequired:
    def test_lapsed_authorization_needs_manual_action(
        self,
        kv: CountingKeyValueStore,
        engine: FakeAcmeEngine,
        notifier: RecordingNotifier,
        scheduler: RenewalScheduler,
    ) -> None:
        """
        GIVEN a due certificate whose authorization is no longer cached
        WHEN a tick runs
        THEN the record is manual_required with a renewal URL, exactly one
        notification goes out, and the history head carries the reason.
        """
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        engine.authorizations = {"example.com": "pending"}

        scheduler.check_and_renew()

        record = stored_record(kv)
        assert record.renewal_status is RenewalStatus.MANUAL_REQUIRED
        assert record.manual_action_url is not None
        assert "example.com" in record.manual_action_url
        assert len(notifier.messages) == 1
        head = HistoryLog(kv).records()[0]
        assert head.status is HistoryStatus.MANUAL_REQUIRED
        assert head.error
        assert "example.com" in scheduler.notified_domains

    def test_next_tick_does_not_add_expiry_warning(
        self,
        kv: CountingKeyValueStore,
        engine: FakeAcmeEngine,
        notifier: RecordingNotifier,
        scheduler: RenewalScheduler,
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        engine.authorizations = {"example.com": "pending"}
        scheduler.check_and_renew()
        CertificateStore(kv).update(0, {"renewal_status": RenewalStatus.IN_PROGRESS})

        scheduler.check_and_renew()

        assert len(notifier.messages) == 1


class TestFailedRenewal:
    def test_failure_is_stored_recorded_and_notified(
        self,
        kv: CountingKeyValueStore,
        engine: FakeAcmeEngine,
        notifier: RecordingNotifier,
        scheduler: RenewalScheduler,
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        engine.finalize_result = Result.failure(ErrorCode.FINALIZE_ERROR, "finalize rejected")

        scheduler.check_and_renew()

        assert stored_record(kv).renewal_status is RenewalStatus.FAILURE
        head = HistoryLog(kv).records()[0]
        assert head.status is HistoryStatus.FAILURE
        assert head.error is not None and "finalize rejected" in head.error
        assert len(notifier.messages) == 1
        assert "finalize rejected" in notifier.messages[0]

    def test_crashing_orchestrator_becomes_failure(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        orchestrator = MagicMock(spec=RenewalOrchestrator)
        orchestrator.is_renewing = False
        orchestrator.reserve.return_value = nullcontext(True)
        orchestrator.attempt.side_effect = RuntimeError("engine exploded")
        scheduler = build_scheduler(kv, notifier, orchestrator)

        assert scheduler.check_and_renew().is_success()

        assert stored_record(kv).renewal_status is RenewalStatus.FAILURE
        assert "engine exploded" in (HistoryLog(kv).records()[0].error or "")

    def test_one_failure_does_not_stop_other_certificates(
        self, kv: CountingKeyValueStore, engine: FakeAcmeEngine, scheduler: RenewalScheduler
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(
            kv,
            certificate_document("broken.com", days_ago=65, key=""),
            certificate_document("example.com", days_ago=65),
        )

        assert scheduler.check_and_renew().value() == 2

        assert stored_record(kv, 0).renewal_status is RenewalStatus.FAILURE
        assert stored_record(kv, 1).renewal_status is RenewalStatus.SUCCESS


class TestSkippedCertificates:
    def test_globally_disabled_tick_reads_only_the_policy(
        self, kv: CountingKeyValueStore, engine: FakeAcmeEngine, scheduler: RenewalScheduler
    ) -> None:
        """
        GIVEN auto-renewal is globally disabled
        WHEN a tick runs
        THEN only the policy document is read and nothing is written.
        """
        seed_policy(kv, enabled=False)
        seed_certificates(kv, certificate_document("example.com", days_ago=65))
        kv.gets.clear()
        kv.sets.clear()

        assert scheduler.check_and_renew().value() == 0

        assert kv.gets == [POLICY_KEY]
        assert kv.sets == []
        assert engine.calls == []

    def test_disabled_domain_is_skipped(
        self, kv: CountingKeyValueStore, engine: FakeAcmeEngine, scheduler: RenewalScheduler
    ) -> None:
        seed_policy(kv, enabled=True, per_domain={"example.com": {"enabled": False}})
        seed_certificates(kv, certificate_document("example.com", days_ago=65))

        assert scheduler.check_and_renew().value() == 0
        assert engine.calls == []
        assert stored_record(kv).renewal_status is RenewalStatus.IDLE

    def test_in_progress_record_gets_one_expiry_warning(
        self,
        kv: CountingKeyValueStore,
        engine: FakeAcmeEngine,
        notifier: RecordingNotifier,
        scheduler: RenewalScheduler,
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(
            kv, certificate_document("example.com", days_ago=65, renewal_status="in_progress")
        )

        scheduler.check_and_renew()
        scheduler.check_and_renew()

        assert engine.calls == []
        assert len(notifier.messages) == 1
        assert "Days remaining: 25" in notifier.messages[0]

    def test_expired_in_progress_record_is_not_warned(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, scheduler: RenewalScheduler
    ) -> None:
        seed_policy(kv, enabled=True)
        seed_certificates(
            kv, certificate_document("example.com", days_ago=120, renewal_status="in_progress")
        )

        scheduler.check_and_renew()

        assert notifier.messages == []

    def test_busy_orchestrator_leaves_store_and_history_untouched(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier
    ) -> None:
        """
        GIVEN a due record whose orchestrator is taken between the pre-check and the attempt
        WHEN a tick runs
        THEN no certificate or history write happens and one expiry warning goes out.
        """
        seed_policy(kv, enabled=True)
        seed_certificates(kv, certificate_document("example.com", days_ago=65, renewal_status="failure"))
        orchestrator = MagicMock(spec=RenewalOrchestrator)
        orchestrator.is_renewing = False
        orchestrator.reserve.return_value = nullcontext(False)
        scheduler = build_scheduler(kv, notifier, orchestrator)
        kv.sets.clear()

        assert scheduler.check_and_renew().value() == 0

        orchestrator.attempt.assert_not_called()
        assert CERTIFICATES_KEY not in kv.sets
        assert HistoryLog(kv).records() == []
        assert stored_record(kv).renewal_status is RenewalStatus.FAILURE
        assert len(notifier.messages) == 1
        assert "Days remaining: 25" in notifier.messages[0]

    def test_overlapping_tick_is_skipped(
        self, kv: CountingKeyValueStore, scheduler: RenewalScheduler
    ) -> None:
        seed_policy(kv, enabled=True)
        kv.gets.clear()

        with scheduler._tick_lock:
            result = scheduler.check_and_renew()

        assert result.value() == 0
        assert kv.gets == []


# ═══════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_start_runs_one_immediate_check(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, orchestrator: RenewalOrchestrator
    ) -> None:
        scheduler = build_scheduler(kv, notifier, orchestrator, run_on_startup=True)
        scheduler.check_and_renew = MagicMock(return_value=Result.success(0))  # type: ignore[method-assign]
        try:
            scheduler.start()
            scheduler.start()

            assert scheduler.is_running
            scheduler.check_and_renew.assert_called_once()
            assert len(scheduler._scheduler.get_jobs()) == 1  # type: ignore[union-attr]
        finally:
            scheduler.stop()

    def test_run_on_startup_false_skips_immediate_check(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, orchestrator: RenewalOrchestrator
    ) -> None:
        scheduler = build_scheduler(kv, notifier, orchestrator, run_on_startup=False)
        scheduler.check_and_renew = MagicMock(return_value=Result.success(0))  # type: ignore[method-assign]
        try:
            scheduler.start()
            scheduler.check_and_renew.assert_not_called()
        finally:
            scheduler.stop()

    def test_stop_is_idempotent(self, scheduler: RenewalScheduler) -> None:
        scheduler.start()

        scheduler.stop()
        scheduler.stop()

        assert not scheduler.is_running

    def test_restart_after_stop(self, scheduler: RenewalScheduler) -> None:
        scheduler.start()
        scheduler.stop()

        scheduler.start()

        assert scheduler.is_running

    def test_stop_during_startup_check_prevents_timer(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, orchestrator: RenewalOrchestrator
    ) -> None:
        scheduler = build_scheduler(kv, notifier, orchestrator, run_on_startup=True)

        def stop_midway() -> Result[int]:
            scheduler.stop()
            return Result.success(0)

        scheduler.check_and_renew = stop_midway  # type: ignore[method-assign]
        scheduler.start()

        assert not scheduler.is_running

    def test_failed_startup_check_keeps_scheduler_running(
        self, kv: CountingKeyValueStore, notifier: RecordingNotifier, orchestrator: RenewalOrchestrator
    ) -> None:
        scheduler = build_scheduler(kv, notifier, orchestrator, run_on_startup=True)
        scheduler.check_and_renew = MagicMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        try:
            scheduler.start()
            assert scheduler.is_running
        finally:
            scheduler.stop()

    def test_interval_follows_saved_policy(self, kv: CountingKeyValueStore, scheduler: RenewalScheduler) -> None:
        seed_policy(kv, enabled=True, check_interval=86_400_000)
        scheduler.start()

        RenewalPolicy(kv).save({"enabled": True, "check_interval": 60_000})
        scheduler.check_and_renew()

        job = scheduler._scheduler.get_job(JOB_ID)  # type: ignore[union-attr]
        assert job.trigger.interval == timedelta(seconds=60)

    def test_get_status(self, kv: CountingKeyValueStore, scheduler: RenewalScheduler) -> None:
        seed_policy(kv, enabled=True, threshold=14)
        seed_certificates(kv, certificate_document("example.com", days_ago=80))
        scheduler.check_and_renew()

        status = scheduler.get_status()

        assert status.is_running is False
        assert status.config.threshold == 14
        assert status.statistics.total == 2
        assert status.statistics.success == 1
