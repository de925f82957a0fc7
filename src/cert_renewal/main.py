"""
Composition root — wires adapters and services into a RenewalScheduler.

This is the ONLY place where concrete classes are instantiated. The ACME
engine is supplied by the host, since the protocol engine lives outside
this package:

    from cert_renewal.main import configure_structlog, create_renewal_scheduler

    configure_structlog("INFO")
    scheduler = create_renewal_scheduler(engine=my_acme_engine)
    scheduler.start()
    ...
    scheduler.get_status()
    scheduler.stop()
"""

from __future__ import annotations

import logging

import structlog

from cert_renewal.adapters.kv_store import JsonFileKeyValueStore
from cert_renewal.adapters.telegram import LoggingNotifier, TelegramNotifier
from cert_renewal.config import AppSettings
from cert_renewal.domain.ports import AcmeEngine, KeyValueStore, Notifier
from cert_renewal.expiry import ExpiryCalculator
from cert_renewal.history import HistoryLog
from cert_renewal.notifications import RenewalNotifications
from cert_renewal.orchestrator import RenewalOrchestrator
from cert_renewal.policy import RenewalPolicy
from cert_renewal.scheduler import RenewalScheduler
from cert_renewal.store import CertificateStore


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured console logging.

    Unknown level names fall back to INFO.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


type _Adapters = tuple[KeyValueStore, Notifier]


def create_adapters(settings: AppSettings) -> _Adapters:
    """Instantiate the key-value store and the notifier from settings."""
    kv = JsonFileKeyValueStore(settings.storage.path)
    telegram = settings.telegram
    notifier: Notifier
    if telegram.enabled and telegram.bot_token is not None and telegram.chat_id:
        notifier = TelegramNotifier(
            bot_token=telegram.bot_token.get_secret_value(),
            chat_id=telegram.chat_id,
            api_base=telegram.api_base,
            timeout=settings.http_timeout_seconds,
        )
    else:
        notifier = LoggingNotifier()
    return kv, notifier


def create_renewal_scheduler(
    engine: AcmeEngine,
    settings: AppSettings | None = None,
    kv: KeyValueStore | None = None,
    notifier: Notifier | None = None,
) -> RenewalScheduler:
    """
    Build a fully wired RenewalScheduler.

    `kv` and `notifier` override the adapters derived from settings.
    """
    settings = settings or AppSettings()
    default_kv, default_notifier = create_adapters(settings)
    if kv is None:
        kv = default_kv
    if notifier is None:
        notifier = default_notifier

    log = structlog.get_logger()
    log.info(
        "app.wiring",
        directory_url=settings.acme.directory_url,
        storage=str(settings.storage.path),
        telegram=settings.telegram.enabled,
        run_on_startup=settings.run_on_startup,
    )

    orchestrator = RenewalOrchestrator(
        engine=engine,
        account=settings.acme.to_account(),
        manual_url_template=settings.acme.manual_renewal_url,
    )
    notifications = RenewalNotifications(
        notifier,
        notify_on_expiring=settings.telegram.notify_on_expiring,
        notify_on_failure=settings.telegram.notify_on_failure,
    )
    return RenewalScheduler(
        store=CertificateStore(kv),
        policy=RenewalPolicy(kv),
        history=HistoryLog(kv),
        orchestrator=orchestrator,
        notifications=notifications,
        calculator=ExpiryCalculator(),
        run_on_startup=settings.run_on_startup,
    )
