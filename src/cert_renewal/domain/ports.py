"""
Ports — Protocol-based interfaces for everything outside the renewal engine.

  Engine ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing), so a fake in a test or an
adapter in production satisfies it simply by implementing the methods.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from cert_renewal.domain.models import OrderHandle
from cert_renewal.railway.result import Result


@runtime_checkable
class KeyValueStore(Protocol):
    """
    Port: durable string-keyed, string-valued storage.

    Values are JSON documents serialized by the caller. Implementations may
    raise OSError on I/O problems; every caller absorbs those.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


@runtime_checkable
class AcmeEngine(Protocol):
    """
    Port: the ACME protocol engine (directory, JWS requests, orders).

    Steps are called in order by the orchestrator and report failure on the
    Result track. A domain that lacks a valid authorization must be reported
    with ErrorCode.AUTHORIZATION_PENDING (never by message text alone), so it
    is classified as manual-required rather than failure.
    """

    def load_directory(self, directory_url: str) -> Result[Mapping[str, Any]]:
        """Fetch the ACME directory document."""
        ...

    def ensure_account(self, account_key: str, contact_email: str) -> Result[str]:
        """Create or reuse the account registration; returns the account URL."""
        ...

    def create_order(self, domains: list[str], private_key_pem: str) -> Result[OrderHandle]:
        """Open a new order for the given domain set."""
        ...

    def authorization_status(self, order: OrderHandle) -> Result[Mapping[str, str]]:
        """Map each domain of the order to its authorization status (valid, pending, ...)."""
        ...

    def finalize_order(self, order: OrderHandle, private_key_pem: str) -> Result[str]:
        """Finalize a fully authorized order and download the certificate chain as PEM."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """
    Port: outbound notification channel.

    Fire-and-forget: returns False when the message was not delivered.
    """

    def send(self, text: str) -> bool: ...
