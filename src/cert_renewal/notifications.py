"""
Renewal notifications — decide the wording, delegate delivery to a Notifier.

Delivery is fire-and-forget: every method returns whether the message went
out, and a Notifier that raises is logged, never escalated to the scheduler.
"""

from __future__ import annotations

import structlog

from cert_renewal.domain.ports import Notifier

log = structlog.get_logger()


def expiring_message(domain: str, days_until_expiry: int) -> str:
    return (
        "Certificate expiring soon\n\n"
        f"Domain: {domain}\n"
        f"Days remaining: {days_until_expiry}"
    )


def failure_message(domain: str, error: str) -> str:
    return (
        "Certificate renewal failed\n\n"
        f"Domain: {domain}\n"
        f"Error: {error}"
    )


def manual_required_message(
    domain: str,
    message: str,
    manual_action_url: str | None,
    pending_domains: tuple[str, ...] = (),
) -> str:
    lines = [
        "Certificate renewal needs manual action\n",
        f"Domain: {domain}",
        f"Reason: {message}",
    ]
    if pending_domains:
        lines.append(f"Awaiting validation: {', '.join(pending_domains)}")
    if manual_action_url:
        lines.append(f"Complete renewal at: {manual_action_url}")
    return "\n".join(lines)


class RenewalNotifications:
    def __init__(
        self,
        notifier: Notifier,
        notify_on_expiring: bool = True,
        notify_on_failure: bool = True,
    ) -> None:
        self._notifier = notifier
        self._notify_on_expiring = notify_on_expiring
        self._notify_on_failure = notify_on_failure

    def expiring(self, domain: str, days_until_expiry: int) -> bool:
        if not self._notify_on_expiring:
            return False
        return self._send("expiring", domain, expiring_message(domain, days_until_expiry))

    def renewal_failed(self, domain: str, error: str) -> bool:
        if not self._notify_on_failure:
            return False
        return self._send("failure", domain, failure_message(domain, error))

    def manual_required(
        self,
        domain: str,
        message: str,
        manual_action_url: str | None,
        pending_domains: tuple[str, ...] = (),
    ) -> bool:
        if not self._notify_on_failure:
            return False
        text = manual_required_message(domain, message, manual_action_url, pending_domains)
        return self._send("manual_required", domain, text)

    def _send(self, kind: str, domain: str, text: str) -> bool:
        try:
            delivered = bool(self._notifier.send(text))
        except Exception:
            log.exception("notification.crashed", kind=kind, domain=domain)
            return False
        if not delivered:
            log.warning("notification.not_delivered", kind=kind, domain=domain)
        return delivered
