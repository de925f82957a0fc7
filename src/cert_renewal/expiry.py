"""
Expiry calculator — pure date arithmetic over certificate records.

Certificates are assumed to carry the issuer's fixed 90-day validity, so the
expiry date is derived from `issued_at` alone:

  expiry_date       = issued_at + 90 calendar days (UTC)
  days_until_expiry = ceil((expiry_date - now) / 1 day), may be negative
  status            = expired        if days <= 0
                      needs_renewal  if days <= threshold
                      valid          otherwise

A record whose `issued_at` is missing or unparseable is never a crash: its
expiry is taken as "now", it reports 0 days left, and its status is
`needs_renewal`, so the scheduler attempts a renewal on the next tick.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from cert_renewal.domain.models import CertificateRecord, CertificateStatus, utcnow

VALIDITY_DAYS = 90
_SECONDS_PER_DAY = 24 * 60 * 60


class ExpiryCalculator:
    """Compute expiry dates and renewal status. No side effects."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def expiry_date(self, issued_at: datetime | None) -> datetime:
        if issued_at is None:
            return self._clock()
        return issued_at + timedelta(days=VALIDITY_DAYS)

    def days_until_expiry(self, record: CertificateRecord) -> int:
        if record.issued_at is None:
            return 0
        remaining = self.expiry_date(record.issued_at) - self._clock()
        return math.ceil(remaining.total_seconds() / _SECONDS_PER_DAY)

    def status(self, record: CertificateRecord, threshold: int) -> CertificateStatus:
        if record.issued_at is None:
            return CertificateStatus.NEEDS_RENEWAL
        days = self.days_until_expiry(record)
        if days <= 0:
            return CertificateStatus.EXPIRED
        if days <= threshold:
            return CertificateStatus.NEEDS_RENEWAL
        return CertificateStatus.VALID

    def due(
        self,
        records: Iterable[CertificateRecord],
        threshold: int,
    ) -> list[tuple[CertificateRecord, int]]:
        """Records that need renewal or are expired, with their days left, in input order."""
        return [
            (record, self.days_until_expiry(record))
            for record in records
            if self.status(record, threshold) is not CertificateStatus.VALID
        ]
