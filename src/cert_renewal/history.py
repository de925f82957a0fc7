"""
History log — bounded, most-recent-first audit trail of renewal attempts.

One JSON document `{"records": [...]}` under `renewal-history` holds at most
MAX_RECORDS entries across all domains. New records go to index 0 and the
oldest fall off the tail.

History is best-effort: a storage failure is logged and swallowed, and
records that fail validation are dropped on read. A write never follows a
failed read, so an unreadable trail is left as it is rather than replaced.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from cert_renewal.domain.models import HistoryRecord, HistoryStatus, RenewalStatistics, utcnow
from cert_renewal.domain.ports import KeyValueStore
from cert_renewal.railway import ErrorCode, Result

log = structlog.get_logger()

HISTORY_KEY = "renewal-history"
MAX_RECORDS = 10


def _parse_records(raw: str) -> list[HistoryRecord]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("history.unparseable_document")
        return []
    entries = data.get("records") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        log.warning("history.malformed_document")
        return []
    records: list[HistoryRecord] = []
    for entry in entries:
        try:
            records.append(HistoryRecord.model_validate(entry))
        except ValidationError:
            log.warning("history.record_dropped")
    return records


class HistoryLog:
    def __init__(
        self,
        kv: KeyValueStore,
        key: str = HISTORY_KEY,
        max_records: int = MAX_RECORDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._kv = kv
        self._key = key
        self._max_records = max_records
        self._clock = clock

    def record(
        self,
        domain: str,
        status: HistoryStatus,
        error: str | None = None,
        old_expiry: datetime | None = None,
        new_expiry: datetime | None = None,
    ) -> HistoryRecord:
        """Insert a record at the head and truncate to the newest `max_records`."""
        entry = HistoryRecord(
            domain=domain,
            timestamp=self._clock(),
            status=status,
            error=error,
            old_expiry=old_expiry,
            new_expiry=new_expiry,
        )
        loaded = self._load()
        if loaded.is_failure():
            log.warning("history.record_skipped", domain=domain, status=status.value)
            return entry
        self._write([entry, *loaded.value()][: self._max_records])
        return entry

    def records(self) -> list[HistoryRecord]:
        return self._load().get_or_else([])

    def for_domain(self, domain: str) -> list[HistoryRecord]:
        return [record for record in self.records() if record.domain == domain]

    def latest_for_domain(self, domain: str) -> HistoryRecord | None:
        return next(iter(self.for_domain(domain)), None)

    def statistics(self) -> RenewalStatistics:
        counts: dict[HistoryStatus, int] = dict.fromkeys(HistoryStatus, 0)
        records = self.records()
        for record in records:
            counts[record.status] += 1
        return RenewalStatistics(
            total=len(records),
            success=counts[HistoryStatus.SUCCESS],
            failure=counts[HistoryStatus.FAILURE],
            in_progress=counts[HistoryStatus.IN_PROGRESS],
            manual_required=counts[HistoryStatus.MANUAL_REQUIRED],
        )

    def cleanup(self) -> None:
        """Re-truncate a stored document that holds more than `max_records` entries."""
        records = self._load().get_or_else([])
        if len(records) > self._max_records:
            self._write(records[: self._max_records])

    def clear(self) -> None:
        Result.from_computation(
            lambda: self._kv.remove(self._key) or True,
            ErrorCode.STORAGE_ERROR,
            "Failed to clear renewal history",
        ).peek_failure(lambda err: log.error("history.clear_failed", error=err.describe()))

    def _load(self) -> Result[list[HistoryRecord]]:
        return Result.from_computation(
            lambda: self._kv.get(self._key) or "",
            ErrorCode.STORAGE_ERROR,
            "Failed to read renewal history",
        ).map(_parse_records).peek_failure(
            lambda err: log.error("history.read_failed", error=err.describe())
        )

    def _write(self, records: list[HistoryRecord]) -> None:
        document: dict[str, Any] = {"records": [r.model_dump(mode="json") for r in records]}
        Result.from_computation(
            lambda: self._kv.set(self._key, json.dumps(document)) or len(records),
            ErrorCode.STORAGE_ERROR,
            "Failed to write renewal history",
        ).peek_failure(lambda err: log.error("history.write_failed", error=err.describe()))
