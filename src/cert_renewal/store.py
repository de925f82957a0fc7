"""
Certificate store — typed view over the persisted certificate collection.

The collection is a single JSON array under the `certificates` key; a
record's identity is its index in that array. Every write replaces the whole
array in one `set()`, so a partially applied update is never visible.

Storage problems never reach the caller: reads degrade to an empty list and
writes become logged no-ops, which keeps the scheduler alive while storage is
transiently unavailable.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from cert_renewal.domain.models import CertificateRecord
from cert_renewal.domain.ports import KeyValueStore
from cert_renewal.railway import ErrorCode, Result

log = structlog.get_logger()

CERTIFICATES_KEY = "certificates"

# Fields that a partial update can never clear by passing None.
_PROTECTED_FIELDS = frozenset({"domains", "issued_at"})
_UPDATABLE_FIELDS = frozenset(CertificateRecord.model_fields) - {"identity"}


class CertificateStore:
    """List certificate records and apply partial updates by identity."""

    def __init__(self, kv: KeyValueStore, key: str = CERTIFICATES_KEY) -> None:
        self._kv = kv
        self._key = key

    def list(self) -> list[CertificateRecord]:
        """
        Every well-formed record, with `identity` set to its index.

        Entries that are not JSON objects are skipped but keep their index,
        so identities stay stable for later updates.
        """
        return [
            self._to_record(index, entry)
            for index, entry in enumerate(self._load().get_or_else([]))
            if isinstance(entry, dict)
        ]

    def get(self, identity: int) -> CertificateRecord | None:
        entries = self._load().get_or_else([])
        if 0 <= identity < len(entries) and isinstance(entries[identity], dict):
            return self._to_record(identity, entries[identity])
        return None

    def update(self, identity: int, changes: Mapping[str, Any]) -> bool:
        """
        Merge `changes` into the record at `identity`.

        The entry keeps the key spellings it was stored with, and any keys
        the record does not model.

        Returns False (and writes nothing) when the identity is out of range,
        the entry is not an object, or storage fails.
        """
        loaded = self._load()
        if loaded.is_failure():
            return False
        entries = loaded.value()
        if not (0 <= identity < len(entries)) or not isinstance(entries[identity], dict):
            log.warning("store.update_skipped", identity=identity, reason="no such record")
            return False

        merged = self._merge(self._to_record(identity, entries[identity]), changes)
        entries[identity] = merged.to_document(entries[identity])
        return self._save(entries).peek(
            lambda _: log.debug("store.updated", identity=identity, fields=sorted(changes))
        ).is_success()

    def add(self, record: CertificateRecord) -> int | None:
        """Append a record and return its identity, or None when storage fails."""
        loaded = self._load()
        if loaded.is_failure():
            return None
        entries = loaded.value()
        entries.append(record.to_document())
        if self._save(entries).is_failure():
            return None
        return len(entries) - 1

    # ─────────────────────── Internals ───────────────────────

    @staticmethod
    def _to_record(identity: int, entry: dict[str, Any]) -> CertificateRecord:
        try:
            record = CertificateRecord.model_validate(entry)
        except ValidationError:
            log.warning("store.malformed_entry", identity=identity)
            record = CertificateRecord()
        return record.model_copy(update={"identity": identity})

    @staticmethod
    def _merge(record: CertificateRecord, changes: Mapping[str, Any]) -> CertificateRecord:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            log.warning("store.unknown_fields_ignored", fields=sorted(unknown))
        accepted = {
            name: value
            for name, value in changes.items()
            if name in _UPDATABLE_FIELDS and not (name in _PROTECTED_FIELDS and value is None)
        }
        document = {**record.model_dump(), **accepted}
        return CertificateRecord.model_validate(document).model_copy(
            update={"identity": record.identity}
        )

    def _load(self) -> Result[list[Any]]:
        def read() -> list[Any]:
            raw = self._kv.get(self._key)
            if raw is None:
                return []
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError(f"expected a JSON array, got {type(data).__name__}")
            return data

        return Result.from_computation(
            read, ErrorCode.STORAGE_ERROR, "Failed to read certificate collection"
        ).peek_failure(
            lambda err: log.error("store.read_failed", error=err.describe())
        )

    def _save(self, entries: list[Any]) -> Result[int]:
        def write() -> int:
            self._kv.set(self._key, json.dumps(entries))
            return len(entries)

        return Result.from_computation(
            write, ErrorCode.STORAGE_ERROR, "Failed to write certificate collection"
        ).peek_failure(
            lambda err: log.error("store.write_failed", error=err.describe())
        )
