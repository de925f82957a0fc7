"""
Renewal policy — the persisted auto-renewal configuration and its rules.

Eligibility:
  - global `enabled=False`          → no domain is eligible
  - per-domain `enabled=False`      → that domain is not eligible
  - no per-domain entry             → inherits the global switch

A domain can switch itself off while the global switch is on, never the
other way round.

The configuration is one JSON document under `auto-renewal-config`. Reads
never fail: a missing or unparseable document yields the defaults, and each
field that fails validation falls back to its own default. Writes are
read-merge-write and assume a single writer.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from cert_renewal.domain.models import (
    DomainSetting,
    RenewalPolicyConfig,
    field_spellings,
    utcnow,
)
from cert_renewal.domain.ports import KeyValueStore
from cert_renewal.railway import ErrorCode, FailureDescription, Result

log = structlog.get_logger()

POLICY_KEY = "auto-renewal-config"


def parse_policy_document(raw: str | None) -> RenewalPolicyConfig:
    """
    Build a policy from a stored document, defaulting field by field.

    The `per_domain` map is filtered entry by entry, so one broken override
    does not discard the others. The camelCase keys written by older hosts
    (`checkInterval`, `certSettings`) are read too; the snake_case spelling
    wins when a document carries both.
    """
    if not raw:
        return RenewalPolicyConfig()
    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("policy.malformed_document", reason="not JSON")
        return RenewalPolicyConfig()
    if not isinstance(data, dict):
        log.warning("policy.malformed_document", reason="not an object")
        return RenewalPolicyConfig()

    accepted: dict[str, Any] = {}
    for name in ("enabled", "threshold", "check_interval"):
        key = next((k for k in field_spellings(RenewalPolicyConfig, name) if k in data), None)
        if key is None:
            continue
        try:
            RenewalPolicyConfig.model_validate({name: data[key]})
        except ValidationError:
            log.warning("policy.field_defaulted", field=name)
            continue
        accepted[name] = data[key]

    per_domain: dict[str, DomainSetting] = {}
    raw_per_domain = next(
        (data[k] for k in field_spellings(RenewalPolicyConfig, "per_domain") if k in data), None
    )
    if isinstance(raw_per_domain, dict):
        for domain, setting in raw_per_domain.items():
            try:
                per_domain[str(domain)] = DomainSetting.model_validate(setting)
            except ValidationError:
                log.warning("policy.domain_setting_dropped", domain=domain)

    return RenewalPolicyConfig.model_validate({**accepted, "per_domain": per_domain})


class RenewalPolicy:
    """Answer "may domain X be renewed automatically now?" and persist overrides."""

    def __init__(
        self,
        kv: KeyValueStore,
        key: str = POLICY_KEY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._kv = kv
        self._key = key
        self._clock = clock

    def config(self) -> RenewalPolicyConfig:
        return Result.from_computation(
            lambda: self._kv.get(self._key) or "",
            ErrorCode.STORAGE_ERROR,
            "Failed to read auto-renewal configuration",
        ).either(
            parse_policy_document,
            self._defaults_after_failure,
        )

    def save(self, config: RenewalPolicyConfig | Mapping[str, Any]) -> Result[RenewalPolicyConfig]:
        """
        Validate and persist a full configuration.

        Rejects threshold outside [1, 60] and non-boolean `enabled` with
        VALIDATION_ERROR; the stored document is left untouched in that case.
        """
        document = config.model_dump() if isinstance(config, RenewalPolicyConfig) else dict(config)
        return (
            Result.from_computation(
                lambda: RenewalPolicyConfig.model_validate(document),
                ErrorCode.VALIDATION_ERROR,
                "Invalid auto-renewal configuration",
            )
            .peek_failure(lambda err: log.warning("policy.rejected", error=err.describe()))
            .flat_map(self._persist)
        )

    def is_globally_enabled(self) -> bool:
        return self.config().enabled

    def is_domain_eligible(self, domain: str) -> bool:
        config = self.config()
        if not config.enabled:
            return False
        setting = config.per_domain.get(domain)
        return not (setting is not None and setting.enabled is False)

    def set_domain_enabled(self, domain: str, enabled: bool) -> Result[RenewalPolicyConfig]:
        return self._update_domain(domain, enabled=enabled, last_check=self._clock())

    def touch_last_check(self, domain: str) -> Result[RenewalPolicyConfig]:
        return self._update_domain(domain, last_check=self._clock())

    def touch_last_renewal(self, domain: str) -> Result[RenewalPolicyConfig]:
        return self._update_domain(domain, last_renewal=self._clock())

    # ─────────────────────── Internals ───────────────────────

    def _update_domain(self, domain: str, **changes: Any) -> Result[RenewalPolicyConfig]:
        config = self.config()
        current = config.per_domain.get(domain, DomainSetting())
        per_domain = {**config.per_domain, domain: current.model_copy(update=changes)}
        return self.save(config.model_copy(update={"per_domain": per_domain}))

    def _persist(self, config: RenewalPolicyConfig) -> Result[RenewalPolicyConfig]:
        def write() -> RenewalPolicyConfig:
            self._kv.set(self._key, config.model_dump_json())
            return config

        return Result.from_computation(
            write, ErrorCode.STORAGE_ERROR, "Failed to write auto-renewal configuration"
        ).peek_failure(lambda err: log.error("policy.write_failed", error=err.describe()))

    @staticmethod
    def _defaults_after_failure(err: FailureDescription) -> RenewalPolicyConfig:
        log.error("policy.read_failed", error=err.describe())
        return RenewalPolicyConfig()
