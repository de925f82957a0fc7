"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings so every value can come from an environment variable
(or a .env file) and is validated once at startup.

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__": ACME__CONTACT_EMAIL maps to
acme.contact_email, TELEGRAM__BOT_TOKEN to telegram.bot_token, etc.

The renewal policy itself (enabled, threshold, interval, per-domain
overrides) is NOT configured here: it is a persisted document edited at
runtime through RenewalPolicy.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cert_renewal.adapters.telegram import TELEGRAM_API_BASE
from cert_renewal.domain.models import AcmeAccount
from cert_renewal.orchestrator import DEFAULT_MANUAL_RENEWAL_URL

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"


class AcmeSettings(BaseModel):
    """
    ACME account material used for every renewal.

    Missing key or email is not a startup error: renewals then fail fast with
    a capability error, which is reported per certificate.
    """

    directory_url: str = Field(default=LETSENCRYPT_DIRECTORY, description="ACME directory URL")
    account_key: SecretStr | None = Field(default=None, description="Account private key (PEM)")
    contact_email: str | None = Field(default=None, description="Account contact email")
    manual_renewal_url: str = Field(
        default=DEFAULT_MANUAL_RENEWAL_URL,
        description="Where users complete validation by hand; {domains} is substituted",
    )

    @field_validator("manual_renewal_url")
    @classmethod
    def validate_template(cls, value: str) -> str:
        if "{domains}" not in value:
            raise ValueError("manual_renewal_url must contain the {domains} placeholder")
        return value

    def to_account(self) -> AcmeAccount:
        return AcmeAccount(
            directory_url=self.directory_url,
            account_key=self.account_key.get_secret_value() if self.account_key else None,
            contact_email=self.contact_email or None,
        )


class StorageSettings(BaseModel):
    """Location of the JSON key-value file holding certificates, policy and history."""

    path: Path = Field(default=Path("./data/cert-renewal.json"))


class TelegramSettings(BaseModel):
    """Telegram Bot API notification channel."""

    enabled: bool = Field(default=False)
    bot_token: SecretStr | None = Field(default=None)
    chat_id: str | None = Field(default=None)
    api_base: str = Field(default=TELEGRAM_API_BASE)
    notify_on_expiring: bool = Field(default=True)
    notify_on_failure: bool = Field(default=True)

    @model_validator(mode="after")
    def require_credentials_when_enabled(self) -> TelegramSettings:
        if self.enabled and (self.bot_token is None or not self.chat_id):
            raise ValueError("TELEGRAM__BOT_TOKEN and TELEGRAM__CHAT_ID are required when enabled")
        return self


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    acme: AcmeSettings = Field(default_factory=AcmeSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)

    http_timeout_seconds: int = Field(default=30, ge=1)
    run_on_startup: bool = Field(default=True)
    log_level: str = Field(default="INFO")
