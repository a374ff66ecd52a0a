"""
Centralized configuration using Pydantic Settings.

All environment variables are loaded and validated here.
"""

from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class MailboxAccount(BaseModel):
    """A connected mailbox that is synchronized on its own cursor."""

    provider: Literal["imap", "gmail"] = "imap"
    organization_id: str
    address: str

    # IMAP
    host: str | None = None
    password: str | None = None

    # Gmail (OAuth refresh token flow)
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "order_tracker"
    database_user: str = "order_sync"
    database_password: str = ""

    # Organization the single-account settings below belong to
    organization_id: str = ""

    # IMAP account
    imap_host: str = "imap.gmail.com"
    imap_email: str = ""
    imap_password: str = ""

    # Gmail account (REST API)
    gmail_email: str = ""
    gmail_refresh_token: str = ""
    gmail_client_id: str = ""
    gmail_client_secret: str = ""

    # Extra mailboxes as JSON, e.g. MAILBOXES='[{"provider": "imap", ...}]'
    mailboxes: list[MailboxAccount] = []

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Classifier service (remote)
    classifier_service_url: str = "http://classifier-agent:8002"
    use_remote_classifier: bool = False
    classifier_timeout_seconds: float = 90.0

    # Sync
    default_lookback_days: int = 90
    message_body_cap: int = 5000
    prompt_body_cap: int = 4000
    sync_max_messages: int = 50
    fetch_timeout_seconds: float = 30.0
    fetch_max_retries: int = 3
    fetch_retry_delay_seconds: float = 2.0
    correction_examples_limit: int = 10

    # Reclassification of messages stored during a classifier outage
    reclassify_on_sync: bool = False
    reclassify_batch_size: int = 20

    # Scheduler
    scheduler_enabled: bool = False
    scheduler_interval_minutes: int = 10

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True  # False for colored dev output

    # Own domains (for detecting outgoing messages)
    own_domains: list[str] = ["ganeshintnl.com", "ganeshinternational.com"]

    @property
    def database_url(self) -> str:
        """PostgreSQL connection URL."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    def is_own_email(self, email: str) -> bool:
        """Check if an address belongs to one of the organization's domains."""
        email_lower = email.lower()
        return any(domain in email_lower for domain in self.own_domains)

    def mailbox_accounts(self) -> list[MailboxAccount]:
        """All configured mailboxes, single-account settings first."""
        accounts = []
        if self.imap_email and self.organization_id:
            accounts.append(MailboxAccount(
                provider="imap",
                organization_id=self.organization_id,
                address=self.imap_email,
                host=self.imap_host,
                password=self.imap_password,
            ))
        if self.gmail_email and self.organization_id:
            accounts.append(MailboxAccount(
                provider="gmail",
                organization_id=self.organization_id,
                address=self.gmail_email,
                refresh_token=self.gmail_refresh_token,
                client_id=self.gmail_client_id,
                client_secret=self.gmail_client_secret,
            ))
        accounts.extend(self.mailboxes)
        return accounts


# Global settings instance
settings = Settings()
