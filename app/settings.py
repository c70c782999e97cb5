"""Application settings using Pydantic BaseSettings."""

import os
import re

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (Postgres in production, SQLite for local dev)
    database_url: str = "sqlite+aiosqlite:///./inbox.db"

    # Redis (optional webhook dedup fast path)
    redis_url: str = "redis://localhost:6379/0"
    redis_enabled: bool = False  # Disable Redis by default for dev
    webhook_dedup_ttl_seconds: int = 300

    # LLM (Gemini) - optional, templates are used when unset
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    draft_timeout_seconds: float = 8.0
    draft_max_length: int = 1000
    draft_forbidden_phrases: list[str] = ["guarantee", "100%", "no risk", "certainly approved"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"

    # Meta (WhatsApp Cloud API, Messenger, Instagram)
    meta_app_secret: str | None = None
    meta_verify_token: str | None = None
    meta_access_token: str | None = None
    meta_graph_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_phone_number_id: str | None = None
    meta_page_id: str | None = None

    # Twilio (SMS)
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    # Email / webchat relay
    webhook_shared_token: str | None = None
    email_relay_url: str | None = None
    webchat_relay_url: str | None = None

    # Outbound dispatch
    channel_send_timeout_seconds: float = 10.0
    outbound_idempotency_window_minutes: int = 5
    outbound_similarity_threshold: float = 0.9
    dry_run_sends: bool = False

    # Identity resolution
    lead_reuse_days: int = 30

    # Reply engine
    question_recent_minutes: int = 3
    max_follow_up_steps: int = 6
    default_required_fields: list[str] = ["name", "service"]
    service_required_fields: dict[str, list[str]] = {}
    service_keywords: dict[str, list[str]] = {
        "visa": ["residence permit", "work permit"],
        "business_setup": ["company formation", "trade license", "new company"],
        "renewal": ["renew", "expiring"],
    }
    stop_keywords: list[str] = ["stop", "unsubscribe", "human", "agent"]

    # Automation
    default_rule_cooldown_minutes: int = 60
    hot_lead_score: int = 70
    working_hours_start: int = 9
    working_hours_end: int = 18
    followup_overdue_hours: int = 24
    no_activity_days: int = 3
    no_reply_sla_hours: int = 2
    expiry_window_days: int = 2

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def get_async_database_url() -> str:
    """Get database URL converted for the asyncpg driver."""
    url = os.environ.get("DATABASE_URL") or settings.database_url
    # Convert postgres:// to postgresql+asyncpg:// for SQLAlchemy async
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://") and "+asyncpg" not in url:
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg doesn't support sslmode, it uses ssl parameter
    if "sslmode=" in url:
        url = re.sub(r'[?&]sslmode=[^&]*', '', url)
        url = url.rstrip('?&')
    return url
