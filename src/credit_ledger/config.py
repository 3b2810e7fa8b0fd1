from __future__ import annotations

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from CREDIT_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="CREDIT_", env_file=".env", extra="ignore")

    # Storage; the in-memory backend is used when no URI is configured
    mongo_uri: Optional[str] = None
    mongo_db: str = "credit_management"
    audit_log_path: str = "logs/credit_audit.log"

    # Grants
    signup_bonus: int = 10
    collection_credits: int = 5
    collection_cooldown_hours: int = 24
    code_length: int = 8
    default_max_uses: int = 100

    # Quota
    daily_limit: int = 10

    # Optimistic concurrency
    max_retries: int = 5
    retry_backoff_seconds: float = 0.05

    admin_ids: List[str] = []


settings = Settings()
