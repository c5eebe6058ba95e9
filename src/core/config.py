"""Configuration settings for the compliance alerting service."""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Delivery
    delivery_timeout_seconds: float = 10.0
    max_concurrent_deliveries: int = 16
    resolve_webhook_hosts: bool = True

    # SMTP (email channel)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_address: str = ""

    # Alert workflow limits
    max_suppression_days: int = 90
    min_suppression_reason_length: int = 20
    max_suppression_reason_length: int = 5000
    max_resolution_notes_length: int = 10000

    # Background sweep for expired suppressions and SLA breaches
    maintenance_interval_seconds: float = 60.0

    # Audit trail (in-memory only when unset)
    audit_log_dir: Optional[Path] = None

    # API Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    default_tenant: str = "default"

    class Config:
        env_prefix = "ALERTING_"
        env_file = ".env"


settings = Settings()
