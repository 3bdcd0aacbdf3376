import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # CouchDB / Cloudant Configuration
    couchdb_url: str = Field(default="http://localhost:5984", alias="COUCHDB_URL")
    couchdb_user: str = Field(default="", alias="COUCHDB_USER")
    couchdb_password: str = Field(default="", alias="COUCHDB_PASSWORD")
    couchdb_timeout: float = Field(default=30.0, alias="COUCHDB_TIMEOUT")

    # Rate Limiting
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: float = Field(
        default=60.0, alias="RATE_LIMIT_WINDOW_SECONDS"
    )

    # Circuit Breaker
    breaker_failure_threshold: int = Field(default=5, alias="BREAKER_FAILURE_THRESHOLD")
    breaker_recovery_seconds: float = Field(
        default=30.0, alias="BREAKER_RECOVERY_SECONDS"
    )

    # Conflict retry on save
    save_max_attempts: int = Field(default=3, alias="SAVE_MAX_ATTEMPTS")
    save_backoff_base_ms: float = Field(default=100.0, alias="SAVE_BACKOFF_BASE_MS")

    # Provisioning (DigitalOcean GenAI) Configuration
    provisioning_api_url: str = Field(
        default="https://api.digitalocean.com", alias="DIGITALOCEAN_API_URL"
    )
    provisioning_api_token: str = Field(default="", alias="DIGITALOCEAN_TOKEN")
    provisioning_timeout: float = Field(default=15.0, alias="DIGITALOCEAN_TIMEOUT")

    # Deployment reconciliation
    deployment_poll_interval_seconds: float = Field(
        default=5.0, alias="DEPLOYMENT_POLL_INTERVAL"
    )
    deployment_max_retries: int = Field(default=60, alias="DEPLOYMENT_MAX_RETRIES")

    # Notifications
    notification_webhook_url: str | None = Field(
        default=None, alias="NOTIFICATION_WEBHOOK_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


global_settings = Settings.model_validate(dict(os.environ))
