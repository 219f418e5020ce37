"""Settings for the CLI. Every field can be overridden from the environment or .env."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pubsub_cli.app.domain.errors import ConfigMissing

PROJECT_ENV_VAR = "GOOGLE_CLOUD_PROJECT"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    project_id: str = Field("", validation_alias=PROJECT_ENV_VAR)
    broker_backend: str = Field("pubsub", validation_alias="BROKER_BACKEND")

    topic_id: str = Field("my-topic", validation_alias="TOPIC_ID")
    subscription_id: str = Field("my-sub", validation_alias="SUBSCRIPTION_ID")
    message_text: str = Field("hello world!", validation_alias="MESSAGE_TEXT")

    receive_threshold: int = Field(10, ge=1, validation_alias="RECEIVE_THRESHOLD")
    receive_timeout_seconds: float | None = Field(None, gt=0, validation_alias="RECEIVE_TIMEOUT_SECONDS")
    publish_timeout_seconds: float = Field(30.0, gt=0, validation_alias="PUBLISH_TIMEOUT_SECONDS")

    # Upper bound on leased-but-unacked messages (Pub/Sub flow control, AMQP prefetch).
    max_outstanding_messages: int = Field(100, ge=1, validation_alias="MAX_OUTSTANDING_MESSAGES")
    worker_count: int = Field(4, ge=1, validation_alias="WORKER_COUNT")

    broker_host: str = Field("localhost", validation_alias="BROKER_HOST")
    broker_port: int = Field(5672, validation_alias="BROKER_PORT")
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    broker_vhost: str = Field("/", validation_alias="BROKER_VHOST")
    management_port: int = Field(15672, validation_alias="BROKER_MANAGEMENT_PORT")
    management_timeout_seconds: float = Field(10.0, validation_alias="BROKER_MANAGEMENT_TIMEOUT_SECONDS")
    listing_page_size: int = Field(100, ge=1, validation_alias="LISTING_PAGE_SIZE")

    initial_backoff_seconds: float = Field(0.5, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(10.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(5, ge=1, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    def require_project_id(self) -> str:
        project_id = self.project_id.strip()
        if not project_id:
            raise ConfigMissing(PROJECT_ENV_VAR)
        return project_id
