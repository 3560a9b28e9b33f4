"""Central environment-driven settings for the marketplace service.

The API process and the sweeper script load this once at startup. Behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "skillswap-api"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    rate_limit_per_minute: int = 60

    # Ledger policy
    max_session_credits: int = 100
    initial_credit_grant: int = 5

    # Expiry sweeper
    reservation_timeout_hours: int = 24
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 100
    sweeper_enabled: bool = True
    outbox_publisher_enabled: bool = True

    # Level gates supplied by the reputation collaborator
    bounty_min_claim_level: int = 3
    live_class_min_host_level: int = 4
    live_class_default_capacity: int = 20

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
