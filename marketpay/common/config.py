"""Central environment-driven settings shared by the API and reconciler.

Each process loads this once at startup. Provider credentials and webhook
secrets are optional so the service can boot without every integration
configured; the code paths that need them fail with a clear error instead.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "marketpay-api"
    log_level: str = "INFO"
    postgres_dsn: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    site_url: str = "http://localhost:3000"
    currency: str = "aud"
    order_reservation_ttl_seconds: int = 900
    checkout_session_min_ttl_seconds: int = 30 * 60

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    square_environment: str = "sandbox"
    square_access_token: str = ""
    square_application_id: str = ""
    square_client_secret: str = ""
    square_webhook_signature_key: str = ""
    square_webhook_notification_url: str = ""
    square_api_version: str = "2025-01-23"
    square_token_expiry_buffer_seconds: int = 300
    provider_http_timeout_seconds: float = 10.0

    cron_secret: str = ""

    # Confirm-on-read covers environments where provider webhooks cannot reach us.
    status_confirm_on_read: bool = True
    status_confirm_retry_delays: list[float] = [1.5, 3.0]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def square_base_url(self) -> str:
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


settings = CommonSettings()
