"""Central environment-driven settings for the settlement engine.

The process loads this once at startup. Gateway credentials live in nested
sections (for example `ASAAS__API_KEY`, `ASAAS__SANDBOX`), see `.env.example`.
"""

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


ASAAS_DEFAULT_FEATURES = ["customers", "payments", "subscriptions", "transfers", "splits", "webhooks"]


class AsaasSettings(BaseModel):
    """Credentials and transport tuning for the Asaas gateway."""

    api_key: str | None = None
    sandbox: bool = True
    base_url: str | None = None
    webhook_secret: str | None = None
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    features: list[str] = ASAAS_DEFAULT_FEATURES


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "paysettle"
    environment: str = "production"
    app_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_prefix: str = "paysettle."
    postgres_dsn: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    outbox_publisher_enabled: bool = True
    default_gateway: str = "asaas"
    checkout_default_due_days: int = 3
    checkout_default_method: str = "pix"
    checkout_currency: str = "BRL"
    asaas: AsaasSettings = AsaasSettings()
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_nested_delimiter="__")

    @property
    def is_local(self) -> bool:
        return self.environment.lower() in {"local", "development"}


settings = CommonSettings()
