"""Central environment-driven settings for the billing service.

The process loads this once at startup. Deployment-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "billing"
    log_level: str = "INFO"
    postgres_dsn: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    otel_enabled: bool = True

    gateway_base_url: str = "https://api.mercadopago.com"
    gateway_access_token: str
    gateway_timeout_seconds: float = 10.0
    gateway_currency_id: str = "ARS"
    gateway_statement_descriptor: str = "FJV - Fed. Jujena Voley"
    gateway_payment_method: str = "MercadoPago"

    webhook_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:4200"
    unit_directory_url: str = "http://registry:8000"
    unit_directory_timeout_seconds: float = 5.0

    charges_paid_topic: str = "charges.paid"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
