"""Build the Asaas `GatewayConfiguration` from process settings."""

from paysettle.common.config import CommonSettings, settings
from paysettle.gateways.configuration import GatewayConfiguration

SANDBOX_URL = "https://sandbox.asaas.com/api/v3"
PRODUCTION_URL = "https://api.asaas.com/v3"


def asaas_configuration(source: CommonSettings | None = None) -> GatewayConfiguration:
    source = source or settings
    asaas = source.asaas
    return GatewayConfiguration(
        name="asaas",
        api_key=asaas.api_key,
        sandbox=asaas.sandbox,
        base_url=asaas.base_url or (SANDBOX_URL if asaas.sandbox else PRODUCTION_URL),
        timeout_seconds=asaas.timeout_seconds,
        retry_attempts=asaas.retry_attempts,
        features=frozenset(asaas.features),
        webhook_secret=asaas.webhook_secret,
    )
