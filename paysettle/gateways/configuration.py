"""Immutable per-provider settings handed to managers and webhook handlers."""

from pydantic import BaseModel, ConfigDict

from paysettle.common.exceptions import GatewayUnavailableException


class GatewayConfiguration(BaseModel):
    """Credentials, endpoint and transport limits for one gateway."""

    model_config = ConfigDict(frozen=True)

    name: str
    api_key: str | None = None
    sandbox: bool = True
    base_url: str
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    features: frozenset[str] = frozenset()
    webhook_secret: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def require_api_key(self) -> str:
        if not self.api_key:
            raise GatewayUnavailableException.not_configured(self.name)
        return self.api_key
