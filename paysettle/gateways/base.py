"""Base gateway manager: lazy service construction, feature gates, health."""

import threading
from abc import ABC, abstractmethod
from typing import Callable

import httpx

from paysettle.common.exceptions import GatewayUnavailableException, PaymentException
from paysettle.common.logging import logger
from paysettle.gateways.configuration import GatewayConfiguration
from paysettle.gateways.contracts import (
    CustomerService,
    PaymentService,
    SplitService,
    SubscriptionService,
    TransferService,
    WebhookService,
)
from paysettle.gateways.http import GatewayHttpClient
from paysettle.gateways.schemas import GatewayStatus


class GatewayManager(ABC):
    """Entry point to one provider's services.

    Services are built on first access and cached for the manager's lifetime.
    Accessing a service whose feature is disabled (or when the gateway has no
    credentials) raises `GatewayUnavailableException` before any network call.
    """

    health_path = "/"

    def __init__(self, config: GatewayConfiguration, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport
        self._http: GatewayHttpClient | None = None
        self._services: dict[str, object] = {}
        # Service factories touch `http`, so the lock must be re-entrant.
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    def default_headers(self) -> dict[str, str]: ...

    @property
    def http(self) -> GatewayHttpClient:
        with self._lock:
            if self._http is None:
                self._http = GatewayHttpClient(self.config, self.default_headers(), transport=self._transport)
            return self._http

    def ensure_feature_enabled(self, feature: str) -> None:
        if not self.config.enabled:
            raise GatewayUnavailableException.not_configured(self.name)
        if not self.config.has_feature(feature):
            raise GatewayUnavailableException.feature_disabled(self.name, feature)

    def supports_feature(self, feature: str) -> bool:
        return self.config.has_feature(feature)

    def _service(self, feature: str, factory: Callable[[], object]):
        self.ensure_feature_enabled(feature)
        with self._lock:
            if feature not in self._services:
                self._services[feature] = factory()
            return self._services[feature]

    def customers(self) -> CustomerService:
        return self._service("customers", self.make_customer_service)

    def payments(self) -> PaymentService:
        return self._service("payments", self.make_payment_service)

    def subscriptions(self) -> SubscriptionService:
        return self._service("subscriptions", self.make_subscription_service)

    def transfers(self) -> TransferService:
        return self._service("transfers", self.make_transfer_service)

    def splits(self) -> SplitService:
        return self._service("splits", self.make_split_service)

    def webhooks(self) -> WebhookService:
        return self._service("webhooks", self.make_webhook_service)

    @abstractmethod
    def make_customer_service(self) -> CustomerService: ...

    @abstractmethod
    def make_payment_service(self) -> PaymentService: ...

    @abstractmethod
    def make_subscription_service(self) -> SubscriptionService: ...

    @abstractmethod
    def make_transfer_service(self) -> TransferService: ...

    @abstractmethod
    def make_split_service(self) -> SplitService: ...

    @abstractmethod
    def make_webhook_service(self) -> WebhookService: ...

    def is_available(self) -> bool:
        """Authenticated call against a cheap endpoint; False on any failure."""

        if not self.config.enabled:
            return False
        try:
            self.http.get(self.health_path)
        except PaymentException as exc:
            logger.warning("gateway_health_failed gateway=%s error=%s", self.name, exc)
            return False
        return True

    def status(self) -> GatewayStatus:
        return GatewayStatus(
            name=self.name,
            enabled=self.config.enabled,
            sandbox=self.config.sandbox,
            available=self.is_available(),
            features=sorted(self.config.features),
        )

    def close(self) -> None:
        with self._lock:
            if self._http is not None:
                self._http.close()
