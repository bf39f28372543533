"""Name -> gateway manager registry.

Managers are built lazily from registered factories and cached until
`forget_resolved_instances()` (used after configuration reloads and in tests).
"""

import threading
from typing import Callable

import httpx

from paysettle.common.config import CommonSettings, settings
from paysettle.common.exceptions import PaymentConfigurationException
from paysettle.gateways.asaas.configuration import asaas_configuration
from paysettle.gateways.asaas.manager import AsaasManager
from paysettle.gateways.base import GatewayManager
from paysettle.gateways.schemas import GatewayStatus

GatewayFactory = Callable[[], GatewayManager]


class GatewayRegistry:
    """Resolves gateway managers by name, with a configurable default."""

    def __init__(self, default_gateway: str) -> None:
        self._default = default_gateway
        self._factories: dict[str, GatewayFactory] = {}
        self._resolved: dict[str, GatewayManager] = {}
        self._lock = threading.Lock()

    @property
    def default_gateway(self) -> str:
        return self._default

    def set_default(self, name: str) -> None:
        if not self.has_gateway(name):
            raise PaymentConfigurationException.unknown_gateway(name)
        self._default = name

    def extend(self, name: str, factory: GatewayFactory) -> None:
        """Register (or replace) a provider at runtime."""

        with self._lock:
            self._factories[name] = factory
            self._resolved.pop(name, None)

    def has_gateway(self, name: str) -> bool:
        return name in self._factories

    def available_gateways(self) -> list[str]:
        return sorted(self._factories)

    def driver(self, name: str | None = None) -> GatewayManager:
        name = name or self._default
        if name not in self._factories:
            raise PaymentConfigurationException.unknown_gateway(name)
        with self._lock:
            if name not in self._resolved:
                self._resolved[name] = self._factories[name]()
            return self._resolved[name]

    def gateways_status(self) -> dict[str, GatewayStatus]:
        return {name: self.driver(name).status() for name in self.available_gateways()}

    def forget_resolved_instances(self) -> None:
        with self._lock:
            managers = list(self._resolved.values())
            self._resolved.clear()
        for manager in managers:
            manager.close()


def build_registry(source: CommonSettings | None = None, transport: httpx.BaseTransport | None = None) -> GatewayRegistry:
    """Registry wired with every bundled provider."""

    source = source or settings
    registry = GatewayRegistry(default_gateway=source.default_gateway)
    config = asaas_configuration(source)
    registry.extend("asaas", lambda: AsaasManager(config, transport=transport))
    return registry
