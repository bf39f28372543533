"""Authenticated JSON client shared by every service of one gateway.

Connection failures are retried by the transport (`httpx.HTTPTransport(retries=N)`
only retries connect errors, never a request that reached the provider).
Errors are mapped onto the payment exception taxonomy:

- connect error / connect timeout / pool timeout -> `GatewayUnavailableException`
- read or write timeout, or the connection dropping after the request went out
  (read/write error, remote protocol error) -> `GatewayTimeoutException`
  (outcome unknown)
- HTTP 4xx/5xx -> `GatewayException` with the parsed provider body
"""

import threading
from time import perf_counter
from typing import Any

import httpx

from paysettle.common.config import settings
from paysettle.common.exceptions import GatewayException, GatewayTimeoutException, GatewayUnavailableException
from paysettle.common.logging import log_context, logger
from paysettle.common.metrics import gateway_request_duration_seconds, gateway_requests_total
from paysettle.common.tracing import gateway_span
from paysettle.gateways.configuration import GatewayConfiguration


class GatewayHttpClient:
    """Lazy `httpx.Client` bound to one gateway configuration."""

    def __init__(
        self,
        config: GatewayConfiguration,
        headers: dict[str, str],
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.headers = headers
        self._transport = transport
        self._client: httpx.Client | None = None
        self._lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.config.base_url,
                    headers=self.headers,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport or httpx.HTTPTransport(retries=self.config.retry_attempts),
                )
            return self._client

    def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        payment_uuid: str | None = None,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON body."""

        with log_context(gateway=self.config.name):
            return self._send(method, path, json, params, payment_uuid)

    def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
        payment_uuid: str | None,
    ) -> dict[str, Any]:
        gateway = self.config.name
        self.config.require_api_key()
        outcome = "error"
        start = perf_counter()
        try:
            with gateway_span(gateway, method, path, payment_uuid):
                response = self.client.request(method, path, json=json, params=params)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            outcome = "unavailable"
            logger.warning("gateway_unreachable gateway=%s method=%s path=%s error=%s", gateway, method, path, exc)
            raise GatewayUnavailableException.connection_failed(gateway, str(exc), payment_uuid) from exc
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            logger.warning("gateway_timeout gateway=%s method=%s path=%s", gateway, method, path)
            raise GatewayTimeoutException.read_timeout(gateway, path, payment_uuid) from exc
        except (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError) as exc:
            outcome = "interrupted"
            logger.warning("gateway_interrupted gateway=%s method=%s path=%s error=%s", gateway, method, path, exc)
            raise GatewayTimeoutException.interrupted(gateway, path, str(exc), payment_uuid) from exc
        except httpx.TransportError as exc:
            outcome = "unavailable"
            logger.warning("gateway_transport_error gateway=%s method=%s path=%s error=%s", gateway, method, path, exc)
            raise GatewayUnavailableException.connection_failed(gateway, str(exc), payment_uuid) from exc
        else:
            outcome = "ok" if response.is_success else f"http_{response.status_code}"
        finally:
            gateway_request_duration_seconds.labels(service=settings.service_name, gateway=gateway).observe(
                max(0.0, perf_counter() - start)
            )
            gateway_requests_total.labels(
                service=settings.service_name, gateway=gateway, method=method, outcome=outcome
            ).inc()

        body = _decode(response)
        logger.info(
            "gateway_response gateway=%s method=%s path=%s status=%s",
            gateway,
            method,
            path,
            response.status_code,
        )
        if response.status_code >= 400:
            raise GatewayException.from_response(gateway, response.status_code, body, payment_uuid)
        return body

    def get(self, path: str, params: dict[str, Any] | None = None, payment_uuid: str | None = None) -> dict[str, Any]:
        return self.request("GET", path, params=params, payment_uuid=payment_uuid)

    def post(self, path: str, json: dict[str, Any] | None = None, payment_uuid: str | None = None) -> dict[str, Any]:
        return self.request("POST", path, json=json, payment_uuid=payment_uuid)

    def put(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PUT", path, json=json)

    def delete(self, path: str, payment_uuid: str | None = None) -> dict[str, Any]:
        return self.request("DELETE", path, payment_uuid=payment_uuid)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def _decode(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text}
    return data if isinstance(data, dict) else {"data": data}
