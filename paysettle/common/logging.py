"""JSON logging with correlation fields for payments, webhooks and gateways.

Every record carries the service name plus whatever identifiers are bound in
the current context: the request trace id, the provider webhook event id, the
payment uuid and the gateway being called.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from paysettle.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
gateway_ctx: ContextVar[str] = ContextVar("gateway", default="")

_CONTEXT_VARS = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "payment_id": payment_id_ctx,
    "gateway": gateway_ctx,
}
# httpx logs every request line at INFO; gateway calls are logged by our client.
QUIET_LOGGERS = ("httpx", "httpcore", "aiokafka")


class ContextFilter(logging.Filter):
    """Copy the bound correlation identifiers onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_VARS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**values: str | None):
    """Bind correlation fields (`payment_id`, `event_id`, ...) for the block."""

    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in values.items() if value]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Route the root logger to stdout as JSON lines."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s "
            "%(payment_id)s %(gateway)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("paysettle")
