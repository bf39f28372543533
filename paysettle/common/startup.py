"""Boot-time dump of the effective configuration, with secrets masked."""

from typing import Any

from paysettle.common.config import CommonSettings
from paysettle.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redact(values: dict[str, Any]) -> dict[str, Any]:
    """Mask secret-looking fields, descending into nested gateway sections."""

    safe: dict[str, Any] = {}
    for name, value in values.items():
        if isinstance(value, dict):
            safe[name] = redact(value)
        elif any(marker in name.lower() for marker in SECRET_MARKERS):
            safe[name] = "<unset>" if value in (None, "") else "<redacted>"
        else:
            safe[name] = value
    return safe


def log_startup_config(source: CommonSettings) -> dict[str, Any]:
    config = redact(source.model_dump())
    logger.info("startup_config=%s", config)
    return config
