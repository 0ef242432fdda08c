"""Startup-time helpers for safe config logging."""

from clubpay.common.config import CommonSettings
from clubpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _safe_value(name: str, value):
    """Redact settings whose field name looks secret; report only whether they are set."""

    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>" if value else "<unset>"
    return value


def startup_config(config: CommonSettings) -> dict:
    """Effective settings, after env/.env resolution, with secrets redacted."""

    return {name: _safe_value(name, value) for name, value in config.model_dump().items()}


def log_startup_config(config: CommonSettings) -> dict:
    """Log the effective billing config once at boot for quick troubleshooting."""

    snapshot = startup_config(config)
    logger.info("startup_config service=%s config=%s", config.service_name, snapshot)
    return snapshot
