"""Logging setup shared by the API process and the CLI."""

import logging

from rebalancer.config import settings

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "telegram")
_configured = False


def setup_logging(level: str | None = None):
    """Configure the root logger once."""
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def short_id(value: str | None, keep: int = 8) -> str:
    """Mask an address or id for log output."""
    if not value:
        return "[none]"
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."
