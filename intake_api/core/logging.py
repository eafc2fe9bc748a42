"""
Logging configuration for the application.

Plain-text logs on stdout with a consistent format, plus a small helper that
tags every line with correlation ids (call_sid, contact_id, intake_id) so a
single interview can be followed across the webhook and background work.
"""

import logging
import sys
from typing import Any


_HANDLER_NAME = "intake-api-stdout"


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for the entire application.

    Safe to call more than once: the stdout handler is only attached the
    first time, later calls just adjust the level.

    Args:
        debug: If True, log everything down to DEBUG, otherwise INFO and above
    """
    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if not any(h.get_name() == _HANDLER_NAME for h in root_logger.handlers):
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at {logging.getLevelName(log_level)} level")


def with_context(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """
    Return a LoggerAdapter that injects correlation context like call_sid and intake_id.

    Usage:
        log = with_context(logging.getLogger(__name__), call_sid="CA...", contact_id=42)
        log.info("Intake stored")
    """
    class ContextAdapter(logging.LoggerAdapter):
        def process(self, msg, kwargs):
            extra = kwargs.get("extra", {})
            merged = {**context, **extra}
            kwargs["extra"] = merged
            # Prefix message with keys for easy grep
            tags = " ".join(f"{k}={v}" for k, v in merged.items() if v is not None)
            return (f"[{tags}] {msg}" if tags else msg, kwargs)

    return ContextAdapter(logger, {})
