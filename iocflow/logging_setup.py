"""Logging configuration for the IOC pipeline."""

import logging
import sys


class TenantFormatter(logging.Formatter):
    """Prefixes records carrying a ``tenant_id`` extra with the tenant."""

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with an optional tenant prefix."""
        message = super().format(record)
        tenant_id = getattr(record, "tenant_id", None)
        if tenant_id:
            return f"[tenant={tenant_id}] {message}"
        return message


def setup_logging(debug: bool = False) -> logging.Logger:
    """
    Set up logging for the pipeline.

    Args:
        debug: Enable debug-level logging

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("iocflow")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Re-running setup must not duplicate output
    for existing in list(logger.handlers):
        if isinstance(existing.formatter, TenantFormatter):
            logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        TenantFormatter(fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )

    logger.addHandler(handler)
    return logger
