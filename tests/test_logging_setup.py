"""Tests for logging setup."""

import logging

from iocflow.logging_setup import TenantFormatter, setup_logging


def _record(message, **extra):
    record = logging.LogRecord("iocflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_tenant_prefix():
    """Test records with a tenant are prefixed."""
    formatter = TenantFormatter(fmt="%(message)s")

    assert formatter.format(_record("stored", tenant_id="acme")) == "[tenant=acme] stored"
    assert formatter.format(_record("started")) == "started"


def test_setup_is_idempotent():
    """Test repeated setup keeps a single pipeline handler."""
    setup_logging()
    logger = setup_logging(debug=True)

    handlers = [h for h in logger.handlers if isinstance(h.formatter, TenantFormatter)]
    assert len(handlers) == 1
    assert logger.level == logging.DEBUG

    setup_logging()
