"""Error kinds raised by the IOC processing core."""

from typing import Optional


class IOCFlowError(Exception):
    """Base class for all pipeline errors."""

    pass


class InvalidFormat(IOCFlowError):
    """Raised when an indicator fails structural validation."""

    pass


class RuleCompileError(IOCFlowError):
    """Raised at rule load time when a condition pattern does not compile."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id!r}: {message}")
        self.rule_id = rule_id


class AdapterUnavailable(IOCFlowError):
    """Raised by an adapter that cannot serve a request."""

    def __init__(self, source: str, message: str = "unavailable"):
        super().__init__(f"{source}: {message}")
        self.source = source


class AdapterTimeout(AdapterUnavailable):
    """Raised when an adapter exceeds its deadline."""

    def __init__(self, source: str, timeout: float):
        super().__init__(source, f"timed out after {timeout:.2f}s")
        self.timeout = timeout


class StorageError(IOCFlowError):
    """Base class for storage failures."""

    pass


class StorageTransient(StorageError):
    """Retryable storage failure (lock contention, timeout, dropped connection)."""

    pass


class StoragePermanent(StorageError):
    """Non-retryable storage failure."""

    pass


class DuplicateRecord(StoragePermanent):
    """Raised when a record with the same (tenant, id) already exists."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id!r} already exists")
        self.kind = kind
        self.record_id = record_id


class TenantIsolationViolation(StoragePermanent):
    """Raised when an operation would observe or mutate another tenant's data."""

    pass


class Cancelled(IOCFlowError):
    """Raised when the caller cancelled a long-running operation."""

    pass


class ConfigError(IOCFlowError):
    """Raised at startup for invalid configuration."""

    def __init__(self, field: str, message: str, value: Optional[object] = None):
        detail = f"Invalid {field}: {message}"
        if value is not None:
            detail += f" (got {value!r})"
        super().__init__(detail)
        self.field = field
