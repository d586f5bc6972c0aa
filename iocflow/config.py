"""Configuration loader for the IOC pipeline."""

import ipaddress
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from iocflow.errors import ConfigError

VALID_BACKENDS = ("memory", "relational", "document", "keyvalue", "index")
VALID_HASH_FAMILY_MODES = ("tag", "hamming", "both")


def _int_or_none(value: Optional[str]) -> Optional[int]:
    """Convert string to int or return None."""
    return int(value) if value else None


def _bool_from_str(value: str, default: bool = False) -> bool:
    """Convert string to boolean."""
    return value.lower() in ("true", "1", "yes") if value else default


def _parse_csv_list(value: Optional[str], default: list[str]) -> list[str]:
    """Parse a comma-separated string into a list, stripping whitespace."""
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ProcessingConfig:
    max_batch_size: int = 100
    confidence_threshold: float = 0.5
    cancel_timeout_ms: int = 30000


@dataclass
class EnrichmentConfig:
    # Empty means every registered adapter is eligible
    enabled_sources: list[str] = field(default_factory=list)
    per_source_timeout_ms: int = 5000
    max_concurrency: int = 8
    uplift_delta: float = 0.1
    # Adapter confidence at or above which a malicious verdict counts as corroboration
    high_confidence: float = 0.7


@dataclass
class CorrelationConfig:
    time_window_hours: float = 1.0
    minimum_correlation_strength: float = 0.5
    max_correlations_per_ioc: int = 50
    dga_entropy_threshold: float = 3.5
    hash_hamming_distance: int = 2
    hash_family_mode: str = "both"
    hosting_ranges: list[str] = field(default_factory=list)
    # Upper bound on stored neighbours examined per submission
    candidate_limit: int = 500


@dataclass
class ReputationSourceConfig:
    id: str
    weight: float = 1.0
    enabled: bool = True


@dataclass
class ReputationConfig:
    sources: list[ReputationSourceConfig] = field(default_factory=list)
    cache_ttl_seconds: int = 3600
    cache_capacity: int = 10000


@dataclass
class StorageConfig:
    backend: str = "memory"
    connection_string: Optional[str] = None
    pool_size: int = 4
    timeout_seconds: float = 30.0


@dataclass
class PipelineConfig:
    """Complete pipeline configuration."""

    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Reference adapter credentials (only needed when the adapter is enabled)
    vt_api_key: Optional[str] = None
    abuseipdb_api_key: Optional[str] = None
    otx_api_key: Optional[str] = None
    vt_rate_limit: Optional[int] = None
    abuseipdb_rate_limit: Optional[int] = None
    otx_rate_limit: Optional[int] = None


def _require(condition: bool, name: str, message: str, value: Any = None) -> None:
    if not condition:
        raise ConfigError(name, message, value)


def validate_config(config: PipelineConfig) -> PipelineConfig:
    """
    Check every field of a configuration.

    Raises:
        ConfigError: naming the first invalid field
    """
    p, e, c, r, s = (
        config.processing,
        config.enrichment,
        config.correlation,
        config.reputation,
        config.storage,
    )
    _require(p.max_batch_size >= 1, "processing.max_batch_size", "must be >= 1", p.max_batch_size)
    _require(
        0.0 <= p.confidence_threshold <= 1.0,
        "processing.confidence_threshold",
        "must be in [0, 1]",
        p.confidence_threshold,
    )
    _require(
        p.cancel_timeout_ms > 0, "processing.cancel_timeout_ms", "must be > 0", p.cancel_timeout_ms
    )

    _require(
        e.per_source_timeout_ms > 0,
        "enrichment.per_source_timeout_ms",
        "must be > 0",
        e.per_source_timeout_ms,
    )
    _require(e.max_concurrency >= 1, "enrichment.max_concurrency", "must be >= 1", e.max_concurrency)
    _require(0.0 <= e.uplift_delta <= 1.0, "enrichment.uplift_delta", "must be in [0, 1]", e.uplift_delta)
    _require(
        0.0 <= e.high_confidence <= 1.0,
        "enrichment.high_confidence",
        "must be in [0, 1]",
        e.high_confidence,
    )

    _require(c.time_window_hours > 0, "correlation.time_window_hours", "must be > 0", c.time_window_hours)
    _require(
        0.0 <= c.minimum_correlation_strength <= 1.0,
        "correlation.minimum_correlation_strength",
        "must be in [0, 1]",
        c.minimum_correlation_strength,
    )
    _require(
        c.max_correlations_per_ioc >= 1,
        "correlation.max_correlations_per_ioc",
        "must be >= 1",
        c.max_correlations_per_ioc,
    )
    _require(
        c.hash_family_mode in VALID_HASH_FAMILY_MODES,
        "correlation.hash_family_mode",
        f"must be one of {VALID_HASH_FAMILY_MODES}",
        c.hash_family_mode,
    )
    _require(
        c.hash_hamming_distance >= 0,
        "correlation.hash_hamming_distance",
        "must be >= 0",
        c.hash_hamming_distance,
    )
    for cidr in c.hosting_ranges:
        try:
            ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            raise ConfigError("correlation.hosting_ranges", "not a valid CIDR", cidr)

    seen: set[str] = set()
    for index, source in enumerate(r.sources):
        name = f"reputation.sources[{index}]"
        _require(bool(source.id), f"{name}.id", "must not be empty")
        _require(source.id not in seen, f"{name}.id", "duplicate source id", source.id)
        _require(source.weight >= 0.0, f"{name}.weight", "must be >= 0", source.weight)
        seen.add(source.id)
    _require(r.cache_ttl_seconds >= 0, "reputation.cache_ttl_seconds", "must be >= 0", r.cache_ttl_seconds)
    _require(r.cache_capacity >= 1, "reputation.cache_capacity", "must be >= 1", r.cache_capacity)

    _require(
        s.backend in VALID_BACKENDS,
        "storage.backend",
        f"must be one of {VALID_BACKENDS}",
        s.backend,
    )
    _require(s.pool_size >= 1, "storage.pool_size", "must be >= 1", s.pool_size)
    _require(s.timeout_seconds > 0, "storage.timeout_seconds", "must be > 0", s.timeout_seconds)
    return config


def _section(data: dict[str, Any], name: str, cls: type) -> Any:
    """Build a section dataclass, rejecting unknown keys."""
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(name, "must be a mapping", raw)
    known = set(cls.__dataclass_fields__)
    for key in raw:
        if key not in known:
            raise ConfigError(f"{name}.{key}", "unknown option")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigError(name, str(exc))


def config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """
    Build and validate a configuration from a nested mapping.

    Args:
        data: Mapping with optional processing/enrichment/correlation/
            reputation/storage sections

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: If any field is unknown or invalid
    """
    for key in data:
        if key not in PipelineConfig.__dataclass_fields__:
            raise ConfigError(key, "unknown section")

    reputation_raw = dict(data.get("reputation") or {})
    sources_raw = reputation_raw.pop("sources", []) or []
    sources: list[ReputationSourceConfig] = []
    for index, item in enumerate(sources_raw):
        if not isinstance(item, dict) or "id" not in item:
            raise ConfigError(f"reputation.sources[{index}]", "must be a mapping with an id", item)
        try:
            sources.append(
                ReputationSourceConfig(
                    id=str(item["id"]),
                    weight=float(item.get("weight", 1.0)),
                    enabled=bool(item.get("enabled", True)),
                )
            )
        except (TypeError, ValueError):
            raise ConfigError(f"reputation.sources[{index}].weight", "must be a number", item.get("weight"))

    reputation = _section({"reputation": reputation_raw}, "reputation", ReputationConfig)
    reputation.sources = sources

    scalar_keys = {
        k: v
        for k, v in data.items()
        if k not in ("processing", "enrichment", "correlation", "reputation", "storage")
    }
    config = PipelineConfig(
        processing=_section(data, "processing", ProcessingConfig),
        enrichment=_section(data, "enrichment", EnrichmentConfig),
        correlation=_section(data, "correlation", CorrelationConfig),
        reputation=reputation,
        storage=_section(data, "storage", StorageConfig),
        **scalar_keys,
    )
    return validate_config(config)


def _parse_sources(value: Optional[str]) -> list[ReputationSourceConfig]:
    """Parse ``id:weight[:enabled]`` entries, e.g. ``virustotal:0.45,abuseipdb:0.25``."""
    sources = []
    for entry in _parse_csv_list(value, []):
        parts = entry.split(":")
        try:
            weight = float(parts[1]) if len(parts) > 1 else 1.0
        except ValueError:
            raise ConfigError("reputation.sources", "weight must be a number", entry)
        enabled = _bool_from_str(parts[2], default=True) if len(parts) > 2 else True
        sources.append(ReputationSourceConfig(id=parts[0], weight=weight, enabled=enabled))
    return sources


def _env_number(name: str, field_name: str, default: str, cast: type = float) -> Any:
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(field_name, "must be numeric", raw)


def load_config() -> PipelineConfig:
    """Load configuration from IOCFLOW_* environment variables."""
    config = PipelineConfig(
        processing=ProcessingConfig(
            max_batch_size=_env_number("IOCFLOW_MAX_BATCH_SIZE", "processing.max_batch_size", "100", int),
            confidence_threshold=_env_number(
                "IOCFLOW_CONFIDENCE_THRESHOLD", "processing.confidence_threshold", "0.5"
            ),
            cancel_timeout_ms=_env_number(
                "IOCFLOW_CANCEL_TIMEOUT_MS", "processing.cancel_timeout_ms", "30000", int
            ),
        ),
        enrichment=EnrichmentConfig(
            enabled_sources=_parse_csv_list(os.environ.get("IOCFLOW_ENRICHMENT_SOURCES"), []),
            per_source_timeout_ms=_env_number(
                "IOCFLOW_PER_SOURCE_TIMEOUT_MS", "enrichment.per_source_timeout_ms", "5000", int
            ),
            max_concurrency=_env_number(
                "IOCFLOW_MAX_CONCURRENCY", "enrichment.max_concurrency", "8", int
            ),
            uplift_delta=_env_number("IOCFLOW_UPLIFT_DELTA", "enrichment.uplift_delta", "0.1"),
        ),
        correlation=CorrelationConfig(
            time_window_hours=_env_number(
                "IOCFLOW_TIME_WINDOW_HOURS", "correlation.time_window_hours", "1"
            ),
            minimum_correlation_strength=_env_number(
                "IOCFLOW_MIN_CORRELATION_STRENGTH", "correlation.minimum_correlation_strength", "0.5"
            ),
            max_correlations_per_ioc=_env_number(
                "IOCFLOW_MAX_CORRELATIONS_PER_IOC", "correlation.max_correlations_per_ioc", "50", int
            ),
            hash_family_mode=os.environ.get("IOCFLOW_HASH_FAMILY_MODE", "both"),
            hosting_ranges=_parse_csv_list(os.environ.get("IOCFLOW_HOSTING_RANGES"), []),
        ),
        reputation=ReputationConfig(
            sources=_parse_sources(os.environ.get("IOCFLOW_REPUTATION_SOURCES")),
            cache_ttl_seconds=_env_number(
                "IOCFLOW_CACHE_TTL_SECONDS", "reputation.cache_ttl_seconds", "3600", int
            ),
            cache_capacity=_env_number(
                "IOCFLOW_CACHE_CAPACITY", "reputation.cache_capacity", "10000", int
            ),
        ),
        storage=StorageConfig(
            backend=os.environ.get("IOCFLOW_STORAGE_BACKEND", "memory"),
            connection_string=os.environ.get("IOCFLOW_STORAGE_URL") or None,
            pool_size=_env_number("IOCFLOW_STORAGE_POOL_SIZE", "storage.pool_size", "4", int),
            timeout_seconds=_env_number(
                "IOCFLOW_STORAGE_TIMEOUT_SECONDS", "storage.timeout_seconds", "30"
            ),
        ),
        vt_api_key=os.environ.get("VT_API_KEY"),
        abuseipdb_api_key=os.environ.get("ABUSEIPDB_API_KEY"),
        otx_api_key=os.environ.get("OTX_API_KEY"),
        vt_rate_limit=_int_or_none(os.environ.get("VT_RATE_LIMIT")),
        abuseipdb_rate_limit=_int_or_none(os.environ.get("ABUSEIPDB_RATE_LIMIT")),
        otx_rate_limit=_int_or_none(os.environ.get("OTX_RATE_LIMIT")),
    )
    return validate_config(config)
