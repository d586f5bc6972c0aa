"""Data models for IOC processing."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

# Namespace for deterministic IOC and correlation identifiers
IOCFLOW_NAMESPACE = uuid.UUID("6f1c3a52-9d0e-4b8e-a1f7-3c5d2e4b9a10")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


class IOCType(Enum):
    """Supported IOC types."""

    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"
    EMAIL = "email"
    FILE_PATH = "file_path"


class HashAlgorithm(Enum):
    """Hash algorithm types."""

    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"


HASH_LENGTHS = {
    32: HashAlgorithm.MD5,
    40: HashAlgorithm.SHA1,
    64: HashAlgorithm.SHA256,
}


class Severity(Enum):
    """IOC and rule severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ReputationCategory(Enum):
    """Reputation bands, from worst to best."""

    MALICIOUS = "malicious"
    SUSPICIOUS = "suspicious"
    NEUTRAL = "neutral"
    GOOD = "good"
    TRUSTED = "trusted"


class CorrelationType(Enum):
    """Correlation catalog. Declaration order is the tie-break order."""

    TEMPORAL = "temporal"
    PATTERN_DOMAIN = "pattern:domain"
    PATTERN_HASH_FAMILY = "pattern:hash-family"
    INFRASTRUCTURE_ASN = "infrastructure:asn"
    INFRASTRUCTURE_HOSTING = "infrastructure:hosting"
    TAG_CAMPAIGN = "tag.campaign"


CORRELATION_TYPE_ORDER = {ctype: index for index, ctype in enumerate(CorrelationType)}


def parse_enum(enum_cls: type[Enum], value: Any) -> Any:
    """
    Convert a boundary value into a member of a closed enumeration.

    Accepts members, values and (case-insensitive) member names. Unknown
    values raise ValueError rather than being mapped to a default.
    """
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value == member.value or value.lower() == member.name.lower():
                return member
        lowered = value.lower()
        for member in enum_cls:
            if lowered == str(member.value).lower():
                return member
    raise ValueError(f"Unknown {enum_cls.__name__}: {value!r}")


def derive_ioc_id(tenant_id: str, ioc_type: IOCType, value: str) -> str:
    """Stable identifier for a canonical indicator owned by a tenant."""
    return str(uuid.uuid5(IOCFLOW_NAMESPACE, f"{tenant_id}|{ioc_type.value}|{value}"))


@dataclass
class IOCContext:
    """Contextual metadata attached to an IOC."""

    geolocation: Optional[str] = None
    asn: Optional[int] = None
    category: Optional[str] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    related_indicators: list[str] = field(default_factory=list)
    resolved_ip: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "geolocation": self.geolocation,
            "asn": self.asn,
            "category": self.category,
            "first_seen": _dt_to_str(self.first_seen),
            "last_seen": _dt_to_str(self.last_seen),
            "related_indicators": list(self.related_indicators),
            "resolved_ip": self.resolved_ip,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "IOCContext":
        data = data or {}
        return cls(
            geolocation=data.get("geolocation"),
            asn=data.get("asn"),
            category=data.get("category"),
            first_seen=_dt_from_str(data.get("first_seen")),
            last_seen=_dt_from_str(data.get("last_seen")),
            related_indicators=list(data.get("related_indicators") or []),
            resolved_ip=data.get("resolved_ip"),
        )


@dataclass
class IOC:
    """Represents a single Indicator of Compromise."""

    ioc_type: IOCType
    value: str
    source: str = "unknown"
    confidence: float = 0.5
    severity: Severity = Severity.MEDIUM
    timestamp: datetime = field(default_factory=utcnow)
    tags: set[str] = field(default_factory=set)
    context: IOCContext = field(default_factory=IOCContext)
    raw_data: Optional[dict[str, Any]] = None
    id: Optional[str] = None
    hash_algorithm: Optional[HashAlgorithm] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ioc_type": self.ioc_type.value,
            "value": self.value,
            "source": self.source,
            "confidence": self.confidence,
            "severity": self.severity.value,
            "timestamp": _dt_to_str(self.timestamp),
            "tags": sorted(self.tags),
            "context": self.context.to_dict(),
            "raw_data": self.raw_data,
            "hash_algorithm": self.hash_algorithm.value if self.hash_algorithm else None,
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IOC":
        """Build an IOC from a mapping; unknown enum values raise ValueError."""
        hash_algorithm = data.get("hash_algorithm")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = _dt_from_str(timestamp)
        context = data.get("context")
        if not isinstance(context, IOCContext):
            context = IOCContext.from_dict(context)
        return cls(
            id=data.get("id"),
            ioc_type=parse_enum(IOCType, data["ioc_type"]),
            value=data["value"],
            source=data.get("source", "unknown"),
            confidence=float(data.get("confidence", 0.5)),
            severity=parse_enum(Severity, data.get("severity", "medium")),
            timestamp=timestamp or utcnow(),
            tags=set(data.get("tags") or []),
            context=context,
            raw_data=data.get("raw_data"),
            hash_algorithm=parse_enum(HashAlgorithm, hash_algorithm) if hash_algorithm else None,
            updated_at=_dt_from_str(data.get("updated_at")),
        )


@dataclass
class SourceScore:
    """Score from a single reputation source, normalized to [0, 1]."""

    source_name: str
    raw_score: float
    details: dict[str, Any] = field(default_factory=dict)
    available: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_name": self.source_name,
            "raw_score": self.raw_score,
            "details": self.details,
            "available": self.available,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceScore":
        return cls(
            source_name=data["source_name"],
            raw_score=float(data.get("raw_score", 0.0)),
            details=dict(data.get("details") or {}),
            available=bool(data.get("available", True)),
            error=data.get("error"),
        )


@dataclass
class ReputationScore:
    """Weighted reputation aggregate for a canonical IOC value."""

    value: str
    score: float
    category: ReputationCategory
    confidence: float
    source_scores: list[SourceScore] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    computed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "score": self.score,
            "category": self.category.value,
            "confidence": self.confidence,
            "source_scores": [s.to_dict() for s in self.source_scores],
            "warnings": list(self.warnings),
            "computed_at": _dt_to_str(self.computed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReputationScore":
        return cls(
            value=data["value"],
            score=float(data["score"]),
            category=parse_enum(ReputationCategory, data["category"]),
            confidence=float(data["confidence"]),
            source_scores=[SourceScore.from_dict(s) for s in data.get("source_scores") or []],
            warnings=list(data.get("warnings") or []),
            computed_at=_dt_from_str(data.get("computed_at")) or utcnow(),
        )


@dataclass
class EnrichmentPayload:
    """Structured output of one intelligence adapter."""

    source_id: str
    data: dict[str, Any] = field(default_factory=dict)
    verdict: Optional[str] = None  # "malicious", "suspicious", "benign" or None
    confidence: float = 0.0
    related_indicators: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @property
    def is_malicious(self) -> bool:
        return (self.verdict or "").lower() == "malicious"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "data": self.data,
            "verdict": self.verdict,
            "confidence": self.confidence,
            "related_indicators": list(self.related_indicators),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnrichmentPayload":
        return cls(
            source_id=data["source_id"],
            data=dict(data.get("data") or {}),
            verdict=data.get("verdict"),
            confidence=float(data.get("confidence", 0.0)),
            related_indicators=list(data.get("related_indicators") or []),
            tags=list(data.get("tags") or []),
        )


@dataclass
class EnrichedIOC:
    """A base IOC together with per-source enrichment payloads."""

    ioc: IOC
    enrichments: dict[str, EnrichmentPayload] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    enrichment_timestamp: datetime = field(default_factory=utcnow)
    reputation: Optional[ReputationScore] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def id(self) -> Optional[str]:
        return self.ioc.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "ioc": self.ioc.to_dict(),
            "enrichments": {k: v.to_dict() for k, v in self.enrichments.items()},
            "sources": list(self.sources),
            "enrichment_timestamp": _dt_to_str(self.enrichment_timestamp),
            "reputation": self.reputation.to_dict() if self.reputation else None,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnrichedIOC":
        reputation = data.get("reputation")
        return cls(
            ioc=IOC.from_dict(data["ioc"]),
            enrichments={
                k: EnrichmentPayload.from_dict(v)
                for k, v in (data.get("enrichments") or {}).items()
            },
            sources=list(data.get("sources") or []),
            enrichment_timestamp=_dt_from_str(data.get("enrichment_timestamp")) or utcnow(),
            reputation=ReputationScore.from_dict(reputation) if reputation else None,
            warnings=list(data.get("warnings") or []),
        )


@dataclass
class DetectionResult:
    """Outcome of evaluating the rule set against one IOC."""

    matched_rules: list[str] = field(default_factory=list)
    detection_methods: list[str] = field(default_factory=list)
    detection_confidence: float = 0.0
    false_positive_probability: float = 0.3

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched_rules": list(self.matched_rules),
            "detection_methods": list(self.detection_methods),
            "detection_confidence": self.detection_confidence,
            "false_positive_probability": self.false_positive_probability,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetectionResult":
        return cls(
            matched_rules=list(data.get("matched_rules") or []),
            detection_methods=list(data.get("detection_methods") or []),
            detection_confidence=float(data.get("detection_confidence", 0.0)),
            false_positive_probability=float(data.get("false_positive_probability", 0.3)),
        )


@dataclass
class Intelligence:
    """Aggregated intelligence view with source provenance."""

    sources: list[str] = field(default_factory=list)
    confidence: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)
    related_threats: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources": list(self.sources),
            "confidence": self.confidence,
            "last_updated": _dt_to_str(self.last_updated),
            "related_threats": list(self.related_threats),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Intelligence":
        return cls(
            sources=list(data.get("sources") or []),
            confidence=float(data.get("confidence", 0.0)),
            last_updated=_dt_from_str(data.get("last_updated")) or utcnow(),
            related_threats=list(data.get("related_threats") or []),
        )


def correlation_id_for(correlation_type: CorrelationType, ioc_ids: list[str]) -> str:
    """Deterministic id for a correlation over an unordered id set."""
    key = "|".join([correlation_type.value, *sorted(set(ioc_ids))])
    return str(uuid.uuid5(IOCFLOW_NAMESPACE, key))


@dataclass
class Correlation:
    """An asserted relationship between two or more IOCs."""

    correlated_iocs: list[str]
    correlation_type: CorrelationType
    strength: float
    evidence: set[str] = field(default_factory=set)
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def __post_init__(self):
        ids = sorted(set(self.correlated_iocs))
        if len(ids) < 2:
            raise ValueError("A correlation requires at least two distinct IOC ids")
        if not 0.0 <= self.strength <= 1.0:
            raise ValueError(f"Correlation strength out of range: {self.strength}")
        self.correlated_iocs = ids
        if self.id is None:
            self.id = correlation_id_for(self.correlation_type, ids)

    @property
    def key(self) -> frozenset[str]:
        """Unordered id set used for deduplication."""
        return frozenset(self.correlated_iocs)

    def references(self, ioc_id: str) -> bool:
        return ioc_id in self.correlated_iocs

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "correlated_iocs": list(self.correlated_iocs),
            "correlation_type": self.correlation_type.value,
            "strength": self.strength,
            "evidence": sorted(self.evidence),
            "timestamp": _dt_to_str(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Correlation":
        return cls(
            id=data.get("id"),
            correlated_iocs=list(data["correlated_iocs"]),
            correlation_type=parse_enum(CorrelationType, data["correlation_type"]),
            strength=float(data["strength"]),
            evidence=set(data.get("evidence") or []),
            timestamp=_dt_from_str(data.get("timestamp")) or utcnow(),
        )


@dataclass
class ImpactAssessment:
    """Impact estimate derived from detection and reputation."""

    business_impact: float = 0.0
    technical_impact: float = 0.0
    operational_impact: float = 0.0
    overall_risk: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_impact": self.business_impact,
            "technical_impact": self.technical_impact,
            "operational_impact": self.operational_impact,
            "overall_risk": self.overall_risk,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ImpactAssessment":
        data = data or {}
        return cls(**{k: float(data.get(k, 0.0)) for k in cls().to_dict()})


@dataclass
class AnalysisResult:
    """Recommendations, impact and tags for a processed IOC."""

    recommendations: list[str] = field(default_factory=list)
    impact: ImpactAssessment = field(default_factory=ImpactAssessment)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendations": list(self.recommendations),
            "impact": self.impact.to_dict(),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        return cls(
            recommendations=list(data.get("recommendations") or []),
            impact=ImpactAssessment.from_dict(data.get("impact")),
            tags=list(data.get("tags") or []),
        )


@dataclass
class IOCResult:
    """Canonical output of the pipeline for one IOC."""

    ioc: IOC
    detection_result: DetectionResult
    intelligence: Intelligence
    correlations: list[Correlation] = field(default_factory=list)
    analysis: AnalysisResult = field(default_factory=AnalysisResult)
    processing_timestamp: datetime = field(default_factory=utcnow)
    reputation: Optional[ReputationScore] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def id(self) -> Optional[str]:
        return self.ioc.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "ioc": self.ioc.to_dict(),
            "detection_result": self.detection_result.to_dict(),
            "intelligence": self.intelligence.to_dict(),
            "correlations": [c.to_dict() for c in self.correlations],
            "analysis": self.analysis.to_dict(),
            "processing_timestamp": _dt_to_str(self.processing_timestamp),
            "reputation": self.reputation.to_dict() if self.reputation else None,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IOCResult":
        reputation = data.get("reputation")
        return cls(
            ioc=IOC.from_dict(data["ioc"]),
            detection_result=DetectionResult.from_dict(data.get("detection_result") or {}),
            intelligence=Intelligence.from_dict(data.get("intelligence") or {}),
            correlations=[Correlation.from_dict(c) for c in data.get("correlations") or []],
            analysis=AnalysisResult.from_dict(data.get("analysis") or {}),
            processing_timestamp=_dt_from_str(data.get("processing_timestamp")) or utcnow(),
            reputation=ReputationScore.from_dict(reputation) if reputation else None,
            warnings=list(data.get("warnings") or []),
        )


@dataclass
class TenantContext:
    """Isolation boundary carried by every storage and pipeline call."""

    tenant_id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    permissions: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.tenant_id or not str(self.tenant_id).strip():
            raise ValueError("tenant_id is required")


@dataclass
class RuleCondition:
    """A single weighted pattern test against one IOC field."""

    field: str
    pattern: str
    weight: float
    case_sensitive: bool = False


@dataclass
class DetectionRule:
    """A named set of conditions that must all match."""

    id: str
    name: str
    ioc_types: list[IOCType]
    conditions: list[RuleCondition]
    confidence: float
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    method: str = "pattern_matching"
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetectionRule":
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            ioc_types=[parse_enum(IOCType, t) for t in data.get("ioc_types") or []],
            conditions=[
                RuleCondition(
                    field=c.get("field", "value"),
                    pattern=c["pattern"],
                    weight=float(c.get("weight", 1.0)),
                    case_sensitive=bool(c.get("case_sensitive", False)),
                )
                for c in data.get("conditions") or []
            ],
            confidence=float(data.get("confidence", 1.0)),
            severity=parse_enum(Severity, data.get("severity", "medium")),
            enabled=bool(data.get("enabled", True)),
            method=data.get("method", "pattern_matching"),
            description=data.get("description", ""),
        )


@dataclass
class SearchCriteria:
    """Filters for IOC search. Every set filter must match."""

    ioc_types: list[IOCType] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    value_contains: Optional[str] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    tags: list[str] = field(default_factory=list)
    query: Optional[str] = None
    limit: int = 100
    offset: int = 0

    def matches(self, ioc: IOC) -> bool:
        """Evaluate every filter except the full-text query."""
        if self.ioc_types and ioc.ioc_type not in self.ioc_types:
            return False
        if self.sources and ioc.source not in self.sources:
            return False
        if self.value_contains and self.value_contains.lower() not in ioc.value.lower():
            return False
        if self.min_confidence is not None and ioc.confidence < self.min_confidence:
            return False
        if self.max_confidence is not None and ioc.confidence > self.max_confidence:
            return False
        if self.start_time is not None and ioc.timestamp < ensure_utc(self.start_time):
            return False
        if self.end_time is not None and ioc.timestamp > ensure_utc(self.end_time):
            return False
        if self.tags and not set(self.tags).issubset(ioc.tags):
            return False
        return True


@dataclass
class CorrelationCriteria:
    """Filters for correlation search."""

    ioc_id: Optional[str] = None
    correlation_types: list[CorrelationType] = field(default_factory=list)
    min_strength: Optional[float] = None
    limit: int = 100
    offset: int = 0

    def matches(self, correlation: Correlation) -> bool:
        if self.ioc_id and not correlation.references(self.ioc_id):
            return False
        if self.correlation_types and correlation.correlation_type not in self.correlation_types:
            return False
        if self.min_strength is not None and correlation.strength < self.min_strength:
            return False
        return True


@dataclass
class Page(Generic[T]):
    """One page of search results."""

    items: list[T]
    total_count: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total_count

    @classmethod
    def from_items(cls, items: list[T], limit: int, offset: int) -> "Page[T]":
        """Slice an already-filtered, ordered list into a page."""
        return cls(
            items=items[offset:offset + limit],
            total_count=len(items),
            limit=limit,
            offset=offset,
        )


@dataclass
class BulkResult:
    """Outcome of a bulk storage operation; partial success is allowed."""

    total_requested: int
    successful: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class BatchReport:
    """Outcome of processing a batch of raw IOCs."""

    total: int
    results: list[IOCResult] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


@dataclass
class ComponentHealth:
    """Health of one component."""

    name: str
    healthy: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
