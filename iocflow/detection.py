"""Rule-based detection engine."""

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from iocflow.errors import RuleCompileError
from iocflow.locks import ReadWriteLock
from iocflow.models import (
    IOC,
    DetectionResult,
    DetectionRule,
    IOCType,
    RuleCondition,
    SEVERITY_ORDER,
    Severity,
)

logger = logging.getLogger("iocflow.detection")

NO_MATCH_FP_PROBABILITY = 0.3

# Shipped rule set; embedders can replace it with load_rules()/load_rules_file()
DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "suspicious-domain-tld",
        "name": "Suspicious Domain TLD",
        "ioc_types": ["domain"],
        "conditions": [{"field": "value", "pattern": r"\.(tk|ml|ga|cf|gq)$", "weight": 0.8}],
        "confidence": 0.8,
        "severity": "medium",
        "description": "Free ccTLDs heavily abused for throwaway infrastructure",
    },
    {
        "id": "url-suspicious-tld",
        "name": "URL On Suspicious TLD",
        "ioc_types": ["url"],
        "conditions": [
            {"field": "host", "pattern": r"\.(tk|ml|ga|cf|gq|top|xyz|zip)$", "weight": 0.7}
        ],
        "confidence": 0.7,
        "severity": "medium",
    },
    {
        "id": "url-raw-ip-host",
        "name": "URL With Raw IP Host",
        "ioc_types": ["url"],
        "conditions": [
            {"field": "host", "pattern": r"^\d{1,3}(\.\d{1,3}){3}$", "weight": 0.7}
        ],
        "confidence": 0.7,
        "severity": "medium",
    },
    {
        "id": "url-executable-download",
        "name": "Executable Download",
        "ioc_types": ["url"],
        "conditions": [
            {"field": "path", "pattern": r"\.(exe|dll|scr|bat|ps1|vbs|jar|msi|hta)$", "weight": 0.8}
        ],
        "confidence": 0.75,
        "severity": "high",
    },
    {
        "id": "dga-like-label",
        "name": "DGA-like Domain Label",
        "ioc_types": ["domain"],
        "conditions": [
            {"field": "value", "pattern": r"^[^.]*[bcdfghjklmnpqrstvwxz]{6,}[^.]*\.", "weight": 0.6}
        ],
        "confidence": 0.6,
        "severity": "medium",
        "method": "heuristic",
    },
    {
        "id": "temp-dir-executable",
        "name": "Executable In Temp Directory",
        "ioc_types": ["file_path"],
        "conditions": [
            {
                "field": "value",
                "pattern": r"([\\/]te?mp[\\/]|[\\/]appdata[\\/]local[\\/]temp[\\/]).*\.(exe|dll|scr|ps1|bat)$",
                "weight": 0.7,
            }
        ],
        "confidence": 0.7,
        "severity": "high",
    },
    {
        "id": "path-shell-metacharacters",
        "name": "Shell Metacharacters In Path",
        "ioc_types": ["file_path"],
        "conditions": [{"field": "value", "pattern": r"[;&|`$]", "weight": 0.5}],
        "confidence": 0.6,
        "severity": "medium",
        "method": "heuristic",
    },
    {
        "id": "free-webmail-sender",
        "name": "Free Webmail Sender",
        "ioc_types": ["email"],
        "conditions": [
            {
                "field": "value",
                "pattern": r"@(gmail|yahoo|outlook|hotmail|protonmail|gmx)\.[a-z.]+$",
                "weight": 0.3,
            }
        ],
        "confidence": 0.5,
        "severity": "low",
        "method": "heuristic",
    },
    {
        "id": "hash-malware-family-tag",
        "name": "Hash Tagged With Malware Family",
        "ioc_types": ["hash"],
        "conditions": [{"field": "tags", "pattern": r"^(family|malware):.+", "weight": 0.9}],
        "confidence": 0.9,
        "severity": "high",
        "method": "threat_intelligence",
    },
]


def _url_part(value: str, part: str) -> str:
    rest = value.split("://", 1)[-1]
    authority, _, path = rest.partition("/")
    if part == "host":
        host = authority.rsplit("@", 1)[-1]
        if host.startswith("["):
            return host[1:].split("]", 1)[0]
        return host.split(":", 1)[0]
    return "/" + path.split("?", 1)[0].split("#", 1)[0]


def field_values(ioc: IOC, field_name: str) -> list[str]:
    """
    Resolve a condition field to the string values it is tested against.

    Supported fields: value, source, severity, ioc_type, tags (each tag),
    host/path (URLs), domain (emails and URLs) and context.<attribute>.
    """
    if field_name == "value":
        return [ioc.value]
    if field_name == "source":
        return [ioc.source]
    if field_name == "severity":
        return [ioc.severity.value]
    if field_name == "ioc_type":
        return [ioc.ioc_type.value]
    if field_name == "tags":
        return sorted(ioc.tags)
    if field_name in ("host", "path") and ioc.ioc_type == IOCType.URL:
        return [_url_part(ioc.value, field_name)]
    if field_name == "domain":
        if ioc.ioc_type == IOCType.EMAIL:
            return [ioc.value.rpartition("@")[2]]
        if ioc.ioc_type == IOCType.URL:
            return [_url_part(ioc.value, "host")]
        if ioc.ioc_type == IOCType.DOMAIN:
            return [ioc.value]
    if field_name.startswith("context."):
        attribute = getattr(ioc.context, field_name.split(".", 1)[1], None)
        if attribute is None:
            return []
        if isinstance(attribute, list):
            return [str(a) for a in attribute]
        return [str(attribute)]
    return []


def false_positive_probability(confidence: float) -> float:
    """Estimate FP probability from the aggregated detection confidence."""
    if confidence > 0.8:
        return 0.1
    if confidence > 0.6:
        return 0.2
    return NO_MATCH_FP_PROBABILITY


def _compile_rule(rule: DetectionRule) -> list[tuple[re.Pattern, RuleCondition]]:
    if not 0.0 <= rule.confidence <= 1.0:
        raise RuleCompileError(rule.id, f"confidence out of range: {rule.confidence}")
    if not rule.conditions:
        raise RuleCompileError(rule.id, "rule has no conditions")
    compiled = []
    for condition in rule.conditions:
        if not 0.0 <= condition.weight <= 1.0:
            raise RuleCompileError(rule.id, f"weight out of range: {condition.weight}")
        flags = 0 if condition.case_sensitive else re.IGNORECASE
        try:
            compiled.append((re.compile(condition.pattern, flags), condition))
        except re.error as e:
            raise RuleCompileError(rule.id, f"pattern {condition.pattern!r} does not compile: {e}")
    return compiled


class DetectionEngine:
    """
    Evaluates compiled pattern rules against IOCs.

    Patterns are compiled once per load. Evaluations hold the read lock and
    may run in parallel; reloads take the write lock.
    """

    def __init__(self, rules: Optional[Iterable[Union[DetectionRule, dict]]] = None):
        self._lock = ReadWriteLock()
        self._rules: list[DetectionRule] = []
        self._inactive: set[str] = set()
        self._patterns: dict[tuple[str, str], list[re.Pattern]] = {}
        self._compiled: dict[str, list[tuple[re.Pattern, RuleCondition]]] = {}
        self.load_errors: list[RuleCompileError] = []
        self.load_rules(DEFAULT_RULES if rules is None else rules)

    def load_rules(
        self, rules: Iterable[Union[DetectionRule, dict]], strict: bool = False
    ) -> list[RuleCompileError]:
        """
        Replace the rule set, compiling every pattern eagerly.

        Rules that fail to compile are logged and kept inactive.

        Args:
            rules: Rule objects or rule mappings, in evaluation order
            strict: Raise the first RuleCompileError instead of collecting it

        Returns:
            Compile errors for rejected rules
        """
        parsed: list[DetectionRule] = []
        errors: list[RuleCompileError] = []
        patterns: dict[tuple[str, str], list[re.Pattern]] = {}
        compiled_rules: dict[str, list[tuple[re.Pattern, RuleCondition]]] = {}
        inactive: set[str] = set()

        for raw in rules:
            try:
                rule = raw if isinstance(raw, DetectionRule) else DetectionRule.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                rule_id = str(raw.get("id", "?")) if isinstance(raw, dict) else "?"
                error = RuleCompileError(rule_id, f"malformed rule: {e}")
                if strict:
                    raise error
                logger.warning(str(error))
                errors.append(error)
                continue

            parsed.append(rule)
            try:
                compiled = _compile_rule(rule)
            except RuleCompileError as error:
                if strict:
                    raise
                logger.warning(f"{error}; rule disabled")
                errors.append(error)
                inactive.add(rule.id)
                continue

            compiled_rules[rule.id] = compiled
            for pattern, condition in compiled:
                patterns.setdefault((rule.id, condition.field), []).append(pattern)

        with self._lock.write():
            self._rules = parsed
            self._patterns = patterns
            self._compiled = compiled_rules
            self._inactive = inactive
            self.load_errors = errors

        logger.info(
            f"Loaded {len(parsed) - len(inactive)} detection rules ({len(errors)} rejected)"
        )
        return errors

    def load_rules_file(self, path: str, strict: bool = False) -> list[RuleCompileError]:
        """Load rules from a JSON file holding a list of rule objects."""
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("rules", [])
        return self.load_rules(data, strict=strict)

    @property
    def rules(self) -> list[DetectionRule]:
        with self._lock.read():
            return list(self._rules)

    def is_active(self, rule_id: str) -> bool:
        with self._lock.read():
            return any(r.id == rule_id for r in self._rules) and rule_id not in self._inactive

    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        """Toggle a loaded rule without recompiling."""
        with self._lock.write():
            for rule in self._rules:
                if rule.id == rule_id:
                    rule.enabled = enabled
                    return
        raise KeyError(f"Unknown rule: {rule_id}")

    def patterns_for(self, rule_id: str, field_name: str) -> list[re.Pattern]:
        """Compiled patterns of a rule for one field, in condition order."""
        with self._lock.read():
            return list(self._patterns.get((rule_id, field_name), []))

    def _score_rule(self, rule: DetectionRule, ioc: IOC) -> float:
        """Raw weight sum over conditions; 0 on the first failing condition."""
        raw = 0.0
        for pattern, condition in self._compiled[rule.id]:
            values = field_values(ioc, condition.field)
            if not any(pattern.search(v) for v in values):
                return 0.0
            raw += condition.weight
        return raw

    def evaluate(self, ioc: IOC) -> DetectionResult:
        """
        Evaluate all enabled, applicable rules against an IOC.

        Never raises; rules that could not be compiled were rejected at load.
        """
        matched: list[str] = []
        methods: set[str] = set()
        scores: list[float] = []

        with self._lock.read():
            for rule in self._rules:
                if not rule.enabled or rule.id in self._inactive:
                    continue
                if ioc.ioc_type not in rule.ioc_types:
                    continue
                scaled = self._score_rule(rule, ioc) * rule.confidence
                # Zero-weight matches (e.g. empty-string patterns) do not count
                if scaled <= 0.0:
                    continue
                if rule.name not in matched:
                    matched.append(rule.name)
                methods.add(rule.method)
                scores.append(scaled)

        if not scores:
            return DetectionResult(
                matched_rules=[],
                detection_methods=[],
                detection_confidence=0.0,
                false_positive_probability=NO_MATCH_FP_PROBABILITY,
            )

        confidence = round(min(1.0, sum(scores) / len(scores)), 6)
        logger.debug(
            f"{ioc.ioc_type.value} {ioc.value}: {len(matched)} rule(s) matched, "
            f"confidence={confidence:.2f}"
        )
        return DetectionResult(
            matched_rules=matched,
            detection_methods=sorted(methods),
            detection_confidence=confidence,
            false_positive_probability=false_positive_probability(confidence),
        )

    def highest_severity(self, result: DetectionResult) -> Optional[Severity]:
        """Most severe severity among the rules named in a result."""
        with self._lock.read():
            severities = [r.severity for r in self._rules if r.name in result.matched_rules]
        if not severities:
            return None
        return max(severities, key=SEVERITY_ORDER.__getitem__)
