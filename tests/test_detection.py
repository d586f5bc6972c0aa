"""Tests for the rule-based detection engine."""

import json
import threading

import pytest

from iocflow.detection import (
    DEFAULT_RULES,
    NO_MATCH_FP_PROBABILITY,
    DetectionEngine,
    false_positive_probability,
    field_values,
)
from iocflow.errors import RuleCompileError
from iocflow.models import IOC, IOCContext, IOCType, Severity

TK_RULE = {
    "id": "tk",
    "name": "Suspicious Domain TLD",
    "ioc_types": ["domain"],
    "conditions": [{"field": "value", "pattern": r"\.(tk|ml|ga|cf|gq)$", "weight": 0.8}],
    "confidence": 0.8,
    "severity": "medium",
}


class TestFieldValues:
    """Tests for condition field resolution."""

    def test_url_parts(self):
        """Test host and path extraction from canonical URLs."""
        ioc = IOC(IOCType.URL, "http://user@evil.example.com:8080/a/b.exe?x=1")
        assert field_values(ioc, "host") == ["evil.example.com"]
        assert field_values(ioc, "path") == ["/a/b.exe"]
        assert field_values(ioc, "domain") == ["evil.example.com"]

    def test_email_domain(self):
        """Test the domain field of an email."""
        assert field_values(IOC(IOCType.EMAIL, "a@evil.example.com"), "domain") == ["evil.example.com"]

    def test_tags_and_context(self):
        """Test multi-valued and context fields."""
        ioc = IOC(
            IOCType.IP,
            "192.0.2.1",
            tags={"b", "a"},
            context=IOCContext(asn=64500, related_indicators=["x.example"]),
        )
        assert field_values(ioc, "tags") == ["a", "b"]
        assert field_values(ioc, "context.asn") == ["64500"]
        assert field_values(ioc, "context.related_indicators") == ["x.example"]
        assert field_values(ioc, "context.geolocation") == []

    def test_unknown_field(self):
        """Test unknown fields never match."""
        assert field_values(IOC(IOCType.IP, "192.0.2.1"), "nonexistent") == []


class TestDetectionEngine:
    """Tests for DetectionEngine."""

    def test_suspicious_tld_match(self):
        """Test a single rule match scales weight by rule confidence."""
        engine = DetectionEngine([TK_RULE])
        result = engine.evaluate(IOC(IOCType.DOMAIN, "malware.tk"))

        assert result.matched_rules == ["Suspicious Domain TLD"]
        assert result.detection_methods == ["pattern_matching"]
        assert result.detection_confidence == pytest.approx(0.64)
        assert result.false_positive_probability == 0.2

    def test_no_match(self):
        """Test an unmatched IOC gets zero confidence and the default FP probability."""
        engine = DetectionEngine([TK_RULE])
        result = engine.evaluate(IOC(IOCType.DOMAIN, "example.com"))

        assert result.matched_rules == []
        assert result.detection_confidence == 0.0
        assert result.false_positive_probability == NO_MATCH_FP_PROBABILITY

    def test_rule_type_filter(self):
        """Test rules only apply to their declared IOC types."""
        engine = DetectionEngine([TK_RULE])
        result = engine.evaluate(IOC(IOCType.URL, "http://malware.tk/"))
        assert result.matched_rules == []

    def test_all_conditions_must_match(self):
        """Test a rule scores zero when any condition fails."""
        rule = {
            "id": "both",
            "ioc_types": ["url"],
            "conditions": [
                {"field": "host", "pattern": r"\.tk$", "weight": 0.5},
                {"field": "path", "pattern": r"\.exe$", "weight": 0.5},
            ],
            "confidence": 1.0,
        }
        engine = DetectionEngine([rule])

        assert engine.evaluate(IOC(IOCType.URL, "http://a.tk/x.exe")).detection_confidence == 1.0
        assert engine.evaluate(IOC(IOCType.URL, "http://a.tk/x.pdf")).matched_rules == []

    def test_confidence_is_mean_of_matches(self):
        """Test multiple matched rules combine by mean."""
        rules = [
            TK_RULE,
            {
                "id": "long-label",
                "name": "Long Label",
                "ioc_types": ["domain"],
                "conditions": [{"pattern": r"^[a-z]{10,}\.", "weight": 1.0}],
                "confidence": 1.0,
                "method": "heuristic",
            },
        ]
        engine = DetectionEngine(rules)
        result = engine.evaluate(IOC(IOCType.DOMAIN, "abcdefghijkl.tk"))

        assert result.matched_rules == ["Suspicious Domain TLD", "Long Label"]
        assert result.detection_methods == ["heuristic", "pattern_matching"]
        assert result.detection_confidence == pytest.approx((0.64 + 1.0) / 2)
        assert result.false_positive_probability == 0.1

    def test_enabling_weaker_match_lowers_mean(self):
        """Test a weak extra match pulls the mean below the strongest rule."""
        weak = {
            "id": "weak",
            "name": "Weak Signal",
            "ioc_types": ["domain"],
            "conditions": [{"pattern": r"\.tk$", "weight": 0.3}],
            "confidence": 0.5,
            "enabled": False,
        }
        engine = DetectionEngine([TK_RULE, weak])
        ioc = IOC(IOCType.DOMAIN, "malware.tk")
        assert engine.evaluate(ioc).detection_confidence == pytest.approx(0.64)

        engine.set_enabled("weak", True)
        result = engine.evaluate(ioc)

        assert result.matched_rules == ["Suspicious Domain TLD", "Weak Signal"]
        assert result.detection_confidence == pytest.approx(0.395)

    def test_weight_sum_capped_at_one(self):
        """Test aggregated confidence never exceeds 1."""
        rule = {
            "id": "heavy",
            "ioc_types": ["domain"],
            "conditions": [
                {"pattern": "evil", "weight": 1.0},
                {"pattern": "example", "weight": 1.0},
            ],
            "confidence": 1.0,
        }
        engine = DetectionEngine([rule])
        assert engine.evaluate(IOC(IOCType.DOMAIN, "evil.example.com")).detection_confidence == 1.0

    def test_case_sensitivity(self):
        """Test patterns are case-insensitive unless declared otherwise."""
        rule = {
            "id": "cs",
            "ioc_types": ["file_path"],
            "conditions": [{"pattern": "Temp", "weight": 1.0, "case_sensitive": True}],
            "confidence": 1.0,
        }
        engine = DetectionEngine([rule])
        assert engine.evaluate(IOC(IOCType.FILE_PATH, "C:\\Temp\\a.exe")).matched_rules == ["cs"]
        assert engine.evaluate(IOC(IOCType.FILE_PATH, "C:\\temp\\a.exe")).matched_rules == []

    def test_bad_pattern_rejected_at_load(self):
        """Test a non-compiling rule is reported and kept inactive."""
        bad = {"id": "bad", "ioc_types": ["domain"], "conditions": [{"pattern": "(unclosed"}], "confidence": 1.0}
        engine = DetectionEngine()
        errors = engine.load_rules([TK_RULE, bad])

        assert len(errors) == 1
        assert errors[0].rule_id == "bad"
        assert engine.is_active("tk")
        assert not engine.is_active("bad")
        assert engine.evaluate(IOC(IOCType.DOMAIN, "unclosed.tk")).matched_rules == [
            "Suspicious Domain TLD"
        ]

    def test_strict_load_raises(self):
        """Test strict loading raises the first compile error."""
        bad = {"id": "bad", "ioc_types": ["domain"], "conditions": [{"pattern": "["}], "confidence": 1.0}
        with pytest.raises(RuleCompileError):
            DetectionEngine().load_rules([bad], strict=True)

    def test_out_of_range_weight_rejected(self):
        """Test weights outside [0, 1] fail to compile."""
        bad = {"id": "w", "ioc_types": ["domain"], "conditions": [{"pattern": "x", "weight": 2}], "confidence": 1.0}
        errors = DetectionEngine().load_rules([bad])
        assert errors and errors[0].rule_id == "w"

    def test_disabled_rule_skipped(self):
        """Test disabled rules never match."""
        engine = DetectionEngine([TK_RULE])
        engine.set_enabled("tk", False)
        assert engine.evaluate(IOC(IOCType.DOMAIN, "malware.tk")).matched_rules == []

        with pytest.raises(KeyError):
            engine.set_enabled("missing", True)

    def test_patterns_compiled_once(self):
        """Test compiled patterns are reused across evaluations."""
        engine = DetectionEngine([TK_RULE])
        before = engine.patterns_for("tk", "value")
        engine.evaluate(IOC(IOCType.DOMAIN, "malware.tk"))
        assert engine.patterns_for("tk", "value")[0] is before[0]

    def test_highest_severity(self):
        """Test the most severe matched rule is reported."""
        engine = DetectionEngine()
        result = engine.evaluate(IOC(IOCType.URL, "http://198.51.100.7/drop.exe"))

        assert "Executable Download" in result.matched_rules
        assert engine.highest_severity(result) == Severity.HIGH
        assert engine.highest_severity(engine.evaluate(IOC(IOCType.IP, "192.0.2.1"))) is None

    def test_load_rules_file(self, tmp_path):
        """Test rules can be loaded from a JSON file."""
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": [TK_RULE]}))

        engine = DetectionEngine()
        errors = engine.load_rules_file(str(path))

        assert errors == []
        assert [r.id for r in engine.rules] == ["tk"]

    def test_default_rules_compile(self):
        """Test the shipped rules all compile."""
        engine = DetectionEngine()
        assert engine.load_errors == []
        assert len(engine.rules) == len(DEFAULT_RULES)
        assert all(engine.is_active(r.id) for r in engine.rules)

    def test_concurrent_evaluation_during_reload(self):
        """Test evaluations stay consistent while rules are reloaded."""
        engine = DetectionEngine([TK_RULE])
        ioc = IOC(IOCType.DOMAIN, "malware.tk")
        failures = []

        def evaluate():
            for _ in range(200):
                result = engine.evaluate(ioc)
                if result.detection_confidence not in (0.64, 0.0):
                    failures.append(result.detection_confidence)

        def reload():
            for i in range(50):
                engine.load_rules([TK_RULE] if i % 2 else [])

        threads = [threading.Thread(target=evaluate) for _ in range(4)] + [threading.Thread(target=reload)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert failures == []


def test_false_positive_probability_bands():
    """Test FP probability bands."""
    assert false_positive_probability(0.9) == 0.1
    assert false_positive_probability(0.7) == 0.2
    assert false_positive_probability(0.5) == NO_MATCH_FP_PROBABILITY
