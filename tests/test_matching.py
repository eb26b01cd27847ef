"""Tests for match predicates, pattern ordering and configuration loading."""

from datetime import timedelta
from pathlib import Path

import pytest

from helpers import T0, make_pattern, make_signal
from orchestrator.errors import PatternConfigError
from orchestrator.escalation.policy import EscalationPolicy
from orchestrator.matching.loader import load_config, parse_config
from orchestrator.matching.matcher import PatternMatcher, PatternRegistry
from orchestrator.matching.patterns import MatchPredicate, Severity

CONFIG_FILE = Path(__file__).resolve().parent.parent / "config" / "patterns.yaml"


class TestMatchPredicate:
    def test_threshold_comparison(self):
        predicate = MatchPredicate(metric_name="http_error_rate", operator="gt", threshold=0.05)
        assert predicate.evaluate(make_signal(value=0.2))
        assert not predicate.evaluate(make_signal(value=0.05))

    def test_eq_operator(self):
        predicate = MatchPredicate(metric_name="redis_up", operator="eq", threshold=0)
        assert predicate.evaluate(make_signal("redis_up", value=0))
        assert not predicate.evaluate(make_signal("redis_up", value=1))

    def test_source_and_labels_must_match(self):
        predicate = MatchPredicate(
            metric_name="http_error_rate", source="prometheus", labels={"service": "checkout"}
        )
        assert predicate.evaluate(make_signal())
        assert not predicate.evaluate(make_signal(source="datadog"))
        assert not predicate.evaluate(make_signal(labels={"service": "search"}))

    def test_min_occurrences_counts_window(self):
        predicate = MatchPredicate(
            metric_name="http_error_rate", threshold=0.05, min_occurrences=3, within_seconds=300
        )
        window = [
            make_signal(signal_id="a", timestamp=T0 - timedelta(seconds=120)),
            make_signal(signal_id="b", timestamp=T0 - timedelta(seconds=60)),
        ]
        current = make_signal(signal_id="c", timestamp=T0)
        assert predicate.evaluate(current, window)
        assert not predicate.evaluate(current, window[1:])

    def test_min_occurrences_ignores_stale_and_below_threshold(self):
        predicate = MatchPredicate(
            metric_name="http_error_rate", threshold=0.05, min_occurrences=2, within_seconds=300
        )
        window = [
            make_signal(signal_id="stale", timestamp=T0 - timedelta(minutes=10)),
            make_signal(signal_id="low", value=0.01, timestamp=T0 - timedelta(seconds=30)),
        ]
        assert not predicate.evaluate(make_signal(signal_id="c", timestamp=T0), window)

    def test_current_signal_in_window_counted_once(self):
        predicate = MatchPredicate(metric_name="http_error_rate", min_occurrences=2)
        current = make_signal(signal_id="c")
        assert not predicate.evaluate(current, [current])


class TestPatternMatcher:
    def test_higher_severity_wins_regardless_of_registration(self):
        minor = make_pattern("minor", severity="P3")
        major = make_pattern("major", severity="P0")
        matcher = PatternMatcher(PatternRegistry([minor, major]))
        assert matcher.match(make_signal()).pattern_id == "major"

    def test_ties_keep_registration_order(self):
        first = make_pattern("first", severity="P2")
        second = make_pattern("second", severity="P2")
        matcher = PatternMatcher(PatternRegistry([first, second]))
        assert matcher.match(make_signal()).pattern_id == "first"

    def test_deterministic(self):
        matcher = PatternMatcher(PatternRegistry([make_pattern("a"), make_pattern("b", severity="P2")]))
        signal = make_signal()
        results = {matcher.match(signal).pattern_id for _ in range(20)}
        assert results == {"a"}

    def test_unclassified(self):
        matcher = PatternMatcher(PatternRegistry([make_pattern()]))
        assert matcher.match(make_signal("cpu_usage")) is None

    def test_duplicate_pattern_id_rejected(self):
        with pytest.raises(PatternConfigError):
            PatternRegistry([make_pattern("dup"), make_pattern("dup")])


class TestIncidentPattern:
    def test_group_key_uses_group_by_labels(self):
        pattern = make_pattern(group_by=("service", "region"))
        signal = make_signal(labels={"service": "checkout", "region": "eu-west-1", "pod": "x"})
        assert pattern.group_key(signal) == "high-error-rate|region=eu-west-1,service=checkout"

    def test_group_key_without_group_by(self):
        assert make_pattern(group_by=()).group_key(make_signal()) == "high-error-rate|"

    def test_steps_required_and_unique(self):
        with pytest.raises(ValueError):
            make_pattern(steps=[])
        with pytest.raises(ValueError):
            make_pattern(steps=[
                {"step_id": "a", "action_ref": "x"},
                {"step_id": "a", "action_ref": "y"},
            ])


class TestLoader:
    def test_loads_bundled_config(self):
        registry, policy = load_config(CONFIG_FILE)
        assert len(registry) == 5
        ordered = [p.pattern_id for p in registry.ordered()]
        assert ordered[0] == "iam-credential-compromise"
        iam = registry.get("iam-credential-compromise")
        assert iam.severity == Severity.P0
        assert iam.response_time_sla == timedelta(minutes=15)
        assert policy.threshold(Severity.P0, 0) == timedelta(minutes=15)
        assert policy.tier_name(3) == "VP"

    def test_defaults_when_escalation_missing(self):
        registry, policy = parse_config({"patterns": []})
        assert len(registry) == 0
        assert policy == EscalationPolicy()

    def test_invalid_pattern(self):
        with pytest.raises(PatternConfigError, match="#0"):
            parse_config({"patterns": [{"pattern_id": "x", "severity": "P9"}]})

    def test_descending_thresholds_rejected(self):
        with pytest.raises(PatternConfigError):
            parse_config({"escalation": {"thresholds": {"P0": [3600, 60]}}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(PatternConfigError):
            load_config(tmp_path / "nope.yaml")


class TestEscalationPolicy:
    def test_thresholds_per_level(self):
        policy = EscalationPolicy()
        assert policy.threshold(Severity.P1, 0) == timedelta(minutes=30)
        assert policy.threshold(Severity.P1, 2) == timedelta(hours=2)
        assert policy.threshold(Severity.P1, 3) is None

    def test_first_threshold_override(self):
        policy = EscalationPolicy()
        assert policy.threshold(Severity.P2, 0, timedelta(minutes=5)) == timedelta(minutes=5)
        assert policy.threshold(Severity.P2, 1, timedelta(minutes=5)) == timedelta(hours=4)

    def test_needs_two_tiers(self):
        with pytest.raises(ValueError):
            EscalationPolicy(tiers=("only",))
