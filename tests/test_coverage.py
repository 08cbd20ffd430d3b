"""
Tests for coverage analysis.
"""
import pytest

from portsync.schemas.port import PortSpec, Protocol
from portsync.schemas.rule import PortRange, RuleProtocol, RuleRecord, RuleScope
from portsync.services.coverage_service import analyze, analyze_all, covered, is_universal, rule_covers, uncovered


def make_rule(protocol=RuleProtocol.TCP, port_range=None, cidr="0.0.0.0/0", **kwargs):
    if isinstance(port_range, tuple):
        port_range = PortRange(min=port_range[0], max=port_range[1])
    return RuleRecord(scope=RuleScope.INGRESS, cidr=cidr, protocol=protocol, port_range=port_range, **kwargs)


TCP_8005 = PortSpec(port=8005, protocol=Protocol.TCP)


class TestRuleCovers:
    """Single rule against a single desired port."""

    def test_range_contains_port(self):
        """[8000,8010] covers 8005."""
        assert rule_covers(make_rule(port_range=(8000, 8010)), TCP_8005) is True

    def test_range_excludes_port(self):
        """[8000,8010] does not cover 8011."""
        assert rule_covers(make_rule(port_range=(8000, 8010)), PortSpec(port=8011)) is False

    def test_range_bounds_inclusive(self):
        rule = make_rule(port_range=(8000, 8010))
        assert rule_covers(rule, PortSpec(port=8000)) is True
        assert rule_covers(rule, PortSpec(port=8010)) is True

    def test_exact_protocol_without_range_covers_every_port(self):
        assert rule_covers(make_rule(), PortSpec(port=65535)) is True

    def test_protocol_mismatch(self):
        assert rule_covers(make_rule(protocol=RuleProtocol.UDP), TCP_8005) is False

    def test_wildcard_without_range_covers(self):
        """An "all" rule without options covers any tcp or udp port."""
        rule = make_rule(protocol=RuleProtocol.ALL)
        assert rule_covers(rule, PortSpec(port=443)) is True
        assert rule_covers(rule, PortSpec(port=53, protocol=Protocol.UDP)) is True

    def test_wildcard_with_range_is_not_coverage(self):
        """A wildcard rule restricting ports never counts, even for ports inside the range."""
        rule = make_rule(protocol=RuleProtocol.ALL, port_range=(8000, 8010))
        assert rule_covers(rule, TCP_8005) is False
        assert rule_covers(rule, PortSpec(port=9000)) is False

    def test_restricted_source_is_not_coverage(self):
        assert rule_covers(make_rule(cidr="10.0.0.0/8"), TCP_8005) is False

    def test_ipv6_any_is_not_coverage(self):
        assert rule_covers(make_rule(cidr="::/0"), TCP_8005) is False

    def test_deny_rule_is_not_coverage(self):
        assert rule_covers(make_rule(allow=False), TCP_8005) is False

    def test_constrained_rule_is_not_coverage(self):
        assert rule_covers(make_rule(constrained=True), TCP_8005) is False

    @pytest.mark.parametrize("protocol", [RuleProtocol.ICMP, RuleProtocol.OTHER])
    def test_non_transport_protocols_never_cover(self, protocol):
        assert rule_covers(make_rule(protocol=protocol), TCP_8005) is False


class TestUniversalCidr:
    """0.0.0.0/0 detection."""

    def test_universal_forms(self):
        assert is_universal("0.0.0.0/0") is True
        assert is_universal("0.0.0.0/0.0.0.0") is True

    def test_not_universal(self):
        assert is_universal("0.0.0.0/1") is False
        assert is_universal("anywhere") is False


class TestAnalyze:
    """Analysis of a desired set against a snapshot."""

    def test_reports_first_matching_rule(self):
        first = make_rule(port_range=(8000, 8010), description="first")
        second = make_rule(description="second")
        result = analyze(TCP_8005, [first, second])
        assert result.covered is True
        assert result.matching_rule.description == "first"

    def test_uncovered_and_covered_partition(self):
        rules = [make_rule(port_range=(22, 22))]
        results = analyze_all([PortSpec(port=8080), PortSpec(port=22), PortSpec(port=80)], rules)
        assert [str(spec) for spec in covered(results)] == ["22/tcp"]
        assert [str(spec) for spec in uncovered(results)] == ["80/tcp", "8080/tcp"]

    def test_empty_snapshot_covers_nothing(self):
        results = analyze_all([PortSpec(port=22)], [])
        assert uncovered(results) == [PortSpec(port=22)]
