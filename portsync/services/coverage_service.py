"""
Coverage analysis: is a desired port already permitted by a store snapshot?

Pure functions only. The same checks run against iptables listings and against
security list ingress/egress rules.
"""
import ipaddress
import logging
from typing import Iterable, List, Optional, Sequence

from portsync.schemas.port import PortSpec, sorted_specs
from portsync.schemas.rule import RuleProtocol, RuleRecord
from portsync.schemas.sync import CoverageResult

logger = logging.getLogger(__name__)

UNIVERSAL_NETWORK = ipaddress.ip_network("0.0.0.0/0")


def is_universal(cidr: str) -> bool:
    """Whether a cidr is the IPv4 "anyone" network."""
    try:
        return ipaddress.ip_network(cidr, strict=False) == UNIVERSAL_NETWORK
    except ValueError:
        return False


def rule_covers(rule: RuleRecord, spec: PortSpec) -> bool:
    """
    Decide whether a single rule permits traffic for a desired port.

    A rule covers when it is an unconstrained allow rule for 0.0.0.0/0 and either
    its protocol equals the desired protocol (with the port inside its range, if
    it has one) or its protocol is "all" with no port range at all. A wildcard
    rule that restricts ports is never treated as blanket coverage.
    """
    if not rule.allow or rule.constrained:
        return False
    if not is_universal(rule.cidr):
        return False

    if rule.protocol == RuleProtocol.ALL:
        return rule.port_range is None

    if rule.protocol.value != spec.protocol.value:
        return False
    if rule.port_range is None:
        return True
    return rule.port_range.contains(spec.port)


def analyze(spec: PortSpec, rules: Sequence[RuleRecord]) -> CoverageResult:
    """Check one desired port against a snapshot; the first covering rule is reported."""
    matching: Optional[RuleRecord] = next((rule for rule in rules if rule_covers(rule, spec)), None)
    return CoverageResult(spec=spec, covered=matching is not None, matching_rule=matching)


def analyze_all(specs: Iterable[PortSpec], rules: Sequence[RuleRecord]) -> List[CoverageResult]:
    """Check every desired port, in stable port order."""
    return [analyze(spec, rules) for spec in sorted_specs(specs)]


def uncovered(results: Iterable[CoverageResult]) -> List[PortSpec]:
    """Desired ports that no rule covers."""
    return [result.spec for result in results if not result.covered]


def covered(results: Iterable[CoverageResult]) -> List[PortSpec]:
    """Desired ports already covered."""
    return [result.spec for result in results if result.covered]
