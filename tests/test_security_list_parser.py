"""
Tests for the OCI security list parser and rule builders.
"""
import json

import pytest

from conftest import LIST_ID, all_rule, tcp_rule
from portsync.core.exceptions import InvalidRuleData
from portsync.schemas.port import PortSpec, Protocol
from portsync.schemas.rule import RuleProtocol, RuleScope
from portsync.utils.parsers.security_list_parser import (
    SecurityListParser,
    build_rule,
    build_update_document,
    canonical_rule,
    to_camel,
)


def document(ingress=None, egress=None, **extra):
    data = {"id": LIST_ID, "ingress-security-rules": ingress or [], "egress-security-rules": egress or []}
    data.update(extra)
    return json.dumps(data)


class TestSecurityListParser:
    """Parsing `oci network security-list get` output."""

    def test_kebab_case_snapshot(self):
        content = document(
            ingress=[tcp_rule(22), tcp_rule(8000, 8010, description="apps")],
            egress=[all_rule("destination")],
        )
        snapshot = SecurityListParser(content, list_id=LIST_ID).parse_snapshot()
        assert snapshot.list_id == LIST_ID
        assert snapshot.rule_count == 3
        ssh, apps = snapshot.ingress
        assert ssh.protocol == RuleProtocol.TCP
        assert (ssh.port_range.min, ssh.port_range.max) == (22, 22)
        assert apps.description == "apps"
        assert snapshot.egress[0].protocol == RuleProtocol.ALL
        assert snapshot.egress[0].scope == RuleScope.EGRESS
        assert snapshot.egress[0].cidr == "0.0.0.0/0"

    def test_camel_case_snapshot(self):
        content = json.dumps({
            "id": LIST_ID,
            "ingressSecurityRules": [{
                "protocol": "17",
                "source": "0.0.0.0/0",
                "udpOptions": {"destinationPortRange": {"min": 53, "max": 53}},
            }],
            "egressSecurityRules": [],
        })
        snapshot = SecurityListParser(content, list_id=LIST_ID).parse_snapshot()
        assert snapshot.ingress[0].protocol == RuleProtocol.UDP
        assert snapshot.ingress[0].port_range.min == 53

    def test_raw_rules_are_camel_case(self):
        snapshot = SecurityListParser(document(ingress=[tcp_rule(22)]), list_id=LIST_ID).parse_snapshot()
        assert "tcpOptions" in snapshot.ingress[0].raw
        assert snapshot.ingress[0].raw["tcpOptions"]["destinationPortRange"] == {"min": 22, "max": 22}

    def test_rule_without_options_has_no_range(self):
        snapshot = SecurityListParser(document(ingress=[all_rule()]), list_id=LIST_ID).parse_snapshot()
        assert snapshot.ingress[0].port_range is None
        assert snapshot.ingress[0].constrained is False

    def test_source_port_range_constrains(self):
        rule = tcp_rule(80)
        rule["tcp-options"]["source-port-range"] = {"min": 1024, "max": 65535}
        snapshot = SecurityListParser(document(ingress=[rule]), list_id=LIST_ID).parse_snapshot()
        assert snapshot.ingress[0].constrained is True

    def test_service_cidr_source_constrains(self):
        rule = tcp_rule(443, source="all-iad-services-in-oracle-services-network")
        rule["source-type"] = "SERVICE_CIDR_BLOCK"
        snapshot = SecurityListParser(document(ingress=[rule]), list_id=LIST_ID).parse_snapshot()
        assert snapshot.ingress[0].constrained is True

    def test_unknown_protocol_is_other(self):
        rule = {"protocol": "47", "source": "0.0.0.0/0"}
        snapshot = SecurityListParser(document(ingress=[rule]), list_id=LIST_ID).parse_snapshot()
        assert snapshot.ingress[0].protocol == RuleProtocol.OTHER

    def test_id_mismatch_rejected(self):
        content = document(id="ocid1.securitylist.oc1.iad.other")
        with pytest.raises(InvalidRuleData):
            SecurityListParser(content, list_id=LIST_ID).parse_snapshot()

    def test_missing_rule_array_rejected(self):
        content = json.dumps({"id": LIST_ID, "ingress-security-rules": []})
        with pytest.raises(InvalidRuleData):
            SecurityListParser(content, list_id=LIST_ID).parse_snapshot()

    @pytest.mark.parametrize("content", ["not json", "[]", '"null"'])
    def test_non_object_rejected(self, content):
        with pytest.raises(InvalidRuleData):
            SecurityListParser(content, list_id=LIST_ID).parse_snapshot()

    def test_malformed_range_rejected(self):
        rule = tcp_rule(80)
        rule["tcp-options"]["destination-port-range"] = {"min": 90, "max": 80}
        with pytest.raises(InvalidRuleData):
            SecurityListParser(document(ingress=[rule]), list_id=LIST_ID).parse_snapshot()

    def test_rule_without_protocol_rejected(self):
        with pytest.raises(InvalidRuleData):
            SecurityListParser(document(ingress=[{"source": "0.0.0.0/0"}]), list_id=LIST_ID).parse_snapshot()


class TestRuleBuilders:
    """Proposed rules and update documents."""

    def test_build_ingress_tcp_rule(self):
        rule = build_rule(PortSpec(port=8080), RuleScope.INGRESS)
        assert rule == {
            "protocol": "6",
            "source": "0.0.0.0/0",
            "sourceType": "CIDR_BLOCK",
            "isStateless": False,
            "description": "portsync 8080/tcp",
            "tcpOptions": {"destinationPortRange": {"min": 8080, "max": 8080}},
        }

    def test_build_egress_udp_rule(self):
        rule = build_rule(PortSpec(port=53, protocol=Protocol.UDP), RuleScope.EGRESS)
        assert rule["protocol"] == "17"
        assert rule["destination"] == "0.0.0.0/0"
        assert rule["udpOptions"]["destinationPortRange"] == {"min": 53, "max": 53}

    def test_update_document_converts_existing_rules(self):
        doc = build_update_document([tcp_rule(22)], [])
        assert doc["ingressSecurityRules"][0]["tcpOptions"]["destinationPortRange"] == {"min": 22, "max": 22}
        assert doc["egressSecurityRules"] == []

    def test_to_camel_keeps_values(self):
        assert to_camel({"source-type": "CIDR_BLOCK", "icmp-options": {"type": 3}}) == {
            "sourceType": "CIDR_BLOCK",
            "icmpOptions": {"type": 3},
        }


class TestCanonicalRule:
    """Structural comparison of rules."""

    def test_description_and_key_style_ignored(self):
        kebab = tcp_rule(80, description="web")
        camel = to_camel(tcp_rule(80, description="other"))
        assert canonical_rule(kebab) == canonical_rule(camel)

    def test_different_port_differs(self):
        assert canonical_rule(tcp_rule(80)) != canonical_rule(tcp_rule(81))

    def test_null_fields_ignored(self):
        assert canonical_rule(tcp_rule(80, **{"icmp-options": None})) == canonical_rule(tcp_rule(80))
