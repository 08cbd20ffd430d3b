"""
OCI security list parser.

Parses the JSON returned by `oci network security-list get --query data`. The
CLI prints kebab-case keys ("tcp-options"), the API and SDK use camelCase
("tcpOptions"); both are accepted. Update documents are always built in
camelCase, converting existing rules key-for-key without altering values.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from portsync.core.exceptions import InvalidRuleData
from portsync.schemas.port import PortSpec, Protocol
from portsync.schemas.rule import UNIVERSAL_CIDR, PortRange, RuleProtocol, RuleRecord, RuleScope
from portsync.schemas.sync import SecurityListSnapshot
from portsync.utils.parsers.base_parser import BaseRuleParser

logger = logging.getLogger(__name__)

PROTOCOL_NUMBERS: Dict[str, RuleProtocol] = {
    "6": RuleProtocol.TCP,
    "17": RuleProtocol.UDP,
    "1": RuleProtocol.ICMP,
    "58": RuleProtocol.ICMPV6,
    "all": RuleProtocol.ALL,
}

TRANSPORT_NUMBERS: Dict[Protocol, str] = {
    Protocol.TCP: "6",
    Protocol.UDP: "17",
}

RULE_LIST_KEYS = {
    RuleScope.INGRESS: "ingressSecurityRules",
    RuleScope.EGRESS: "egressSecurityRules",
}

PEER_KEYS = {
    RuleScope.INGRESS: "source",
    RuleScope.EGRESS: "destination",
}

_KEBAB_PART = re.compile(r"-([a-z0-9])")
_CAMEL_PART = re.compile(r"([A-Z])")


def kebab_to_camel(key: str) -> str:
    return _KEBAB_PART.sub(lambda m: m.group(1).upper(), key)


def camel_to_kebab(key: str) -> str:
    return _CAMEL_PART.sub(lambda m: "-" + m.group(1).lower(), key)


def to_camel(value: Any) -> Any:
    """Recursively convert dict keys to camelCase."""
    if isinstance(value, dict):
        return {kebab_to_camel(k): to_camel(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_camel(item) for item in value]
    return value


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(item) for item in value]
    return value


def canonical_rule(raw: Dict[str, Any]) -> str:
    """
    Canonical form of a rule for structural comparison.

    Key style, null fields and the description are ignored, so two rules that
    only differ in metadata compare equal.
    """
    normalized = _drop_none(to_camel(raw))
    normalized.pop("description", None)
    return json.dumps(normalized, sort_keys=True)


def build_rule(spec: PortSpec, scope: RuleScope) -> Dict[str, Any]:
    """Build a camelCase security rule opening one port to everyone."""
    options_key = "tcpOptions" if spec.protocol == Protocol.TCP else "udpOptions"
    return {
        "protocol": TRANSPORT_NUMBERS[spec.protocol],
        PEER_KEYS[scope]: UNIVERSAL_CIDR,
        f"{PEER_KEYS[scope]}Type": "CIDR_BLOCK",
        "isStateless": False,
        "description": f"portsync {spec}",
        options_key: {"destinationPortRange": {"min": spec.port, "max": spec.port}},
    }


def build_update_document(ingress: List[Dict[str, Any]], egress: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Whole-list replacement document for `oci network security-list update --from-json`."""
    return {
        "ingressSecurityRules": [to_camel(rule) for rule in ingress],
        "egressSecurityRules": [to_camel(rule) for rule in egress],
    }


class SecurityListParser(BaseRuleParser):
    """Parser for a security list `get` response."""

    def __init__(self, content: str, list_id: Optional[str] = None):
        """
        Initialize parser.

        Args:
            content: JSON text of the security list
            list_id: Expected OCID; a different `id` in the response is rejected
        """
        super().__init__(content)
        self.list_id = list_id
        self._data: Optional[Dict[str, Any]] = None

    @property
    def data(self) -> Dict[str, Any]:
        """Decoded response, normalized to camelCase."""
        if self._data is None:
            try:
                decoded = json.loads(self.content)
            except json.JSONDecodeError as e:
                raise InvalidRuleData("Security list response is not valid JSON", cause=str(e))
            if not isinstance(decoded, dict):
                raise InvalidRuleData(f"Security list response is a {type(decoded).__name__}, expected an object")
            self._data = to_camel(decoded)
        return self._data

    def parse_snapshot(self) -> SecurityListSnapshot:
        """
        Parse the full snapshot.

        Raises:
            InvalidRuleData: On identity mismatch, missing rule arrays or malformed rules
        """
        data = self.data
        returned_id = data.get("id")
        if self.list_id and returned_id and returned_id != self.list_id:
            raise InvalidRuleData(f"Security list id mismatch: asked for {self.list_id}, got {returned_id}")

        return SecurityListSnapshot(
            list_id=self.list_id or returned_id or "",
            ingress=self._parse_scope(RuleScope.INGRESS),
            egress=self._parse_scope(RuleScope.EGRESS),
            raw=data,
        )

    def parse_rules(self) -> List[RuleRecord]:
        """Parse ingress and egress rules as one list."""
        return self._parse_scope(RuleScope.INGRESS) + self._parse_scope(RuleScope.EGRESS)

    def _parse_scope(self, scope: RuleScope) -> List[RuleRecord]:
        key = RULE_LIST_KEYS[scope]
        rules = self.data.get(key)
        if not isinstance(rules, list):
            raise InvalidRuleData(f"Security list response has no {camel_to_kebab(key)} array")
        return [self._parse_rule(rule, scope, index) for index, rule in enumerate(rules)]

    def _parse_rule(self, rule: Any, scope: RuleScope, index: int) -> RuleRecord:
        """Parse one camelCase security rule."""
        where = f"{scope.value} rule #{index + 1}"
        if not isinstance(rule, dict):
            raise InvalidRuleData(f"{where} is not an object")

        protocol_value = rule.get("protocol")
        if protocol_value is None:
            raise InvalidRuleData(f"{where} has no protocol")
        protocol = PROTOCOL_NUMBERS.get(str(protocol_value).lower(), RuleProtocol.OTHER)

        peer = rule.get(PEER_KEYS[scope])
        if not peer:
            raise InvalidRuleData(f"{where} has no {PEER_KEYS[scope]}")

        constrained = rule.get(f"{PEER_KEYS[scope]}Type", "CIDR_BLOCK") != "CIDR_BLOCK"
        port_range = None

        if protocol in (RuleProtocol.TCP, RuleProtocol.UDP):
            options = rule.get("tcpOptions" if protocol == RuleProtocol.TCP else "udpOptions")
            port_range, source_restricted = self._parse_options(options, where)
            constrained = constrained or source_restricted
        elif protocol == RuleProtocol.ALL:
            # The API does not accept options on "all" rules, but a restricted
            # range anywhere means the rule is not blanket coverage.
            for options_key in ("tcpOptions", "udpOptions"):
                option_range, source_restricted = self._parse_options(rule.get(options_key), where)
                port_range = port_range or option_range
                constrained = constrained or source_restricted

        return RuleRecord(
            scope=scope,
            cidr=str(peer),
            protocol=protocol,
            port_range=port_range,
            constrained=constrained,
            stateless=bool(rule.get("isStateless") or False),
            description=rule.get("description"),
            raw=rule,
        )

    @staticmethod
    def _parse_options(options: Any, where: str):
        """Return (destination range, has source port restriction) for tcp/udp options."""
        if options is None:
            return None, False
        if not isinstance(options, dict):
            raise InvalidRuleData(f"{where} has malformed port options")
        return (
            _parse_range(options.get("destinationPortRange"), where),
            options.get("sourcePortRange") is not None,
        )


def _parse_range(value: Any, where: str) -> Optional[PortRange]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise InvalidRuleData(f"{where} has a malformed port range")
    try:
        return PortRange(min=int(value["min"]), max=int(value["max"]))
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidRuleData(f"{where} has an invalid port range {value!r}", cause=str(e))
