"""
iptables rule listing parser.

Parses the output of `iptables -S <chain>`:

    -N PORTSYNC-PORTS
    -A PORTSYNC-PORTS -p tcp -m tcp --dport 80 -j ACCEPT
    -A PORTSYNC-PORTS -s 10.0.0.0/8 -p tcp -m tcp --dport 22 -j ACCEPT
    -A PORTSYNC-PORTS -p udp -m multiport --dports 53,5000:5010 -j ACCEPT
"""
import shlex
import logging
from typing import Dict, List, Optional

from portsync.core.exceptions import InvalidRuleData
from portsync.schemas.rule import UNIVERSAL_CIDR, PortRange, RuleProtocol, RuleRecord, RuleScope
from portsync.utils.parsers.base_parser import BaseRuleParser

logger = logging.getLogger(__name__)

PROTOCOL_ALIASES: Dict[str, RuleProtocol] = {
    "tcp": RuleProtocol.TCP,
    "6": RuleProtocol.TCP,
    "udp": RuleProtocol.UDP,
    "17": RuleProtocol.UDP,
    "icmp": RuleProtocol.ICMP,
    "1": RuleProtocol.ICMP,
    "icmpv6": RuleProtocol.ICMPV6,
    "ipv6-icmp": RuleProtocol.ICMPV6,
    "58": RuleProtocol.ICMPV6,
    "all": RuleProtocol.ALL,
    "0": RuleProtocol.ALL,
}

# Options that never narrow which packets a rule matches (match loaders, target options)
NEUTRAL_OPTIONS = {"-m", "--match", "--comment", "--reject-with", "--log-prefix", "--log-level"}

# Options whose value this parser reads; any other option may be a bare flag
VALUED_OPTIONS = {
    "-p", "--protocol", "-s", "--source", "-d", "--destination",
    "--dport", "--destination-port", "--dports", "--destination-ports",
    "-j", "--jump", "-g", "--goto", "-m", "--match", "--comment",
}

ACCEPT_TARGET = "ACCEPT"


def parse_protocol(value: Optional[str]) -> RuleProtocol:
    """Map an iptables protocol name or number to a RuleProtocol."""
    if value is None:
        return RuleProtocol.ALL
    return PROTOCOL_ALIASES.get(value.lower(), RuleProtocol.OTHER)


def parse_port_range(value: str) -> PortRange:
    """
    Parse an iptables port expression: "80", "8000:8010", "8000:" or ":1024".

    Raises:
        InvalidRuleData: If the expression is not a valid port or range
    """
    low, sep, high = value.partition(":")
    try:
        if not sep:
            port = int(low)
            return PortRange(min=port, max=port)
        # iptables prints an open low bound (":1024") as "0:1024"
        return PortRange(min=max(int(low), 1) if low else 1, max=int(high) if high else 65535)
    except ValueError as e:
        raise InvalidRuleData(f"Invalid port expression {value!r}", cause=str(e))


class IptablesRuleParser(BaseRuleParser):
    """Parser for `iptables -S` output of a single chain."""

    def __init__(self, content: str, chain: Optional[str] = None, scope: RuleScope = RuleScope.INGRESS):
        """
        Initialize parser.

        Args:
            content: `iptables -S <chain>` output
            chain: Only parse rules appended to this chain (all chains if None)
            scope: Direction of the chain (INPUT-side chains are ingress)
        """
        super().__init__(content)
        self.chain = chain
        self.scope = scope

    def chain_declared(self) -> bool:
        """Whether the listing declares the chain (-N) or its policy (-P)."""
        for line in self.lines:
            parts = line.split()
            if len(parts) >= 2 and parts[0] in ("-N", "-P") and (self.chain is None or parts[1] == self.chain):
                return True
        return False

    def parse_rules(self) -> List[RuleRecord]:
        """
        Parse rules from the listing.

        Multiport rules produce one record per port element, all sharing the same
        raw spec and flagged as composite.

        Returns:
            RuleRecords in chain order

        Raises:
            InvalidRuleData: If any rule line cannot be parsed
        """
        records: List[RuleRecord] = []
        position = 0

        for line in self.lines:
            line = line.strip()
            if not line.startswith("-A "):
                continue
            parts = line.split(None, 2)
            if len(parts) < 2:
                raise InvalidRuleData(f"Malformed rule line: {line!r}")
            chain = parts[1]
            if self.chain is not None and chain != self.chain:
                continue
            position += 1
            spec_text = parts[2] if len(parts) > 2 else ""
            records.extend(self._parse_rule(chain, spec_text, position))

        return records

    def _parse_rule(self, chain: str, spec_text: str, position: int) -> List[RuleRecord]:
        """Parse one rule specification (everything after "-A <chain>")."""
        try:
            tokens = shlex.split(spec_text)
        except ValueError as e:
            raise InvalidRuleData(f"Cannot tokenize rule {spec_text!r}", cause=str(e))

        protocol_name: Optional[str] = None
        cidr = UNIVERSAL_CIDR
        target: Optional[str] = None
        description: Optional[str] = None
        ranges: List[PortRange] = []
        constrained = False
        negate = False
        composite = False

        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token == "!":
                negate = True
                index += 1
                continue
            if not token.startswith("-"):
                raise InvalidRuleData(f"Unexpected token {token!r} in rule {spec_text!r}")

            # Collect option values up to the next option or negation
            values: List[str] = []
            index += 1
            while index < len(tokens) and tokens[index] != "!" and not tokens[index].startswith("-"):
                values.append(tokens[index])
                index += 1
            if not values:
                if token in VALUED_OPTIONS:
                    raise InvalidRuleData(f"Option {token} has no value in rule {spec_text!r}")
                # Bare match flag (--syn, -f, --set, --rsource...)
                constrained = True
                negate = False
                continue
            value = values[0]

            if negate:
                # Any negated match makes the rule narrower than it looks
                constrained = True
            if token in ("-p", "--protocol"):
                protocol_name = value
            elif token in ("-s", "--source"):
                cidr = value
            elif token in ("-d", "--destination"):
                if value != UNIVERSAL_CIDR:
                    constrained = True
            elif token in ("--dport", "--destination-port"):
                ranges = [parse_port_range(value)]
            elif token in ("--dports", "--destination-ports"):
                ranges = [parse_port_range(item) for item in value.split(",") if item]
                composite = True
            elif token in ("-j", "--jump", "-g", "--goto"):
                target = value
            elif token == "--comment":
                description = value
            elif token in ("--ctstate", "--state"):
                if "NEW" not in value.upper().split(","):
                    constrained = True
            elif token not in NEUTRAL_OPTIONS:
                # Interface, source port and any match we do not understand
                constrained = True
            negate = False

        protocol = parse_protocol(protocol_name)
        base = {
            "scope": self.scope,
            "cidr": cidr,
            "protocol": protocol,
            "allow": target == ACCEPT_TARGET,
            "constrained": constrained,
            "description": description,
            "raw": {
                "chain": chain,
                "spec": spec_text,
                "args": tokens,
                "position": position,
                "target": target,
                "composite": composite,
            },
        }

        if not ranges:
            return [RuleRecord(port_range=None, **base)]
        return [RuleRecord(port_range=port_range, **base) for port_range in ranges]
