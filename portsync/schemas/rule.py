"""Schemas for rules read from (or proposed to) a rule store."""
import enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from portsync.schemas.port import PortSpec

UNIVERSAL_CIDR = "0.0.0.0/0"


class RuleScope(str, enum.Enum):
    """Traffic direction a rule applies to."""
    INGRESS = "ingress"
    EGRESS = "egress"


class RuleProtocol(str, enum.Enum):
    """Protocols found in rule stores. Only TCP, UDP and ALL can cover a port."""
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ICMPV6 = "icmpv6"
    ALL = "all"
    OTHER = "other"


class PortRange(BaseModel):
    """Inclusive destination port range."""
    model_config = ConfigDict(frozen=True)

    min: int = Field(..., ge=1, le=65535)
    max: int = Field(..., ge=1, le=65535)

    @model_validator(mode="after")
    def check_order(self):
        if self.min > self.max:
            raise ValueError(f"Port range min {self.min} is greater than max {self.max}")
        return self

    def contains(self, port: int) -> bool:
        return self.min <= port <= self.max

    def __str__(self) -> str:
        if self.min == self.max:
            return str(self.min)
        return f"{self.min}-{self.max}"


class RuleRecord(BaseModel):
    """
    One rule in either store.

    Built by the parsers when a store is listed. `raw` keeps what the store needs
    to reference the rule again: the rule spec for iptables, the original JSON
    object for a security list.
    """
    scope: RuleScope = RuleScope.INGRESS
    cidr: str = UNIVERSAL_CIDR
    protocol: RuleProtocol
    port_range: Optional[PortRange] = None
    allow: bool = True
    constrained: bool = False  # extra matches narrow the rule (interface, negation, source ports)
    stateless: bool = False
    description: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def proposed(cls, spec: PortSpec, scope: RuleScope, raw: Optional[Dict[str, Any]] = None) -> "RuleRecord":
        """Build a rule that would open exactly one desired port to everyone."""
        return cls(
            scope=scope,
            cidr=UNIVERSAL_CIDR,
            protocol=RuleProtocol(spec.protocol.value),
            port_range=PortRange(min=spec.port, max=spec.port),
            raw=raw or {},
        )

    def match_key(self) -> Tuple:
        """Normalized match fields, ignoring descriptions and textual variations."""
        return (
            self.scope.value,
            self.protocol.value,
            self.port_range.min if self.port_range else None,
            self.port_range.max if self.port_range else None,
            self.cidr,
            self.allow,
            self.constrained,
            self.stateless,
        )

    def describe(self) -> str:
        """Short human-readable form, e.g. 'ingress tcp 80 from 0.0.0.0/0'."""
        ports = str(self.port_range) if self.port_range else "ALL"
        peer = "from" if self.scope == RuleScope.INGRESS else "to"
        text = f"{self.scope.value} {self.protocol.value} {ports} {peer} {self.cidr}"
        if not self.allow:
            text += " (not accept)"
        if self.description:
            text += f" [{self.description}]"
        return text
