"""Schemas for desired port state."""
import enum
from typing import FrozenSet, Iterable, List

from pydantic import BaseModel, ConfigDict, Field


class Protocol(str, enum.Enum):
    """Transport protocols a desired port can use."""
    TCP = "tcp"
    UDP = "udp"


class PortSpec(BaseModel):
    """A (port, protocol) pair that must be reachable."""
    model_config = ConfigDict(frozen=True)

    port: int = Field(..., ge=1, le=65535)
    protocol: Protocol = Protocol.TCP

    @classmethod
    def parse(cls, value: str) -> "PortSpec":
        """
        Parse a port specification.

        Accepts "80/tcp", "53/udp" or a bare "8080" (defaults to tcp).

        Raises:
            ValueError: If the port or protocol is invalid
        """
        text = str(value).strip().lower()
        if "/" in text:
            port_part, proto_part = text.split("/", 1)
        else:
            port_part, proto_part = text, Protocol.TCP.value
        if not port_part.isdigit():
            raise ValueError(f"Invalid port: {value!r}")
        try:
            protocol = Protocol(proto_part.strip())
        except ValueError:
            raise ValueError(f"Invalid protocol in {value!r}, expected tcp or udp")
        return cls(port=int(port_part), protocol=protocol)

    def sort_key(self):
        return (self.port, self.protocol.value)

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol.value}"


# Desired state is a plain set: order is irrelevant and duplicates coalesce.
DesiredPortSet = FrozenSet[PortSpec]


def sorted_specs(specs: Iterable[PortSpec]) -> List[PortSpec]:
    """Return specs in stable (port, protocol) order for display and apply."""
    return sorted(specs, key=PortSpec.sort_key)
