"""
Service for discovering the ports local services need open.

Sources: published container ports, the local gateway's registered routes, the
gateway's own port, optionally wildcard-bound listening sockets, and the fixed
baseline. A failing source is skipped and logged; discovery itself never fails
because of one.
"""
import logging
import socket
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

import requests
from docker import from_env
from docker.errors import DockerException
import psutil
from pydantic import BaseModel, Field

from portsync.core.config import Settings, settings as default_settings
from portsync.core.exceptions import ConfigurationError, DiscoverySourceUnavailable
from portsync.schemas.port import DesiredPortSet, PortSpec, Protocol, sorted_specs

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = {"", "0.0.0.0", "::", "[::]"}


class DiscoveryResult(BaseModel):
    """Desired ports plus per-source bookkeeping."""
    ports: DesiredPortSet = Field(default_factory=frozenset)
    sources: Dict[str, List[str]] = Field(default_factory=dict)
    unavailable: Dict[str, str] = Field(default_factory=dict)

    def sorted_ports(self) -> List[PortSpec]:
        return sorted_specs(self.ports)


def parse_baseline(values: List[str]) -> Set[PortSpec]:
    """
    Parse configured baseline ports.

    Raises:
        ConfigurationError: If any entry is not a valid port/protocol
    """
    specs = set()
    for value in values:
        try:
            specs.add(PortSpec.parse(value))
        except ValueError as e:
            raise ConfigurationError(f"Invalid baseline port {value!r}", cause=str(e))
    return specs


def _port_from_url(text: str) -> Optional[int]:
    """Extract the port from "http://127.0.0.1:8080" or "127.0.0.1:8080"."""
    text = text.strip()
    if not text:
        return None
    if "://" not in text:
        text = f"http://{text}"
    try:
        return urlparse(text).port
    except ValueError:
        return None


class PortDiscoveryService:
    """Builds the desired port set from local sources."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        docker_factory: Callable = None,
        http: Optional[requests.Session] = None,
    ):
        """
        Initialize discovery service.

        Args:
            config: Settings (defaults to the global settings)
            docker_factory: Callable returning a Docker client (docker.from_env)
            http: requests session used for the gateway query
        """
        self.config = config or default_settings
        self.docker_factory = docker_factory or (lambda: from_env(timeout=int(self.config.HTTP_TIMEOUT)))
        self.http = http or requests.Session()

    def discover(self) -> DiscoveryResult:
        """
        Compute the desired port set.

        Returns:
            DiscoveryResult with the coalesced set of ports

        Raises:
            ConfigurationError: If the baseline configuration is invalid
        """
        baseline = parse_baseline(self.config.BASELINE_PORTS)
        result_sources: Dict[str, List[str]] = {"baseline": [str(spec) for spec in sorted_specs(baseline)]}
        unavailable: Dict[str, str] = {}
        ports: Set[PortSpec] = set(baseline)

        sources = [("gateway_routes", self.gateway_route_ports), ("gateway", self.gateway_own_ports)]
        if self.config.DOCKER_ENABLED:
            sources.insert(0, ("docker", self.docker_ports))
        if self.config.DISCOVER_LISTENING_SOCKETS:
            sources.append(("listening", self.listening_ports))

        for name, source in sources:
            try:
                found = source()
            except DiscoverySourceUnavailable as e:
                logger.info(f"[DISCOVERY] Skipping source {name}: {e}")
                unavailable[name] = str(e)
                continue
            result_sources[name] = [str(spec) for spec in sorted_specs(found)]
            ports |= found

        logger.info(f"[DISCOVERY] Discovered {len(ports)} unique ports: {', '.join(str(p) for p in sorted_specs(ports))}")
        return DiscoveryResult(ports=frozenset(ports), sources=result_sources, unavailable=unavailable)

    def docker_ports(self) -> Set[PortSpec]:
        """Host ports published by running containers on all interfaces."""
        try:
            client = self.docker_factory()
            containers = client.containers.list()
        except (DockerException, requests.RequestException) as e:
            raise DiscoverySourceUnavailable("Docker engine not reachable", cause=str(e))

        specs: Set[PortSpec] = set()
        for container in containers:
            ports_map = container.attrs.get("NetworkSettings", {}).get("Ports", {}) or {}
            for port_proto, bindings in ports_map.items():
                if not bindings:
                    continue
                _, _, proto = port_proto.partition("/")
                try:
                    protocol = Protocol((proto or "tcp").lower())
                except ValueError:
                    continue  # sctp
                for bind in bindings:
                    host_ip = bind.get("HostIp") or ""
                    host_port = bind.get("HostPort") or ""
                    if host_ip not in WILDCARD_HOSTS or not host_port.isdigit():
                        continue
                    specs.add(PortSpec(port=int(host_port), protocol=protocol))
        return specs

    def gateway_endpoint(self) -> Optional[str]:
        """host:port of the gateway management API, configured or read from its URL file."""
        if self.config.GATEWAY_ENDPOINT:
            return self.config.GATEWAY_ENDPOINT
        url_file = Path(self.config.GATEWAY_MANAGEMENT_URL_FILE)
        try:
            text = url_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        port = _port_from_url(text)
        if port is None:
            return None
        return f"127.0.0.1:{port}"

    def gateway_route_ports(self) -> Set[PortSpec]:
        """Ports of routes registered with the local gateway."""
        endpoint = self.gateway_endpoint()
        if not endpoint:
            raise DiscoverySourceUnavailable("Gateway management endpoint not configured or not detected")

        url = f"http://{endpoint}{self.config.GATEWAY_ROUTES_PATH}"
        response = None
        for attempt in range(1 + self.config.RETRY_COUNT):
            try:
                response = self.http.get(url, timeout=self.config.HTTP_TIMEOUT)
                break
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == self.config.RETRY_COUNT:
                    raise DiscoverySourceUnavailable(f"Gateway not reachable at {url}", cause=str(e))
        if response.status_code != 200:
            raise DiscoverySourceUnavailable(f"Gateway returned HTTP {response.status_code} for {url}")
        try:
            body = response.json()
        except ValueError as e:
            raise DiscoverySourceUnavailable("Gateway returned invalid JSON", cause=str(e))

        routes = body.get("routes") if isinstance(body, dict) else body
        if routes is None:
            routes = []
        if not isinstance(routes, list):
            raise DiscoverySourceUnavailable(f"Gateway returned unexpected routes payload: {type(routes).__name__}")
        specs: Set[PortSpec] = set()
        for route in routes:
            if not isinstance(route, dict):
                continue
            port = str(route.get("port", "")).strip()
            if port.isdigit() and 1 <= int(port) <= 65535:
                specs.add(PortSpec(port=int(port), protocol=Protocol.TCP))
        return specs

    def gateway_own_ports(self) -> Set[PortSpec]:
        """The port the gateway itself serves on, from its URL file."""
        url_file = Path(self.config.GATEWAY_URL_FILE)
        try:
            text = url_file.read_text(encoding="utf-8")
        except OSError as e:
            raise DiscoverySourceUnavailable(f"Gateway URL file {url_file} not readable", cause=str(e))
        port = _port_from_url(text)
        if port is None:
            raise DiscoverySourceUnavailable(f"No port in gateway URL file {url_file}")
        return {PortSpec(port=port, protocol=Protocol.TCP)}

    def listening_ports(self) -> Set[PortSpec]:
        """TCP listeners and bound UDP sockets on wildcard addresses."""
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.Error, OSError) as e:
            raise DiscoverySourceUnavailable("Cannot enumerate sockets", cause=str(e))

        specs: Set[PortSpec] = set()
        for conn in connections:
            if not conn.laddr or conn.laddr.ip not in WILDCARD_HOSTS or not conn.laddr.port:
                continue
            if conn.type == socket.SOCK_STREAM and conn.status == psutil.CONN_LISTEN:
                specs.add(PortSpec(port=conn.laddr.port, protocol=Protocol.TCP))
            elif conn.type == socket.SOCK_DGRAM and not conn.raddr:
                specs.add(PortSpec(port=conn.laddr.port, protocol=Protocol.UDP))
        return specs
