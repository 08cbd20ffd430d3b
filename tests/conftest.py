"""
Pytest configuration and fixtures.

No test touches the real iptables, oci CLI, Docker engine or systemd: every
external command goes through FakeRunner, which simulates iptables chains and a
single OCI security list in memory.
"""
import json
import shlex
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest

from portsync.core.config import Settings
from portsync.schemas.port import PortSpec
from portsync.schemas.sync import SecurityListSnapshot
from portsync.services.discovery_service import DiscoveryResult
from portsync.services.local_filter_service import LocalFilterService
from portsync.services.security_list_service import SecurityListService
from portsync.utils.command_runner import CommandError, CommandResult
from portsync.utils.parser_factory import StoreKind, create_parser

LIST_ID = "ocid1.securitylist.oc1.iad.test"

Outcome = Tuple[int, str, str]


class FakeIptables:
    """In-memory iptables: chains of rule token lists."""

    BUILTIN = ("INPUT", "FORWARD", "OUTPUT")

    def __init__(self, chains: Optional[Dict[str, List[str]]] = None):
        self.chains: Dict[str, List[List[str]]] = {name: [] for name in self.BUILTIN}
        for name, specs in (chains or {}).items():
            self.chains[name] = [shlex.split(spec) for spec in specs]
        self.reject_specs: List[str] = []

    def rules(self, chain: str) -> List[str]:
        return [" ".join(tokens) for tokens in self.chains.get(chain, [])]

    def handle(self, args: List[str]) -> Outcome:
        op = args[0]
        if op == "-n" and args[1] == "-L":
            return (0, "", "") if args[2] in self.chains else (1, "", "iptables: No chain/target/match by that name.")
        chain = args[1]
        rule = args[2:]
        if op == "-N":
            if chain in self.chains:
                return 1, "", "iptables: Chain already exists."
            self.chains[chain] = []
            return 0, "", ""
        if chain not in self.chains:
            return 1, "", "iptables: No chain/target/match by that name."
        if op == "-S":
            header = f"-P {chain} ACCEPT" if chain in self.BUILTIN else f"-N {chain}"
            lines = [header] + [f"-A {chain} {shlex.join(tokens)}" for tokens in self.chains[chain]]
            return 0, "\n".join(lines) + "\n", ""
        if op == "-C":
            return (0, "", "") if rule in self.chains[chain] else (1, "", "iptables: Bad rule.")
        if op == "-A":
            if " ".join(rule) in self.reject_specs:
                return 2, "", "iptables v1.8.7: invalid port/service specified"
            self.chains[chain].append(rule)
            return 0, "", ""
        if op == "-I":
            position = int(rule[0])
            self.chains[chain].insert(position - 1, rule[1:])
            return 0, "", ""
        if op == "-D":
            if rule not in self.chains[chain]:
                return 1, "", "iptables: Bad rule (does a matching rule exist in that chain?)."
            self.chains[chain].remove(rule)
            return 0, "", ""
        return 2, "", f"unsupported operation {op}"


class FakeOci:
    """In-memory OCI security list behind `oci network security-list get/update`."""

    def __init__(self, ingress: Optional[List[Dict[str, Any]]] = None, egress: Optional[List[Dict[str, Any]]] = None):
        self.data: Dict[str, Any] = {
            "id": LIST_ID,
            "display-name": "Default Security List",
            "ingress-security-rules": list(ingress or []),
            "egress-security-rules": list(egress or []),
        }
        self.updates: List[Dict[str, Any]] = []
        self.get_failure: Optional[Outcome] = None
        self.update_failure: Optional[Outcome] = None

    def handle(self, args: List[str]) -> Outcome:
        if "get" in args:
            if self.get_failure:
                return self.get_failure
            return 0, json.dumps(self.data), ""
        if "update" in args:
            if self.update_failure:
                return self.update_failure
            path = args[args.index("--from-json") + 1][len("file://"):]
            with open(path, encoding="utf-8") as handle:
                document = json.load(handle)
            self.updates.append(document)
            self.data["ingress-security-rules"] = document["ingressSecurityRules"]
            self.data["egress-security-rules"] = document["egressSecurityRules"]
            return 0, "{}", ""
        return 2, "", "unsupported"


class FakeRunner:
    """CommandRunner stand-in dispatching on the executable name."""

    def __init__(self, iptables: Optional[FakeIptables] = None, oci: Optional[FakeOci] = None):
        self.iptables = iptables or FakeIptables()
        self.oci = oci or FakeOci()
        self.calls: List[List[str]] = []
        self.handlers: Dict[str, Callable[[List[str]], Any]] = {}

    def on(self, executable: str, handler: Callable[[List[str]], Any]) -> None:
        """Override an executable; the handler returns an Outcome or raises."""
        self.handlers[executable] = handler

    def run(
        self,
        args: Sequence[str],
        check: bool = True,
        retry: bool = False,
        transient=None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        args = [str(arg) for arg in args]
        self.calls.append(args)
        executable = args[0]
        if executable in self.handlers:
            outcome = self.handlers[executable](args)
        elif executable == "iptables":
            outcome = self.iptables.handle(args[2:] if args[1:2] == ["-w"] else args[1:])
        elif executable == "oci":
            outcome = self.oci.handle(args)
        else:
            outcome = (0, "", "")
        returncode, stdout, stderr = outcome
        result = CommandResult(args=args, returncode=returncode, stdout=stdout, stderr=stderr)
        if check and not result.ok:
            raise CommandError(args, returncode, stderr or stdout)
        return result

    def commands(self, executable: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == executable]


def tcp_rule(port_min: int, port_max: Optional[int] = None, source: str = "0.0.0.0/0", **extra) -> Dict[str, Any]:
    """Kebab-case ingress rule as printed by the oci CLI."""
    rule = {
        "protocol": "6",
        "source": source,
        "source-type": "CIDR_BLOCK",
        "is-stateless": False,
        "tcp-options": {"destination-port-range": {"min": port_min, "max": port_max or port_min}},
    }
    rule.update(extra)
    return rule


def all_rule(peer_key: str = "source", **extra) -> Dict[str, Any]:
    rule = {"protocol": "all", peer_key: "0.0.0.0/0", f"{peer_key}-type": "CIDR_BLOCK", "is-stateless": False}
    rule.update(extra)
    return rule


def snapshot_from(oci: FakeOci) -> SecurityListSnapshot:
    return create_parser(StoreKind.SECURITY_LIST, json.dumps(oci.data), list_id=LIST_ID).parse_snapshot()


@pytest.fixture
def test_settings(tmp_path):
    """Settings with every path under tmp_path and no real discovery sources."""
    return Settings(
        _env_file=None,
        SECURITY_LIST_ID=None,
        BASELINE_PORTS=["22/tcp"],
        OCI_AUTH="api_key",
        DOCKER_ENABLED=False,
        GATEWAY_ENDPOINT=None,
        GATEWAY_MANAGEMENT_URL_FILE=str(tmp_path / "management.url"),
        GATEWAY_URL_FILE=str(tmp_path / "gateway.url"),
        DISCOVER_LISTENING_SOCKETS=False,
        SYSTEMD_DIR=str(tmp_path / "systemd"),
        LOCK_FILE=str(tmp_path / "portsync.lock"),
        LAST_RUN_FILE=str(tmp_path / "last-run.json"),
        LOG_DIR=str(tmp_path / "logs"),
    )


@pytest.fixture
def fake_iptables():
    return FakeIptables()


@pytest.fixture
def fake_oci():
    return FakeOci()


@pytest.fixture
def runner(fake_iptables, fake_oci):
    return FakeRunner(iptables=fake_iptables, oci=fake_oci)


@pytest.fixture
def local_service(runner, test_settings):
    return LocalFilterService(runner, test_settings)


@pytest.fixture
def cloud_service(runner, test_settings):
    return SecurityListService(runner, test_settings)


@pytest.fixture
def discovery_of():
    """Build a discovery stub returning a fixed port set."""
    def _build(ports, unavailable=None):
        specs = frozenset(PortSpec.parse(port) for port in ports)
        stub = MagicMock()
        stub.discover.return_value = DiscoveryResult(
            ports=specs,
            sources={"baseline": sorted(ports)},
            unavailable=unavailable or {},
        )
        return stub
    return _build
