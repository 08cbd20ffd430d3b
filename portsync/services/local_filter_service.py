"""
Service for the host packet filter (iptables) rule store.

All rules managed here live in a dedicated chain that is hooked into the parent
chain (INPUT) ahead of any default-deny rule. Rules are only ever appended;
removal is limited to the duplicate elimination path.
"""
import enum
import logging
import shlex
from typing import List, Optional

from portsync.core.config import Settings, settings as default_settings
from portsync.core.exceptions import ApplyRejected, InvalidRuleData, StoreUnreachable
from portsync.schemas.port import PortSpec
from portsync.schemas.rule import RuleProtocol, RuleRecord
from portsync.services.coverage_service import is_universal
from portsync.utils.command_runner import CommandError, CommandNotFound, CommandRunner, CommandTimeout
from portsync.utils.parser_factory import StoreKind, create_parser

logger = logging.getLogger(__name__)

DENY_TARGETS = {"DROP", "REJECT"}


class AddOutcome(str, enum.Enum):
    """Result of adding a single rule."""
    ADDED = "added"
    ALREADY_PRESENT = "already_present"


def rule_args(spec: PortSpec) -> List[str]:
    """iptables match/target arguments that open one port."""
    protocol = spec.protocol.value
    return ["-p", protocol, "-m", protocol, "--dport", str(spec.port), "-j", "ACCEPT"]


class LocalFilterService:
    """Reads and writes the dedicated iptables chain."""

    def __init__(self, runner: CommandRunner, config: Optional[Settings] = None):
        """
        Initialize local filter service.

        Args:
            runner: Command runner used for every iptables call
            config: Settings (defaults to the global settings)
        """
        self.runner = runner
        self.config = config or default_settings
        self.chain = self.config.CHAIN_NAME
        self.parent_chain = self.config.PARENT_CHAIN

    @property
    def name(self) -> str:
        return f"iptables:{self.chain}"

    def _iptables(self, *args: str, check: bool = True, retry: bool = False):
        """Run iptables, waiting for the xtables lock."""
        try:
            return self.runner.run([self.config.IPTABLES_BIN, "-w", *args], check=check, retry=retry)
        except CommandNotFound as e:
            raise StoreUnreachable(f"{self.config.IPTABLES_BIN} is not installed", cause=e.stderr)
        except CommandTimeout as e:
            raise StoreUnreachable("iptables did not respond", cause=e.stderr)

    def chain_exists(self) -> bool:
        """
        Whether the dedicated chain exists.

        iptables exits 1 for an unknown chain; any other failure (not root, no
        kernel support) means the store cannot be used at all.
        """
        result = self._iptables("-n", "-L", self.chain, check=False)
        if result.ok:
            return True
        if result.returncode == 1:
            return False
        raise StoreUnreachable("iptables is not usable", cause=(result.stderr or result.stdout).strip())

    def ensure_chain(self) -> bool:
        """
        Create the dedicated chain if it does not exist.

        Returns:
            True if the chain was created
        """
        if self.chain_exists():
            return False
        try:
            self._iptables("-N", self.chain, retry=True)
        except CommandError as e:
            raise StoreUnreachable(f"Cannot create chain {self.chain}", cause=e.stderr)
        logger.info(f"[LOCAL] Created iptables chain: {self.chain}")
        return True

    def list_rules(self) -> List[RuleRecord]:
        """
        List rules of the dedicated chain.

        A missing chain is an empty list; it is created on first write.

        Raises:
            StoreUnreachable: If iptables cannot be queried
            InvalidRuleData: If the listing cannot be parsed
        """
        if not self.chain_exists():
            logger.info(f"[LOCAL] Chain {self.chain} does not exist yet, treating as empty")
            return []
        try:
            result = self._iptables("-S", self.chain, retry=True)
        except CommandError as e:
            raise StoreUnreachable(f"Cannot list chain {self.chain}", cause=e.stderr)
        return create_parser(StoreKind.LOCAL_FILTER, result.stdout, chain=self.chain).parse_rules()

    def has_rule(self, spec: PortSpec) -> bool:
        """Live check for the exact rule this service would add."""
        return self._iptables("-C", self.chain, *rule_args(spec), check=False).ok

    def add_rule(self, spec: PortSpec) -> AddOutcome:
        """
        Append an ACCEPT rule for one port.

        Idempotent: an identical rule in the live chain is reported as already
        present. A failed append is retried once.

        Raises:
            ApplyRejected: If iptables rejects the rule twice
        """
        self.ensure_chain()
        if self.has_rule(spec):
            logger.info(f"[LOCAL] iptables rule already present for {spec}")
            return AddOutcome.ALREADY_PRESENT
        try:
            self._iptables("-A", self.chain, *rule_args(spec), retry=True)
        except CommandError as e:
            raise ApplyRejected(f"iptables rejected rule for {spec}", cause=e.stderr)
        logger.info(f"[LOCAL] Added iptables rule for {spec}")
        return AddOutcome.ADDED

    def remove_rule(self, record: RuleRecord) -> None:
        """
        Delete a listed rule by its own specification.

        Raises:
            InvalidRuleData: If the record was not produced by listing this chain
            ApplyRejected: If iptables refuses the deletion
        """
        args = record.raw.get("args")
        if not args or record.raw.get("chain") != self.chain:
            raise InvalidRuleData(f"Rule does not belong to chain {self.chain}: {record.describe()}")
        try:
            self._iptables("-D", self.chain, *args)
        except CommandError as e:
            raise ApplyRejected(f"iptables refused to delete '{record.raw.get('spec')}'", cause=e.stderr)
        logger.info(f"[LOCAL] Removed iptables rule: {record.raw.get('spec')}")

    def is_hooked(self) -> bool:
        return self._iptables("-C", self.parent_chain, "-j", self.chain, check=False).ok

    def find_default_deny_position(self) -> Optional[int]:
        """
        Position (1-based) of the first default-deny rule in the parent chain.

        A default-deny rule is a DROP or REJECT that matches every packet: no
        protocol, port, address or interface restriction.
        """
        try:
            result = self._iptables("-S", self.parent_chain, retry=True)
        except CommandError as e:
            raise StoreUnreachable(f"Cannot list chain {self.parent_chain}", cause=e.stderr)
        records = create_parser(StoreKind.LOCAL_FILTER, result.stdout, chain=self.parent_chain).parse_rules()
        for record in records:
            if (
                record.raw.get("target") in DENY_TARGETS
                and record.protocol == RuleProtocol.ALL
                and record.port_range is None
                and not record.constrained
                and is_universal(record.cidr)
            ):
                return record.raw["position"]
        return None

    def ensure_hooked(self) -> bool:
        """
        Make sure the parent chain jumps to the dedicated chain.

        The jump is inserted right before the first default-deny rule, or
        appended when there is none.

        Returns:
            True if a jump rule was added
        """
        self.ensure_chain()
        if self.is_hooked():
            return False

        position = self.find_default_deny_position()
        try:
            if position is not None:
                self._iptables("-I", self.parent_chain, str(position), "-j", self.chain, retry=True)
                logger.info(f"[LOCAL] Inserted jump to {self.chain} at {self.parent_chain} position {position}")
            else:
                self._iptables("-A", self.parent_chain, "-j", self.chain, retry=True)
                logger.info(f"[LOCAL] Appended jump to {self.chain} at end of {self.parent_chain}")
        except CommandError as e:
            raise StoreUnreachable(f"Cannot hook {self.chain} into {self.parent_chain}", cause=e.stderr)
        return True

    def persist(self) -> bool:
        """
        Save rules so they survive a packet filter restart.

        Failure is a warning only: the rules stay active for this session.
        """
        try:
            self.runner.run(shlex.split(self.config.PERSIST_COMMAND), retry=True)
        except CommandNotFound:
            logger.warning(
                f"[LOCAL] Persistence helper not found ({self.config.PERSIST_COMMAND}), "
                "rules may not survive a reboot"
            )
            return False
        except CommandError as e:
            logger.warning(f"[LOCAL] Failed to persist iptables rules: {e}")
            return False
        logger.info("[LOCAL] Saved iptables rules")
        return True
