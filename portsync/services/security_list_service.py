"""
Service for the cloud security list (OCI) rule store.

The update API replaces the whole ingress and egress lists. Every update sent
from the sync path is therefore the union of the live snapshot and the proposed
additions, and is checked against the snapshot before the call is made.
"""
import json
import logging
import os
import re
import tempfile
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from portsync.core.config import Settings, settings as default_settings
from portsync.core.exceptions import ApplyRejected, InvalidRuleData, PortSyncError, StoreUnreachable
from portsync.schemas.port import PortSpec
from portsync.schemas.rule import RuleRecord, RuleScope
from portsync.schemas.sync import SecurityListProposal, SecurityListSnapshot
from portsync.services.coverage_service import analyze_all, uncovered
from portsync.utils.command_runner import CommandError, CommandNotFound, CommandResult, CommandRunner, CommandTimeout
from portsync.utils.parser_factory import StoreKind, create_parser
from portsync.utils.parsers.security_list_parser import build_rule, build_update_document, canonical_rule

logger = logging.getLogger(__name__)

_STATUS_PATTERN = re.compile(r'"status"\s*:\s*(\d{3})')
_CODE_PATTERN = re.compile(r'"code"\s*:\s*"([^"]+)"')

# Terminal for this cycle: the list cannot be reached with these credentials right now
UNREACHABLE_STATUSES = {401, 403, 404, 429}
UNREACHABLE_CODES = {"NotAuthenticated", "NotAuthorizedOrNotFound", "NotAuthorized", "TooManyRequests"}
# The service refused the document itself
REJECTED_STATUSES = {400, 409, 412}


def _service_error(stderr: str) -> Tuple[Optional[int], Optional[str]]:
    """Extract (status, code) from an OCI CLI ServiceError message."""
    status = _STATUS_PATTERN.search(stderr or "")
    code = _CODE_PATTERN.search(stderr or "")
    return (int(status.group(1)) if status else None, code.group(1) if code else None)


def is_transient_oci_failure(result: CommandResult) -> bool:
    """Only throttling and server-side errors are retried."""
    status, code = _service_error(result.stderr)
    return status == 429 or (status is not None and status >= 500) or code == "TooManyRequests"


def propose_additions(desired: Iterable[PortSpec], snapshot: SecurityListSnapshot) -> SecurityListProposal:
    """
    Compute the net-new rules a security list needs.

    Ingress and egress are independent permission sets and are analyzed
    separately. Pure: the snapshot is not modified.
    """
    desired = list(desired)
    ingress_results = analyze_all(desired, snapshot.ingress)
    egress_results = analyze_all(desired, snapshot.egress)
    return SecurityListProposal(
        ingress=[
            RuleRecord.proposed(spec, RuleScope.INGRESS, raw=build_rule(spec, RuleScope.INGRESS))
            for spec in uncovered(ingress_results)
        ],
        egress=[
            RuleRecord.proposed(spec, RuleScope.EGRESS, raw=build_rule(spec, RuleScope.EGRESS))
            for spec in uncovered(egress_results)
        ],
        ingress_results=ingress_results,
        egress_results=egress_results,
    )


def merge_rules(
    snapshot: SecurityListSnapshot, proposal: SecurityListProposal
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Existing rules followed by the proposed ones, per direction."""
    merged_ingress = [rule.raw for rule in snapshot.ingress] + [rule.raw for rule in proposal.ingress]
    merged_egress = [rule.raw for rule in snapshot.egress] + [rule.raw for rule in proposal.egress]
    return merged_ingress, merged_egress


def verify_union(baseline: List[RuleRecord], merged: List[Dict[str, Any]], scope: RuleScope) -> None:
    """
    Check that every baseline rule survives in the merged list.

    Raises:
        InvalidRuleData: If any existing rule would be dropped
    """
    if len(merged) < len(baseline):
        raise InvalidRuleData(
            f"Refusing {scope.value} update: {len(merged)} rules would replace {len(baseline)} existing rules"
        )
    missing = Counter(canonical_rule(rule.raw) for rule in baseline) - Counter(canonical_rule(raw) for raw in merged)
    if missing:
        raise InvalidRuleData(
            f"Refusing {scope.value} update: {sum(missing.values())} existing rule(s) missing from the merged list"
        )


class SecurityListService:
    """Reads and writes an OCI security list through the oci CLI."""

    def __init__(self, runner: CommandRunner, config: Optional[Settings] = None):
        """
        Initialize security list service.

        Args:
            runner: Command runner used for every oci call
            config: Settings (defaults to the global settings)
        """
        self.runner = runner
        self.config = config or default_settings

    def _oci(self, *args: str) -> CommandResult:
        command = [self.config.OCI_BIN, *self.config.oci_auth_args(), *args]
        return self.runner.run(command, retry=True, transient=is_transient_oci_failure)

    def _translate(
        self, error: CommandError, action: str, default=StoreUnreachable, reading: bool = False
    ) -> PortSyncError:
        """
        Map an oci CLI failure onto the store error taxonomy.

        A read has no document to reject, so a 4xx on a read (such as a malformed
        OCID) leaves the list unreachable for this cycle.
        """
        if isinstance(error, (CommandTimeout, CommandNotFound)):
            return StoreUnreachable(f"Cannot {action}", cause=error.stderr)
        status, code = _service_error(error.stderr)
        if status in UNREACHABLE_STATUSES or code in UNREACHABLE_CODES:
            return StoreUnreachable(f"Cannot {action} ({status or code})", cause=error.stderr)
        if status in REJECTED_STATUSES and not reading:
            return ApplyRejected(f"Security list rejected {action} ({status}, {code})", cause=error.stderr)
        return default(f"Cannot {action}", cause=error.stderr)

    def fetch_snapshot(self, list_id: str) -> SecurityListSnapshot:
        """
        Read the security list in a single call.

        An empty or null response is a failure, not an empty list: the identity
        of the list could not be confirmed.

        Raises:
            StoreUnreachable: If the list cannot be read
            InvalidRuleData: If the response cannot be parsed
        """
        logger.info(f"[CLOUD] Fetching current rules for security list {list_id}")
        try:
            result = self._oci(
                "network", "security-list", "get",
                "--security-list-id", list_id,
                "--query", "data",
                "--raw-output",
            )
        except CommandError as e:
            raise self._translate(e, f"fetch security list {list_id}", reading=True)

        content = result.stdout.strip()
        if not content or content == "null":
            raise StoreUnreachable(f"No data returned for security list {list_id}")

        snapshot = create_parser(StoreKind.SECURITY_LIST, content, list_id=list_id).parse_snapshot()
        logger.info(
            f"[CLOUD] Security list {list_id}: {len(snapshot.ingress)} ingress, {len(snapshot.egress)} egress rules"
        )
        return snapshot

    def apply_update(
        self,
        list_id: str,
        merged_ingress: List[Dict[str, Any]],
        merged_egress: List[Dict[str, Any]],
        baseline: Optional[SecurityListSnapshot] = None,
    ) -> None:
        """
        Replace the list's rules in one update call.

        Args:
            list_id: Security list OCID
            merged_ingress: Complete ingress list to send
            merged_egress: Complete egress list to send
            baseline: Snapshot the lists were derived from; when given, every
                baseline rule must be present or nothing is sent

        Raises:
            InvalidRuleData: If the update would drop baseline rules
            StoreUnreachable: If the list cannot be reached
            ApplyRejected: If the service refuses the update
        """
        if baseline is not None:
            verify_union(baseline.ingress, merged_ingress, RuleScope.INGRESS)
            verify_union(baseline.egress, merged_egress, RuleScope.EGRESS)

        document = build_update_document(merged_ingress, merged_egress)
        handle = tempfile.NamedTemporaryFile(mode="w", suffix=".json", prefix="portsync-", delete=False)
        try:
            with handle:
                json.dump(document, handle)
            logger.info(
                f"[CLOUD] Updating security list {list_id}: "
                f"{len(merged_ingress)} ingress, {len(merged_egress)} egress rules"
            )
            self._oci(
                "network", "security-list", "update",
                "--security-list-id", list_id,
                "--from-json", f"file://{handle.name}",
                "--force",
            )
        except CommandError as e:
            raise self._translate(e, f"update security list {list_id}", default=ApplyRejected)
        finally:
            os.unlink(handle.name)

    def remove_rules(self, snapshot: SecurityListSnapshot, records: Iterable[RuleRecord]) -> None:
        """
        Remove specific listed rules (duplicate elimination only).

        Records are matched by identity against the snapshot they were listed from.
        """
        doomed = {id(record) for record in records}
        ingress = [rule.raw for rule in snapshot.ingress if id(rule) not in doomed]
        egress = [rule.raw for rule in snapshot.egress if id(rule) not in doomed]
        removed = snapshot.rule_count - len(ingress) - len(egress)
        if removed == 0:
            return
        logger.info(f"[CLOUD] Removing {removed} rule(s) from security list {snapshot.list_id}")
        self.apply_update(snapshot.list_id, ingress, egress)
