"""
Service that drives one reconciliation pass across both rule stores.

Discover, then sync the host packet filter, then the cloud security list. Each
store is isolated: a failure in one is recorded in the summary and the pass
moves on. Rules are only ever added here.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from portsync.core.config import Settings, settings as default_settings
from portsync.core.exceptions import ApplyRejected, ConfigurationError, InvalidRuleData, StoreUnreachable
from portsync.schemas.port import PortSpec
from portsync.schemas.sync import (
    ReconcileState,
    StoreReport,
    StoreStatus,
    SyncPlan,
    SyncSummary,
)
from portsync.services.activity_service import RunLog
from portsync.services.confirmation import confirm_changes
from portsync.services.coverage_service import analyze_all, covered, uncovered
from portsync.services.discovery_service import PortDiscoveryService
from portsync.services.local_filter_service import AddOutcome, LocalFilterService
from portsync.services.security_list_service import SecurityListService, merge_rules, propose_additions

logger = logging.getLogger(__name__)


def _labels(scope: str, specs: Iterable[PortSpec]) -> List[str]:
    return [f"{scope}:{spec}" for spec in specs]


class Reconciler:
    """Runs discovery and both store syncs, one pass at a time."""

    def __init__(
        self,
        discovery: PortDiscoveryService,
        local: LocalFilterService,
        cloud: SecurityListService,
        confirmer,
        config: Optional[Settings] = None,
        run_log: Optional[RunLog] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize reconciler.

        Args:
            discovery: Port discovery service
            local: Host packet filter adapter
            cloud: Security list adapter
            confirmer: Object with confirm(title, changes) -> bool
            config: Settings (defaults to the global settings)
            run_log: Where the summary of each pass is written
            stop_event: When set, the pass stops before the next store
        """
        self.discovery = discovery
        self.local = local
        self.cloud = cloud
        self.confirmer = confirmer
        self.config = config or default_settings
        self.run_log = run_log
        self.stop_event = stop_event or threading.Event()
        self.state = ReconcileState.IDLE

    def _transition(self, state: ReconcileState) -> None:
        logger.debug(f"Reconcile state: {self.state.value} -> {state.value}")
        self.state = state

    def _list_id(self, security_list_id: Optional[str]) -> Optional[str]:
        return security_list_id or self.config.SECURITY_LIST_ID or None

    def run(self, security_list_id: Optional[str] = None, skip_local: bool = False) -> SyncSummary:
        """
        Perform one reconciliation pass.

        Args:
            security_list_id: Security list to sync (defaults to SECURITY_LIST_ID;
                the cloud store is skipped when neither is set)
            skip_local: Leave the host packet filter alone

        Returns:
            SyncSummary with added / covered / failed ports per store
        """
        summary = SyncSummary(started_at=datetime.now(timezone.utc))
        list_id = self._list_id(security_list_id)

        self._transition(ReconcileState.DISCOVERING)
        try:
            discovery = self.discovery.discover()
        except ConfigurationError as e:
            logger.error(f"[DISCOVERY] {e}")
            summary.error = str(e)
            return self._report(summary)

        desired = discovery.sorted_ports()
        summary.desired = [str(spec) for spec in desired]
        summary.unavailable_sources = discovery.unavailable

        if skip_local:
            summary.local = StoreReport(store=self.local.name, status=StoreStatus.SKIPPED)
        else:
            summary.local = self._sync_local(desired)

        if not list_id:
            logger.info("[CLOUD] No security list configured, skipping")
            summary.cloud = StoreReport(store="security-list", status=StoreStatus.SKIPPED)
        elif self.stop_event.is_set():
            logger.info("[CLOUD] Shutdown requested, skipping security list")
            summary.cloud = StoreReport(
                store=f"security-list:{list_id}", status=StoreStatus.SKIPPED, error="shutdown requested"
            )
        else:
            summary.cloud = self._sync_cloud(list_id, desired)

        return self._report(summary)

    def _sync_local(self, desired: List[PortSpec]) -> StoreReport:
        report = StoreReport(store=self.local.name)

        self._transition(ReconcileState.ANALYZING_LOCAL)
        try:
            rules = self.local.list_rules()
            hooked = self.local.is_hooked()
        except (StoreUnreachable, InvalidRuleData) as e:
            logger.error(f"[LOCAL] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            return report

        results = analyze_all(desired, rules)
        report.covered = [str(spec) for spec in covered(results)]
        candidates = uncovered(results)
        if not candidates and hooked:
            logger.info("[LOCAL] All desired ports already allowed")
            return report

        changes = [f"{self.local.chain}: ACCEPT {spec}" for spec in candidates]
        if not hooked:
            changes.insert(0, f"{self.local.parent_chain}: jump to {self.local.chain}")
        if not confirm_changes(self.confirmer, f"Host packet filter ({self.local.chain})", changes):
            logger.info("[LOCAL] Changes declined, nothing applied")
            report.status = StoreStatus.DECLINED
            return report

        self._transition(ReconcileState.APPLYING_LOCAL)
        try:
            self.local.ensure_hooked()
        except (StoreUnreachable, InvalidRuleData) as e:
            logger.error(f"[LOCAL] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            report.failed = {str(spec): str(e) for spec in candidates}
            return report

        for spec in candidates:
            try:
                outcome = self.local.add_rule(spec)
            except (ApplyRejected, StoreUnreachable) as e:
                logger.error(f"[LOCAL] {e}")
                report.failed[str(spec)] = str(e)
                continue
            if outcome == AddOutcome.ADDED:
                report.added.append(str(spec))
            else:
                report.covered.append(str(spec))

        if report.added:
            self.local.persist()
        if candidates and len(report.failed) == len(candidates):
            report.status = StoreStatus.FAILED
            report.error = "every rule was rejected"
        return report

    def _sync_cloud(self, list_id: str, desired: List[PortSpec]) -> StoreReport:
        report = StoreReport(store=f"security-list:{list_id}")

        self._transition(ReconcileState.ANALYZING_CLOUD)
        try:
            snapshot = self.cloud.fetch_snapshot(list_id)
        except (StoreUnreachable, InvalidRuleData) as e:
            logger.error(f"[CLOUD] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            return report

        proposal = propose_additions(desired, snapshot)
        report.covered = _labels("ingress", covered(proposal.ingress_results)) + _labels(
            "egress", covered(proposal.egress_results)
        )
        if proposal.is_empty:
            logger.info(f"[CLOUD] All desired ports already allowed in {list_id}")
            return report

        pending = _labels("ingress", uncovered(proposal.ingress_results)) + _labels(
            "egress", uncovered(proposal.egress_results)
        )
        changes = [rule.describe() for rule in proposal.ingress + proposal.egress]
        if not confirm_changes(self.confirmer, f"Security list {list_id}", changes):
            logger.info("[CLOUD] Changes declined, nothing applied")
            report.status = StoreStatus.DECLINED
            return report

        self._transition(ReconcileState.APPLYING_CLOUD)
        merged_ingress, merged_egress = merge_rules(snapshot, proposal)
        try:
            self.cloud.apply_update(list_id, merged_ingress, merged_egress, baseline=snapshot)
        except (StoreUnreachable, InvalidRuleData, ApplyRejected) as e:
            logger.error(f"[CLOUD] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            report.failed = {label: str(e) for label in pending}
            return report

        report.added = pending
        logger.info(f"[CLOUD] Added {len(pending)} rule(s) to {list_id}")
        return report

    def _report(self, summary: SyncSummary) -> SyncSummary:
        self._transition(ReconcileState.REPORTING)
        summary.finished_at = datetime.now(timezone.utc)
        for report in (summary.local, summary.cloud):
            if report.status == StoreStatus.SKIPPED:
                continue
            logger.info(
                f"[SUMMARY] {report.store}: {report.status.value}, added {len(report.added)}, "
                f"covered {len(report.covered)}, failed {len(report.failed)}"
            )
            for port, reason in report.failed.items():
                logger.info(f"[SUMMARY] {report.store}: {port} failed: {reason}")
        logger.info(f"[SUMMARY] Exit code {int(summary.exit_code)} ({summary.exit_code.name})")
        if self.run_log is not None:
            self.run_log.record(summary)
        self._transition(ReconcileState.IDLE)
        return summary

    def plan(self, security_list_id: Optional[str] = None, skip_local: bool = False) -> SyncPlan:
        """
        Analyze both stores without changing anything.

        Raises:
            ConfigurationError: If the baseline configuration is invalid
        """
        discovery = self.discovery.discover()
        desired = discovery.sorted_ports()
        plan = SyncPlan(
            desired=[str(spec) for spec in desired],
            sources=discovery.sources,
            unavailable_sources=discovery.unavailable,
        )

        if not skip_local:
            try:
                plan.local_results = analyze_all(desired, self.local.list_rules())
                plan.local_hooked = self.local.is_hooked()
            except (StoreUnreachable, InvalidRuleData) as e:
                plan.local_error = str(e)

        list_id = self._list_id(security_list_id)
        if list_id:
            plan.cloud_list_id = list_id
            try:
                plan.cloud_proposal = propose_additions(desired, self.cloud.fetch_snapshot(list_id))
            except (StoreUnreachable, InvalidRuleData) as e:
                plan.cloud_error = str(e)
        return plan
