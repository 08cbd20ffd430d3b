"""
Service for removing duplicate rules from both stores.

This is the only path that deletes rules, and it always asks first.
"""
import logging
from typing import List, Optional, Tuple

from portsync.core.exceptions import ApplyRejected, InvalidRuleData, StoreUnreachable
from portsync.schemas.rule import RuleRecord
from portsync.schemas.sync import SecurityListSnapshot, StoreReport, StoreStatus
from portsync.services.confirmation import confirm_changes
from portsync.services.local_filter_service import LocalFilterService
from portsync.services.security_list_service import SecurityListService
from portsync.utils.parsers.security_list_parser import canonical_rule

logger = logging.getLogger(__name__)


def local_match_key(record: RuleRecord) -> Tuple:
    """Normalized match of an iptables rule, including its target."""
    return record.match_key() + (record.raw.get("target"),)


def find_local_duplicates(records: List[RuleRecord]) -> List[RuleRecord]:
    """
    Later rules whose normalized match equals an earlier one.

    The first occurrence is kept. Multiport rules are never reported.
    """
    seen = set()
    duplicates = []
    for record in records:
        if record.raw.get("composite"):
            continue
        key = local_match_key(record)
        if key in seen:
            duplicates.append(record)
        else:
            seen.add(key)
    return duplicates


def find_cloud_duplicates(snapshot: SecurityListSnapshot) -> List[RuleRecord]:
    """Later rules whose JSON (without description) equals an earlier one, per direction."""
    duplicates = []
    for rules in (snapshot.ingress, snapshot.egress):
        seen = set()
        for record in rules:
            key = canonical_rule(record.raw)
            if key in seen:
                duplicates.append(record)
            else:
                seen.add(key)
    return duplicates


class DedupeService:
    """Finds duplicates in each store and removes them after confirmation."""

    def __init__(self, local: LocalFilterService, cloud: SecurityListService, confirmer):
        self.local = local
        self.cloud = cloud
        self.confirmer = confirmer

    def dedupe_local(self) -> StoreReport:
        report = StoreReport(store=self.local.name)
        try:
            duplicates = find_local_duplicates(self.local.list_rules())
        except (StoreUnreachable, InvalidRuleData) as e:
            logger.error(f"[LOCAL] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            return report

        if not duplicates:
            logger.info(f"[LOCAL] No duplicate rules in {self.local.chain}")
            return report

        changes = [f"remove {record.raw.get('spec')}" for record in duplicates]
        if not confirm_changes(self.confirmer, f"Duplicate rules in {self.local.chain}", changes):
            logger.info("[LOCAL] Duplicate removal declined")
            report.status = StoreStatus.DECLINED
            return report

        # Delete from the bottom so earlier positions stay valid
        for record in reversed(duplicates):
            label = record.raw.get("spec") or record.describe()
            try:
                self.local.remove_rule(record)
            except (ApplyRejected, InvalidRuleData, StoreUnreachable) as e:
                logger.error(f"[LOCAL] {e}")
                report.failed[label] = str(e)
                continue
            report.removed.append(label)
        if len(report.failed) == len(duplicates):
            report.status = StoreStatus.FAILED
        return report

    def dedupe_cloud(self, list_id: Optional[str]) -> StoreReport:
        if not list_id:
            return StoreReport(store="security-list", status=StoreStatus.SKIPPED)

        report = StoreReport(store=f"security-list:{list_id}")
        try:
            snapshot = self.cloud.fetch_snapshot(list_id)
        except (StoreUnreachable, InvalidRuleData) as e:
            logger.error(f"[CLOUD] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            return report

        duplicates = find_cloud_duplicates(snapshot)
        if not duplicates:
            logger.info(f"[CLOUD] No duplicate rules in {list_id}")
            return report

        changes = [f"remove {record.describe()}" for record in duplicates]
        if not confirm_changes(self.confirmer, f"Duplicate rules in security list {list_id}", changes):
            logger.info("[CLOUD] Duplicate removal declined")
            report.status = StoreStatus.DECLINED
            return report

        try:
            self.cloud.remove_rules(snapshot, duplicates)
        except (StoreUnreachable, InvalidRuleData, ApplyRejected) as e:
            logger.error(f"[CLOUD] {e}")
            report.status = StoreStatus.FAILED
            report.error = str(e)
            return report
        report.removed = [record.describe() for record in duplicates]
        return report
