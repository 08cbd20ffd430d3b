"""Schemas for coverage analysis and reconciliation results."""
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from portsync.schemas.port import PortSpec
from portsync.schemas.rule import RuleRecord


class ExitCode(enum.IntEnum):
    """Process exit codes for CLI commands."""
    SUCCESS = 0
    DISCOVERY_FAILED = 1
    PARTIAL_FAILURE = 2
    DECLINED = 3
    FAILED = 4
    LOCKED = 5


class ReconcileState(str, enum.Enum):
    """States of one reconciliation pass."""
    IDLE = "idle"
    DISCOVERING = "discovering"
    ANALYZING_LOCAL = "analyzing_local"
    APPLYING_LOCAL = "applying_local"
    ANALYZING_CLOUD = "analyzing_cloud"
    APPLYING_CLOUD = "applying_cloud"
    REPORTING = "reporting"


class CoverageResult(BaseModel):
    """Whether a desired port is already permitted by a store snapshot."""
    spec: PortSpec
    covered: bool
    matching_rule: Optional[RuleRecord] = None


class SecurityListSnapshot(BaseModel):
    """Rules of a security list as fetched in one read call."""
    list_id: str
    ingress: List[RuleRecord] = Field(default_factory=list)
    egress: List[RuleRecord] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def rule_count(self) -> int:
        return len(self.ingress) + len(self.egress)


class SecurityListProposal(BaseModel):
    """Net-new rules for a security list, with the analysis that produced them."""
    ingress: List[RuleRecord] = Field(default_factory=list)
    egress: List[RuleRecord] = Field(default_factory=list)
    ingress_results: List[CoverageResult] = Field(default_factory=list)
    egress_results: List[CoverageResult] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.ingress and not self.egress


class StoreStatus(str, enum.Enum):
    """Outcome of one store's sync."""
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    DECLINED = "declined"


class StoreReport(BaseModel):
    """Per-store part of a sync summary. Ports are rendered as "80/tcp" (cloud: "ingress:80/tcp")."""
    store: str
    status: StoreStatus = StoreStatus.OK
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    covered: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.status != StoreStatus.SKIPPED


class SyncSummary(BaseModel):
    """Structured result of one reconciliation pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    desired: List[str] = Field(default_factory=list)
    unavailable_sources: Dict[str, str] = Field(default_factory=dict)
    local: StoreReport = Field(default_factory=lambda: StoreReport(store="local"))
    cloud: StoreReport = Field(default_factory=lambda: StoreReport(store="cloud", status=StoreStatus.SKIPPED))
    error: Optional[str] = None

    @property
    def exit_code(self) -> ExitCode:
        """
        Map store outcomes to an exit code.

        Returns:
            DISCOVERY_FAILED if no desired set could be computed, DECLINED when the
            operator declined and nothing failed, FAILED when every attempted store
            failed outright, PARTIAL_FAILURE when anything else went wrong (one store
            failed, or some ports of a store failed), SUCCESS otherwise.
        """
        if self.error is not None:
            return ExitCode.DISCOVERY_FAILED
        attempted = [report for report in (self.local, self.cloud) if report.attempted]
        failed = [report for report in attempted if report.status == StoreStatus.FAILED]
        degraded = [report for report in attempted if report.failed and report.status != StoreStatus.FAILED]
        if not failed and not degraded:
            if any(report.status == StoreStatus.DECLINED for report in attempted):
                return ExitCode.DECLINED
            return ExitCode.SUCCESS
        if attempted and len(failed) == len(attempted):
            return ExitCode.FAILED
        return ExitCode.PARTIAL_FAILURE


class SyncPlan(BaseModel):
    """Read-only analysis of both stores, as shown by `status`."""
    desired: List[str] = Field(default_factory=list)
    sources: Dict[str, List[str]] = Field(default_factory=dict)
    unavailable_sources: Dict[str, str] = Field(default_factory=dict)
    local_results: List[CoverageResult] = Field(default_factory=list)
    local_hooked: Optional[bool] = None
    local_error: Optional[str] = None
    cloud_list_id: Optional[str] = None
    cloud_proposal: Optional[SecurityListProposal] = None
    cloud_error: Optional[str] = None
