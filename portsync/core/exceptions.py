"""
Exception types for port synchronization.

Each store's sync is isolated: adapters translate low-level failures into one of
these types so the reconciler can decide whether to skip a source, skip a store,
or report a single rule as failed.
"""
from typing import Optional


class PortSyncError(Exception):
    """Base class for all port sync errors."""

    def __init__(self, message: str, cause: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigurationError(PortSyncError):
    """Invalid configuration (bad baseline port, missing list id...)."""


class DiscoverySourceUnavailable(PortSyncError):
    """A discovery source could not be consulted. Non-fatal."""


class StoreUnreachable(PortSyncError):
    """A rule store could not be read or written this cycle."""


class InvalidRuleData(PortSyncError):
    """Rule data could not be parsed, or an update would drop existing rules."""


class ApplyRejected(PortSyncError):
    """The store refused a rule or an update."""


class ConfirmationDeclined(PortSyncError):
    """The operator declined the proposed changes."""


class RunInProgress(PortSyncError):
    """Another reconciliation pass holds the run lock."""
