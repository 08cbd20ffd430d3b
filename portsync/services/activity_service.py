"""
Run log service: the last sync summary, persisted for `status` and operators.
"""
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from portsync.schemas.sync import SyncSummary

logger = logging.getLogger(__name__)


class RunLog:
    """Writes and reads the last-run JSON summary. Never authoritative state."""

    def __init__(self, path: str):
        self.path = Path(path)

    def record(self, summary: SyncSummary) -> bool:
        """
        Persist a summary, best-effort.

        Args:
            summary: Summary of the pass that just finished

        Returns:
            True if the summary was written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(summary.model_dump_json(indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            logger.warning(f"Could not write run log {self.path}: {e}")
            return False
        logger.debug(f"Wrote run log {self.path}")
        return True

    def last(self) -> Optional[SyncSummary]:
        """The last recorded summary, or None if missing or unreadable."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            return SyncSummary.model_validate_json(content)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable run log {self.path}: {e}")
            return None
