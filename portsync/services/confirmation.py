"""
Confirmation strategies for rule store changes.

The reconciler never talks to a terminal directly; it is handed a confirmer.
"""
import logging
from typing import List

import typer
from rich.console import Console

from portsync.core.exceptions import ConfirmationDeclined

logger = logging.getLogger(__name__)


class AutoConfirmer:
    """Approves everything (daemon mode and --yes)."""

    def confirm(self, title: str, changes: List[str]) -> bool:
        logger.info(f"{title}: auto-approved {len(changes)} change(s)")
        return True


class InteractiveConfirmer:
    """Lists the pending changes and asks the operator once per batch."""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def confirm(self, title: str, changes: List[str]) -> bool:
        """
        Ask the operator.

        Raises:
            ConfirmationDeclined: If the prompt is interrupted or stdin is closed
        """
        self.console.print(f"\n[bold]{title}[/bold]")
        for change in changes:
            self.console.print(f"  [green]+[/green] {change}")
        try:
            return typer.confirm("Apply these changes?", default=False)
        except typer.Abort:
            raise ConfirmationDeclined("No answer from the terminal")


def confirm_changes(confirmer, title: str, changes: List[str]) -> bool:
    """Ask the confirmer; an interrupted prompt counts as a refusal."""
    try:
        return confirmer.confirm(title, changes)
    except ConfirmationDeclined as e:
        logger.info(f"{title}: {e}")
        return False
