"""
Base parser class for rule store listings.
"""
from abc import ABC, abstractmethod
from typing import List
import logging

from portsync.schemas.rule import RuleRecord

logger = logging.getLogger(__name__)


class BaseRuleParser(ABC):
    """Base class for rule store parsers."""

    def __init__(self, content: str):
        """
        Initialize parser with raw store output.

        Args:
            content: The listing as returned by the store's CLI
        """
        self.content = content or ""
        self.lines = self.content.split('\n')

    @abstractmethod
    def parse_rules(self) -> List[RuleRecord]:
        """Parse every rule in the listing."""
        pass
