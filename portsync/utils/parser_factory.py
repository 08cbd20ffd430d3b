"""
Parser factory for creating the appropriate parser for a rule store.
"""
import enum
import logging

from portsync.utils.parsers.base_parser import BaseRuleParser
from portsync.utils.parsers.iptables_parser import IptablesRuleParser
from portsync.utils.parsers.security_list_parser import SecurityListParser

logger = logging.getLogger(__name__)


class StoreKind(str, enum.Enum):
    """Supported rule stores."""
    LOCAL_FILTER = "local_filter"
    SECURITY_LIST = "security_list"


def create_parser(store: StoreKind, content: str, **kwargs) -> BaseRuleParser:
    """
    Create appropriate parser based on store kind.

    Args:
        store: StoreKind enum value
        content: Raw listing returned by the store
        **kwargs: Parser-specific options (chain, scope, list_id)

    Returns:
        Parser instance
    """
    parsers = {
        StoreKind.LOCAL_FILTER: IptablesRuleParser,
        StoreKind.SECURITY_LIST: SecurityListParser,
    }

    parser_class = parsers.get(store)
    if not parser_class:
        raise ValueError(f"Unsupported store kind: {store}")

    return parser_class(content, **kwargs)
