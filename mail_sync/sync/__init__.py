"""Per-message pipeline stages: decode, filter, match."""

from .decoder import decode_message
from .filters import should_process, rejection_reason
from .matcher import MatchResolver, MatchStrategy, find_quote_references

__all__ = [
    "decode_message",
    "should_process",
    "rejection_reason",
    "MatchResolver",
    "MatchStrategy",
    "find_quote_references",
]
