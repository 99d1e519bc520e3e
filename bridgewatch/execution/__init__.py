"""
Execution package.

The two poll phases of a transfer and the amount tagging that makes the
destination match possible.
"""

from bridgewatch.execution.settlement_poller import (
    SettlementPoller,
    SettlementConfig,
    SettlementOutcome,
    SettlementState,
)
from bridgewatch.execution.arrival_matcher import (
    ArrivalMatcher,
    MatcherConfig,
    ArrivalOutcome,
    ArrivalState,
    IndexTransfer,
    find_match,
    parse_index_item,
    decode_amount,
)
from bridgewatch.execution.amount_tagger import AmountTagger

__all__ = [
    "SettlementPoller",
    "SettlementConfig",
    "SettlementOutcome",
    "SettlementState",
    "ArrivalMatcher",
    "MatcherConfig",
    "ArrivalOutcome",
    "ArrivalState",
    "IndexTransfer",
    "find_match",
    "parse_index_item",
    "decode_amount",
    "AmountTagger",
]
