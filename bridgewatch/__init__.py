"""
bridgewatch: cross-chain transfer reconciliation engine.

Watches a transfer submitted on the source ledger (XRPL) until it settles,
then watches the destination ledger's transfer index (XRPL-EVM explorer)
until the bridged funds arrive, persisting and broadcasting each transition.
"""

__version__ = "0.1.0"
