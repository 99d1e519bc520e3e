"""
Orchestrator package.

Sequences the settlement and arrival phases of each transfer.
"""

from bridgewatch.orchestrator.transfer_orchestrator import (
    TransferOrchestrator,
    OrchestratorConfig,
    ReconciliationResult,
)

__all__ = [
    "TransferOrchestrator",
    "OrchestratorConfig",
    "ReconciliationResult",
]
