"""Control-plane public API.

The dispatcher and operator facade live in their own submodules; they depend
on the integration plane, which in turn imports from here.
"""

from forge_orchestrator.control_plane.budgets import BudgetLedger, BudgetStatus
from forge_orchestrator.control_plane.ledger import ContextLedger, LedgerWriter, TaskSpec
from forge_orchestrator.control_plane.locks import LockManager, LockOutcome
from forge_orchestrator.control_plane.router import TierHealthBoard, TierRouter

__all__ = [
    "BudgetLedger",
    "BudgetStatus",
    "ContextLedger",
    "LedgerWriter",
    "LockManager",
    "LockOutcome",
    "TaskSpec",
    "TierHealthBoard",
    "TierRouter",
]
