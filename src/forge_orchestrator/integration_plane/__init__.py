"""Conflict detection inputs and tiered arbitration."""

from forge_orchestrator.integration_plane.arbitrator import (
    ArbitrationRequest,
    ConflictResolver,
    ResolutionOutcome,
)

__all__ = ["ArbitrationRequest", "ConflictResolver", "ResolutionOutcome"]
