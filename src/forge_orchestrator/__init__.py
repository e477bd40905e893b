"""
forge-orchestrator — package root

File: src/forge_orchestrator/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for the multi-agent orchestration core: file leases, the
  versioned context ledger, compute-tier routing and conflict arbitration.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
