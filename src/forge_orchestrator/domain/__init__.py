"""
forge-orchestrator — domain layer

File: src/forge_orchestrator/domain/__init__.py
Last updated: 2026-10-19

Purpose
- Domain types shared across planes: Project, Stage, Task, Conflict, BudgetEntry,
  Incident and the queue messages exchanged between components.

Functional requirements
- Domain objects must be serializable and versioned.
- Keep the domain layer free of IO side effects.
"""
