"""Contracts for external workers and compute tiers."""
