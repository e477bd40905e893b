"""Structured logging and in-process metrics."""
