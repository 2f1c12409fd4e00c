"""Microtask Market Service - coin ledger and task lifecycle for a microtask marketplace."""

__version__ = "0.1.0"
