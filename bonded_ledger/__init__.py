"""Bonded-zone inventory ledger recalculation and batch scheduling engine."""

__version__ = "1.0.0"
