"""Resilient header-bidding scanner."""

__version__ = "0.1.0"
