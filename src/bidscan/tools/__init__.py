"""Operator tools for bidscan runs."""
