"""Delegate Vote Tracker - reconciled voting power for a governance token."""

__version__ = "0.1.0"
