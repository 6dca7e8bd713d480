"""Outbound request governor and two-tier result cache for review analytics."""

__version__ = "0.1.0"
