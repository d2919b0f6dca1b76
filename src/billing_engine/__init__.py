"""Billing period and charge processing engine."""

__version__ = "1.0.0"
